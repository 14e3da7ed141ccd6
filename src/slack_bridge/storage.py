from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import LinkedAccount

logger = logging.getLogger(__name__)

LOGIN_ID_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTWXYZabcdefghijkmnopqrstuvwxyz"
LOGIN_ID_LENGTH = 17

_USER_MODEL = "user"
_MISC_MODEL = "misc"
_LOGIN_STORAGE_KEY = "login_storage"


class SQLiteStore:
    def __init__(self, path: str) -> None:
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._configure()
        self._init_schema()

    def _configure(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        self.conn.commit()

    def _init_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                model TEXT NOT NULL,
                key TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (model, key)
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                name TEXT NOT NULL,
                display_name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS room_members (
                room_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                PRIMARY KEY (room_id, user_id),
                FOREIGN KEY(room_id) REFERENCES rooms(id),
                FOREIGN KEY(user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                text TEXT NOT NULL,
                alias TEXT,
                created_at INTEGER NOT NULL,
                custom_fields TEXT NOT NULL,
                FOREIGN KEY(room_id) REFERENCES rooms(id)
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                room_id TEXT,
                text TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_rooms_name ON rooms(name);
            CREATE INDEX IF NOT EXISTS idx_room_members_user ON room_members(user_id);
            CREATE INDEX IF NOT EXISTS idx_messages_room_ts ON messages(room_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, id);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def read_record(self, model: str, key: str) -> dict[str, Any]:
        row = self.conn.execute(
            "SELECT data FROM records WHERE model = ? AND key = ?", (model, key)
        ).fetchone()
        if not row:
            return {}
        try:
            payload = json.loads(str(row["data"]))
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable record %s/%s", model, key)
            return {}
        return payload if isinstance(payload, dict) else {}

    def write_record(self, model: str, key: str, data: dict[str, Any]) -> None:
        encoded = json.dumps(data, ensure_ascii=False)
        with self.conn:
            self.conn.execute("DELETE FROM records WHERE model = ? AND key = ?", (model, key))
            self.conn.execute(
                "INSERT INTO records (model, key, data) VALUES (?, ?, ?)", (model, key, encoded)
            )

    def list_records(self, model: str) -> list[tuple[str, dict[str, Any]]]:
        cursor = self.conn.execute(
            "SELECT key, data FROM records WHERE model = ? ORDER BY key ASC", (model,)
        )
        rows: list[tuple[str, dict[str, Any]]] = []
        for row in cursor.fetchall():
            try:
                payload = json.loads(str(row["data"]))
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                rows.append((str(row["key"]), payload))
        return rows


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def merge_record(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    """Merge ``changes`` over ``current`` and stamp ``updated_at``.

    Keys present in ``changes`` win, including an explicit ``None`` which
    clears the stored value. Keys absent from ``changes`` are kept. Two
    writers racing on the same record resolve as last-write-wins.
    """
    merged = dict(current)
    merged.update(changes)
    merged["updated_at"] = utc_now_iso()
    return merged


def make_login_id(length: int = LOGIN_ID_LENGTH) -> str:
    return "".join(secrets.choice(LOGIN_ID_ALPHABET) for _ in range(length))


class IdentityStore:
    """Linked Slack accounts, login sessions and the Slack id -> user index.

    One record per local user holds the :class:`LinkedAccount` fields. A
    single shared record holds both the ``login_ids`` (login session id ->
    local user id) and ``slack_ids`` (Slack user id -> local user id) maps.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def get_account(self, local_user_id: str) -> LinkedAccount:
        record = self.store.read_record(_USER_MODEL, local_user_id)
        return LinkedAccount.from_record(local_user_id, record)

    def save_account(self, local_user_id: str, **fields: Any) -> LinkedAccount:
        unknown = set(fields) - {"slack_user_id", "access_token", "sync_enabled"}
        if unknown:
            raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        current = self.store.read_record(_USER_MODEL, local_user_id)
        merged = merge_record(current, fields)
        self.store.write_record(_USER_MODEL, local_user_id, merged)
        return LinkedAccount.from_record(local_user_id, merged)

    def list_accounts(self) -> list[LinkedAccount]:
        return [
            LinkedAccount.from_record(key, record)
            for key, record in self.store.list_records(_USER_MODEL)
        ]

    def _login_storage(self) -> dict[str, Any]:
        record = self.store.read_record(_MISC_MODEL, _LOGIN_STORAGE_KEY)
        if not isinstance(record.get("login_ids"), dict):
            record["login_ids"] = {}
        if not isinstance(record.get("slack_ids"), dict):
            record["slack_ids"] = {}
        return record

    def _save_login_storage(self, record: dict[str, Any]) -> None:
        self.store.write_record(_MISC_MODEL, _LOGIN_STORAGE_KEY, merge_record(record, {}))

    def begin_login_session(self, local_user_id: str) -> str:
        login_id = make_login_id()
        record = self._login_storage()
        record["login_ids"][login_id] = local_user_id
        self._save_login_storage(record)
        return login_id

    def resolve_login_session(self, login_id: str) -> str | None:
        if not login_id:
            return None
        value = self._login_storage()["login_ids"].get(login_id)
        return str(value) if value else None

    def record_slack_identity(self, local_user_id: str, slack_user_id: str) -> None:
        record = self._login_storage()
        record["slack_ids"][slack_user_id] = local_user_id
        self._save_login_storage(record)

    def local_user_for_slack_id(self, slack_user_id: str) -> str | None:
        value = self._login_storage()["slack_ids"].get(slack_user_id)
        return str(value) if value else None

    def lookup_by_slack_id(self, slack_user_id: str) -> LinkedAccount | None:
        local_user_id = self.local_user_for_slack_id(slack_user_id)
        if not local_user_id:
            return None
        return self.get_account(local_user_id)


def dump_json(path: str, payload: object) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
