from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterable
from typing import Any, Protocol

from .models import LocalMessage, LocalRoom, LocalUser, RoomType
from .storage import SQLiteStore


class ChatHost(Protocol):
    """What the bridge needs from the chat system it posts into."""

    def get_user(self, user_id: str) -> LocalUser | None: ...

    def get_user_by_username(self, username: str) -> LocalUser | None: ...

    def get_room(self, room_id: str) -> LocalRoom | None: ...

    def get_room_by_name(self, name: str) -> LocalRoom | None: ...

    def get_direct_room(self, usernames: Iterable[str]) -> LocalRoom | None: ...

    def get_room_members(self, room_id: str) -> list[LocalUser]: ...

    def room_messages(self, room_id: str) -> list[LocalMessage]: ...

    def post_message(
        self,
        room: LocalRoom,
        sender: LocalUser,
        text: str,
        *,
        alias: str | None = None,
        created_at: int | None = None,
        custom_fields: dict[str, Any] | None = None,
    ) -> LocalMessage: ...

    def notify_user(self, user: LocalUser, room: LocalRoom | None, text: str) -> None: ...


def slugify(text: str) -> str:
    return "".join(c for c in text.lower().replace(" ", "-") if c.isalnum() or c in ("-", "_"))


def _user_from_row(row: Any) -> LocalUser:
    return LocalUser(id=str(row["id"]), username=str(row["username"]), name=str(row["name"]))


def _room_from_row(row: Any) -> LocalRoom:
    return LocalRoom(
        id=str(row["id"]),
        type=RoomType(str(row["type"])),
        name=str(row["name"]),
        display_name=str(row["display_name"]),
    )


class SQLiteChatHost:
    """:class:`ChatHost` backed by the local SQLite tables."""

    def __init__(self, store: SQLiteStore) -> None:
        self.conn = store.conn

    def insert_user(self, username: str, name: str, *, user_id: str | None = None) -> LocalUser:
        if self.get_user_by_username(username):
            raise ValueError(f"Username already taken: {username}")
        user = LocalUser(id=user_id or uuid.uuid4().hex, username=username, name=name)
        self.conn.execute(
            "INSERT INTO users (id, username, name) VALUES (?, ?, ?)",
            (user.id, user.username, user.name),
        )
        self.conn.commit()
        return user

    def insert_room(
        self,
        name: str,
        room_type: RoomType | str,
        member_usernames: Iterable[str],
        *,
        display_name: str | None = None,
        room_id: str | None = None,
    ) -> LocalRoom:
        try:
            resolved_type = RoomType(room_type)
        except ValueError:
            raise ValueError(f"Unknown room type: {room_type}") from None
        members: list[LocalUser] = []
        for username in member_usernames:
            user = self.get_user_by_username(username)
            if not user:
                raise ValueError(f"Unknown user: {username}")
            members.append(user)
        room = LocalRoom(
            id=room_id or uuid.uuid4().hex,
            type=resolved_type,
            name=slugify(name),
            display_name=display_name or name,
        )
        with self.conn:
            self.conn.execute(
                "INSERT INTO rooms (id, type, name, display_name) VALUES (?, ?, ?, ?)",
                (room.id, room.type.value, room.name, room.display_name),
            )
            self.conn.executemany(
                "INSERT OR IGNORE INTO room_members (room_id, user_id) VALUES (?, ?)",
                [(room.id, member.id) for member in members],
            )
        return room

    def get_user(self, user_id: str) -> LocalUser | None:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> LocalUser | None:
        row = self.conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return _user_from_row(row) if row else None

    def get_room(self, room_id: str) -> LocalRoom | None:
        row = self.conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        return _room_from_row(row) if row else None

    def get_room_by_name(self, name: str, *, include_direct: bool = False) -> LocalRoom | None:
        excluded = "" if include_direct else RoomType.DIRECT.value
        row = self.conn.execute(
            "SELECT * FROM rooms WHERE name = ? AND type != ? ORDER BY id LIMIT 1",
            (name, excluded),
        ).fetchone()
        return _room_from_row(row) if row else None

    def get_direct_room(self, usernames: Iterable[str]) -> LocalRoom | None:
        wanted = set(usernames)
        if not wanted:
            return None
        cursor = self.conn.execute(
            """
            SELECT rooms.id AS room_id, users.username AS username
            FROM rooms
            JOIN room_members ON room_members.room_id = rooms.id
            JOIN users ON users.id = room_members.user_id
            WHERE rooms.type = ?
            ORDER BY rooms.id
            """,
            (RoomType.DIRECT.value,),
        )
        members_by_room: dict[str, set[str]] = {}
        for row in cursor.fetchall():
            members_by_room.setdefault(str(row["room_id"]), set()).add(str(row["username"]))
        for room_id, members in members_by_room.items():
            if members == wanted:
                return self.get_room(room_id)
        return None

    def get_room_members(self, room_id: str) -> list[LocalUser]:
        cursor = self.conn.execute(
            """
            SELECT users.* FROM users
            JOIN room_members ON room_members.user_id = users.id
            WHERE room_members.room_id = ?
            ORDER BY users.username
            """,
            (room_id,),
        )
        return [_user_from_row(row) for row in cursor.fetchall()]

    def room_messages(self, room_id: str) -> list[LocalMessage]:
        cursor = self.conn.execute(
            "SELECT * FROM messages WHERE room_id = ? ORDER BY created_at ASC, rowid ASC",
            (room_id,),
        )
        messages: list[LocalMessage] = []
        for row in cursor.fetchall():
            try:
                custom_fields = json.loads(str(row["custom_fields"]))
            except json.JSONDecodeError:
                custom_fields = {}
            messages.append(
                LocalMessage(
                    id=str(row["id"]),
                    room_id=str(row["room_id"]),
                    sender_id=str(row["sender_id"]),
                    text=str(row["text"]),
                    alias=row["alias"],
                    created_at=int(row["created_at"]),
                    custom_fields=custom_fields if isinstance(custom_fields, dict) else {},
                )
            )
        return messages

    def post_message(
        self,
        room: LocalRoom,
        sender: LocalUser,
        text: str,
        *,
        alias: str | None = None,
        created_at: int | None = None,
        custom_fields: dict[str, Any] | None = None,
    ) -> LocalMessage:
        message = LocalMessage(
            id=uuid.uuid4().hex,
            room_id=room.id,
            sender_id=sender.id,
            text=text,
            alias=alias,
            created_at=int(created_at if created_at is not None else time.time()),
            custom_fields=dict(custom_fields or {}),
        )
        self.conn.execute(
            (
                "INSERT INTO messages "
                "(id, room_id, sender_id, text, alias, created_at, custom_fields) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)"
            ),
            (
                message.id,
                message.room_id,
                message.sender_id,
                message.text,
                message.alias,
                message.created_at,
                json.dumps(message.custom_fields, ensure_ascii=False),
            ),
        )
        self.conn.commit()
        return message

    def notify_user(self, user: LocalUser, room: LocalRoom | None, text: str) -> None:
        self.conn.execute(
            "INSERT INTO notifications (user_id, room_id, text, created_at) VALUES (?, ?, ?, ?)",
            (user.id, room.id if room else None, text, int(time.time())),
        )
        self.conn.commit()

    def notifications(self, user_id: str) -> list[str]:
        cursor = self.conn.execute(
            "SELECT text FROM notifications WHERE user_id = ? ORDER BY id ASC", (user_id,)
        )
        return [str(row["text"]) for row in cursor.fetchall()]
