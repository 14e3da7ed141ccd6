from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs

import pytest
from faker import Faker

import slack_bridge.slack as slack_mod
from slack_bridge.config import Settings
from slack_bridge.host import SQLiteChatHost
from slack_bridge.slack import SlackAPIClient
from slack_bridge.storage import IdentityStore, SQLiteStore

Handler = dict[str, Any] | Callable[[dict[str, str]], dict[str, Any]]

SLACK_USERS = [
    {"id": "U1", "name": "alice", "real_name": "Alice A"},
    {"id": "U2", "name": "bob", "real_name": "Bob B"},
    {"id": "U3", "name": "carol", "real_name": "Carol C"},
    {"id": "U9", "name": "stranger", "real_name": "Not Local"},
]

SLACK_CONVERSATIONS = [
    {"id": "D1", "is_im": True, "user": "U2"},
    {"id": "D2", "is_im": True, "user": "U1"},
    {
        "id": "G1",
        "is_mpim": True,
        "name": "mpdm-alice--bob--carol-1",
        "name_normalized": "mpdm-alice--bob--carol-1",
    },
    {"id": "C1", "is_group": True, "name": "project-x", "name_normalized": "project-x"},
]

SLACK_MEMBERS = {"G1": ["U1", "U2", "U3"], "C1": ["U1", "U2"]}


class _FakeResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class FakeSlack:
    """Answers Slack Web API calls made through ``urlopen``."""

    def __init__(self) -> None:
        self.handlers: dict[str, Handler] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []

    def on(self, endpoint: str, handler: Handler) -> None:
        self.handlers[endpoint] = handler

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.calls]

    def urlopen(self, request, timeout: int):  # type: ignore[no-untyped-def]
        endpoint = request.full_url.rsplit("/", 1)[-1]
        raw = request.data.decode("utf-8") if request.data else ""
        params = {key: values[0] for key, values in parse_qs(raw).items()}
        self.calls.append((endpoint, params))
        handler = self.handlers.get(endpoint)
        if handler is None:
            return _FakeResponse({"ok": False, "error": "unknown_method"})
        payload = handler(params) if callable(handler) else handler
        return _FakeResponse(payload)

    def workspace(self) -> None:
        users = {user["id"]: user for user in SLACK_USERS}

        def users_info(params: dict[str, str]) -> dict[str, Any]:
            user = users.get(params.get("user", ""))
            if not user:
                return {"ok": False, "error": "user_not_found"}
            return {"ok": True, "user": user}

        def members(params: dict[str, str]) -> dict[str, Any]:
            return {"ok": True, "members": SLACK_MEMBERS.get(params.get("channel", ""), [])}

        self.on("users.info", users_info)
        self.on("users.list", {"ok": True, "members": SLACK_USERS})
        self.on("conversations.list", {"ok": True, "channels": SLACK_CONVERSATIONS})
        self.on("conversations.members", members)


@pytest.fixture
def fake_slack(monkeypatch: pytest.MonkeyPatch) -> FakeSlack:
    fake = FakeSlack()
    monkeypatch.setattr(slack_mod, "urlopen", fake.urlopen)
    return fake


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        client_id="123.456",
        client_secret="shh",
        root_url="https://chat.example.com",
        db_path=str(tmp_path / "bridge.db"),
    )


@pytest.fixture
def store(settings: Settings):
    sqlite_store = SQLiteStore(settings.db_path)
    try:
        yield sqlite_store
    finally:
        sqlite_store.close()


@pytest.fixture
def identities(store: SQLiteStore) -> IdentityStore:
    return IdentityStore(store)


@pytest.fixture
def host(store: SQLiteStore) -> SQLiteChatHost:
    chat = SQLiteChatHost(store)
    faker = Faker()
    faker.seed_instance(7)
    for username in ("alice", "bob", "carol", "dave"):
        chat.insert_user(username, faker.name(), user_id=f"local-{username}")
    return chat


@pytest.fixture
def client_factory(settings: Settings) -> Callable[[str | None], SlackAPIClient]:
    return lambda token: SlackAPIClient.from_settings(settings, token)


@pytest.fixture
def link(identities: IdentityStore) -> Callable[..., None]:
    def _link(local_user_id: str, slack_user_id: str, **fields: Any) -> None:
        identities.save_account(
            local_user_id,
            slack_user_id=slack_user_id,
            access_token=f"xoxp-{slack_user_id}",
            **fields,
        )
        identities.record_slack_identity(local_user_id, slack_user_id)

    return _link
