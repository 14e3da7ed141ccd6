import logging
from http.client import IncompleteRead
from typing import Any

import pytest

import slack_bridge.slack as slack_mod
from slack_bridge.models import ApiError, ApiOk, ConversationKind
from slack_bridge.slack import ResponseCache, SlackAPIClient
from slack_bridge.storage import IdentityStore


def _client(token: str | None = "xoxp-test") -> SlackAPIClient:
    return SlackAPIClient("123.456", "shh", token, base_url="https://slack.test/api")


def test_call_sends_form_params_and_token(fake_slack) -> None:
    fake_slack.on("users.info", {"ok": True, "user": {"id": "U1", "name": "alice"}})

    payload = _client().call("users.info", {"user": "U1"})

    assert payload == {"ok": True, "user": {"id": "U1", "name": "alice"}}
    assert fake_slack.calls == [("users.info", {"user": "U1", "token": "xoxp-test"})]


def test_ok_false_is_absent_and_logged(fake_slack, caplog: pytest.LogCaptureFixture) -> None:
    fake_slack.on("users.info", {"ok": False, "error": "user_not_found"})

    with caplog.at_level(logging.ERROR, logger="slack_bridge.slack"):
        client = _client()
        result = client.request("users.info", {"user": "U404"})
        assert client.call("users.info", {"user": "U404"}) is None

    assert isinstance(result, ApiError)
    assert result.reason == "user_not_found"
    assert "users.info" in caplog.text
    # Failures are never cached.
    assert len(fake_slack.calls) == 2


def test_network_failure_is_absent(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_urlopen(request, timeout: int):  # type: ignore[no-untyped-def]
        raise slack_mod.URLError("connection refused")

    monkeypatch.setattr(slack_mod, "urlopen", broken_urlopen)

    result = _client().request("auth.test")
    assert isinstance(result, ApiError)
    assert result.reason.startswith("network")


def test_malformed_json_is_absent(monkeypatch: pytest.MonkeyPatch) -> None:
    class _Garbage:
        def read(self) -> bytes:
            return b"<html>oops</html>"

        def __enter__(self) -> "_Garbage":
            return self

        def __exit__(self, exc_type, exc, tb) -> None:
            return None

    monkeypatch.setattr(slack_mod, "urlopen", lambda request, timeout: _Garbage())
    assert _client().call("auth.test") is None


def test_successful_calls_are_cached_per_client(fake_slack) -> None:
    fake_slack.on("users.info", {"ok": True, "user": {"id": "U1", "name": "alice"}})

    client = _client()
    first = client.request("users.info", {"user": "U1"})
    second = client.request("users.info", {"user": "U1"})
    assert isinstance(first, ApiOk)
    assert first == second
    assert len(fake_slack.calls) == 1
    assert len(client.cache) == 1

    client.call("users.info", {"user": "U2"})
    assert len(fake_slack.calls) == 2

    _client().call("users.info", {"user": "U1"})
    assert len(fake_slack.calls) == 3


def test_injected_cache_is_used(fake_slack) -> None:
    cache = ResponseCache()
    cache.put("auth.test", {}, {"ok": True, "user_id": "U1"})

    client = SlackAPIClient("id", "secret", "xoxp", cache=cache)
    assert client.call("auth.test") == {"ok": True, "user_id": "U1"}
    assert fake_slack.calls == []


def test_full_history_is_chronological(fake_slack) -> None:
    def history(params: dict[str, str]) -> dict[str, Any]:
        assert params["channel"] == "D1"
        if params.get("cursor") == "older":
            return {
                "ok": True,
                "messages": [
                    {"ts": "1700000002.000100", "user": "U1", "text": "two"},
                    {"ts": "1700000001.000100", "user": "U2", "text": "one"},
                ],
                "response_metadata": {"next_cursor": ""},
            }
        return {
            "ok": True,
            "messages": [
                {"ts": "1700000004.000100", "user": "U2", "text": "four"},
                {"ts": "1700000003.000100", "user": "U1", "text": "three", "client_msg_id": "m3"},
            ],
            "response_metadata": {"next_cursor": "older"},
        }

    fake_slack.on("conversations.history", history)

    messages = _client().full_history("D1")

    assert [message.text for message in messages] == ["one", "two", "three", "four"]
    assert messages[2].client_msg_id == "m3"
    assert messages[0].timestamp_seconds == 1700000001
    assert fake_slack.calls[1][1]["cursor"] == "older"


def test_full_history_keeps_pages_read_before_failure(fake_slack) -> None:
    def history(params: dict[str, str]) -> dict[str, Any]:
        if params.get("cursor"):
            return {"ok": False, "error": "ratelimited"}
        return {
            "ok": True,
            "messages": [{"ts": "5.0", "user": "U1", "text": "latest"}],
            "response_metadata": {"next_cursor": "older"},
        }

    fake_slack.on("conversations.history", history)
    assert [message.text for message in _client().full_history("D1")] == ["latest"]


def test_full_history_failure_is_empty(fake_slack) -> None:
    fake_slack.on("conversations.history", {"ok": False, "error": "channel_not_found"})
    assert _client().full_history("D404") == []


def test_conversations_are_annotated_with_participants(fake_slack) -> None:
    fake_slack.workspace()

    conversations = {item.id: item for item in _client().current_user_conversations()}

    assert conversations["D1"].kind is ConversationKind.DIRECT
    assert conversations["D1"].other_user is not None
    assert conversations["D1"].other_user.name == "bob"
    assert conversations["G1"].kind is ConversationKind.MULTI_USER_DIRECT
    assert [member.name for member in conversations["G1"].members] == ["alice", "bob", "carol"]
    assert conversations["C1"].kind is ConversationKind.PRIVATE_CHANNEL
    assert conversations["C1"].normalized_name == "project-x"
    assert conversations["C1"].participant_ids == ["U1", "U2"]

    list_call = next(
        params for endpoint, params in fake_slack.calls if endpoint == "conversations.list"
    )
    assert list_call["types"] == "private_channel,mpim,im"


def test_all_workspace_users_follows_cursor(fake_slack) -> None:
    def users_list(params: dict[str, str]) -> dict[str, Any]:
        if params.get("cursor") == "next":
            return {"ok": True, "members": [{"id": "U2", "name": "bob"}]}
        return {
            "ok": True,
            "members": [{"id": "U1", "name": "alice", "real_name": "Alice A"}],
            "response_metadata": {"next_cursor": "next"},
        }

    fake_slack.on("users.list", users_list)

    users = _client().all_workspace_users()
    assert [(user.id, user.name) for user in users] == [("U1", "alice"), ("U2", "bob")]
    assert users[0].display_name == "Alice A"
    assert users[1].display_name == "bob"


def test_exchange_code_links_identity(fake_slack, identities: IdentityStore) -> None:
    fake_slack.workspace()
    fake_slack.on("oauth.access", {"ok": True, "access_token": "xoxp-new", "scope": "im:read"})
    fake_slack.on("auth.test", {"ok": True, "user_id": "U1"})
    login_id = identities.begin_login_session("local-alice")

    client = _client(token=None)
    token = client.exchange_code_for_token("code-1", login_id, identities, "https://x/oauth")

    assert token == "xoxp-new"
    exchange = fake_slack.calls[0]
    assert exchange[0] == "oauth.access"
    assert exchange[1] == {
        "client_id": "123.456",
        "client_secret": "shh",
        "code": "code-1",
        "redirect_uri": "https://x/oauth",
    }
    account = identities.get_account("local-alice")
    assert account.access_token == "xoxp-new"
    assert account.slack_user_id == "U1"
    assert identities.local_user_for_slack_id("U1") == "local-alice"
    # The token exchange is not cached; identity lookups are.
    assert "oauth.access" not in {key.split(":", 1)[0] for key in client.cache._entries}


def test_exchange_code_reads_v2_authed_user(fake_slack, identities: IdentityStore) -> None:
    fake_slack.workspace()
    fake_slack.on(
        "oauth.access", {"ok": True, "authed_user": {"id": "U2", "access_token": "xoxp-v2"}}
    )
    fake_slack.on("auth.test", {"ok": True, "user_id": "U2"})
    login_id = identities.begin_login_session("local-bob")

    assert _client(None).exchange_code_for_token("c", login_id, identities, "r") == "xoxp-v2"
    assert identities.get_account("local-bob").access_token == "xoxp-v2"


def test_exchange_code_unknown_session(fake_slack, identities: IdentityStore) -> None:
    assert _client(None).exchange_code_for_token("c", "bogus", identities, "r") is None
    assert fake_slack.calls == []


def test_exchange_code_without_token(fake_slack, identities: IdentityStore) -> None:
    fake_slack.on("oauth.access", {"ok": False, "error": "invalid_code"})
    login_id = identities.begin_login_session("local-alice")

    assert _client(None).exchange_code_for_token("c", login_id, identities, "r") is None
    assert identities.get_account("local-alice").access_token is None
    assert identities.local_user_for_slack_id("U1") is None


def _respond_with(monkeypatch: pytest.MonkeyPatch, read) -> None:  # type: ignore[no-untyped-def]
    class _Response:
        def read(self) -> bytes:
            return read()

        def __enter__(self) -> "_Response":
            return self

        def __exit__(self, exc_type, exc, tb) -> None:
            return None

    monkeypatch.setattr(slack_mod, "urlopen", lambda request, timeout: _Response())


def test_undecodable_body_is_absent(monkeypatch: pytest.MonkeyPatch) -> None:
    _respond_with(monkeypatch, lambda: b'{"ok": true, "x": "\xff"}')

    result = _client().request("auth.test")
    assert isinstance(result, ApiError)
    assert result.reason == "invalid_encoding"
    assert _client().call("auth.test") is None


def test_truncated_body_is_absent(monkeypatch: pytest.MonkeyPatch) -> None:
    def truncated() -> bytes:
        raise IncompleteRead(b'{"ok": tr', 40)

    _respond_with(monkeypatch, truncated)

    result = _client().request("auth.test")
    assert isinstance(result, ApiError)
    assert result.reason.startswith("network")


def test_repeated_cursor_stops_pagination(fake_slack) -> None:
    def users_list(params: dict[str, str]) -> dict[str, Any]:
        return {
            "ok": True,
            "members": [{"id": "U1", "name": "alice"}],
            "response_metadata": {"next_cursor": "same"},
        }

    fake_slack.on("users.list", users_list)

    users = _client().all_workspace_users()

    assert len(fake_slack.calls) == 2
    assert [user.id for user in users] == ["U1", "U1"]


def test_member_ids_keep_members_without_profile(fake_slack) -> None:
    fake_slack.workspace()
    fake_slack.on("conversations.members", {"ok": True, "members": ["U1", "U404"]})

    conversations = {item.id: item for item in _client().current_user_conversations()}

    assert conversations["G1"].member_ids == ("U1", "U404")
    assert [member.id for member in conversations["G1"].members] == ["U1"]
    assert conversations["G1"].participant_ids == ["U1", "U404"]
