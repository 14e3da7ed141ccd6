from __future__ import annotations

import json
import logging
from http.client import HTTPException
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import Settings
from .models import (
    ApiError,
    ApiOk,
    ApiResult,
    Conversation,
    ConversationKind,
    SlackMessage,
    SlackUser,
)
from .storage import IdentityStore

logger = logging.getLogger(__name__)

TOKEN_EXCHANGE_ENDPOINT = "oauth.access"
HISTORY_PAGE_SIZE = 500
LIST_PAGE_SIZE = 200


class ResponseCache:
    """Successful responses keyed by endpoint and parameters.

    A cache lives as long as the client that owns it, which is one request,
    command or callback.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    @staticmethod
    def key(endpoint: str, params: dict[str, Any]) -> str:
        return f"{endpoint}:{json.dumps(params, sort_keys=True, default=str)}"

    def get(self, endpoint: str, params: dict[str, Any]) -> dict[str, Any] | None:
        return self._entries.get(self.key(endpoint, params))

    def put(self, endpoint: str, params: dict[str, Any], payload: dict[str, Any]) -> None:
        self._entries[self.key(endpoint, params)] = payload

    def __len__(self) -> int:
        return len(self._entries)


def _next_cursor(payload: dict[str, Any]) -> str | None:
    metadata = payload.get("response_metadata")
    if isinstance(metadata, dict):
        return str(metadata.get("next_cursor") or "") or None
    return None


class SlackAPIClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token: str | None = None,
        *,
        base_url: str = "https://slack.com/api",
        timeout_seconds: int = 30,
        cache: ResponseCache | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache = cache if cache is not None else ResponseCache()

    @classmethod
    def from_settings(cls, settings: Settings, token: str | None = None) -> SlackAPIClient:
        return cls(
            settings.client_id,
            settings.client_secret,
            token,
            base_url=settings.api_base_url,
            timeout_seconds=settings.timeout_seconds,
        )

    def _post_form(self, endpoint: str, params: dict[str, Any]) -> ApiResult:
        body = urlencode({key: str(value) for key, value in params.items()}).encode("utf-8")
        request = Request(f"{self.base_url}/{endpoint}", data=body, method="POST")
        request.add_header("Content-Type", "application/x-www-form-urlencoded")
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                data = response.read().decode("utf-8")
        except HTTPError as exc:
            return ApiError(endpoint, f"http_{exc.code}")
        except (URLError, HTTPException, OSError) as exc:
            return ApiError(endpoint, f"network: {exc}")
        except UnicodeDecodeError:
            return ApiError(endpoint, "invalid_encoding")

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            return ApiError(endpoint, f"invalid_json: {data[:200]}")
        if not isinstance(parsed, dict):
            return ApiError(endpoint, f"unexpected_response: {data[:200]}")
        if not parsed.get("ok"):
            return ApiError(endpoint, str(parsed.get("error") or "not_ok"), parsed)
        return ApiOk(parsed)

    def request(self, endpoint: str, params: dict[str, Any] | None = None) -> ApiResult:
        params = dict(params or {})
        cached = self.cache.get(endpoint, params)
        if cached is not None:
            return ApiOk(cached)

        form = dict(params)
        if self.token:
            form["token"] = self.token
        result = self._post_form(endpoint, form)
        if isinstance(result, ApiError):
            logger.error("Error in API call to %s: %s", endpoint, result.reason)
            return result
        self.cache.put(endpoint, params, result.payload)
        return result

    def call(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        result = self.request(endpoint, params)
        return result.payload if isinstance(result, ApiOk) else None

    def user_info(self, user_id: str) -> SlackUser | None:
        payload = self.call("users.info", {"user": user_id})
        if not payload or not isinstance(payload.get("user"), dict):
            return None
        return SlackUser.from_payload(payload["user"])

    def my_info(self) -> SlackUser | None:
        payload = self.call("auth.test")
        if not payload or not payload.get("user_id"):
            return None
        return self.user_info(str(payload["user_id"]))

    def channel_member_ids(self, channel_id: str) -> list[str]:
        payload = self.call("conversations.members", {"channel": channel_id})
        if not payload or not isinstance(payload.get("members"), list):
            return []
        return [str(user_id) for user_id in payload["members"] if user_id]

    def _paginate(self, endpoint: str, params: dict[str, Any], key: str) -> list[list[Any]] | None:
        pages: list[list[Any]] = []
        cursor: str | None = None
        seen_cursors: set[str] = set()
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            payload = self.call(endpoint, page_params)
            if payload is None:
                if not pages:
                    return None
                logger.warning(
                    "Stopped paginating %s after %d pages: request failed", endpoint, len(pages)
                )
                break
            batch = payload.get(key)
            pages.append(list(batch) if isinstance(batch, list) else [])
            cursor = _next_cursor(payload)
            if not cursor:
                break
            if cursor in seen_cursors:
                logger.warning("Stopped paginating %s: cursor %s repeated", endpoint, cursor)
                break
            seen_cursors.add(cursor)
        return pages

    def current_user_conversations(self) -> list[Conversation]:
        pages = self._paginate(
            "conversations.list",
            {"types": "private_channel,mpim,im", "limit": LIST_PAGE_SIZE},
            "channels",
        )
        if pages is None:
            return []
        conversations: list[Conversation] = []
        for item in (entry for page in pages for entry in page):
            if not isinstance(item, dict) or not item.get("id"):
                continue
            kind = ConversationKind.from_payload(item)
            if kind is None:
                logger.debug("Ignoring conversation %s of unsupported type", item.get("id"))
                continue
            channel_id = str(item["id"])
            other_user_id = str(item.get("user") or "") or None
            other_user: SlackUser | None = None
            members: list[SlackUser] = []
            member_ids: list[str] = []
            if other_user_id:
                other_user = self.user_info(other_user_id)
            elif kind in (ConversationKind.MULTI_USER_DIRECT, ConversationKind.PRIVATE_CHANNEL):
                member_ids = self.channel_member_ids(channel_id)
                for member_id in member_ids:
                    info = self.user_info(member_id)
                    if info:
                        members.append(info)
                    else:
                        logger.warning(
                            "No user info for member %s of %s", member_id, channel_id
                        )
            conversations.append(
                Conversation(
                    id=channel_id,
                    kind=kind,
                    name=item.get("name") or None,
                    normalized_name=item.get("name_normalized") or None,
                    creator=item.get("creator") or None,
                    other_user_id=other_user_id,
                    other_user=other_user,
                    members=tuple(members),
                    member_ids=tuple(member_ids),
                )
            )
        return conversations

    def all_workspace_users(self) -> list[SlackUser]:
        pages = self._paginate("users.list", {"limit": LIST_PAGE_SIZE}, "members")
        if pages is None:
            return []
        return [
            SlackUser.from_payload(item)
            for page in pages
            for item in page
            if isinstance(item, dict) and item.get("id")
        ]

    def full_history(self, channel_id: str) -> list[SlackMessage]:
        """Every message of a conversation, oldest first.

        Slack returns each page newest first and each cursor leads further
        back in time, so both the page order and the order inside a page are
        reversed.
        """
        pages = self._paginate(
            "conversations.history",
            {"channel": channel_id, "limit": HISTORY_PAGE_SIZE},
            "messages",
        )
        if pages is None:
            return []
        messages: list[SlackMessage] = []
        for page in reversed(pages):
            for item in reversed(page):
                if isinstance(item, dict):
                    messages.append(SlackMessage.from_payload(channel_id, item))
        return messages

    def exchange_code_for_token(
        self,
        code: str,
        login_id: str,
        identities: IdentityStore,
        redirect_uri: str,
    ) -> str | None:
        local_user_id = identities.resolve_login_session(login_id)
        if not local_user_id:
            logger.error("Error in API call to %s: invalid login id", TOKEN_EXCHANGE_ENDPOINT)
            return None

        result = self._post_form(
            TOKEN_EXCHANGE_ENDPOINT,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )
        if isinstance(result, ApiError):
            logger.error("Error in API call to %s: %s", TOKEN_EXCHANGE_ENDPOINT, result.reason)
            return None

        authed_raw = result.payload.get("authed_user")
        authed_user: dict[str, Any] = authed_raw if isinstance(authed_raw, dict) else {}
        access_token = str(
            authed_user.get("access_token") or result.payload.get("access_token") or ""
        )
        if not access_token:
            logger.error("Error in API call to %s: no access token", TOKEN_EXCHANGE_ENDPOINT)
            return None

        self.token = access_token
        me = self.my_info()
        if not me:
            logger.error("Could not identify the Slack user for login %s", login_id)
            self.token = None
            return None

        identities.save_account(local_user_id, access_token=access_token, slack_user_id=me.id)
        identities.record_slack_identity(local_user_id, me.id)
        logger.info("Linked local user %s to Slack user %s", local_user_id, me.id)
        return access_token
