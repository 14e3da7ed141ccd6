from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class LinkedAccount:
    local_user_id: str
    slack_user_id: str | None = None
    access_token: str | None = None
    sync_enabled: bool = False
    updated_at: str | None = None

    @classmethod
    def from_record(cls, local_user_id: str, record: dict[str, Any]) -> LinkedAccount:
        return cls(
            local_user_id=local_user_id,
            slack_user_id=record.get("slack_user_id") or None,
            access_token=record.get("access_token") or None,
            sync_enabled=bool(record.get("sync_enabled")),
            updated_at=record.get("updated_at"),
        )

    def to_dict(self, *, mask_token: bool = False) -> dict[str, Any]:
        token = self.access_token
        if mask_token and token:
            token = f"{token[:5]}..."
        return {
            "local_user_id": self.local_user_id,
            "slack_user_id": self.slack_user_id,
            "access_token": token,
            "sync_enabled": self.sync_enabled,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SlackUser:
    id: str
    name: str
    display_name: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SlackUser:
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            display_name=str(payload.get("real_name") or payload.get("name") or ""),
        )


class ConversationKind(str, Enum):
    DIRECT = "im"
    MULTI_USER_DIRECT = "mpim"
    PRIVATE_CHANNEL = "private_channel"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ConversationKind | None:
        if payload.get("is_im"):
            return cls.DIRECT
        if payload.get("is_mpim"):
            return cls.MULTI_USER_DIRECT
        if payload.get("is_group") or payload.get("is_private"):
            return cls.PRIVATE_CHANNEL
        return None


@dataclass(frozen=True)
class Conversation:
    id: str
    kind: ConversationKind
    name: str | None = None
    normalized_name: str | None = None
    creator: str | None = None
    other_user_id: str | None = None
    other_user: SlackUser | None = None
    members: tuple[SlackUser, ...] = ()
    member_ids: tuple[str, ...] = ()

    @property
    def participant_ids(self) -> list[str]:
        if self.other_user_id:
            return [self.other_user_id]
        return list(self.member_ids)


@dataclass(frozen=True)
class SlackMessage:
    channel_id: str
    user_id: str | None
    ts: str
    text: str | None = None
    client_msg_id: str | None = None

    @classmethod
    def from_payload(cls, channel_id: str, payload: dict[str, Any]) -> SlackMessage:
        return cls(
            channel_id=channel_id,
            user_id=payload.get("user") or None,
            ts=str(payload.get("ts") or "0"),
            text=payload.get("text") or None,
            client_msg_id=payload.get("client_msg_id") or None,
        )

    @property
    def timestamp_seconds(self) -> int:
        try:
            return int(self.ts.split(".")[0])
        except ValueError:
            return 0


@dataclass(frozen=True)
class ApiOk:
    payload: dict[str, Any]


@dataclass(frozen=True)
class ApiError:
    endpoint: str
    reason: str
    payload: dict[str, Any] | None = None


ApiResult = ApiOk | ApiError


class RoomType(str, Enum):
    DIRECT = "direct"
    PRIVATE = "private"
    PUBLIC = "public"


@dataclass(frozen=True)
class LocalUser:
    id: str
    username: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "name": self.name}


@dataclass(frozen=True)
class LocalRoom:
    id: str
    type: RoomType
    name: str
    display_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "display_name": self.display_name,
        }


@dataclass(frozen=True)
class LocalMessage:
    id: str
    room_id: str
    sender_id: str
    text: str
    alias: str | None
    created_at: int
    custom_fields: dict[str, Any] = field(default_factory=dict)
