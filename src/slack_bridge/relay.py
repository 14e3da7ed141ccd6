from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import Settings
from .host import ChatHost
from .importer import slack_alias
from .models import (
    Conversation,
    ConversationKind,
    LinkedAccount,
    LocalRoom,
    LocalUser,
    SlackMessage,
)
from .resolver import ChannelResolver
from .slack import SlackAPIClient
from .storage import IdentityStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None], SlackAPIClient]


@dataclass(frozen=True)
class RelayOutcome:
    posted: bool
    reason: str
    room_id: str | None = None


@dataclass(frozen=True)
class WebhookReply:
    ok: bool
    body: dict[str, Any] | None = None
    reason: str | None = None


def _dropped(reason: str) -> RelayOutcome:
    return RelayOutcome(posted=False, reason=reason)


def authed_user_ids(payload: dict[str, Any]) -> list[str]:
    authed = payload.get("authed_users")
    if isinstance(authed, list):
        return [str(user_id) for user_id in authed if user_id]
    authorizations = payload.get("authorizations")
    if isinstance(authorizations, list):
        return [
            str(item["user_id"])
            for item in authorizations
            if isinstance(item, dict) and item.get("user_id")
        ]
    return []


class EventRelay:
    """Forwards one Slack ``message`` event into the matching local room.

    The event is handled on behalf of the first ``authed_users`` entry that
    is linked to a local account with sync enabled. Its token is used to look
    the conversation up, so only conversations that user can see are relayed.
    """

    def __init__(
        self,
        settings: Settings,
        identities: IdentityStore,
        host: ChatHost,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.identities = identities
        self.host = host
        self.client_factory = client_factory or (
            lambda token: SlackAPIClient.from_settings(settings, token)
        )

    def relay_account(self, authed_users: list[str]) -> LinkedAccount | None:
        for slack_user_id in authed_users:
            account = self.identities.lookup_by_slack_id(slack_user_id)
            if account and account.sync_enabled and account.access_token:
                return account
        return None

    def handle(self, event: dict[str, Any], authed_users: list[str]) -> RelayOutcome:
        channel_id = str(event.get("channel") or "")
        author_id = str(event.get("user") or "")
        if not channel_id or not author_id:
            logger.warning("Ignoring message event without channel or user: %s", event)
            return _dropped("missing_fields")
        if event.get("subtype"):
            logger.debug("Ignoring message event with subtype %s", event.get("subtype"))
            return _dropped("subtype")

        message = SlackMessage.from_payload(channel_id, event)
        if not message.text:
            return _dropped("empty")

        account = self.relay_account(authed_users)
        if not account:
            logger.info(
                "No opted-in account for event in %s (authed users: %s)",
                channel_id,
                ", ".join(authed_users) or "-",
            )
            return _dropped("no_opted_in_user")

        client = self.client_factory(account.access_token)
        resolver = ChannelResolver(self.host, client, self.identities)
        conversation = resolver.conversation_by_id(channel_id)
        if not conversation:
            logger.warning(
                "Could not find conversation %s for Slack user %s",
                channel_id,
                account.slack_user_id,
            )
            return _dropped("unknown_conversation")

        if conversation.kind is ConversationKind.DIRECT:
            return self._relay_direct(conversation, message, account, resolver)
        if conversation.kind is ConversationKind.MULTI_USER_DIRECT:
            return self._relay_multi_direct(conversation, message, resolver)
        if conversation.kind is ConversationKind.PRIVATE_CHANNEL:
            return self._relay_channel(conversation, message, resolver)
        logger.warning("Unsupported conversation kind %s for %s", conversation.kind, channel_id)
        return _dropped("unsupported_kind")

    def _relay_direct(
        self,
        conversation: Conversation,
        message: SlackMessage,
        account: LinkedAccount,
        resolver: ChannelResolver,
    ) -> RelayOutcome:
        author_id = message.user_id or ""
        sender = resolver.local_user_for_slack_id(author_id)
        if not sender:
            logger.warning("No local user for Slack user %s in %s", author_id, conversation.id)
            return _dropped("unmapped_sender")

        if author_id == account.slack_user_id:
            other_id = conversation.other_user_id or ""
            recipient = resolver.local_user_for_slack_id(other_id)
        else:
            recipient = self.host.get_user(account.local_user_id)
        if not recipient:
            logger.warning(
                "No local recipient for DM %s (participants: %s)",
                conversation.id,
                ", ".join(conversation.participant_ids),
            )
            return _dropped("unmapped_recipient")
        if recipient.id == sender.id:
            return _dropped("self_message")

        room = self.host.get_direct_room([sender.username, recipient.username])
        if not room:
            logger.warning(
                "No local DM room between %s and %s", sender.username, recipient.username
            )
            return _dropped("no_room")
        return self._post(room, sender, message)

    def _relay_multi_direct(
        self,
        conversation: Conversation,
        message: SlackMessage,
        resolver: ChannelResolver,
    ) -> RelayOutcome:
        if not conversation.member_ids:
            logger.warning("Dropping event in %s: member list unavailable", conversation.id)
            return _dropped("unmapped_member")
        local_members: dict[str, LocalUser] = {}
        for member_id in conversation.member_ids:
            local = resolver.local_user_for_slack_id(member_id)
            if not local:
                logger.warning(
                    "Dropping event in %s: member %s has no local user", conversation.id, member_id
                )
                return _dropped("unmapped_member")
            local_members[member_id] = local
        if len({user.id for user in local_members.values()}) != len(local_members):
            logger.warning("Dropping event in %s: members share a local user", conversation.id)
            return _dropped("unmapped_member")

        sender = local_members.get(message.user_id or "")
        if not sender:
            logger.warning(
                "Dropping event in %s: sender %s is not a member", conversation.id, message.user_id
            )
            return _dropped("unmapped_sender")

        room = self.host.get_direct_room([user.username for user in local_members.values()])
        if not room:
            logger.warning("No local multi-party room for %s", conversation.id)
            return _dropped("no_room")
        return self._post(room, sender, message)

    def _relay_channel(
        self,
        conversation: Conversation,
        message: SlackMessage,
        resolver: ChannelResolver,
    ) -> RelayOutcome:
        sender = resolver.local_user_for_slack_id(message.user_id or "")
        if not sender:
            logger.warning(
                "No local user for Slack user %s in %s", message.user_id, conversation.id
            )
            return _dropped("unmapped_sender")
        name = conversation.normalized_name or conversation.name
        if not name:
            logger.warning("Conversation %s has no name", conversation.id)
            return _dropped("unnamed_channel")
        room = self.host.get_room_by_name(name)
        if not room:
            logger.warning("No local room named %s for %s", name, conversation.id)
            return _dropped("no_room")
        return self._post(room, sender, message)

    def _post(self, room: LocalRoom, sender: LocalUser, message: SlackMessage) -> RelayOutcome:
        for existing in self.host.room_messages(room.id):
            if existing.custom_fields.get("slack_ts") == message.ts:
                logger.info("Event %s already relayed into %s", message.ts, room.id)
                return RelayOutcome(posted=False, reason="duplicate", room_id=room.id)
        self.host.post_message(
            room,
            sender,
            message.text or "",
            alias=slack_alias(sender),
            created_at=message.timestamp_seconds,
            custom_fields={"slack_ts": message.ts, "slack_id": message.client_msg_id},
        )
        return RelayOutcome(posted=True, reason="posted", room_id=room.id)


def handle_webhook(payload: Any, relay: EventRelay) -> WebhookReply:
    if not isinstance(payload, dict) or not payload.get("type"):
        return WebhookReply(ok=False, reason="No request type")
    request_type = payload["type"]
    if request_type == "url_verification":
        challenge = payload.get("challenge")
        if not challenge:
            return WebhookReply(ok=False, reason="Missing challenge")
        logger.debug("Responding to URL verification challenge")
        return WebhookReply(ok=True, body={"challenge": challenge})
    if request_type != "event_callback":
        return WebhookReply(ok=False, reason="Unknown callback type")

    event = payload.get("event")
    if not isinstance(event, dict) or not event.get("type"):
        return WebhookReply(ok=False, reason="No event type")
    if event["type"] != "message":
        return WebhookReply(ok=False, reason="Unknown event type")

    outcome = relay.handle(event, authed_user_ids(payload))
    return WebhookReply(ok=True, body={"ok": True, "relayed": outcome.posted})
