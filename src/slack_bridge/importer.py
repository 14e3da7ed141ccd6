from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from .host import ChatHost
from .models import Conversation, LocalRoom, LocalUser, RoomType, SlackMessage
from .resolver import ChannelResolver

logger = logging.getLogger(__name__)


def slack_alias(user: LocalUser) -> str:
    return f"{user.username} (slack)"


@dataclass(frozen=True)
class ImportReport:
    posted: int = 0
    ignored: int = 0
    error: str | None = None

    def summary(self) -> str:
        if self.error:
            return self.error
        return f"Imported {self.posted} messages. Ignored {self.ignored}."


class ImportReconciler:
    """Copies the full history of a Slack conversation into a local room.

    Messages are posted one at a time in chronological order. A message is
    skipped when its author cannot be mapped to a local user, when it has no
    text, or when the room already holds it. "Already holds" means either a
    message carrying the same ``slack_ts`` custom field (written by earlier
    imports and by the relay) or a message from the same sender at the same
    second.
    """

    def __init__(self, host: ChatHost, resolver: ChannelResolver) -> None:
        self.host = host
        self.resolver = resolver
        self.client = resolver.client

    def resolve(self, room: LocalRoom, caller: LocalUser) -> Conversation | ImportReport:
        if room.type is RoomType.DIRECT:
            conversation = self.resolver.direct_conversation(room, caller)
            if not conversation:
                return ImportReport(error="Couldn't find this direct message channel on Slack")
            return conversation
        if room.type is RoomType.PRIVATE:
            conversation = self.resolver.private_conversation(room)
            if not conversation:
                return ImportReport(
                    error=f"Could not find channel with name {room.display_name} on Slack"
                )
            return conversation
        return ImportReport(error="Only private channel and direct messages are supported.")

    def run(self, room: LocalRoom, caller: LocalUser) -> ImportReport:
        resolved = self.resolve(room, caller)
        if isinstance(resolved, ImportReport):
            return resolved
        report = self.import_conversation(resolved, room)
        logger.info(
            "Imported %s into room %s: posted=%d ignored=%d",
            resolved.id,
            room.id,
            report.posted,
            report.ignored,
        )
        return report

    def import_conversation(self, conversation: Conversation, room: LocalRoom) -> ImportReport:
        history = self.client.full_history(conversation.id)
        slack_users = {user.id: user for user in self.client.all_workspace_users()}

        existing = self.host.room_messages(room.id)
        imported_ts = {
            str(message.custom_fields["slack_ts"])
            for message in existing
            if message.custom_fields.get("slack_ts")
        }
        seen = {(message.created_at, message.sender_id) for message in existing}
        local_users: dict[str, LocalUser | None] = {}

        posted = 0
        ignored = 0
        for message in history:
            sender = slack_users.get(message.user_id or "")
            if not sender:
                logger.debug("Ignoring message: user %s not found on Slack", message.user_id)
                ignored += 1
                continue
            if sender.name not in local_users:
                local_users[sender.name] = self.host.get_user_by_username(sender.name)
            local_sender = local_users[sender.name]
            if not local_sender:
                logger.debug("Ignoring message: user %s has no local account", message.user_id)
                ignored += 1
                continue

            key = (message.timestamp_seconds, local_sender.id)
            if message.ts in imported_ts or key in seen:
                logger.debug("Ignoring message %s: already imported", message.ts)
                ignored += 1
                continue
            if not message.text:
                logger.debug("Ignoring empty message %s", message.ts)
                ignored += 1
                continue

            self._post(message, local_sender, room)
            imported_ts.add(message.ts)
            seen.add(key)
            posted += 1

        return ImportReport(posted=posted, ignored=ignored)

    def _post(self, message: SlackMessage, sender: LocalUser, room: LocalRoom) -> None:
        created = datetime.fromtimestamp(message.timestamp_seconds, tz=UTC)
        self.host.post_message(
            room,
            sender,
            message.text or "",
            alias=slack_alias(sender),
            created_at=message.timestamp_seconds,
            custom_fields={
                "import_ts": created.isoformat(),
                "slack_ts": message.ts,
                "slack_id": message.client_msg_id,
            },
        )
