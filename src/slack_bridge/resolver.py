from __future__ import annotations

import logging

from .host import ChatHost
from .models import Conversation, ConversationKind, LocalRoom, LocalUser
from .slack import SlackAPIClient
from .storage import IdentityStore

logger = logging.getLogger(__name__)


def other_participant(member_usernames: list[str], caller_username: str) -> str | None:
    """The member a direct room is "with": yourself in a self-DM, else the non-caller."""
    if len(member_usernames) == 1:
        return member_usernames[0]
    if len(member_usernames) == 2:
        first, second = member_usernames
        return second if first == caller_username else first
    return None


class ChannelResolver:
    """Maps local rooms to Slack conversations and back.

    Every lookup answers ``None`` on failure after logging why. Private channels
    and group DMs are matched by name only, so a room renamed on either side
    stops resolving.
    """

    def __init__(
        self,
        host: ChatHost,
        client: SlackAPIClient,
        identities: IdentityStore | None = None,
    ) -> None:
        self.host = host
        self.client = client
        self.identities = identities

    def _slack_id_for(self, user: LocalUser) -> str | None:
        if self.identities:
            account = self.identities.get_account(user.id)
            if account.slack_user_id:
                return account.slack_user_id
        for slack_user in self.client.all_workspace_users():
            if slack_user.name == user.username:
                return slack_user.id
        return None

    def direct_conversation(self, room: LocalRoom, caller: LocalUser) -> Conversation | None:
        members = self.host.get_room_members(room.id)
        usernames = [member.username for member in members]
        other_username = other_participant(usernames, caller.username)
        if other_username is None:
            logger.error(
                "Failed to map DM room %s: expected one or two members, found %d",
                room.id,
                len(usernames),
            )
            return None
        other = next(member for member in members if member.username == other_username)

        slack_user_id = self._slack_id_for(other)
        if not slack_user_id:
            logger.error("Could not map %s to a Slack user", other_username)
            return None

        for conversation in self.client.current_user_conversations():
            if (
                conversation.kind is ConversationKind.DIRECT
                and conversation.other_user_id == slack_user_id
            ):
                return conversation
        logger.error("Could not find DM conversation with %s on Slack", slack_user_id)
        return None

    def private_conversation(self, room: LocalRoom) -> Conversation | None:
        for conversation in self.client.current_user_conversations():
            if conversation.kind not in (
                ConversationKind.PRIVATE_CHANNEL,
                ConversationKind.MULTI_USER_DIRECT,
            ):
                continue
            if conversation.normalized_name and conversation.normalized_name == room.name:
                return conversation
        logger.error("Could not map %s to a Slack conversation", room.display_name)
        return None

    def conversation_by_id(self, conversation_id: str) -> Conversation | None:
        for conversation in self.client.current_user_conversations():
            if conversation.id == conversation_id:
                return conversation
        logger.warning("Conversation %s is not visible to this token", conversation_id)
        return None

    def local_user_for_slack_id(self, slack_user_id: str) -> LocalUser | None:
        """Resolve through linked accounts first, then the Slack profile name."""
        if self.identities:
            local_user_id = self.identities.local_user_for_slack_id(slack_user_id)
            if local_user_id:
                user = self.host.get_user(local_user_id)
                if user:
                    return user
        slack_user = self.client.user_info(slack_user_id)
        if not slack_user:
            return None
        return self.host.get_user_by_username(slack_user.name)
