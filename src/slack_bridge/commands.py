from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from .auth import AuthorizationFlow
from .config import Settings
from .host import ChatHost
from .importer import ImportReconciler
from .models import LocalRoom, LocalUser
from .resolver import ChannelResolver
from .slack import SlackAPIClient
from .storage import IdentityStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None], SlackAPIClient]


class SubCommand(str, Enum):
    IMPORT = "import"
    LOGIN = "login"
    ENABLE = "enable"
    DISABLE = "disable"
    LOGOUT = "logout"


class CommandDispatcher:
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

    def execute(self, args: list[str], sender: LocalUser, room: LocalRoom) -> str:
        """Run a subcommand for ``sender`` in ``room`` and notify them of the result."""
        text = self._execute(args, sender, room)
        logger.debug("Notify user %s: %s", sender.username, text)
        self.host.notify_user(sender, room, text)
        return text

    def _execute(self, args: list[str], sender: LocalUser, room: LocalRoom) -> str:
        if not args:
            names = ", ".join(command.value for command in SubCommand)
            return f"Please provide one of these commands: {names}"
        try:
            command = SubCommand(args[0])
        except ValueError:
            return f"Unknown command {args[0]}"

        account = self.identities.get_account(sender.id)
        if not account.access_token and command is not SubCommand.LOGIN:
            return "You must login first"

        if command is SubCommand.LOGIN:
            link = AuthorizationFlow(self.settings, self.identities, self.client_factory).begin(
                sender.id
            )
            return f"Log in to Slack: {link.url}"
        if command is SubCommand.IMPORT:
            client = self.client_factory(account.access_token)
            resolver = ChannelResolver(self.host, client, self.identities)
            return ImportReconciler(self.host, resolver).run(room, sender).summary()
        if command in (SubCommand.ENABLE, SubCommand.DISABLE):
            updated = self.identities.save_account(
                sender.id, sync_enabled=command is SubCommand.ENABLE
            )
            state = "enabled" if updated.sync_enabled else "disabled"
            return f"Slack bridge {state}."
        self.identities.save_account(sender.id, access_token=None, sync_enabled=False)
        return "Logged out"
