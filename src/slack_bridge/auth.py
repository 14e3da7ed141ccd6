from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from .config import Settings
from .slack import SlackAPIClient
from .storage import IdentityStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str | None], SlackAPIClient]


class AuthState(str, Enum):
    NO_SESSION = "no_session"
    SESSION_ISSUED = "session_issued"
    AUTHORIZED = "authorized"
    FAILED = "failed"


@dataclass(frozen=True)
class LoginLink:
    login_id: str
    url: str


@dataclass(frozen=True)
class AuthOutcome:
    state: AuthState
    local_user_id: str | None = None
    display_name: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is AuthState.AUTHORIZED


class AuthorizationFlow:
    """OAuth handshake linking a local user to a Slack identity.

    ``begin`` issues a login session whose id travels through Slack as the
    ``state`` parameter. ``complete`` handles the callback. Sessions never
    expire and stay resolvable after use.
    """

    def __init__(
        self,
        settings: Settings,
        identities: IdentityStore,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings
        self.identities = identities
        self.client_factory = client_factory or (
            lambda token: SlackAPIClient.from_settings(settings, token)
        )

    def authorize_url(self, login_id: str) -> str:
        params = {
            "client_id": self.settings.client_id,
            "state": login_id,
            "redirect_uri": self.settings.redirect_uri,
            "scope": ",".join(self.settings.scopes),
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    def begin(self, local_user_id: str) -> LoginLink:
        login_id = self.identities.begin_login_session(local_user_id)
        logger.info("Issued login session for local user %s", local_user_id)
        return LoginLink(login_id=login_id, url=self.authorize_url(login_id))

    def complete(self, code: str, state: str) -> AuthOutcome:
        local_user_id = self.identities.resolve_login_session(state)
        if not local_user_id:
            logger.warning("OAuth callback with unknown login session")
            return AuthOutcome(AuthState.FAILED, reason="invalid_session")

        client = self.client_factory(None)
        token = client.exchange_code_for_token(
            code, state, self.identities, self.settings.redirect_uri
        )
        if not token:
            return AuthOutcome(AuthState.FAILED, local_user_id=local_user_id, reason="no_token")

        me = client.my_info()
        return AuthOutcome(
            AuthState.AUTHORIZED,
            local_user_id=local_user_id,
            display_name=me.display_name if me else None,
        )
