from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_SCOPES = (
    "groups:history",
    "groups:read",
    "groups:write",
    "im:history",
    "im:read",
    "im:write",
    "mpim:history",
    "mpim:read",
    "mpim:write",
    "users:read",
)


class SettingsError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    client_id: str
    client_secret: str
    root_url: str = "http://localhost:8080"
    db_path: str = "./data/bridge.db"
    api_base_url: str = "https://slack.com/api"
    authorize_url: str = "https://slack.com/oauth/authorize"
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    timeout_seconds: int = 30

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        timeout_raw = env.get("SLACKBRIDGE_TIMEOUT", "30")
        try:
            timeout_seconds = max(1, int(timeout_raw))
        except ValueError:
            raise SettingsError(f"SLACKBRIDGE_TIMEOUT must be an integer: {timeout_raw}") from None
        return cls(
            client_id=env.get("SLACKBRIDGE_CLIENT_ID", ""),
            client_secret=env.get("SLACKBRIDGE_CLIENT_SECRET", ""),
            root_url=env.get("SLACKBRIDGE_ROOT_URL", cls.root_url),
            db_path=env.get("SLACKBRIDGE_DB", cls.db_path),
            api_base_url=env.get("SLACKBRIDGE_API_BASE", cls.api_base_url),
            authorize_url=env.get("SLACKBRIDGE_AUTHORIZE_URL", cls.authorize_url),
            timeout_seconds=timeout_seconds,
        )

    @property
    def redirect_uri(self) -> str:
        return f"{self.root_url.rstrip('/')}/oauth"

    def check_configured(self) -> None:
        # Without both credentials no token exchange can succeed.
        if not self.client_secret:
            raise SettingsError("Slack client secret is not configured (SLACKBRIDGE_CLIENT_SECRET)")
        if not self.client_id:
            raise SettingsError("Slack client id is not configured (SLACKBRIDGE_CLIENT_ID)")
