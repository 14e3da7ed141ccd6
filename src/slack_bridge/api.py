from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, Response

from .auth import AuthorizationFlow
from .config import Settings
from .host import SQLiteChatHost
from .pages import html_message
from .relay import EventRelay, WebhookReply, handle_webhook
from .storage import IdentityStore, SQLiteStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Slack Bridge")


def _settings() -> Settings:
    return Settings.from_env()


def _store(settings: Settings) -> SQLiteStore:
    return SQLiteStore(settings.db_path)


def _fail(path: str, message: str) -> HTMLResponse:
    logger.warning("Received invalid call to %s endpoint: %s", path, message)
    return HTMLResponse(html_message("Internal Error", "See application logs for details."))


def _handle_webhook(payload: object) -> WebhookReply:
    settings = _settings()
    store = _store(settings)
    try:
        relay = EventRelay(settings, IdentityStore(store), SQLiteChatHost(store))
        return handle_webhook(payload, relay)
    finally:
        store.close()


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/slackevent")
async def slack_event(request: Request) -> Response:
    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _fail("slackevent", "Body is not JSON")

    reply = await run_in_threadpool(_handle_webhook, payload)
    if not reply.ok:
        return _fail("slackevent", reply.reason or "invalid payload")
    return JSONResponse(reply.body or {})


@app.get("/oauth")
def oauth(
    code: str | None = None, state: str | None = None, error: str | None = None
) -> HTMLResponse:
    if error:
        return _fail("oauth", f"Slack returned error {error}")
    if not code or not state:
        return _fail("oauth", "Expected code & state")

    settings = _settings()
    store = _store(settings)
    try:
        outcome = AuthorizationFlow(settings, IdentityStore(store)).complete(code, state)
    finally:
        store.close()
    if outcome.ok:
        return HTMLResponse(
            html_message(
                f"Hello {outcome.display_name or 'there'}",
                "Login successful. You can close this window now.",
            )
        )
    return HTMLResponse(html_message("Authorization failed", "Invalid link"))
