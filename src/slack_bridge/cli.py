from __future__ import annotations

import json
import logging
import os
from dataclasses import replace

import typer

from .commands import CommandDispatcher
from .config import Settings, SettingsError
from .host import SQLiteChatHost
from .models import RoomType
from .storage import IdentityStore, SQLiteStore, dump_json

app = typer.Typer(add_completion=False)

_PKG_VERSION = __import__("slack_bridge").__version__


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings(db: str) -> Settings:
    try:
        return replace(Settings.from_env(), db_path=db)
    except SettingsError as exc:
        raise typer.BadParameter(str(exc)) from None


@app.command()
def serve(
    db: str = typer.Option("./data/bridge.db", help="SQLite DB path"),
    host: str = typer.Option("127.0.0.1", help="Host"),
    port: int = typer.Option(8080, help="Port"),
    log_level: str = typer.Option("info", help="Logging level"),
) -> None:
    """Run the webhook and OAuth callback server."""
    import uvicorn

    _configure_logging(log_level)
    settings = _settings(db)
    try:
        settings.check_configured()
    except SettingsError as exc:
        logging.getLogger(__name__).warning("%s; logins will fail", exc)

    SQLiteStore(db).close()
    os.environ["SLACKBRIDGE_DB"] = db
    typer.echo(f"Slack bridge {_PKG_VERSION} listening on http://{host}:{port}")
    uvicorn.run(
        "slack_bridge.api:app",
        host=host,
        port=port,
        reload=False,
        factory=False,
        log_level=log_level.lower(),
    )


@app.command("add-user")
def add_user(
    username: str = typer.Option(..., help="Local username"),
    name: str | None = typer.Option(None, help="Display name (defaults to username)"),
    user_id: str | None = typer.Option(None, help="Explicit user id"),
    db: str = typer.Option("./data/bridge.db", help="SQLite DB path"),
) -> None:
    """Add a user to the local directory."""
    store = SQLiteStore(db)
    try:
        try:
            user = SQLiteChatHost(store).insert_user(username, name or username, user_id=user_id)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from None
        typer.echo(json.dumps(user.to_dict(), ensure_ascii=False))
    finally:
        store.close()


@app.command("add-room")
def add_room(
    name: str = typer.Option(..., help="Room name"),
    room_type: str = typer.Option(
        RoomType.PRIVATE.value, "--type", help="Room type: direct, private or public"
    ),
    members: list[str] = typer.Option([], "--member", help="Member username (repeatable)"),
    display_name: str | None = typer.Option(None, help="Display name (defaults to name)"),
    db: str = typer.Option("./data/bridge.db", help="SQLite DB path"),
) -> None:
    """Add a room to the local directory."""
    store = SQLiteStore(db)
    try:
        try:
            room = SQLiteChatHost(store).insert_room(
                name, room_type, members, display_name=display_name
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from None
        typer.echo(json.dumps(room.to_dict(), ensure_ascii=False))
    finally:
        store.close()


@app.command("command")
def command(
    args: list[str] = typer.Argument(
        None, help="Subcommand: login, import, enable, disable, logout"
    ),
    user: str = typer.Option(..., help="Username running the command"),
    room: str = typer.Option(..., help="Room name or id the command runs in"),
    db: str = typer.Option("./data/bridge.db", help="SQLite DB path"),
    log_level: str = typer.Option("warning", help="Logging level"),
) -> None:
    """Run a bridge subcommand as a local user."""
    _configure_logging(log_level)
    settings = _settings(db)
    try:
        settings.check_configured()
    except SettingsError as exc:
        raise typer.BadParameter(str(exc)) from None

    store = SQLiteStore(db)
    try:
        host = SQLiteChatHost(store)
        sender = host.get_user_by_username(user)
        if not sender:
            raise typer.BadParameter(f"Unknown user: {user}")
        local_room = host.get_room(room) or host.get_room_by_name(room, include_direct=True)
        if not local_room:
            raise typer.BadParameter(f"Unknown room: {room}")
        dispatcher = CommandDispatcher(settings, IdentityStore(store), host)
        typer.echo(dispatcher.execute(list(args or []), sender, local_room))
    finally:
        store.close()


@app.command()
def accounts(
    db: str = typer.Option("./data/bridge.db", help="SQLite DB path"),
    out: str | None = typer.Option(None, help="Also write the JSON to this path"),
) -> None:
    """List linked Slack accounts (tokens masked)."""
    store = SQLiteStore(db)
    try:
        rows = [
            account.to_dict(mask_token=True) for account in IdentityStore(store).list_accounts()
        ]
    finally:
        store.close()
    if out:
        dump_json(out, rows)
    typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))
