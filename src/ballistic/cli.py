"""
Click command line for Ballistic.

Commands:
    serve                 Run the REST API and WebSocket server (uvicorn)
    mcp                   Run the MCP server for one token's user
    create-user           Add a user
    create-token          Issue an access token (plaintext shown once)
    migrate-token-scopes  Move legacy ``*`` tokens to api:* or mcp:*
    sweep                 Run one recurrence sweep
"""

import logging
import socket
import sys
from typing import Optional, Tuple

import click
import uvicorn

from . import api
from .abilities import TokenAbility
from .config import Settings
from .database import BallisticDatabase
from .errors import BallisticError
from .mcp_server import create_mcp_server
from .monitoring import run_recurrence_sweep
from .notifications import NotificationService
from .services import ItemService, TokenService

logger = logging.getLogger(__name__)

SCOPE_CHOICES = [TokenAbility.API.value, TokenAbility.MCP.value]


def check_port_available(host: str, port: int) -> bool:
    """True when nothing is listening on host:port."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


def print_startup_banner(host: str, port: int, database_path: str, sweep_interval: int) -> None:
    # stderr keeps stdout clean for stdio transports
    click.echo("=" * 60, err=True)
    click.echo("Ballistic", err=True)
    click.echo(f"  API:        http://{host}:{port}/api", err=True)
    click.echo(f"  Events:     ws://{host}:{port}/ws/updates", err=True)
    click.echo(f"  Database:   {database_path}", err=True)
    sweep = f"every {sweep_interval}s" if sweep_interval > 0 else "disabled"
    click.echo(f"  Recurrence: sweep {sweep}", err=True)
    click.echo("=" * 60, err=True)


def _open_database(ctx: click.Context) -> BallisticDatabase:
    settings: Settings = ctx.obj["settings"]
    database = BallisticDatabase(settings.database_path)
    ctx.call_on_close(database.close)
    return database


@click.group()
@click.option("--db-path", envvar="DATABASE_PATH", default=None,
              help="SQLite database file (default: $DATABASE_PATH or ballistic.db)")
@click.option("--log-level", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], log_level: Optional[str]):
    """Ballistic task manager."""
    settings = Settings.from_env()
    if db_path:
        settings.database_path = db_path
    if log_level:
        settings.log_level = log_level.upper()

    logging.basicConfig(level=settings.log_level, stream=sys.stderr)
    logging.getLogger().setLevel(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--sweep-interval", type=int, default=None,
              help="Seconds between recurrence sweeps; 0 disables")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, sweep_interval: Optional[int]):
    """Run the REST API and WebSocket server."""
    settings: Settings = ctx.obj["settings"]
    if sweep_interval is not None:
        settings.sweep_interval_seconds = sweep_interval
    if not check_port_available(host, port):
        raise click.ClickException(f"Port {port} on {host} is already in use")

    api.configure(_open_database(ctx), settings)
    print_startup_banner(host, port, settings.database_path, settings.sweep_interval_seconds)
    uvicorn.run(api.app, host=host, port=port, log_level=settings.log_level.lower())


@main.command()
@click.option("--token", envvar="BALLISTIC_MCP_TOKEN", default=None,
              help="MCP token (default: $BALLISTIC_MCP_TOKEN)")
@click.option("--transport", type=click.Choice(["stdio", "sse", "http"]), default="stdio", show_default=True)
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8001, show_default=True, type=int)
@click.pass_context
def mcp(ctx: click.Context, token: Optional[str], transport: str, host: str, port: int):
    """Run the MCP server as the token's user."""
    settings: Settings = ctx.obj["settings"]
    token = token or settings.mcp_token
    if not token:
        raise click.ClickException("An MCP token is required (--token or BALLISTIC_MCP_TOKEN)")

    try:
        server = create_mcp_server(_open_database(ctx), token, settings)
    except BallisticError as e:
        raise click.ClickException(e.message)

    logger.info(f"Starting MCP server ({transport}) for user {server.context.user_id}")
    server.start_server_sync(transport=transport, host=host, port=port)


@main.command("create-user")
@click.argument("name")
@click.argument("email")
@click.option("--admin", is_flag=True, help="Grant access to the admin dashboard")
@click.pass_context
def create_user(ctx: click.Context, name: str, email: str, admin: bool):
    """Add a user."""
    database = _open_database(ctx)
    if database.get_user_by_email(email) is not None:
        raise click.ClickException(f"A user with email {email} already exists")
    user = database.create_user(name, email, is_admin=admin)
    click.echo(f"Created user {user['name']} <{user['email']}> ({user['id']})")


@main.command("create-token")
@click.argument("email")
@click.option("--name", default="cli", show_default=True, help="Token label")
@click.option("--ability", "abilities", multiple=True, type=click.Choice(SCOPE_CHOICES),
              help="Repeat for several abilities (default: mcp:*)")
@click.pass_context
def create_token(ctx: click.Context, email: str, name: str, abilities: Tuple[str, ...]):
    """Issue an access token for EMAIL and print it once."""
    settings: Settings = ctx.obj["settings"]
    database = _open_database(ctx)
    user = database.get_user_by_email(email)
    if user is None:
        raise click.ClickException(f"No user with email {email}")

    payload = {"name": name, "abilities": list(abilities) or [TokenAbility.MCP.value]}
    try:
        token, plaintext = TokenService(database, settings.legacy_wildcard_cutoff_at).create_token(
            user["id"], payload)
    except BallisticError as e:
        raise click.ClickException(e.message)

    click.echo(f"Token '{token['name']}' ({', '.join(token['abilities'])}) for {user['email']}:")
    click.echo(plaintext)
    click.echo("Store it now; it cannot be shown again.", err=True)


@main.command("migrate-token-scopes")
@click.option("--scope", type=click.Choice(SCOPE_CHOICES), default=TokenAbility.API.value, show_default=True,
              help="Ability the legacy tokens receive")
@click.option("--execute", is_flag=True, help="Apply the migration (default is a dry run)")
@click.pass_context
def migrate_token_scopes(ctx: click.Context, scope: str, execute: bool):
    """Reassign legacy wildcard tokens to an explicit scope."""
    settings: Settings = ctx.obj["settings"]
    tokens = TokenService(_open_database(ctx), settings.legacy_wildcard_cutoff_at)
    affected = tokens.migrate_wildcard_tokens(scope, execute=execute)

    if not affected:
        click.echo("No wildcard tokens found.")
        return

    for token in affected:
        click.echo(f"  {token['id']}  {token['name']}  (user {token['user_id']})")
    if execute:
        click.echo(f"Migrated {len(affected)} token(s) to {scope}.")
    else:
        click.echo(f"Dry run: {len(affected)} token(s) would be migrated to {scope}. "
                   "Re-run with --execute to apply.")


@main.command()
@click.pass_context
def sweep(ctx: click.Context):
    """Expire, carry over and spawn recurring instances for today."""
    database = _open_database(ctx)
    report = run_recurrence_sweep(ItemService(database, NotificationService(database)))
    click.echo(
        f"Templates: {report['templates']}  spawned: {report['spawned']}  expired: {report['expired']}  "
        f"carried over: {report['carried_over']}  errors: {report['errors']}"
    )


if __name__ == "__main__":
    main()
