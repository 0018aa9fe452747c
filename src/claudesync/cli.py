"""CLI interface for claudesync."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click

from . import __version__
from .auth import load_credentials, save_credentials
from .config import AUTH_FILENAME, DATA_DIR, DEBUG
from .errors import AuthRejected, ClaudeSyncError, CredentialMissing
from .gateway import TransportGateway
from .models import ConversationRecord, CredentialBundle, Role
from .storage import ConversationStore, is_safe_id
from .sync import ConversationSync

T = TypeVar("T")


class App:
    """Per-invocation wiring: where the data lives and how to reach the service."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.auth_path = data_dir / AUTH_FILENAME

    def store(self) -> ConversationStore:
        return ConversationStore(self.data_dir)

    def credentials(self, required: bool = True) -> CredentialBundle | None:
        try:
            return load_credentials(self.auth_path)
        except CredentialMissing:
            if required:
                raise
            return None

    def engine(self, credentials: CredentialBundle | None) -> ConversationSync:
        return ConversationSync(TransportGateway(), self.store(), credentials)


def _configure_logging(verbosity: int) -> None:
    if DEBUG or verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _prompt_credentials(
    session_key: str | None = None,
    org_id: str | None = None,
    csrf_token: str | None = None,
    default_org: str | None = None,
) -> CredentialBundle:
    session_key = session_key or click.prompt("Session key (sessionKey cookie)", hide_input=True)
    org_id = org_id or click.prompt("Organization id (lastActiveOrg cookie)", default=default_org)
    return CredentialBundle(
        session_key=session_key.strip(),
        organization_id=org_id.strip(),
        csrf_token=csrf_token or None,
        extracted_from="manual",
    )


def _conversation_id(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is not None and not is_safe_id(value):
        raise click.BadParameter(
            f"{value!r} is not a conversation id. Use an id shown by \"claudesync list\"."
        )
    return value


def _run(app: App, operation: Callable[[ConversationSync], Awaitable[T]]) -> T:
    """Run an operation; on a rejected credential offer one retry with fresh ones."""
    credentials = app.credentials()
    try:
        return asyncio.run(operation(app.engine(credentials)))
    except AuthRejected as e:
        if not sys.stdin.isatty():
            raise
        click.echo(f"Error: {e.format_message()}", err=True)
        if not click.confirm("Enter a fresh session key and retry?", default=True):
            raise
        credentials = _prompt_credentials(default_org=credentials.organization_id)
        save_credentials(credentials, app.auth_path)
        return asyncio.run(operation(app.engine(credentials)))


@click.group()
@click.version_option(version=__version__, prog_name="claudesync")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DATA_DIR,
    show_default=True,
    help="Where the conversation cache and credentials live.",
)
@click.option("-v", "--verbose", count=True, help="Show progress (-v) or debug output (-vv).")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path, verbose: int):
    """claudesync — keep a local copy of your Claude conversations.

    Save your session once with "claudesync init", then run "claudesync sync"
    to fetch the conversation list and "claudesync sync --download-all" to
    fetch full transcripts.
    """
    _configure_logging(verbose)
    ctx.obj = App(data_dir)


@cli.command()
@click.option("--session-key", help="Value of the sessionKey cookie (prompted if omitted).")
@click.option("--org-id", help="Organization id (prompted if omitted).")
@click.option("--csrf-token", help="Optional anti-forgery token.")
@click.option("--verify/--no-verify", default=True, help="Test the connection after saving.")
@click.pass_obj
def init(app: App, session_key: str | None, org_id: str | None, csrf_token: str | None, verify: bool):
    """Save authentication tokens copied from a logged-in browser session.

    Open claude.ai, then copy the sessionKey and lastActiveOrg cookies from
    your browser's developer tools.
    """
    if app.auth_path.exists() and not click.confirm(
        "Authentication tokens already exist. Overwrite?", default=False
    ):
        return

    bundle = _prompt_credentials(session_key, org_id, csrf_token)
    save_credentials(bundle, app.auth_path)
    click.echo(f"Saved credentials to {app.auth_path}")

    if verify:
        click.echo("Testing API connection...")
        if asyncio.run(TransportGateway().test_connection(bundle)):
            click.echo(click.style("Connection OK", fg="green", bold=True))
        else:
            raise ClaudeSyncError(
                "Could not reach your conversations with these tokens.",
                hint="Check the session key and organization id, then run init again.",
            )


@cli.command()
@click.option("--force", is_flag=True, help="Update every conversation regardless of timestamps.")
@click.option(
    "--placeholders/--no-placeholders",
    default=True,
    help="Create placeholder files for new conversations.",
)
@click.option(
    "--conversation",
    "conversation_id",
    metavar="ID",
    callback=_conversation_id,
    help="Sync one conversation by id.",
)
@click.option("--download", is_flag=True, help="With --conversation, also download its messages.")
@click.option("--download-all", is_flag=True, help="Download full content for conversations.")
@click.option("--limit", type=int, default=10, show_default=True, help="Max conversations to download.")
@click.option("--stats", "show_stats", is_flag=True, help="Show sync statistics without syncing.")
@click.pass_obj
def sync(
    app: App,
    force: bool,
    placeholders: bool,
    conversation_id: str | None,
    download: bool,
    download_all: bool,
    limit: int,
    show_stats: bool,
):
    """Sync conversation metadata from your Claude account."""
    if show_stats:
        _show_stats(app)
        return

    if conversation_id:
        async def sync_one(engine: ConversationSync):
            record = await engine.sync_single_conversation(conversation_id)
            full = await engine.download_conversation(conversation_id) if download else None
            return record, full

        record, full = _run(app, sync_one)
        click.echo(click.style("Conversation synced.", fg="green", bold=True))
        click.echo(f"  {record.id}  {record.title}")
        if full is not None:
            click.echo(f"  Downloaded {len(full.messages)} messages")
        return

    async def sync_all(engine: ConversationSync):
        result = await engine.sync(force=force, create_placeholders=placeholders)
        report = await engine.download_all(limit=limit) if download_all else None
        return result, report

    result, report = _run(app, sync_all)

    click.echo()
    click.echo(click.style("Sync complete!", fg="green", bold=True))
    click.echo(f"  Total conversations:   {result.total:,}")
    click.echo(f"  New conversations:     {result.new_count:,}")
    click.echo(f"  Updated conversations: {result.updated_count:,}")
    click.echo(f"  Errors:                {len(result.errors)}")
    for error in result.errors:
        click.echo(f"    • {error}", err=True)

    if report is not None:
        click.echo(
            f"  Downloaded:            {len(report.downloaded)} "
            f"({len(report.errors)} failed, {len(report.skipped)} without messages)"
        )
        for error in report.errors:
            click.echo(f"    • {error}", err=True)
    elif result.new_count:
        click.echo()
        click.echo('Use "claudesync list" to see your conversations.')
        click.echo('Use "claudesync sync --download-all" to download full content.')
    click.echo()


def _show_stats(app: App) -> None:
    stats = asyncio.run(app.engine(app.credentials(required=False)).stats())
    local = stats.local

    click.echo()
    click.echo(click.style("Sync Statistics", bold=True))
    status = click.style("connected", fg="green") if stats.connected else click.style("failed", fg="red")
    click.echo(f"  API connection:  {status}")
    click.echo(f"  Conversations:   {local.total:,}")
    click.echo(f"  Downloaded:      {local.downloaded_count:,}")
    click.echo(f"  Placeholders:    {local.placeholder_count:,}")
    last_sync = local.last_sync.strftime("%Y-%m-%d %H:%M") if local.last_sync else "never"
    click.echo(f"  Last sync:       {last_sync}")
    click.echo(f"  Location:        {app.data_dir}")
    click.echo()

    if not stats.connected:
        click.echo("API connection failed. Check your authentication:")
        click.echo('  • Run "claudesync init" to update tokens')
        click.echo("  • Make sure you are logged in to claude.ai")
        click.echo("  • Check your network connection")
    if local.total == 0:
        click.echo('No conversations stored yet. Run "claudesync sync" to fetch them.')


@cli.command("list")
@click.option("-d", "--downloaded", is_flag=True, help="Only downloaded conversations.")
@click.option("-s", "--search", metavar="TERM", help="Filter by title or id.")
@click.option("-j", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_obj
def list_cmd(app: App, downloaded: bool, search: str | None, as_json: bool, limit: int):
    """List locally stored conversations, newest first."""
    store = app.store()
    if search:
        records = store.find(search)
        if downloaded:
            records = [r for r in records if r.is_downloaded]
        records = sorted(records, key=lambda r: r.updated_at, reverse=True)
    else:
        records = store.list_conversations(downloaded_only=downloaded)
    if limit > 0:
        records = records[:limit]

    if as_json:
        click.echo(json.dumps([r.model_dump(mode="json", by_alias=True) for r in records], indent=2))
        return

    if not records:
        if search:
            click.echo(f"No conversations found matching: {search}")
        else:
            click.echo('No conversations found. Run "claudesync sync" to fetch them.')
        return

    click.echo()
    for record in records:
        _echo_row(record)
    click.echo()


def _echo_row(record: ConversationRecord) -> None:
    status = click.style("downloaded", fg="green") if record.is_downloaded else click.style("placeholder", fg="yellow")
    title = record.title if len(record.title) <= 48 else record.title[:45] + "..."
    updated = record.updated_at.strftime("%Y-%m-%d")
    click.echo(f"{record.id[:12]:<12}  {title:<48}  {updated}  {record.message_count:>5}  {status}")


@cli.command()
@click.argument("conversation_id", callback=_conversation_id)
@click.pass_obj
def show(app: App, conversation_id: str):
    """Print a downloaded conversation."""
    record = app.store().load_full_conversation(conversation_id)
    click.echo()
    click.echo(click.style(record.title, bold=True))
    click.echo(f"{record.id} | {len(record.messages)} messages | updated {record.updated_at:%Y-%m-%d %H:%M}")
    click.echo()
    for message in record.messages:
        _echo_message(message.role, message.content)


def _echo_message(role: Role, content: str) -> None:
    who = click.style("You", fg="cyan", bold=True) if role is Role.HUMAN else click.style("Claude", fg="magenta", bold=True)
    click.echo(f"{who}: {content}")
    click.echo()


class _ReplyPrinter:
    """Prints only the part of the cumulative text not shown yet."""

    def __init__(self):
        self.shown = 0

    def __call__(self, text: str) -> None:
        click.echo(text[self.shown:], nl=False)
        self.shown = len(text)


def _send(app: App, conversation_id: str, text: str, stream: bool) -> None:
    printer = _ReplyPrinter() if stream else None
    click.echo(click.style("Claude", fg="magenta", bold=True) + ": ", nl=False)
    try:
        result = _run(
            app, lambda engine: engine.send_message(conversation_id, text, on_update=printer)
        )
    finally:
        if printer is not None and printer.shown:
            click.echo()
    if printer is None:
        click.echo(result.text)
    elif result.text[printer.shown:]:
        click.echo(result.text[printer.shown:])
    click.echo()


@cli.command()
@click.argument("conversation_id", required=False, callback=_conversation_id)
@click.option("--new", "force_new", is_flag=True, help="Start a new conversation.")
@click.option("--title", help="Title for a new conversation.")
@click.option("-m", "--message", help="Send one message and exit.")
@click.option("--stream/--no-stream", default=True, help="Print the reply as it arrives.")
@click.pass_obj
def chat(
    app: App,
    conversation_id: str | None,
    force_new: bool,
    title: str | None,
    message: str | None,
    stream: bool,
):
    """Chat in a conversation (a new one unless an id is given)."""
    if force_new or not conversation_id:
        record = _run(app, lambda engine: engine.start_conversation(title))
        conversation_id = record.id
        click.echo(f"Started conversation {conversation_id}")
    elif app.store().conversation_path(conversation_id).exists():
        record = app.store().load_full_conversation(conversation_id)
        click.echo(click.style(record.title, bold=True))
        click.echo()
        for past in record.messages:
            _echo_message(past.role, past.content)

    if message:
        _send(app, conversation_id, message, stream)
        return

    click.echo('Type "exit" to quit.')
    while True:
        text = click.prompt("You", default="", show_default=False)
        if text.strip().lower() in ("exit", "quit"):
            break
        if not text.strip():
            continue
        try:
            _send(app, conversation_id, text, stream)
        except ClaudeSyncError as e:
            click.echo(f"Error: {e.format_message()}", err=True)


@cli.command()
@click.pass_obj
def serve(app: App):
    """Start the MCP server (stdio transport) over the local cache."""
    if not app.store().index_path.exists():
        click.echo("Warning: No conversations synced yet. Run this first:", err=True)
        click.echo("  claudesync sync", err=True)

    from .server import configure, mcp

    configure(app.data_dir)
    mcp.run(transport="stdio")
