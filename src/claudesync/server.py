"""FastMCP server exposing the local conversation cache."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .auth import load_credentials
from .config import AUTH_FILENAME, DATA_DIR
from .errors import ClaudeSyncError
from .gateway import TransportGateway
from .models import ConversationRecord, Role
from .storage import ConversationStore
from .sync import ConversationSync

# Logging to stderr only; stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "claudesync",
    instructions=(
        "Browse the user's locally synced Claude conversation history. "
        "Use list_conversations to browse by recency, search_conversations to find "
        "conversations by title or id, get_conversation to read a transcript, "
        "get_stats for an overview and sync_conversations to refresh the list."
    ),
)

MAX_TRANSCRIPT_CHARS = 50_000

# Singleton store, reused across tool calls
_data_dir: Path = DATA_DIR
_store: ConversationStore | None = None


def configure(data_dir: Path) -> None:
    global _data_dir, _store
    _data_dir = data_dir
    _store = None


def _get_store() -> ConversationStore:
    global _store
    if _store is None:
        _store = ConversationStore(_data_dir)
    return _store


def _format_ts(ts: datetime | None) -> str:
    if ts is None:
        return "Unknown date"
    return ts.strftime("%Y-%m-%d %H:%M")


def _check_data_exists() -> str | None:
    """Return an error message if nothing has been synced."""
    if not _get_store().index_path.exists():
        return "No conversations synced yet. Run this first:\n  claudesync sync"
    return None


def _format_rows(records: list[ConversationRecord], start: int = 1) -> list[str]:
    lines = []
    for i, r in enumerate(records, start):
        status = "downloaded" if r.is_downloaded else "not downloaded"
        lines.append(f"{i}. **{r.title}** ({_format_ts(r.updated_at)})")
        lines.append(f"   ID: `{r.id}` | {r.message_count} msgs | {status}")
    return lines


@mcp.tool()
def list_conversations(limit: int = 20, downloaded_only: bool = False) -> str:
    """Browse synced conversations, most recently updated first.

    Args:
        limit: Maximum results (default 20)
        downloaded_only: Only conversations whose messages are stored locally
    """
    err = _check_data_exists()
    if err:
        return err

    records = _get_store().list_conversations(downloaded_only=downloaded_only, limit=limit)
    if not records:
        return "No conversations found."

    lines = [f"Conversations (showing {len(records)}):\n", *_format_rows(records)]
    return "\n".join(lines)


@mcp.tool()
def search_conversations(query: str, limit: int = 10) -> str:
    """Find conversations whose title or id contains the query (case-insensitive).

    Args:
        query: Text to look for
        limit: Maximum number of results (default 10)
    """
    err = _check_data_exists()
    if err:
        return err

    matches = _get_store().find(query)[:limit]
    if not matches:
        return f"No conversations found matching '{query}'."

    lines = [f"Found {len(matches)} conversations matching '{query}':\n", *_format_rows(matches)]
    lines.append("\nUse get_conversation(conversation_id) to read a downloaded transcript.")
    return "\n".join(lines)


@mcp.tool()
def get_conversation(conversation_id: str) -> str:
    """Retrieve a downloaded conversation transcript.

    Args:
        conversation_id: The conversation id (from list or search results)
    """
    err = _check_data_exists()
    if err:
        return err

    try:
        conv = _get_store().load_full_conversation(conversation_id)
    except (ClaudeSyncError, ValueError) as e:
        return f"Conversation not available: {conversation_id} ({e})"

    lines = [
        f"# {conv.title}",
        f"Date: {_format_ts(conv.created_at)}",
        f"Messages: {len(conv.messages)}",
        "",
        "---",
        "",
    ]

    char_count = 0
    for msg in conv.messages:
        role = "**User**" if msg.role is Role.HUMAN else "**Claude**"
        header = f"{role} ({_format_ts(msg.timestamp)})"

        remaining_budget = MAX_TRANSCRIPT_CHARS - char_count
        if remaining_budget <= 0 or len(msg.content) > remaining_budget:
            if remaining_budget > 0:
                lines.append(f"{header}:")
                lines.append(msg.content[:remaining_budget])
            lines.append(
                f"\n... [Truncated: conversation exceeds {MAX_TRANSCRIPT_CHARS:,} chars. "
                f"Total: {len(conv.messages)} messages]"
            )
            break

        char_count += len(msg.content)
        lines.append(f"{header}:")
        lines.append(msg.content)
        lines.append("")

    return "\n".join(lines)


@mcp.tool()
def get_stats() -> str:
    """Get statistics about the locally synced conversation history."""
    err = _check_data_exists()
    if err:
        return err

    stats = _get_store().stats()
    lines = [
        "# Sync Statistics",
        "",
        f"- **Conversations**: {stats.total:,}",
        f"- **Downloaded**: {stats.downloaded_count:,}",
        f"- **Placeholders**: {stats.placeholder_count:,}",
        f"- **Last sync**: {_format_ts(stats.last_sync) if stats.last_sync else 'never'}",
        "",
        f"*Data stored in: {_data_dir}*",
    ]
    return "\n".join(lines)


@mcp.tool()
async def sync_conversations(force: bool = False) -> str:
    """Refresh the conversation list from the user's Claude account.

    Args:
        force: Update every conversation regardless of timestamps
    """
    try:
        credentials = load_credentials(_data_dir / AUTH_FILENAME)
        engine = ConversationSync(TransportGateway(), _get_store(), credentials)
        result = await engine.sync(force=force)
    except ClaudeSyncError as e:
        return f"Sync failed: {e.format_message()}"

    lines = [
        f"Synced {result.total} conversations "
        f"({result.new_count} new, {result.updated_count} updated).",
    ]
    lines.extend(f"- {error}" for error in result.errors)
    return "\n".join(lines)
