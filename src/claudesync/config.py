"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory: override with CLAUDESYNC_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("CLAUDESYNC_DATA_DIR", str(Path.home() / ".claudesync"))
)

# On-disk layout, relative to the data directory
AUTH_FILENAME = "auth.json"
INDEX_FILENAME = "sessions.json"
SESSIONS_DIRNAME = "sessions"
PLACEHOLDER_SUFFIX = "_placeholder"
INDEX_VERSION = "1.0.0"

# Remote service
BASE_URL = os.environ.get("CLAUDESYNC_BASE_URL", "https://claude.ai/api")
REQUEST_TIMEOUT = 30.0  # seconds
LIST_PAGE_SIZE = 30
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/137.0.0.0 Safari/537.36"
)
CURL_EXECUTABLE = os.environ.get("CLAUDESYNC_CURL", "curl")

# Tried in order when the primary list endpoint is missing
ALTERNATE_LIST_ENDPOINTS = (
    "/chat_conversations",
    "/organizations/{org}/conversations",
    "/conversations",
    "/api/conversations",
)

# Completion request defaults
DEFAULT_LOCALE = "en-US"
DEFAULT_TOOLS = (
    {"type": "web_search_v0", "name": "web_search"},
    {"type": "artifacts_v0", "name": "artifacts"},
    {"type": "repl_v0", "name": "repl"},
)

# Event stream
EVENT_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
NO_CONTENT = "No response content received"

# Sender tag the remote service uses for the user's own messages
HUMAN_SENDER = "human"

DEBUG = bool(os.environ.get("CLAUDESYNC_DEBUG"))
