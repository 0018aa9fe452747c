"""claudesync — keep a local copy of your Claude conversation history."""

__version__ = "0.1.0"
