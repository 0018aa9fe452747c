"""Error taxonomy.

Every error is a ``click.ClickException`` so the CLI reports it as one line
plus a remediation hint and exits non-zero. Messages never contain secrets.
"""

from __future__ import annotations

import click


class ClaudeSyncError(click.ClickException):
    hint = ""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint

    def format_message(self) -> str:
        if self.hint:
            return f"{self.message}\n  Hint: {self.hint}"
        return self.message


class CredentialMissing(ClaudeSyncError):
    hint = 'Run "claudesync init" to set up authentication first.'


class AuthRejected(ClaudeSyncError):
    hint = (
        'Your session key may have expired. Log in to claude.ai again and '
        'run "claudesync init" with a fresh session key.'
    )


class TransportError(ClaudeSyncError):
    """A remote call failed for a reason other than authentication."""

    hint = "Check your network connection and try again."


class EndpointNotFound(TransportError):
    pass


class MalformedResponse(TransportError):
    hint = "The service returned an unexpected response. Try again later."


class AllEndpointsExhausted(TransportError):
    hint = (
        "None of the known conversation endpoints answered in a recognized "
        "format. The service API may have changed."
    )


class TransportUnavailable(TransportError):
    """Both the direct and the fallback path failed."""

    def __init__(self, operation: str, failures: list[str]):
        detail = "; ".join(failures) if failures else "no transport configured"
        super().__init__(f"Could not {operation}: {detail}")
        self.operation = operation
        self.failures = failures


class NotFoundRemotely(ClaudeSyncError):
    hint = "Check the conversation id, or run \"claudesync sync\" to refresh the list."


class NotFoundLocally(ClaudeSyncError):
    hint = 'Run "claudesync sync" to fetch your conversations first.'


class StreamAborted(ClaudeSyncError):
    """The reply stream closed before its terminal event."""

    hint = "The reply was cut off. Send the message again."

    def __init__(self, message: str, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


class IndexCorrupted(ClaudeSyncError):
    hint = "Move the index file aside and run \"claudesync sync --force\" to rebuild it."
