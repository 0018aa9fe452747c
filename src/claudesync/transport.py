"""Execution paths for remote calls.

Two transports reach the same endpoints: ``HttpxTransport`` talks HTTP
directly, ``CurlTransport`` hands the request to a ``curl`` process, which
gets through when the direct path is blocked. Both classify failures the same
way so the gateway can decide whether falling back makes sense.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol

import httpx

from .config import BASE_URL, CURL_EXECUTABLE, REQUEST_TIMEOUT, USER_AGENT
from .errors import (
    AuthRejected,
    EndpointNotFound,
    MalformedResponse,
    TransportError,
)
from .models import CredentialBundle

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


@dataclass
class TransportResponse:
    status_code: int
    text: str
    path: str = ""

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except ValueError as e:
            raise MalformedResponse(f"Response from {self.path} is not JSON") from e


class Transport(Protocol):
    name: str

    async def request(
        self,
        cred: CredentialBundle,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
    ) -> TransportResponse: ...

    def stream(
        self,
        cred: CredentialBundle,
        method: str,
        path: str,
        *,
        json_body: Any = None,
    ) -> AsyncIterator[bytes]: ...


def build_headers(cred: CredentialBundle, base_url: str = BASE_URL) -> dict[str, str]:
    url = httpx.URL(base_url)
    origin = f"{url.scheme}://{url.host}"
    headers = {
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Content-Type": "application/json",
        "anthropic-client-platform": "web_claude_ai",
        "User-Agent": USER_AGENT,
        "Origin": origin,
        "Referer": f"{origin}/",
        "Cookie": (
            f"sessionKey={cred.session_key.get_secret_value()}; "
            f"lastActiveOrg={cred.organization_id}"
        ),
    }
    if cred.csrf_token is not None:
        headers["X-CSRF-Token"] = cred.csrf_token.get_secret_value()
    return headers


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``headers`` that is safe to log."""
    redacted = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered == "cookie":
            value = "sessionKey=***"
        elif lowered == "x-csrf-token":
            value = "***"
        redacted[name] = value
    return redacted


def check_status(status: int, body: str, method: str, path: str) -> None:
    """Raise the error matching an HTTP failure status."""
    if status < 400:
        return

    what = f"{method} {path}"
    if status == 401 or (status == 403 and _is_json_error(body)):
        raise AuthRejected(f"{what} was rejected (HTTP {status})")
    if status == 404:
        raise EndpointNotFound(f"{what} returned HTTP 404")
    # A 403 that is not a JSON error is a challenge page: the path is blocked
    raise TransportError(f"{what} returned HTTP {status}")


def _is_json_error(body: str) -> bool:
    try:
        data = json.loads(body)
    except ValueError:
        return False
    return isinstance(data, dict) and ("error" in data or data.get("type") == "error")


# ---------------------------------------------------------------------------
# Direct HTTP
# ---------------------------------------------------------------------------


async def _log_request(request: httpx.Request) -> None:
    logger.debug(
        "API request %s %s headers=%s",
        request.method,
        request.url.path,
        redact_headers(request.headers),
    )


async def _log_response(response: httpx.Response) -> None:
    request = response.request
    logger.debug("API response %s for %s %s", response.status_code, request.method, request.url.path)
    if response.status_code == 401:
        logger.error("Authentication failed - tokens may be expired")
    elif response.status_code == 403:
        logger.error("Access forbidden")
    elif response.status_code >= 500:
        logger.error("Server error (HTTP %s)", response.status_code)


class HttpxTransport:
    """Direct HTTP calls with ``httpx.AsyncClient``."""

    name = "direct"

    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    def _client(self, cred: CredentialBundle) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=build_headers(cred, self.base_url),
            timeout=self.timeout,
            transport=self._transport,
            event_hooks={"request": [_log_request], "response": [_log_response]},
        )

    async def request(self, cred, method, path, *, params=None, json_body=None):
        try:
            async with self._client(cred) as client:
                response = await client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {type(e).__name__}") from e

        check_status(response.status_code, response.text, method, path)
        return TransportResponse(status_code=response.status_code, text=response.text, path=path)

    async def stream(self, cred, method, path, *, json_body=None):
        try:
            async with self._client(cred) as client:
                async with client.stream(
                    method,
                    path,
                    json=json_body,
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", "replace")
                        check_status(response.status_code, body, method, path)
                    async for chunk in response.aiter_bytes():
                        yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {type(e).__name__}") from e


# ---------------------------------------------------------------------------
# curl subprocess
# ---------------------------------------------------------------------------


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def curl_config(
    cred: CredentialBundle,
    method: str,
    url: str,
    json_body: Any = None,
    base_url: str = BASE_URL,
    max_time: float | None = None,
) -> str:
    """Render a curl config file for one request.

    The config travels over stdin, which keeps the cookie out of the process
    argument list.
    """
    lines = [f"url = {_quote(url)}", f"request = {_quote(method)}"]
    headers = build_headers(cred, base_url)
    if json_body is not None:
        headers["Accept"] = "text/event-stream, application/json"
    for name, value in headers.items():
        lines.append(f"header = {_quote(f'{name}: {value}')}")
    if json_body is not None:
        lines.append(f"data-binary = {_quote(json.dumps(json_body))}")
    if max_time is not None:
        lines.append(f"max-time = {max_time:g}")
    return "\n".join(lines) + "\n"


def take_head(buffer: bytes) -> tuple[int | None, bytes]:
    """Strip the response head(s) that ``curl --include`` puts before the body.

    Returns ``(None, buffer)`` while the final head is still incomplete.
    Interim 1xx heads are skipped.
    """
    while True:
        head, sep, rest = buffer.partition(b"\r\n\r\n")
        if not sep:
            return None, buffer
        status = _status_from_head(head)
        if 100 <= status < 200:
            buffer = rest
            continue
        return status, rest


def _status_from_head(head: bytes) -> int:
    status_line = head.split(b"\r\n", 1)[0]
    parts = status_line.split()
    try:
        return int(parts[1])
    except (IndexError, ValueError):
        raise MalformedResponse("curl output does not start with an HTTP status line") from None


class CurlTransport:
    """Calls made by an external ``curl`` process."""

    name = "curl"

    def __init__(
        self,
        base_url: str = BASE_URL,
        executable: str = CURL_EXECUTABLE,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url
        self.executable = executable
        self.timeout = timeout

    def _url(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        return str(httpx.URL(self.base_url.rstrip("/") + path, params=params))

    async def _spawn(self, streaming: bool) -> asyncio.subprocess.Process:
        args = [self.executable, "--silent", "--show-error", "--include", "--config", "-"]
        if streaming:
            args.append("--no-buffer")
        logger.debug("Running %s", " ".join(args))
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"Cannot run {self.executable}: {e.strerror or e}") from e

    async def request(self, cred, method, path, *, params=None, json_body=None):
        config = curl_config(
            cred, method, self._url(path, params), json_body, self.base_url, max_time=self.timeout
        )
        proc = await self._spawn(streaming=False)
        stdout, stderr = await proc.communicate(config.encode("utf-8"))
        if proc.returncode != 0:
            logger.debug("curl stderr: %s", stderr.decode("utf-8", "replace").strip())
            raise TransportError(f"{method} {path} via curl exited with status {proc.returncode}")

        status, body = take_head(stdout)
        if status is None:
            raise MalformedResponse(f"{method} {path} via curl returned no HTTP response")
        text = body.decode("utf-8", "replace")
        check_status(status, text, method, path)
        return TransportResponse(status_code=status, text=text, path=path)

    async def stream(self, cred, method, path, *, json_body=None):
        config = curl_config(cred, method, self._url(path), json_body, self.base_url)
        proc = await self._spawn(streaming=True)
        try:
            proc.stdin.write(config.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()

            status, buffer = None, b""
            while status is None:
                chunk = await proc.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                status, buffer = take_head(buffer + chunk)
            if status is None:
                returncode = await proc.wait()
                raise TransportError(
                    f"{method} {path} via curl returned no HTTP response (exit status {returncode})"
                )

            if status >= 400:
                rest = await proc.stdout.read()
                check_status(status, (buffer + rest).decode("utf-8", "replace"), method, path)

            if buffer:
                yield buffer
            while True:
                chunk = await proc.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

            returncode = await proc.wait()
            if returncode != 0:
                raise TransportError(f"{method} {path} via curl exited with status {returncode}")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
