"""Tests for claudesync.transport."""

from __future__ import annotations

import httpx
import pytest

from claudesync.errors import (
    AuthRejected,
    EndpointNotFound,
    MalformedResponse,
    TransportError,
)
from claudesync.models import CredentialBundle
from claudesync.transport import (
    CurlTransport,
    HttpxTransport,
    _quote,
    build_headers,
    check_status,
    curl_config,
    redact_headers,
    take_head,
)

from .conftest import SESSION_KEY


def mock_transport(handler) -> HttpxTransport:
    return HttpxTransport(base_url="https://claude.test/api", transport=httpx.MockTransport(handler))


class TestHeaders:

    def test_cookie_and_csrf(self):
        cred = CredentialBundle(session_key=SESSION_KEY, organization_id="org-1", csrf_token="tok")
        headers = build_headers(cred, "https://claude.test/api")
        assert headers["Cookie"] == f"sessionKey={SESSION_KEY}; lastActiveOrg=org-1"
        assert headers["X-CSRF-Token"] == "tok"
        assert headers["Origin"] == "https://claude.test"

    def test_no_csrf_header_without_token(self, credentials):
        assert "X-CSRF-Token" not in build_headers(credentials)

    def test_redaction(self):
        cred = CredentialBundle(session_key=SESSION_KEY, organization_id="org-1", csrf_token="tok")
        redacted = redact_headers(build_headers(cred))
        assert redacted["Cookie"] == "sessionKey=***"
        assert redacted["X-CSRF-Token"] == "***"
        assert SESSION_KEY not in str(redacted)


class TestCheckStatus:

    def test_success_passes(self):
        check_status(200, "", "GET", "/x")
        check_status(302, "", "GET", "/x")

    def test_unauthorized(self):
        with pytest.raises(AuthRejected):
            check_status(401, "", "GET", "/x")

    def test_json_forbidden_is_auth(self):
        with pytest.raises(AuthRejected):
            check_status(403, '{"type": "error", "error": {"type": "permission_error"}}', "GET", "/x")

    def test_challenge_page_is_transport_failure(self):
        with pytest.raises(TransportError) as info:
            check_status(403, "<html>Just a moment...</html>", "GET", "/x")
        assert not isinstance(info.value, AuthRejected)

    def test_not_found(self):
        with pytest.raises(EndpointNotFound):
            check_status(404, "", "GET", "/x")

    def test_server_error(self):
        with pytest.raises(TransportError, match="HTTP 502"):
            check_status(502, "", "GET", "/x")


class TestHttpxTransport:

    @pytest.mark.asyncio
    async def test_request(self, credentials):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["cookie"] = request.headers["cookie"]
            return httpx.Response(200, json=[{"uuid": "c1"}])

        response = await mock_transport(handler).request(
            credentials, "GET", "/organizations/org-1/chat_conversations", params={"limit": 30}
        )
        assert response.json() == [{"uuid": "c1"}]
        assert seen["url"] == "https://claude.test/api/organizations/org-1/chat_conversations?limit=30"
        assert seen["cookie"].startswith(f"sessionKey={SESSION_KEY}")

    @pytest.mark.asyncio
    async def test_json_body_is_sent(self, credentials):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            return httpx.Response(201, json={"uuid": "new"})

        await mock_transport(handler).request(credentials, "POST", "/x", json_body={"name": "T"})
        assert b'"name"' in seen["body"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, body, error",
        [
            (401, "", AuthRejected),
            (403, '{"error": {"message": "denied"}}', AuthRejected),
            (404, "", EndpointNotFound),
        ],
    )
    async def test_failure_statuses(self, credentials, status, body, error):
        transport = mock_transport(lambda request: httpx.Response(status, text=body))
        with pytest.raises(error):
            await transport.request(credentials, "GET", "/x")

    @pytest.mark.asyncio
    async def test_connection_error(self, credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError, match="ConnectError"):
            await mock_transport(handler).request(credentials, "GET", "/x")

    @pytest.mark.asyncio
    async def test_non_json_body(self, credentials):
        transport = mock_transport(lambda request: httpx.Response(200, text="<html></html>"))
        response = await transport.request(credentials, "GET", "/x")
        with pytest.raises(MalformedResponse):
            response.json()

    @pytest.mark.asyncio
    async def test_secrets_not_logged(self, credentials, caplog):
        caplog.set_level("DEBUG", logger="claudesync")
        transport = mock_transport(lambda request: httpx.Response(401, text=""))
        with pytest.raises(AuthRejected) as info:
            await transport.request(credentials, "GET", "/x")
        assert "sessionKey=***" in caplog.text
        assert SESSION_KEY not in caplog.text
        assert SESSION_KEY not in info.value.format_message()

    @pytest.mark.asyncio
    async def test_stream(self, credentials):
        body = b'data: {"type":"message_stop"}\n'
        transport = mock_transport(lambda request: httpx.Response(200, content=body))
        chunks = [chunk async for chunk in transport.stream(credentials, "POST", "/x", json_body={})]
        assert b"".join(chunks) == body

    @pytest.mark.asyncio
    async def test_stream_rejected(self, credentials):
        transport = mock_transport(lambda request: httpx.Response(401, text=""))
        with pytest.raises(AuthRejected):
            async for _ in transport.stream(credentials, "POST", "/x", json_body={}):
                pass


class TestCurl:

    def test_quote(self):
        assert _quote('a"b\\c') == '"a\\"b\\\\c"'

    def test_config(self, credentials):
        config = curl_config(
            credentials,
            "POST",
            "https://claude.test/api/x",
            json_body={"prompt": 'say "hi"'},
            base_url="https://claude.test/api",
            max_time=30.0,
        )
        lines = config.splitlines()
        assert lines[0] == 'url = "https://claude.test/api/x"'
        assert lines[1] == 'request = "POST"'
        assert f'header = "Cookie: sessionKey={SESSION_KEY}; lastActiveOrg=org-1"' in lines
        assert 'data-binary = "{\\"prompt\\": \\"say \\\\\\"hi\\\\\\"\\"}"' in lines
        assert lines[-1] == "max-time = 30"

    def test_config_without_body(self, credentials):
        config = curl_config(credentials, "GET", "https://claude.test/api/x")
        assert "data-binary" not in config
        assert "max-time" not in config

    def test_take_head(self):
        raw = b"HTTP/1.1 100 Continue\r\n\r\nHTTP/2 200\r\ncontent-type: text/plain\r\n\r\nbody"
        assert take_head(raw) == (200, b"body")

    def test_take_head_incomplete(self):
        assert take_head(b"HTTP/2 200\r\ncontent-") == (None, b"HTTP/2 200\r\ncontent-")

    def test_take_head_garbage(self):
        with pytest.raises(MalformedResponse):
            take_head(b"garbage\r\n\r\nbody")

    @pytest.mark.asyncio
    async def test_missing_executable(self, credentials):
        transport = CurlTransport(executable="/nonexistent/curl-binary")
        with pytest.raises(TransportError, match="Cannot run"):
            await transport.request(credentials, "GET", "/x")
