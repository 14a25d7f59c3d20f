"""Shared fixtures and utilities for oura-mcp tests."""

import asyncio
import contextlib
import socket
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlencode, urlparse

import httpx
import pytest

from oura_mcp.config import OAuthSettings
from oura_mcp.oauth.exchange import TokenExchanger
from oura_mcp.oauth.store import TokenStore
from oura_mcp.oauth.tokens import CredentialRecord, now_ms

TOKEN_URL = "https://auth.example.test/oauth/token"
AUTHORIZE_URL = "https://auth.example.test/oauth/authorize"


def find_free_port() -> int:
    """Ask the OS for a port that is free right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
    return port


async def send_http_request(port: int, target: str, method: str = "GET") -> bytes:
    """Send a raw HTTP request to the local listener and return the full response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"{method} {target} HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n\r\n".encode())
    await writer.drain()
    response = await reader.read()
    writer.close()
    with contextlib.suppress(ConnectionError):
        await writer.wait_closed()
    return response


class FakeTokenEndpoint:
    """Token endpoint double for ``httpx.MockTransport``.

    Responses are queued with :meth:`reply`; every request is recorded.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._responses: list[httpx.Response | Exception] = []

    def reply(self, status_code: int = 200, **kwargs: Any) -> None:
        self._responses.append(httpx.Response(status_code, **kwargs))

    def reply_tokens(
        self,
        access_token: str = "new-access",
        refresh_token: str | None = "new-refresh",
        expires_in: Any = 86400,
    ) -> None:
        payload: dict[str, Any] = {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": expires_in,
        }
        if refresh_token is not None:
            payload["refresh_token"] = refresh_token
        self.reply(200, json=payload)

    def fail_with(self, error: Exception) -> None:
        self._responses.append(error)

    def forms(self) -> list[dict[str, str]]:
        """Decoded form bodies of all recorded requests."""
        return [dict(parse_qsl(r.content.decode())) for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            return httpx.Response(500, text="no response queued")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeBrowser:
    """Stands in for ``webbrowser.open``.

    When ``callback`` is set, "opening" the authorization URL schedules the
    redirect back to the local listener with the query built by
    ``callback(state)``.
    """

    def __init__(
        self,
        redirect_uri: str,
        callback: Callable[[str], dict[str, str]] | None = None,
        opened: bool = True,
    ):
        parsed = urlparse(redirect_uri)
        self.port = parsed.port
        self.path = parsed.path
        self.callback = callback
        self.opened = opened
        self.urls: list[str] = []
        self.tasks: list[asyncio.Task[bytes]] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        if self.callback is not None:
            state = parse_qs(urlparse(url).query)["state"][0]
            target = f"{self.path}?{urlencode(self.callback(state))}"
            task = asyncio.get_running_loop().create_task(send_http_request(self.port, target))
            self.tasks.append(task)
        return self.opened

    async def responses(self) -> list[bytes]:
        return list(await asyncio.gather(*self.tasks))


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def redirect_uri() -> str:
    """A redirect URI on a currently free local port."""
    return f"http://127.0.0.1:{find_free_port()}/callback"


@pytest.fixture
def settings(tmp_path: Path, redirect_uri: str) -> OAuthSettings:
    """Settings pointing at a temporary token dir and a fake provider."""
    return OAuthSettings(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri=redirect_uri,
        authorize_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        token_dir=tmp_path / "oura",
        auth_timeout=5,
    )


@pytest.fixture
def store(settings: OAuthSettings) -> TokenStore:
    return TokenStore(settings.token_dir)


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def exchanger(settings: OAuthSettings, token_endpoint: FakeTokenEndpoint) -> TokenExchanger:
    """Exchanger wired to the fake token endpoint."""
    return TokenExchanger(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
        token_url=settings.token_url,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)),
    )


@pytest.fixture
def make_record() -> Callable[..., CredentialRecord]:
    """Factory for records expiring ``expires_in`` seconds from now."""

    def _make(
        expires_in: float = 3600,
        access_token: str = "stored-access",
        refresh_token: str = "stored-refresh",
    ) -> CredentialRecord:
        return CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + int(expires_in * 1000),
        )

    return _make


@pytest.fixture
def occupied_port(redirect_uri: str) -> Generator[int, None, None]:
    """Hold the redirect URI's port with a listening socket."""
    port = urlparse(redirect_uri).port
    assert port is not None
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", port))
        s.listen(1)
        yield port


@pytest.fixture
def send_request() -> Callable[..., Any]:
    """Raw HTTP client for the local listener."""
    return send_http_request


@pytest.fixture
def fake_browser(redirect_uri: str) -> Callable[..., FakeBrowser]:
    """Factory for browsers that redirect back to ``redirect_uri``."""

    def _make(
        callback: Callable[[str], dict[str, str]] | None = None,
        opened: bool = True,
    ) -> FakeBrowser:
        return FakeBrowser(redirect_uri, callback=callback, opened=opened)

    return _make
