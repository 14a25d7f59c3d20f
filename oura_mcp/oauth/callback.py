"""Localhost callback listener for the OAuth redirect.

This module provides the ephemeral HTTP server that receives the
authorization callback. It:
- Binds the host/port named by the registered redirect URI (never another)
- Checks the provider error, the anti-CSRF state and the code, in that order
- Answers the browser immediately with a success or failure page
- Treats the session as single-use from the first callback request
- Settles exactly once: callback outcome or deadline, whichever comes first
"""

import asyncio
import errno
import hmac
import html
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .errors import (
    AuthorizationTimeoutError,
    ListenerBindError,
    MissingCodeError,
    OAuthFlowError,
    ProviderDeniedError,
    StateMismatchError,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("oura_mcp.security")

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 120  # seconds

# Port used when the redirect URI does not name one
DEFAULT_PORT = 3000

# How long a single connection may take to send its request head
REQUEST_READ_TIMEOUT = 10.0

# errno values for "address already in use" (POSIX, Windows sockets)
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}


@dataclass
class CallbackResult:
    """Query parameters of a callback request.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Blank values count as absent; repeated parameters use the first value.
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


@dataclass
class AuthorizationSession:
    """One interactive authorization attempt.

    Attributes:
        state: Random anti-CSRF token bound to this session
        host: Interface to listen on (from the redirect URI)
        port: Port to listen on (from the redirect URI)
        path: Callback path (from the redirect URI)
        timeout: Seconds the session stays open once listening
        deadline: Event-loop time at which the session is abandoned
        expires_at: Wall-clock copy of the deadline, for display
        consumed: Set by the first request to the callback path
    """

    state: str
    host: str
    port: int
    path: str
    timeout: float = DEFAULT_TIMEOUT
    deadline: float | None = None
    expires_at: datetime | None = None
    consumed: bool = False

    @classmethod
    def for_redirect_uri(
        cls, redirect_uri: str, state: str, timeout: float = DEFAULT_TIMEOUT
    ) -> "AuthorizationSession":
        """Derive the listener address from a redirect URI.

        Raises:
            ValueError: If the URI is not an http URL with a host, or the
                timeout is not positive
        """
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or not parsed.hostname:
            raise ValueError(
                f"Redirect URI must be an http:// URL with a host, got {redirect_uri!r}"
            )
        if timeout <= 0:
            raise ValueError(f"Authorization timeout must be positive, got {timeout}")

        return cls(
            state=state,
            host=parsed.hostname,
            port=parsed.port or DEFAULT_PORT,
            path=parsed.path or "/",
            timeout=timeout,
        )

    def start_clock(self, loop_time: float) -> None:
        self.deadline = loop_time + self.timeout
        self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.timeout)

    def remaining(self, loop_time: float) -> float:
        """Seconds left before the deadline (0 once it has passed)."""
        if self.deadline is None:
            return self.timeout
        return max(self.deadline - loop_time, 0.0)


# HTML templates for callback responses
_PAGE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; background: #f4f4f7;
               display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0; }}
        .panel {{ background: #fff; border-radius: 12px; padding: 32px 48px; max-width: 440px;
                 text-align: center; box-shadow: 0 4px 24px rgba(0,0,0,0.08); }}
        h1 {{ font-size: 22px; margin: 0 0 12px 0; color: {color}; }}
        p {{ color: #555; margin: 0 0 8px 0; }}
        code {{ background: #f1f1f1; padding: 2px 6px; border-radius: 4px; }}
    </style>
</head>
<body>
    <div class="panel">
        <h1>{title}</h1>
        {body}
    </div>
</body>
</html>"""

SUCCESS_HTML = _PAGE.format(
    title="Oura authorization complete",
    color="#1b7f4b",
    body="<p>You can close this tab and return to the terminal.</p>",
)


def render_error_page(title: str, detail: str) -> str:
    """Render a failure page; ``detail`` is HTML-escaped."""
    body = (
        f"<p><code>{html.escape(detail)}</code></p>"
        "<p>You can close this tab. Check the terminal for details.</p>"
    )
    return _PAGE.format(title=html.escape(title), color="#b3261e", body=body)


class LocalhostCallbackServer:
    """Ephemeral HTTP listener for one :class:`AuthorizationSession`.

    Usage:
        async with LocalhostCallbackServer(session) as server:
            # Send the user to the authorization URL
            code = await server.wait_for_callback()
    """

    def __init__(self, session: AuthorizationSession):
        self.session = session

        self._server: asyncio.Server | None = None
        self._result: asyncio.Future[str] | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Bind the listener and start the session deadline.

        Raises:
            ListenerBindError: If the port cannot be bound
        """
        loop = asyncio.get_running_loop()
        host, port = self.session.host, self.session.port

        try:
            self._server = await asyncio.start_server(self._handle_connection, host, port)
        except OSError as e:
            if e.errno in _ADDR_IN_USE:
                raise ListenerBindError(
                    port,
                    f"Port {port} is already in use. Stop the process using it "
                    f"or change OURA_REDIRECT_URI (and the redirect URI registered "
                    f"for your Oura application).",
                ) from e
            raise ListenerBindError(port, f"Could not listen on {host}:{port}: {e}") from e

        self._result = loop.create_future()
        self.session.start_clock(loop.time())
        logger.debug(f"Callback server listening on {host}:{port}{self.session.path}")

    async def stop(self) -> None:
        """Close the listener and any open connections. Safe to call repeatedly."""
        if self._server is None:
            return

        server, self._server = self._server, None
        server.close()
        for writer in list(self._writers):
            writer.close()

        if self._result is not None and not self._result.done():
            self._result.cancel()

        await server.wait_closed()
        logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> str:
        """Wait for the callback or the deadline, whichever comes first.

        The listener is closed before this returns or raises.

        Returns:
            The authorization code

        Raises:
            ProviderDeniedError: The provider reported an error
            StateMismatchError: The callback state did not match
            MissingCodeError: The callback carried no code
            AuthorizationTimeoutError: The deadline passed first
            OAuthFlowError: The server was never started or already stopped
        """
        if self._result is None:
            raise OAuthFlowError("Callback server not started")

        result = self._result
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait({result}, timeout=self.session.remaining(loop.time()))
            if not result.done():
                logger.warning(
                    f"No authorization callback within {self.session.timeout:g} seconds"
                )
                self._settle(error=AuthorizationTimeoutError(self.session.timeout))
        finally:
            await self.stop()

        if result.cancelled():
            raise OAuthFlowError("Callback server was stopped before a callback arrived")
        return result.result()

    def _settle(self, code: str | None = None, error: Exception | None = None) -> bool:
        """Resolve the session outcome. Only the first call has any effect."""
        if self._result is None or self._result.done():
            return False
        if error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(code)  # type: ignore[arg-type]
        return True

    def _validate(self, result: CallbackResult) -> Exception | None:
        """Check a callback on the session path. Returns the failure, if any."""
        if result.error:
            logger.warning(f"Provider returned authorization error: {result.error}")
            return ProviderDeniedError(result.error, result.error_description)

        # Exact, case-sensitive, constant-time comparison
        if not hmac.compare_digest(
            (result.state or "").encode("utf-8"), self.session.state.encode("utf-8")
        ):
            security_logger.warning(
                f"OAuth callback state mismatch on port {self.session.port} - "
                f"possible CSRF attempt; authorization aborted"
            )
            return StateMismatchError()

        if not result.code:
            return MissingCodeError()

        return None

    async def _read_request(self, reader: asyncio.StreamReader) -> tuple[str, str] | None:
        """Read the request line and headers. Returns (method, target)."""
        request_line = await reader.readline()
        parts = request_line.decode("utf-8", errors="replace").strip().split(" ")

        # Consume headers; nothing in them is needed
        while True:
            header_line = await reader.readline()
            if header_line in (b"\r\n", b"\n", b""):
                break

        if len(parts) < 2:
            return None
        return parts[0], parts[1]

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        self._writers.add(writer)
        try:
            try:
                request = await asyncio.wait_for(
                    self._read_request(reader), timeout=REQUEST_READ_TIMEOUT
                )
            except TimeoutError:
                return

            if request is None:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = request

            # Stray requests (favicon probes, other paths) keep the session open
            if urlparse(target).path != self.session.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            if self.session.consumed or self._result is None or self._result.done():
                logger.warning("Rejected callback for an already used authorization session")
                await self._send_html_response(
                    writer,
                    HTTPStatus.BAD_REQUEST,
                    render_error_page(
                        "Authorization link already used",
                        "This authorization session is no longer active.",
                    ),
                )
                return

            # Single-use from here on, before any validation or exchange
            self.session.consumed = True
            result = parse_callback_url(target)
            failure = self._validate(result)

            try:
                if failure is None:
                    await self._send_html_response(writer, HTTPStatus.OK, SUCCESS_HTML)
                else:
                    await self._send_html_response(
                        writer,
                        HTTPStatus.BAD_REQUEST,
                        render_error_page("Oura authorization failed", str(failure)),
                    )
            finally:
                # The outcome stands even if the browser went away mid-response
                if failure is None:
                    self._settle(code=result.code)
                else:
                    self._settle(error=failure)

        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            self._writers.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("ascii") + payload)
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        head = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Cache-Control: no-store\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(head.encode("ascii") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
