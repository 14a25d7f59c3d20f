"""Interactive OAuth authorization code flow.

This module runs one browser-mediated authorization:
1. Generate a random state token
2. Bind the localhost callback listener named by the redirect URI
3. Build the authorization URL, print it and try to open a browser
4. Wait for the callback (or the deadline)
5. Exchange the code for a credential record within the same deadline

The listener is bound before the URL is shown, so a port conflict fails
fast without sending the user anywhere.
"""

import asyncio
import logging
import secrets
import webbrowser
from typing import Callable
from urllib.parse import urlencode

from ..config import DEFAULT_SCOPES, OURA_AUTHORIZE_URL
from .callback import DEFAULT_TIMEOUT, AuthorizationSession, LocalhostCallbackServer
from .errors import AuthorizationTimeoutError, OAuthFlowError
from .exchange import TokenExchanger
from .tokens import CredentialRecord

logger = logging.getLogger(__name__)


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    Returns:
        32-character random hex string
    """
    return secrets.token_hex(16)


def build_authorization_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    state: str,
    scopes: list[str] | None = None,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        authorize_url: The provider's authorize endpoint
        client_id: The client ID
        redirect_uri: The callback URI
        state: State parameter for CSRF protection
        scopes: Scopes to request (space-separated in the URL)

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
    }
    if scopes:
        params["scope"] = " ".join(scopes)
    params["state"] = state

    return f"{authorize_url}?{urlencode(params)}"


class AuthorizationFlow:
    """Runs the interactive authorization code flow end to end.

    A flow object runs at most one session at a time; each run gets its own
    state token and listener.

    Usage:
        flow = AuthorizationFlow(exchanger, on_status=print)
        record = await flow.run()
    """

    def __init__(
        self,
        exchanger: TokenExchanger,
        authorize_url: str = OURA_AUTHORIZE_URL,
        scopes: list[str] | None = None,
        callback_timeout: float = DEFAULT_TIMEOUT,
        on_status: Callable[[str], None] | None = None,
        browser_opener: Callable[[str], bool] | None = None,
    ):
        """Initialize the flow.

        Args:
            exchanger: Token exchanger; also supplies client ID and redirect URI
            authorize_url: The provider's authorize endpoint
            scopes: Scopes to request
            callback_timeout: Seconds to wait for the callback and exchange
            on_status: Optional callback for status messages
            browser_opener: Opens a URL, returns False on failure
                (defaults to ``webbrowser.open``)
        """
        self.exchanger = exchanger
        self.authorize_url = authorize_url
        self.scopes = list(DEFAULT_SCOPES) if scopes is None else scopes
        self.callback_timeout = callback_timeout
        self.on_status = on_status or (lambda msg: None)
        self.browser_opener = browser_opener or webbrowser.open

        self._active = False

    @property
    def redirect_uri(self) -> str:
        return self.exchanger.redirect_uri

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    def _open_browser(self, url: str) -> None:
        """Try to open the URL in a browser. Failure is not fatal."""
        try:
            opened = self.browser_opener(url)
        except (webbrowser.Error, OSError) as e:
            logger.debug(f"Browser open failed: {e}")
            opened = False

        if not opened:
            self._emit_status(
                "Could not open a browser automatically. Please open the URL above manually."
            )

    async def run(self) -> CredentialRecord:
        """Execute the complete authorization flow.

        Returns:
            CredentialRecord from the code exchange

        Raises:
            ListenerBindError: The callback port could not be bound
            ProviderDeniedError, StateMismatchError, MissingCodeError:
                The callback was rejected
            AuthorizationTimeoutError: The deadline passed
            TokenExchangeError: The code exchange failed
            OAuthFlowError: A run is already in progress on this flow, or the
                redirect URI is unusable
        """
        if self._active:
            raise OAuthFlowError("An authorization flow is already in progress")

        self._active = True
        try:
            return await self._run_session()
        finally:
            self._active = False

    async def _run_session(self) -> CredentialRecord:
        state = generate_state()
        try:
            session = AuthorizationSession.for_redirect_uri(
                self.redirect_uri, state, self.callback_timeout
            )
        except ValueError as e:
            raise OAuthFlowError(str(e)) from e

        async with LocalhostCallbackServer(session) as callback_server:
            auth_url = build_authorization_url(
                self.authorize_url,
                self.exchanger.client_id,
                self.redirect_uri,
                state,
                self.scopes,
            )

            self._emit_status(f"Open this URL to authorize with Oura:\n{auth_url}")
            self._open_browser(auth_url)
            self._emit_status(
                f"Waiting up to {session.timeout:g} seconds for the callback on {self.redirect_uri}"
            )

            code = await callback_server.wait_for_callback()

        self._emit_status("Authorization received, exchanging code for tokens...")

        loop = asyncio.get_running_loop()
        try:
            record = await asyncio.wait_for(
                self.exchanger.exchange_code(code),
                timeout=session.remaining(loop.time()),
            )
        except TimeoutError:
            logger.warning("Code exchange did not finish before the authorization deadline")
            raise AuthorizationTimeoutError(session.timeout) from None

        return record
