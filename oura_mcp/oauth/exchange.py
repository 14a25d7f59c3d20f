"""Token endpoint calls: authorization-code exchange and refresh.

Both calls are a single form-encoded POST with no internal retry. Retry
policy belongs to the manager, which falls back to the interactive flow
rather than repeating a refresh the server already rejected.
"""

import logging
from typing import Any

import httpx

from ..config import OURA_TOKEN_URL
from .errors import NoRefreshTokenError, TokenExchangeError, UpstreamRejectedError
from .tokens import CredentialRecord

logger = logging.getLogger(__name__)

# Upper bound on how much of an error body is kept in exception messages
MAX_ERROR_BODY = 500


class TokenExchanger:
    """Client for the provider's token endpoint.

    Usage:
        exchanger = TokenExchanger(client_id, client_secret, redirect_uri)
        record = await exchanger.exchange_code(code)
        record = await exchanger.refresh(record.refresh_token)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        token_url: str = OURA_TOKEN_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the exchanger.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            redirect_uri: Redirect URI registered for the client
            token_url: Token endpoint URL
            http_client: Optional shared HTTP client (not closed here)
            timeout: Timeout for clients created per call
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_url = token_url
        self.http_client = http_client
        self.timeout = timeout

    async def exchange_code(self, code: str) -> CredentialRecord:
        """Exchange an authorization code for a credential record.

        Args:
            code: Authorization code from the callback

        Returns:
            New CredentialRecord

        Raises:
            UpstreamRejectedError: If the endpoint returns a non-2xx status
            TokenExchangeError: On network errors or an unusable response
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        }
        payload = await self._post("Token exchange", form)

        try:
            record = CredentialRecord.from_token_response(payload)
        except ValueError as e:
            raise TokenExchangeError(f"Token exchange returned an unusable response: {e}") from e

        logger.info("Exchanged authorization code for tokens")
        return record

    async def refresh(self, refresh_token: str | None) -> CredentialRecord:
        """Obtain a new credential record using a refresh token.

        Args:
            refresh_token: The current refresh token

        Returns:
            New CredentialRecord (keeps the old refresh token if the provider
            did not issue a new one)

        Raises:
            NoRefreshTokenError: If ``refresh_token`` is empty
            UpstreamRejectedError: If the endpoint returns a non-2xx status
            TokenExchangeError: On network errors or an unusable response
        """
        if not refresh_token:
            raise NoRefreshTokenError()

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        payload = await self._post("Token refresh", form)

        try:
            record = CredentialRecord.from_token_response(
                payload, fallback_refresh_token=refresh_token
            )
        except ValueError as e:
            raise TokenExchangeError(f"Token refresh returned an unusable response: {e}") from e

        logger.info("Refreshed access token")
        return record

    async def _post(self, operation: str, form: dict[str, str]) -> Any:
        """POST a form to the token endpoint and return the parsed JSON."""
        http = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self.http_client is None

        try:
            response = await http.post(
                self.token_url,
                data=form,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as e:
            raise TokenExchangeError(f"Network error during {operation.lower()}: {e}") from e
        finally:
            if should_close:
                await http.aclose()

        if not response.is_success:
            body = response.text[:MAX_ERROR_BODY]
            logger.warning(f"{operation} rejected with HTTP {response.status_code}")
            raise UpstreamRejectedError(operation, response.status_code, body)

        try:
            return response.json()
        except ValueError as e:
            raise TokenExchangeError(f"{operation} returned invalid JSON") from e
