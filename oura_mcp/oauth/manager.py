"""High-level OAuth manager for the Oura API.

This module provides the one interface the rest of the process uses:
``ensure_authenticated()`` once at startup, then
``get_authorization_headers()`` and ``get_base_url()`` for every upstream
request.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from ..config import OAuthSettings
from .errors import NotAuthenticatedError, TokenExchangeError, TokenStoreError
from .exchange import TokenExchanger
from .flow import AuthorizationFlow
from .store import TokenStore
from .tokens import CredentialRecord, CredentialState

logger = logging.getLogger(__name__)


def _stderr_status(message: str) -> None:
    """Default status sink; stdout may be reserved for protocol traffic."""
    print(message, file=sys.stderr, flush=True)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Non-secret summary of the stored credentials.

    Attributes:
        authenticated: Whether a complete credential record exists
        expired: Whether the access token is expired or inside the refresh buffer
        expires_at: Expiry (ISO format string)
        expires_in_human: Human-readable time until expiry (e.g., "45 minutes")
        has_refresh_token: Whether a refresh token is available
        token_file: Where the record is persisted
    """

    authenticated: bool = False
    expired: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    token_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "token_file": self.token_file,
        }


@dataclass
class OAuthManager:
    """Decides, per request, whether credentials are usable, refreshable or
    must be replaced interactively.

    Each manager owns its :class:`CredentialState`; managers never share
    in-memory credentials.

    Usage:
        manager = OAuthManager(load_settings())
        await manager.ensure_authenticated()

        headers = await manager.get_authorization_headers()
        url = f"{manager.get_base_url()}/usercollection/personal_info"
    """

    settings: OAuthSettings
    store: TokenStore | None = None
    exchanger: TokenExchanger | None = None
    state: CredentialState = field(default_factory=CredentialState)
    on_status: Callable[[str], None] | None = _stderr_status
    browser_opener: Callable[[str], bool] | None = None

    _store: TokenStore = field(init=False, repr=False)
    _exchanger: TokenExchanger = field(init=False, repr=False)
    _refresh_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        """Use the given store and exchanger, or build defaults from settings."""
        self._store = self.store or TokenStore(self.settings.token_dir)
        self._exchanger = self.exchanger or TokenExchanger(
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            redirect_uri=self.settings.redirect_uri,
            token_url=self.settings.token_url,
        )

    @property
    def token_store(self) -> TokenStore:
        """Get the token store."""
        return self._store

    @property
    def token_exchanger(self) -> TokenExchanger:
        """Get the token exchanger."""
        return self._exchanger

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        if self.on_status:
            self.on_status(message)

    def _is_expired(self, record: CredentialRecord) -> bool:
        return record.is_expired(buffer_ms=self.settings.expiry_buffer_ms)

    def _adopt(self, record: CredentialRecord) -> None:
        """Make ``record`` current and persist it.

        A failed write is logged but does not fail authentication; the
        record is still used for the life of the process.
        """
        self.state.replace(record)
        try:
            self.token_store.save(record)
        except TokenStoreError as e:
            logger.warning(f"Credentials are valid but could not be persisted: {e}")

    def create_flow(self) -> AuthorizationFlow:
        """Build the interactive flow for this manager's settings."""
        return AuthorizationFlow(
            exchanger=self.token_exchanger,
            authorize_url=self.settings.authorize_url,
            scopes=self.settings.scopes,
            callback_timeout=self.settings.auth_timeout,
            on_status=self.on_status,
            browser_opener=self.browser_opener,
        )

    async def ensure_authenticated(self) -> CredentialRecord:
        """Make sure a usable credential record is held.

        Order of preference: a valid held or stored record, a refreshed
        record, a record from the interactive flow. Safe to call repeatedly.

        Returns:
            The credential record now in use

        Raises:
            OAuthFlowError: The interactive flow failed (fatal for the caller)
            TokenExchangeError: The code exchange at the end of the flow failed
        """
        held = self.state.record
        if held is not None and not self._is_expired(held):
            return held

        candidate = self.token_store.load() or held
        if candidate is not None:
            self.state.replace(candidate)

            if not self._is_expired(candidate):
                self._emit_status("Using cached Oura credentials.")
                return candidate

            self._emit_status("Oura access token expired, attempting refresh...")
            try:
                refreshed = await self.token_exchanger.refresh(candidate.refresh_token)
            except TokenExchangeError as e:
                logger.warning(f"Token refresh failed: {e}")
                self._emit_status("Token refresh failed, re-authorization required.")
                # Never keep a token the server already rejected
                self.clear_credentials()
            else:
                self._adopt(refreshed)
                self._emit_status("Token refreshed successfully.")
                return refreshed

        self._emit_status("No valid Oura credentials found. Starting OAuth authorization...")
        record = await self.create_flow().run()
        self._adopt(record)
        self._emit_status("Authorization successful. Credentials saved.")
        return record

    async def get_authorization_headers(self) -> dict[str, str]:
        """Headers for an upstream API request.

        Refreshes the held record first if it is inside the expiry buffer.
        Never starts the interactive flow.

        Raises:
            NotAuthenticatedError: If ensure_authenticated() has not succeeded
            TokenExchangeError: If a needed refresh fails
        """
        record = self.state.record
        if record is None:
            raise NotAuthenticatedError()

        if self._is_expired(record):
            record = await self._refresh_held()

        return {
            "Authorization": record.get_auth_header(),
            "Content-Type": "application/json",
        }

    async def _refresh_held(self) -> CredentialRecord:
        """Refresh the held record, once, for all concurrent callers."""
        async with self._refresh_lock:
            record = self.state.record
            if record is None:
                raise NotAuthenticatedError()

            # Another caller may have refreshed while we waited
            if not self._is_expired(record):
                return record

            logger.info("Access token inside the expiry buffer, refreshing")
            refreshed = await self.token_exchanger.refresh(record.refresh_token)
            self._adopt(refreshed)
            return refreshed

    def get_base_url(self) -> str:
        """Base URL of the upstream Oura API."""
        return self.settings.api_base_url

    def clear_credentials(self) -> bool:
        """Forget credentials on disk and in memory.

        Returns:
            True if a stored or held record existed
        """
        existed = self.state.has_record()
        self.state.clear()
        try:
            existed = self.token_store.clear() or existed
        except TokenStoreError as e:
            logger.warning(f"Could not remove stored credentials: {e}")
        return existed

    def logout(self) -> bool:
        """Remove stored authentication.

        Note: tokens are not revoked server-side.

        Returns:
            True if credentials were removed, False if there were none
        """
        removed = self.clear_credentials()
        if removed:
            logger.info("Logged out of Oura")
        return removed

    def get_auth_status(self) -> AuthStatus:
        """Get authentication status from the held or stored record."""
        record = self.state.record or self.token_store.load()
        token_file = str(self.token_store.path)

        if record is None:
            return AuthStatus(authenticated=False, token_file=token_file)

        return AuthStatus(
            authenticated=True,
            expired=self._is_expired(record),
            expires_at=record.expires_at_datetime().isoformat(),
            expires_in_human=_format_timedelta(record.expires_in()),
            has_refresh_token=bool(record.refresh_token),
            token_file=token_file,
        )
