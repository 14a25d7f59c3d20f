"""OAuth 2.0 credential lifecycle for the Oura API.

This package keeps a local process authenticated against the Oura
authorization server across restarts, involving the user only when no
stored or refreshable credentials exist.

Main Components:
    OAuthManager: Decides between cached, refreshed and interactive credentials
    AuthorizationFlow: Browser-based authorization code flow
    LocalhostCallbackServer: Ephemeral listener for the OAuth redirect
    TokenExchanger: Token endpoint client (code exchange, refresh)
    TokenStore: Atomic, owner-only JSON storage
    CredentialRecord: Access token, refresh token and expiry

Quick Start:
    from oura_mcp.config import load_settings
    from oura_mcp.oauth import OAuthManager

    manager = OAuthManager(load_settings())
    await manager.ensure_authenticated()

    headers = await manager.get_authorization_headers()
    base_url = manager.get_base_url()
"""

from .callback import (
    AuthorizationSession,
    CallbackResult,
    LocalhostCallbackServer,
    parse_callback_url,
)
from .errors import (
    AuthorizationTimeoutError,
    ListenerBindError,
    MissingCodeError,
    NoRefreshTokenError,
    NotAuthenticatedError,
    OAuthError,
    OAuthFlowError,
    ProviderDeniedError,
    StateMismatchError,
    StorageCorruptError,
    TokenExchangeError,
    TokenStoreError,
    UpstreamRejectedError,
)
from .exchange import TokenExchanger
from .flow import AuthorizationFlow, build_authorization_url, generate_state
from .manager import AuthStatus, OAuthManager
from .store import TokenStore
from .tokens import CredentialRecord, CredentialState

__all__ = [
    # Manager (main entry point)
    "OAuthManager",
    "AuthStatus",
    # Flow
    "AuthorizationFlow",
    "build_authorization_url",
    "generate_state",
    # Callback
    "AuthorizationSession",
    "CallbackResult",
    "LocalhostCallbackServer",
    "parse_callback_url",
    # Token endpoint
    "TokenExchanger",
    # Storage
    "TokenStore",
    # Tokens
    "CredentialRecord",
    "CredentialState",
    # Errors
    "OAuthError",
    "TokenStoreError",
    "StorageCorruptError",
    "TokenExchangeError",
    "UpstreamRejectedError",
    "NoRefreshTokenError",
    "OAuthFlowError",
    "ProviderDeniedError",
    "StateMismatchError",
    "MissingCodeError",
    "ListenerBindError",
    "AuthorizationTimeoutError",
    "NotAuthenticatedError",
]
