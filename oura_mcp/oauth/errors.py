"""Exception hierarchy for the OAuth credential lifecycle.

Every error raised by ``oura_mcp.oauth`` derives from :class:`OAuthError`, so
callers at the process boundary can catch one type. Subclasses carry the
structured details (HTTP status, provider error code, port) that the CLI and
log lines need.
"""


class OAuthError(Exception):
    """Base class for all OAuth errors."""

    pass


# Storage


class TokenStoreError(OAuthError):
    """Error writing or removing the persisted credential file."""

    pass


class StorageCorruptError(TokenStoreError):
    """Persisted credentials are missing, unreadable or incomplete.

    Only raised internally by the store; ``TokenStore.load()`` downgrades it
    to "no credentials".
    """

    pass


# Token endpoint


class TokenExchangeError(OAuthError):
    """Error talking to the token endpoint."""

    pass


class UpstreamRejectedError(TokenExchangeError):
    """The token endpoint answered with a non-success status."""

    def __init__(self, operation: str, status_code: int, body: str):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        super().__init__(f"{operation} failed (HTTP {status_code}): {body}")


class NoRefreshTokenError(TokenExchangeError):
    """A refresh was requested but no refresh token is available."""

    def __init__(self, message: str = "No refresh token available"):
        super().__init__(message)


# Interactive authorization


class OAuthFlowError(OAuthError):
    """Error during the interactive authorization flow."""

    pass


class ProviderDeniedError(OAuthFlowError):
    """The authorization server redirected back with an ``error``."""

    def __init__(self, error: str, description: str | None = None):
        self.error = error
        self.description = description
        detail = f" - {description}" if description else ""
        super().__init__(f"Authorization denied by provider: {error}{detail}")


class StateMismatchError(OAuthFlowError):
    """The callback ``state`` did not match the session's state."""

    def __init__(self) -> None:
        super().__init__("OAuth state mismatch in callback - possible CSRF attack")


class MissingCodeError(OAuthFlowError):
    """The callback carried no authorization code."""

    def __init__(self) -> None:
        super().__init__("No authorization code in callback")


class ListenerBindError(OAuthFlowError):
    """The local callback listener could not bind its port."""

    def __init__(self, port: int, message: str):
        self.port = port
        super().__init__(message)


class AuthorizationTimeoutError(OAuthFlowError):
    """No usable callback arrived before the session deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Authorization timed out after {timeout:g} seconds")


# Orchestrator


class NotAuthenticatedError(OAuthError):
    """Authorization headers requested before any successful authentication."""

    def __init__(self) -> None:
        super().__init__("Not authenticated. Call ensure_authenticated() first.")
