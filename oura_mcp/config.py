"""Settings loading for the Oura OAuth client.

Settings come from the environment, optionally seeded from a dotenv file:

    OURA_CLIENT_ID       OAuth client ID (required for authentication)
    OURA_CLIENT_SECRET   OAuth client secret (required for authentication)
    OURA_REDIRECT_URI    Registered redirect URI (default http://localhost:3000/callback)
    OURA_TOKEN_DIR       Directory holding tokens.json (default ~/.oura-mcp)
    OURA_AUTH_TIMEOUT    Seconds to wait for the browser callback (default 120)
    OURA_SCOPES          Space-separated scopes to request
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

# Oura endpoints
OURA_AUTHORIZE_URL = "https://cloud.ouraring.com/oauth/authorize"
OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"
OURA_API_BASE_URL = "https://api.ouraring.com/v2"
OURA_APPLICATIONS_URL = "https://cloud.ouraring.com/oauth/applications"

DEFAULT_SCOPES = ["email", "personal", "daily", "heartrate", "workout", "tag", "session", "spo2"]
DEFAULT_REDIRECT_URI = "http://localhost:3000/callback"
DEFAULT_TOKEN_DIR = Path.home() / ".oura-mcp"
DEFAULT_AUTH_TIMEOUT = 120.0  # seconds

# Refresh this long before the provider's expiry to absorb clock skew and
# in-flight request latency
EXPIRY_BUFFER_MS = 5 * 60 * 1000

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path("credentials.env"),
    Path(".env"),
    DEFAULT_TOKEN_DIR / ".env",
]


class ConfigError(Exception):
    """Missing or invalid configuration."""

    def __init__(self, message: str, help_text: str | None = None):
        self.help_text = help_text
        super().__init__(message)


@dataclass
class OAuthSettings:
    """Everything the OAuth core needs to know about the deployment."""

    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    authorize_url: str = OURA_AUTHORIZE_URL
    token_url: str = OURA_TOKEN_URL
    api_base_url: str = OURA_API_BASE_URL
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    token_dir: Path = DEFAULT_TOKEN_DIR
    auth_timeout: float = DEFAULT_AUTH_TIMEOUT
    expiry_buffer_ms: int = EXPIRY_BUFFER_MS
    env_path: Path | None = None

    def has_client_credentials(self) -> bool:
        return bool(self.client_id) and bool(self.client_secret)


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the dotenv file, checking the working directory then the token dir."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _parse_timeout(raw: str) -> float:
    try:
        timeout = float(raw)
    except ValueError:
        raise ConfigError(f"OURA_AUTH_TIMEOUT must be a number of seconds, got {raw!r}") from None
    if not 0 < timeout < float("inf"):
        raise ConfigError(f"OURA_AUTH_TIMEOUT must be a positive, finite number, got {raw!r}")
    return timeout


def _validate_redirect_uri(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme != "http" or not parsed.hostname:
        raise ConfigError(
            f"OURA_REDIRECT_URI must be a local http:// URL, got {uri!r}",
            help_text="Example: OURA_REDIRECT_URI=http://localhost:3000/callback",
        )
    return uri


def load_settings(
    env_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    require_credentials: bool = True,
) -> OAuthSettings:
    """Load settings from the environment and an optional dotenv file.

    Values already present in the environment win over the dotenv file.

    Args:
        env_path: Explicit path to a dotenv file (optional)
        environ: Environment mapping to read (defaults to ``os.environ``)
        require_credentials: Fail if the client ID or secret is missing

    Returns:
        OAuthSettings

    Raises:
        ConfigError: If required values are missing or invalid
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    env = os.environ if environ is None else environ

    client_id = env.get("OURA_CLIENT_ID", "").strip()
    client_secret = env.get("OURA_CLIENT_SECRET", "").strip()
    if require_credentials and not (client_id and client_secret):
        raise ConfigError(
            "OURA_CLIENT_ID and OURA_CLIENT_SECRET must be provided.",
            help_text=(
                f"Create an application at {OURA_APPLICATIONS_URL} and set both values "
                f"in the environment or in a credentials.env file."
            ),
        )

    settings = OAuthSettings(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=_validate_redirect_uri(
            env.get("OURA_REDIRECT_URI", "").strip() or DEFAULT_REDIRECT_URI
        ),
        env_path=env_file,
    )

    token_dir = env.get("OURA_TOKEN_DIR", "").strip()
    if token_dir:
        settings.token_dir = Path(token_dir).expanduser()

    timeout = env.get("OURA_AUTH_TIMEOUT", "").strip()
    if timeout:
        settings.auth_timeout = _parse_timeout(timeout)

    scopes = env.get("OURA_SCOPES", "").split()
    if scopes:
        settings.scopes = scopes

    return settings
