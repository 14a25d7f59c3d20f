"""Credential record and in-memory credential state.

A :class:`CredentialRecord` is the unit of persisted authentication state.
It is immutable: a refresh produces a new record rather than updating the
old one. :class:`CredentialState` is the per-manager holder of the record
currently in use.
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ..config import EXPIRY_BUFFER_MS

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{key}' must be a non-empty string")
    return value


def _require_timestamp(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' must be a positive epoch-millisecond timestamp")
    return int(value)


@dataclass(frozen=True)
class CredentialRecord:
    """Access token, refresh token and absolute expiry.

    Attributes:
        access_token: Bearer token for upstream API calls
        refresh_token: Token used to obtain a new access token
        expires_at: Expiry as epoch milliseconds
    """

    access_token: str
    refresh_token: str
    expires_at: int

    def is_expired(self, buffer_ms: int = EXPIRY_BUFFER_MS, now: int | None = None) -> bool:
        """Check whether the access token is expired or about to expire.

        Args:
            buffer_ms: Treat the token as expired this many milliseconds
                before ``expires_at``.
            now: Current time in epoch milliseconds (defaults to the clock)

        Returns:
            True unless ``expires_at`` is more than ``buffer_ms`` away
        """
        current = now_ms() if now is None else now
        return current >= self.expires_at - buffer_ms

    def expires_in(self, now: int | None = None) -> timedelta:
        """Time left until ``expires_at`` (negative once expired)."""
        current = now_ms() if now is None else now
        return timedelta(milliseconds=self.expires_at - current)

    def expires_at_datetime(self) -> datetime:
        """Expiry as a timezone-aware UTC datetime."""
        return datetime.fromtimestamp(self.expires_at / 1000, tz=timezone.utc)

    def get_auth_header(self) -> str:
        """Authorization header value for this record."""
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON layout."""
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CredentialRecord":
        """Deserialize from the on-disk JSON layout.

        Raises:
            ValueError: If ``data`` is not a complete record. Partial records
                are never returned.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        return cls(
            access_token=_require_str(data, "accessToken"),
            refresh_token=_require_str(data, "refreshToken"),
            expires_at=_require_timestamp(data, "expiresAt"),
        )

    @classmethod
    def from_token_response(
        cls,
        response: Any,
        fallback_refresh_token: str | None = None,
    ) -> "CredentialRecord":
        """Build a record from a token endpoint JSON response.

        Args:
            response: Parsed JSON from the token endpoint
            fallback_refresh_token: Refresh token to keep when the provider
                does not rotate it

        Raises:
            ValueError: If the response lacks ``access_token``, a refresh
                token or a finite, non-negative ``expires_in``
        """
        if not isinstance(response, dict):
            raise ValueError("token response is not a JSON object")

        access_token = _require_str(response, "access_token")

        refresh_token = response.get("refresh_token") or fallback_refresh_token
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("token response has no refresh_token")

        expires_in = response.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float, str)):
            raise ValueError("token response has no expires_in")
        try:
            lifetime_seconds = float(expires_in)
        except ValueError:
            raise ValueError(f"expires_in is not numeric: {expires_in!r}") from None
        if not math.isfinite(lifetime_seconds) or lifetime_seconds < 0:
            raise ValueError(f"expires_in must be a finite, non-negative number: {expires_in!r}")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + int(lifetime_seconds * 1000),
        )


@dataclass
class CredentialState:
    """The credential record an :class:`OAuthManager` currently holds.

    The record is only ever swapped as a whole, so readers never see a
    half-updated record.
    """

    record: CredentialRecord | None = None

    def replace(self, record: CredentialRecord) -> None:
        self.record = record

    def clear(self) -> None:
        self.record = None

    def has_record(self) -> bool:
        return self.record is not None
