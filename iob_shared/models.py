"""
Core data models for the IoB client SDK.

This module defines the data structures owned by the token lifecycle
components: tokens, the persisted auth bundle, the login payload and the
read-only authentication state snapshot.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class AuthStatus(Enum):
    """Lifecycle states of an auth manager."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class Token:
    """A bearer token with its issue and expiry instants."""
    value: str
    issued_at: datetime
    expires_at: datetime

    def __post_init__(self):
        if not isinstance(self.value, str):
            raise ValueError("Token value must be a string")
        if not self.value:
            raise ValueError("Token value cannot be empty")
        if self.expires_at <= self.issued_at:
            raise ValueError("Token must expire after it was issued")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> float:
        return (self.expires_at - (now or utcnow())).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Token':
        return cls(
            value=data["value"],
            issued_at=_parse_timestamp(data["issued_at"]),
            expires_at=_parse_timestamp(data["expires_at"]),
        )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class StoredBundle:
    """
    The unit persisted and retrieved as a whole.

    The principal is an opaque identity record returned by the login
    handshake; it is carried through unchanged and never interpreted.
    """
    token: Token
    principal: Optional[Any] = None
    refresh_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token.to_dict(),
            "principal": self.principal,
            "refresh_token": self.refresh_token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoredBundle':
        return cls(
            token=Token.from_dict(data["token"]),
            principal=data.get("principal"),
            refresh_token=data.get("refresh_token"),
        )


@dataclass
class AuthPayload:
    """Raw result of a login or refresh handshake."""
    token: str
    expires_in: Optional[float] = None
    principal: Optional[Any] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthPayload':
        """Build a payload from a mapping using either snake or camel case keys."""
        return cls(
            token=data.get("token") or data.get("accessToken"),
            expires_in=data.get("expires_in", data.get("expiresIn")),
            principal=data.get("principal", data.get("user")),
            refresh_token=data.get("refresh_token", data.get("refreshToken")),
            token_type=data.get("token_type", data.get("tokenType")) or "Bearer",
        )


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of an auth manager's in-memory state."""
    status: AuthStatus = AuthStatus.UNINITIALIZED
    token: Optional[Token] = None
    principal: Optional[Any] = None
    is_authenticated: bool = False
    is_refreshing: bool = False
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
