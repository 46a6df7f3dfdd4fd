from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

SESSION_ID_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value) if value is not None else None
    return ensure_utc(datetime.fromisoformat(str(value)))


class SessionState(str, Enum):
    """Lifecycle of a session record.

    CREATED and REFRESHED are transient: a session that has been issued
    but never verified is CREATED, one whose access token was rotated is
    REFRESHED, and both read as ACTIVE to the verifier. REVOKED and
    EXPIRED are terminal.
    """

    CREATED = "created"
    ACTIVE = "active"
    REFRESHED = "refreshed"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.REVOKED, SessionState.EXPIRED)


@dataclass
class Identity:
    id: str
    email: str
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    identity_id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: datetime
    access_token_hash: str = ""
    refresh_token_hash: str = ""
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    is_active: bool = True
    refresh_count: int = 0

    @classmethod
    def new(
        cls,
        identity_id: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = ensure_utc(now or utcnow())
        return cls(
            id=secrets.token_hex(SESSION_ID_BYTES),
            identity_id=identity_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_used_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= ensure_utc(now)

    def state(self, now: datetime) -> SessionState:
        if not self.is_active:
            return SessionState.REVOKED
        if self.is_expired(now):
            return SessionState.EXPIRED
        if self.refresh_count:
            return SessionState.REFRESHED
        if self.last_used_at == self.created_at:
            return SessionState.CREATED
        return SessionState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "expires_at", "last_used_at"):
            data[key] = ensure_utc(data[key]).isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            identity_id=data["identity_id"],
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            last_used_at=_parse_dt(data.get("last_used_at") or data["created_at"]),
            access_token_hash=data.get("access_token_hash") or "",
            refresh_token_hash=data.get("refresh_token_hash") or "",
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            is_active=bool(data.get("is_active", True)),
            refresh_count=int(data.get("refresh_count") or 0),
        )


@dataclass
class RevokedToken:
    token_hash: str
    expires_at: datetime
    token_type: str = "access"
    session_id: Optional[str] = None
    revoked_at: datetime = field(default_factory=utcnow)
