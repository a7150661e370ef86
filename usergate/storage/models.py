from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """The single use-case a verification token is minted for."""

    EMAIL_VERIFICATION = "email_verification"
    RESET_PASSWORD = "reset_password"


class TokenState(str, Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass
class Role:
    id: int
    name: str


@dataclass
class User:
    id: int
    name: str
    email: str
    password_hash: str
    role: str = "Customer"
    is_verified: bool = False
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    phone: Optional[str] = None
    photo: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def profile(self) -> Dict[str, Any]:
        """Public view of the user, without the password hash."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_verified": self.is_verified,
            "address": self.address,
            "lat": self.lat,
            "lng": self.lng,
            "phone": self.phone,
            "photo": self.photo,
            "created_at": self.created_at,
        }


@dataclass
class VerificationToken:
    """One-time, purpose-scoped, time-bounded token.

    State is derived from the timestamps: a token is ``issued`` until it is
    consumed or passes ``expires_at``; a soft-deleted token counts as expired.
    """

    id: int
    user_id: int
    token: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    consumed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def state(self, now: Optional[datetime] = None) -> TokenState:
        now = now or _utcnow()
        if self.consumed_at is not None:
            return TokenState.CONSUMED
        if self.deleted_at is not None or self.expires_at <= now:
            return TokenState.EXPIRED
        return TokenState.ISSUED

    def is_usable_for(self, purpose: TokenPurpose, now: Optional[datetime] = None) -> bool:
        return self.purpose == purpose and self.state(now) == TokenState.ISSUED
