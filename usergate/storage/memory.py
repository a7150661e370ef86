from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from usergate.logging import get_logger
from usergate.storage.errors import ConstraintViolation
from usergate.storage.models import Role, TokenPurpose, User, VerificationToken


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-memory credential and token store for tests and local development."""

    def __init__(self, *, default_roles: tuple[str, ...] = ("Customer", "Admin")) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.roles: Dict[str, Role] = {}
        self.tokens: Dict[int, VerificationToken] = {}
        self._user_id_seq: int = 1
        self._token_id_seq: int = 1
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        for index, name in enumerate(default_roles, start=1):
            self.roles[name] = Role(id=index, name=name)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "Customer",
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        phone: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> User:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._user_id_seq,
                name=name,
                email=normalized,
                password_hash=password_hash,
                role=role,
                address=address,
                lat=lat,
                lng=lng,
                phone=phone,
                photo=photo,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(
        self, email: str, *, verified_only: bool = False
    ) -> Optional[User]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email != normalized:
                    continue
                if verified_only and not user.is_verified:
                    return None
                return user
        return None

    def update_password(self, user_id: int, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = _utcnow()
            return user

    def mark_verified(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            user.updated_at = _utcnow()
            return user

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(name)

    # -- verification tokens -------------------------------------------------

    def create_verification_token(
        self,
        user_id: int,
        token: str,
        purpose: TokenPurpose,
        expires_at: datetime,
    ) -> VerificationToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if any(existing.token == token for existing in self.tokens.values()):
                raise ConstraintViolation("token already exists", {"field": "token"})
            record = VerificationToken(
                id=self._token_id_seq,
                user_id=user_id,
                token=token,
                purpose=TokenPurpose(purpose),
                expires_at=expires_at,
            )
            self._token_id_seq += 1
            self.tokens[record.id] = record
            return record

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            for record in self.tokens.values():
                if record.token == token:
                    return record
        return None

    def _claim_and_apply(
        self, token_id: int, apply: Callable[[int], Optional[User]]
    ) -> Optional[User]:
        """Run ``apply`` on the token owner and consume the token in one step.

        Returns None when the token was already consumed or deleted. A failing
        ``apply`` leaves the token unconsumed.
        """
        with self._data_lock:
            record = self.tokens.get(token_id)
            if not record or record.consumed_at is not None or record.deleted_at is not None:
                return None
            user = apply(record.user_id)
            if not user:
                raise ConstraintViolation(
                    "user does not exist", {"field": "user_id", "user_id": record.user_id}
                )
            record.consumed_at = _utcnow()
            return user

    def verify_with_token(self, token_id: int) -> Optional[User]:
        return self._claim_and_apply(token_id, self.mark_verified)

    def reset_password_with_token(self, token_id: int, password_hash: str) -> Optional[User]:
        return self._claim_and_apply(
            token_id, lambda user_id: self.update_password(user_id, password_hash)
        )

    def ping(self) -> None:
        return None


class MemoryCache:
    """Process-local stand-in for the Redis session store and notification queues.

    Used only under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV; nothing survives a
    restart and nothing is shared across workers.
    """

    def __init__(self, *, queue_prefix: str = "notify:") -> None:
        self.queue_prefix = queue_prefix
        self._sessions: Dict[str, tuple[str, float]] = {}
        self.queues: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    async def set_session(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        payload = json.dumps(value, default=str)
        with self._lock:
            self._sessions[key] = (payload, time.monotonic() + ttl_seconds)

    async def get_session(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._sessions.get(key)
            if not entry:
                return None
            payload, expires_at = entry
            if expires_at <= time.monotonic():
                self._sessions.pop(key, None)
                return None
        data = json.loads(payload) if payload else {}
        return data if isinstance(data, dict) else {}

    async def session_ttl(self, key: str) -> int:
        """Remaining lifetime in seconds, -2 when the key does not exist."""
        with self._lock:
            entry = self._sessions.get(key)
            if not entry:
                return -2
            remaining = entry[1] - time.monotonic()
        if remaining <= 0:
            return -2
        return int(round(remaining))

    async def publish(self, recipient: str, body: str, topic: str) -> None:
        message = json.dumps({"email": recipient, "message": body})
        with self._lock:
            self.queues.setdefault(f"{self.queue_prefix}{topic}", []).append(message)

    def messages(self, topic: str) -> List[Dict[str, str]]:
        with self._lock:
            return [json.loads(raw) for raw in self.queues.get(f"{self.queue_prefix}{topic}", [])]

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
