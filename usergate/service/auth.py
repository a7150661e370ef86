from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from usergate.config import Settings
from usergate.logging import get_logger
from usergate.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
)
from usergate.service.tokens import TokenIssuer, new_token_value
from usergate.storage.errors import ConstraintViolation, StoreUnavailable
from usergate.storage.models import Role, TokenPurpose, User, VerificationToken

logger = get_logger(__name__)

T = TypeVar("T")

TOPIC_USER_VERIFICATION = "user_verification"
TOPIC_RESET_PASSWORD = "reset_password"

MSG_USER_NOT_FOUND = "User not found"
MSG_TOKEN_INVALID = "Token expired or Invalid"
MSG_TOKEN_NOT_FOUND = "Token not found"
MSG_PASSWORD_INCORRECT = "password is incorrect"
MSG_MISSING_TOKEN = "Missing or Invalid Token"
MSG_INVALID_TOKEN = "Invalid Token"
MSG_SESSION_NOT_FOUND = "Session Not Found"


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, *, verified_only: bool = False
    ) -> Optional[User]: ...

    def get_role(self, name: str) -> Optional[Role]: ...


class TokenStore(Protocol):
    def create_verification_token(
        self,
        user_id: int,
        token: str,
        purpose: TokenPurpose,
        expires_at: datetime,
    ) -> VerificationToken: ...

    def get_verification_token(self, token: str) -> Optional[VerificationToken]: ...

    def verify_with_token(self, token_id: int) -> Optional[User]:
        """Consume the token and mark its owner verified as one unit of work.

        Returns None when the token was already consumed or deleted. Raises
        ConstraintViolation when the owner no longer exists; nothing is written
        in either case.
        """
        ...

    def reset_password_with_token(self, token_id: int, password_hash: str) -> Optional[User]:
        """Consume the token and replace its owner's password hash as one unit of work."""
        ...


class SessionStore(Protocol):
    async def set_session(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    async def get_session(self, key: str) -> Optional[Dict[str, Any]]: ...


class Notifier(Protocol):
    async def publish(self, recipient: str, body: str, topic: str) -> None: ...


class AuthStore(CredentialStore, TokenStore, Protocol):
    """A single backend holding both users and verification tokens."""


@dataclass
class AuthResult:
    user: User
    access_token: str


class AuthService:
    """Sign-in, sign-up, verification, password reset and session checks.

    The only component that coordinates the credential/token store, the
    session store and the notifier. Each public coroutine is one unit of
    work; failures surface as :class:`~usergate.service.errors.ServiceError`
    subclasses and are never retried here.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        notifier: Notifier,
        issuer: TokenIssuer,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.sessions = sessions
        self.notifier = notifier
        self.issuer = issuer
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    @property
    def session_ttl_seconds(self) -> int:
        return self.settings.session_ttl_seconds

    # -- collaborator plumbing -------------------------------------------------

    async def _store_call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking credential/token store call in a worker thread.

        The call shares the operation deadline with the other collaborators.
        ConstraintViolation is left for the caller to classify.
        """
        return await self._bounded(operation, asyncio.to_thread(fn, *args, **kwargs))

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a collaborator call under the operation deadline."""
        try:
            return await asyncio.wait_for(
                awaitable, timeout=self.settings.operation_timeout_seconds
            )
        except ConstraintViolation:
            raise
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable", operation=operation, error=exc.message
            )
            raise ServerError(
                f"{operation} failed",
                detail={"operation": operation, "transient": exc.transient},
            ) from exc
        except asyncio.TimeoutError as exc:
            self.logger.error(
                "external_call_timeout",
                operation=operation,
                timeout_seconds=self.settings.operation_timeout_seconds,
            )
            raise ServerError(
                f"{operation} timed out",
                detail={"operation": operation, "transient": True},
            ) from exc
        except Exception as exc:
            self.logger.error(
                "external_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError(
                f"{operation} failed", detail={"operation": operation}
            ) from exc

    async def _notify(self, recipient: str, body: str, topic: str, *, user_id: int) -> bool:
        """Enqueue a notification after the records it refers to are committed.

        Failure never rolls anything back. It is logged and, only when
        ``notification_required`` is set, raised as ServerError.
        """
        try:
            await self._bounded("notify", self.notifier.publish(recipient, body, topic))
        except ServerError:
            self.logger.warning("notification_failed", topic=topic, user_id=user_id)
            if self.settings.notification_required:
                raise
            return False
        self.logger.info("notification_enqueued", topic=topic, user_id=user_id)
        return True

    # -- passwords --------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except Exception as exc:
            self.logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise ServerError("unable to hash password") from exc

    def verify_password(self, password_hash: str, password: str) -> bool:
        """Check a plaintext password against a stored argon2id hash."""
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- sessions ---------------------------------------------------------------

    async def _open_session(self, user: User) -> str:
        """Mint a bearer token and store the session keyed by it."""

        access_token = self.issuer.generate(user.id)
        session_data = {
            "user_id": user.id,
            "name": user.name,
            "email": user.email,
            "logged_in": True,
            "created_at": self._now().isoformat(),
            "token": access_token,
        }
        await self._bounded(
            "session_write",
            self.sessions.set_session(access_token, session_data, self.session_ttl_seconds),
        )
        return access_token

    async def _mint_verification_token(
        self, user: User, purpose: TokenPurpose, ttl: timedelta
    ) -> VerificationToken:
        try:
            return await self._store_call(
                "create_verification_token",
                self.store.create_verification_token,
                user.id,
                new_token_value(),
                purpose,
                self._now() + ttl,
            )
        except ConstraintViolation as exc:
            self.logger.error(
                "verification_token_create_failed",
                user_id=user.id,
                purpose=purpose.value,
                error=exc.message,
            )
            raise ServerError("unable to create verification token") from exc

    async def _check_verification_token(
        self, raw_token: str, purpose: TokenPurpose
    ) -> VerificationToken:
        """Look up a one-time token and require it to be issued for ``purpose``.

        Nothing is consumed here; the store consumes the token together with
        the write it authorizes.
        """
        record = await self._store_call(
            "get_verification_token", self.store.get_verification_token, raw_token
        )
        if not record:
            self.logger.warning(
                "verification_token_not_found",
                purpose=purpose.value,
                token_prefix=raw_token[:8],
            )
            raise NotFoundError(MSG_TOKEN_NOT_FOUND)
        now = self._now()
        if not record.is_usable_for(purpose, now):
            self.logger.warning(
                "verification_token_rejected",
                purpose=purpose.value,
                token_purpose=record.purpose.value,
                state=record.state(now).value,
                user_id=record.user_id,
            )
            raise AuthenticationError(MSG_TOKEN_INVALID)
        return record

    async def _redeem_verification_token(
        self,
        record: VerificationToken,
        operation: str,
        fn: Callable[..., Optional[User]],
        *args,
    ) -> User:
        """Consume ``record`` and apply its write through one atomic store call.

        A failed call leaves the token usable; a lost compare-and-set means a
        concurrent presentation already redeemed it.
        """
        try:
            user = await self._store_call(operation, fn, record.id, *args)
        except ConstraintViolation as exc:
            self.logger.warning(
                "verification_token_owner_missing",
                operation=operation,
                user_id=record.user_id,
                error=exc.message,
            )
            raise NotFoundError(MSG_USER_NOT_FOUND) from exc
        if not user:
            self.logger.warning(
                "verification_token_replayed",
                purpose=record.purpose.value,
                user_id=record.user_id,
            )
            raise AuthenticationError(MSG_TOKEN_INVALID)
        return user

    # -- operations ---------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> AuthResult:
        user = await self._store_call(
            "get_user_by_email",
            self.store.get_user_by_email,
            email,
            verified_only=True,
        )
        if not user:
            self.logger.warning("sign_in_user_not_found")
            raise NotFoundError(MSG_USER_NOT_FOUND)
        if not self.verify_password(user.password_hash, password):
            self.logger.warning("sign_in_password_mismatch", user_id=user.id)
            raise AuthenticationError(MSG_PASSWORD_INCORRECT)
        access_token = await self._open_session(user)
        self.logger.info("sign_in_succeeded", user_id=user.id)
        return AuthResult(user=user, access_token=access_token)

    async def sign_up(
        self,
        name: str,
        email: str,
        password: str,
        *,
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        phone: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> User:
        password_hash = self.hash_password(password)
        role = await self._store_call("get_role", self.store.get_role, self.settings.default_role)
        if not role:
            self.logger.error("default_role_missing", role=self.settings.default_role)
            raise ServerError("default role is not configured")
        try:
            user = await self._store_call(
                "create_user",
                self.store.create_user,
                name,
                email,
                password_hash,
                role=role.name,
                address=address,
                lat=lat,
                lng=lng,
                phone=phone,
                photo=photo,
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                self.logger.warning("sign_up_email_conflict")
                raise ConflictError("email already exists", detail={"field": "email"}) from exc
            self.logger.error("sign_up_constraint_failed", error=exc.message)
            raise ServerError("unable to create user") from exc

        record = await self._mint_verification_token(
            user,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(minutes=self.settings.verification_token_ttl_minutes),
        )
        link = f"{self.settings.url_verify_account}?token={record.token}"
        await self._notify(
            user.email,
            f"Please verify your account with click link below: {link}",
            TOPIC_USER_VERIFICATION,
            user_id=user.id,
        )
        self.logger.info("sign_up_succeeded", user_id=user.id, role=role.name)
        return user

    async def verify_account(self, raw_token: str) -> AuthResult:
        record = await self._check_verification_token(raw_token, TokenPurpose.EMAIL_VERIFICATION)
        user = await self._redeem_verification_token(
            record, "verify_with_token", self.store.verify_with_token
        )
        access_token = await self._open_session(user)
        self.logger.info("account_verified", user_id=user.id)
        return AuthResult(user=user, access_token=access_token)

    async def forgot_password(self, email: str) -> None:
        user = await self._store_call(
            "get_user_by_email",
            self.store.get_user_by_email,
            email,
            verified_only=True,
        )
        if not user:
            self.logger.warning("forgot_password_user_not_found")
            raise NotFoundError(MSG_USER_NOT_FOUND)
        record = await self._mint_verification_token(
            user,
            TokenPurpose.RESET_PASSWORD,
            timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        link = f"{self.settings.url_forgot_password.rstrip('/')}/forgot-password?token={record.token}"
        await self._notify(
            user.email,
            f"Please click link below for reset password: {link}",
            TOPIC_RESET_PASSWORD,
            user_id=user.id,
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def update_password(self, raw_token: str, new_password: str) -> None:
        password_hash = self.hash_password(new_password)
        record = await self._check_verification_token(raw_token, TokenPurpose.RESET_PASSWORD)
        user = await self._redeem_verification_token(
            record,
            "reset_password_with_token",
            self.store.reset_password_with_token,
            password_hash,
        )
        self.logger.info("password_updated", user_id=user.id)

    async def validate_session(self, token: Optional[str]) -> Dict[str, Any]:
        """Return the stored session for ``token``; the key's presence authorises."""
        if not token:
            raise AuthenticationError(MSG_MISSING_TOKEN)
        session = await self._bounded("session_read", self.sessions.get_session(token))
        if session is None:
            self.logger.warning("session_lookup_missed", token_prefix=token[:8])
            raise AuthenticationError(MSG_INVALID_TOKEN)
        if not session:
            raise AuthenticationError(MSG_SESSION_NOT_FOUND)
        return session

    async def authenticate(self, authorization: Optional[str]) -> Dict[str, Any]:
        """Session gate for an ``Authorization`` header value."""
        token = self._extract_bearer(authorization)
        if not token:
            self.logger.warning("session_gate_missing_token")
            raise AuthenticationError(MSG_MISSING_TOKEN)
        return await self.validate_session(token)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
