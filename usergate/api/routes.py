from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query

from usergate.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    MessageResponse,
    SignInRequest,
    SignUpRequest,
    UpdatePasswordRequest,
    UserProfileResponse,
)
from usergate.logging import get_logger
from usergate.service.auth import AuthResult
from usergate.service.errors import AuthenticationError, ValidationError
from usergate.service.runtime import get_runtime
from usergate.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _profile(user: User) -> UserProfileResponse:
    return UserProfileResponse(**user.profile())


def _auth_response(result: AuthResult, ttl_seconds: int) -> AuthResponse:
    return AuthResponse(
        user=_profile(result.user),
        access_token=result.access_token,
        expires_in=ttl_seconds,
    )


def _require_query_token(token: Optional[str]) -> str:
    if not token or not token.strip():
        raise AuthenticationError("missing or invalid token")
    return token.strip()


async def get_session(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Route dependency: reject the request unless it carries a live session."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SignInRequest):
    """Authenticate a verified user with email and password.

    Raises:
        404: If no verified user has this email
        401: If the password is incorrect
    """
    runtime = get_runtime()
    result = await runtime.auth.sign_in(body.email, body.password)
    return Envelope(
        status="ok",
        data=_auth_response(result, runtime.auth.session_ttl_seconds),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignUpRequest):
    """Create an unverified account and send the verification link.

    Raises:
        422: If the password confirmation does not match
        409: If the email is already registered
    """
    if body.password != body.password_confirmation:
        raise ValidationError("Password not match", detail={"field": "password_confirmation"})
    runtime = get_runtime()
    user = await runtime.auth.sign_up(
        body.name,
        body.email,
        body.password,
        address=body.address,
        lat=body.lat,
        lng=body.lng,
        phone=body.phone,
        photo=body.photo,
    )
    return Envelope(status="ok", data=_profile(user))


@router.get("/auth/verify-account", response_model=Envelope, tags=["auth"])
async def verify_account(token: Optional[str] = Query(None, max_length=512)):
    """Consume an email verification token and open a session."""
    raw_token = _require_query_token(token)
    runtime = get_runtime()
    result = await runtime.auth.verify_account(raw_token)
    return Envelope(
        status="ok",
        data=_auth_response(result, runtime.auth.session_ttl_seconds),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Send a password reset link to a verified user."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message="Success"))


@router.post("/auth/update-password", response_model=Envelope, tags=["auth"])
async def update_password(
    body: UpdatePasswordRequest,
    token: Optional[str] = Query(None, max_length=512),
):
    """Consume a reset token and replace the owner's password."""
    raw_token = _require_query_token(token)
    if body.password_new != body.password_confirmation:
        raise ValidationError(
            "new password and confirm password does not match",
            detail={"field": "password_confirmation"},
        )
    runtime = get_runtime()
    await runtime.auth.update_password(raw_token, body.password_new)
    return Envelope(
        status="ok", data=MessageResponse(message="Password updated successfully")
    )


@router.get("/admin/check", response_model=Envelope, tags=["admin"])
async def admin_check(session: Dict[str, Any] = Depends(get_session)):
    logger.info("admin_check", user_id=session.get("user_id"))
    return Envelope(status="ok", data=MessageResponse(message="OK"))
