from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Any, Optional

from usergate.logging import get_logger

logger = get_logger(__name__)


def new_token_value() -> str:
    """Opaque random value for one-time verification tokens."""
    return secrets.token_urlsafe(32)


class TokenIssuer:
    """Mints and checks HS256 bearer tokens encoding the user id."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        *,
        ttl_seconds: int,
        leeway_seconds: int = 120,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        # Allowance for small clock skew across nodes
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def generate(self, user_id: int) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "sub": str(user_id),
            "iat": now,
            "exp": now + self.ttl_seconds,
            # jti keeps tokens minted within the same second distinct
            "jti": uuid.uuid4().hex,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a token this issuer signed, or None.

        The session gate here authorizes on the session key alone; this is for
        services sharing ``JWT_SECRET`` that read the user id from the bearer
        token without a session lookup.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, TypeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload
