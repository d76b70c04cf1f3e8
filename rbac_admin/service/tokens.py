from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from rbac_admin.config import Settings
from rbac_admin.logging import get_logger
from rbac_admin.service.errors import TokenExpired, TokenKindMismatch, TokenMalformed
from rbac_admin.storage.models import TokenKind, User

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    username: str
    email: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str


class TokenService:
    """Signs and verifies HS256 bearer tokens carrying identity and token kind.

    Tokens are never stored or revoked server-side; expiry is the only way a
    token stops being accepted. ``verify`` depends only on the token, the
    secret and the clock.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is required to sign tokens")
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self._clock = clock or _utcnow
        self._ttls = {
            TokenKind.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenKind.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
            TokenKind.RESET_PASSWORD: timedelta(minutes=settings.reset_token_ttl_minutes),
        }

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[kind]

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user: User, kind: TokenKind) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "sub": str(user.id),
            "username": user.username,
            "email": user.email,
            "type": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[kind]).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_pair(self, user: User) -> dict[str, Any]:
        """Mint an access and a refresh token for ``user``."""
        return {
            "access_token": self.issue(user, TokenKind.ACCESS),
            "refresh_token": self.issue(user, TokenKind.REFRESH),
            "token_type": "Bearer",
            "expires_in": int(self._ttls[TokenKind.ACCESS].total_seconds()),
        }

    def verify(self, token: str, expected_kind: Optional[TokenKind] = None) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenMalformed("Malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenMalformed("Malformed token header") from None
        # Only HS256 is accepted, whatever the header claims
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenMalformed("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenMalformed("Invalid token signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenMalformed("Malformed token payload") from None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            raise TokenMalformed("Invalid token issuer")

        try:
            user_id = int(payload["sub"])
            kind = TokenKind(payload["type"])
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            username = str(payload["username"])
            email = str(payload["email"])
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise TokenMalformed("Token claims are incomplete") from None

        if expires_at <= self._clock():
            raise TokenExpired("Token has expired")
        if expected_kind is not None and kind != expected_kind:
            raise TokenKindMismatch(
                f"Expected a {expected_kind.value} token, got {kind.value}"
            )
        return TokenClaims(
            user_id=user_id,
            username=username,
            email=email,
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(payload.get("jti") or ""),
        )
