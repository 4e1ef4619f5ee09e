from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tessera.config import MIN_JWT_SECRET_LENGTH
from tessera.logging import get_logger
from tessera.service.errors import ConfigError, TokenExpired, TokenInvalid

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    email: str
    session_id: str
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class RefreshClaims:
    subject: str
    session_id: str
    issued_at: int
    expires_at: int
    token_id: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenCodec:
    """HS256-signed access and refresh tokens with expiry claims."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "tessera",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._check_secret(secret)
        self._secret = secret.encode()
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
        )

    @staticmethod
    def _check_secret(secret: Optional[str]) -> None:
        if not secret or len(secret.encode()) < MIN_JWT_SECRET_LENGTH:
            raise ConfigError(
                f"token secret must be at least {MIN_JWT_SECRET_LENGTH} bytes"
            )

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        self._check_secret(self._secret.decode())
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _base_claims(self, subject: str, session_id: str, ttl_seconds: int) -> dict:
        now = int(self._clock())
        return {
            "sub": subject,
            "sid": session_id,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
        }

    def sign_access(self, subject: str, email: str, session_id: str) -> str:
        payload = self._base_claims(subject, session_id, self.access_ttl_seconds)
        payload["email"] = email
        payload["typ"] = ACCESS_TOKEN_TYPE
        return self._encode(payload)

    def sign_refresh(self, subject: str, session_id: str) -> str:
        payload = self._base_claims(subject, session_id, self.refresh_ttl_seconds)
        payload["typ"] = REFRESH_TOKEN_TYPE
        return self._encode(payload)

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalid("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        # Reject anything but HS256 before looking at the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed header") from None
        if not isinstance(header, dict):
            raise TokenInvalid("malformed header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("bad signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid("malformed payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed payload")
        if payload.get("iss") != self.issuer:
            raise TokenInvalid("wrong issuer")
        if payload.get("typ") != expected_type:
            raise TokenInvalid("wrong token type")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenInvalid("missing expiry")
        if exp <= self._clock():
            raise TokenExpired("token expired")
        for claim in ("sub", "sid", "iat", "jti"):
            if not payload.get(claim):
                raise TokenInvalid(f"missing claim {claim}")
        return payload

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(token, ACCESS_TOKEN_TYPE)
        if not payload.get("email"):
            raise TokenInvalid("missing claim email")
        return AccessClaims(
            subject=payload["sub"],
            email=payload["email"],
            session_id=payload["sid"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, REFRESH_TOKEN_TYPE)
        return RefreshClaims(
            subject=payload["sub"],
            session_id=payload["sid"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
        )

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        """Read claims without checking the signature. Diagnostics only."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            return None
        return payload if isinstance(payload, dict) else None

    @classmethod
    def expires_at(cls, token: str) -> Optional[datetime]:
        payload = cls.decode_unverified(token) or {}
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)
