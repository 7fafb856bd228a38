from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from authkeep.config import Settings
from authkeep.logging import get_logger
from authkeep.service.errors import AuthenticationError

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    """Audience categories; a token is only accepted for the one it was issued for."""

    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class TokenError(AuthenticationError):
    """Base class for bearer token verification failures."""


class TokenExpiredError(TokenError):
    def __init__(self, message: str = "token has expired", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(TokenError):
    def __init__(self, message: str = "invalid token", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TokenAudienceError(TokenError):
    def __init__(self, message: str = "token not valid for this operation", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 JWT issuance and verification for every token purpose.

    Each purpose gets its own audience tag (``<jwt_audience>:<purpose>``).
    Refresh tokens are signed with the refresh key when one is configured.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)
        self._keys = {
            purpose: (
                settings.refresh_signing_secret
                if purpose is TokenPurpose.REFRESH
                else settings.jwt_secret
            ).encode()
            for purpose in TokenPurpose
        }

    def audience_for(self, purpose: TokenPurpose) -> str:
        return f"{self.settings.jwt_audience}:{purpose.value}"

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self, claims: dict[str, Any], purpose: TokenPurpose, ttl: timedelta
    ) -> str:
        token, _ = self._issue(claims, purpose, ttl, int(time.time()))
        return token

    def _issue(
        self, claims: dict[str, Any], purpose: TokenPurpose, ttl: timedelta, now: int
    ) -> tuple[str, int]:
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.audience_for(purpose),
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input, self._keys[purpose])}"
        return token, payload["exp"]

    def verify(self, token: str, purpose: TokenPurpose) -> dict[str, Any]:
        """Decode ``token`` and check it was issued for ``purpose``.

        Raises:
            TokenInvalidError: malformed token, unsupported algorithm, bad
                signature, or foreign issuer.
            TokenAudienceError: a genuine token minted for another purpose.
            TokenExpiredError: signature and audience are fine but ``exp`` has
                passed (beyond the configured leeway).
        """
        if not token or not token.isascii() or token.count(".") != 2:
            raise TokenInvalidError()
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalidError()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_key = self._keys[purpose]
        # Bytes, since compare_digest rejects non-ASCII str operands
        presented = sig_b64.encode()
        if not hmac.compare_digest(
            self._sign(signing_input, expected_key).encode(), presented
        ):
            # A token signed with another purpose's key is genuine but misdirected
            for key in set(self._keys.values()):
                if key != expected_key and hmac.compare_digest(
                    self._sign(signing_input, key).encode(), presented
                ):
                    raise TokenAudienceError()
            raise TokenInvalidError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError() from None
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        if payload.get("aud") != self.audience_for(purpose):
            raise TokenAudienceError()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError() from None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            raise TokenExpiredError()
        return payload

    def generate_tokens(self, claims: dict[str, Any]) -> TokenPair:
        """Issue an access and refresh token together with their absolute expiries."""
        now = int(time.time())
        access_token, access_exp = self._issue(
            claims, TokenPurpose.ACCESS, self.access_ttl, now
        )
        refresh_token, refresh_exp = self._issue(
            claims, TokenPurpose.REFRESH, self.refresh_ttl, now
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    @staticmethod
    def expires_at(payload: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
