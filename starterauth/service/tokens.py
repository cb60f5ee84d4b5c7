from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from starterauth.config import Settings
from starterauth.logging import get_logger
from starterauth.service.errors import ErrorCodes, Ok, Result, fail

logger = get_logger(__name__)

# bytes of randomness per token kind, hex encoded on the wire
REFRESH_TOKEN_BYTES = 40
ONE_TIME_TOKEN_BYTES = 32


def generate_one_time_token() -> str:
    """Opaque token for email confirmation and password reset links."""
    return secrets.token_hex(ONE_TIME_TOKEN_BYTES)


class TokenIssuer:
    """Sign HS256 access tokens and mint opaque refresh tokens.

    Access tokens carry ``sub`` and ``email`` plus the registered ``iss``,
    ``aud``, ``iat``, ``exp`` and ``jti`` claims. Refresh tokens carry no claims;
    their meaning lives entirely in the credential store.
    """

    def __init__(self, settings: Settings, *, clock_skew_seconds: int = 30) -> None:
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=clock_skew_seconds)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_access_token(self, subject_id: str, email: str, *, now: Optional[datetime] = None) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "email": email,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.access_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def issue_refresh_token(self) -> str:
        return secrets.token_hex(REFRESH_TOKEN_BYTES)

    def refresh_expiry(self, *, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + self.refresh_ttl

    def verify_access_token(self, token: str) -> Result[dict[str, Any]]:
        """Check signature, issuer, audience and expiry.

        An intact token whose ``exp`` has passed yields ``AUTH.TOKEN_EXPIRED``;
        anything else that fails yields ``AUTH.INVALID_TOKEN``.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return fail(ErrorCodes.AUTH.TOKEN_EXPIRED, 401)
        if not payload.get("sub"):
            return fail(ErrorCodes.AUTH.INVALID_TOKEN, 401)
        return Ok(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a correctly signed token, ignoring ``exp``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        return payload


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
