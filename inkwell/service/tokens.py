from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from inkwell.logging import get_logger

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def token_fingerprint(token: str) -> str:
    """Stable short key for a token, used for cache keys and log fields."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenSigner:
    """HS256 JWT issuance and verification.

    ``iat`` is emitted with microsecond precision so a token minted right after
    a revocation compares strictly later than the revocation cutoff.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        leeway: timedelta = timedelta(seconds=120),
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        # Allowance for small clock skew across nodes
        self.leeway = leeway

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self,
        claims: dict[str, Any],
        *,
        ttl: Optional[timedelta] = None,
        issued_at: Optional[datetime] = None,
    ) -> str:
        now = issued_at or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": round(now.timestamp(), 6),
            "exp": int((now + (ttl or self.access_ttl)).timestamp()),
            "jti": str(uuid.uuid4()),
            **claims,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims without checking signature or expiry."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, AttributeError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a correctly signed, unexpired token for this audience."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        payload = self.decode(token)
        if payload is None:
            logger.warning("jwt_payload_decode_failed")
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway.total_seconds():
            return None
        return payload
