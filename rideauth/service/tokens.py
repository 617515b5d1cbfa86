from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from rideauth.logging import get_logger
from rideauth.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)

TOKEN_ISSUER = "elyte-platform"
TOKEN_AUDIENCE = "elyte-platform-users"

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return int((self.expires_at - self.issued_at).total_seconds())


def fingerprint(token: str) -> str:
    """SHA-256 hex digest under which a token is referenced at rest."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Mints and verifies HS256 bearer tokens.

    Pure transform: no storage access. Tokens from another issuer or
    audience are rejected even when correctly signed.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret is required")
        self._secret = secret.encode("utf-8")
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def issue_access_token(self, account_id: str, role: str, verified: bool) -> IssuedToken:
        return self._issue(
            {"sub": account_id, "role": role, "verified": bool(verified)},
            ACCESS,
            self.access_ttl,
        )

    def issue_refresh_token(self, account_id: str) -> IssuedToken:
        return self._issue(
            {"sub": account_id, "sid": secrets.token_hex(16)},
            REFRESH,
            self.refresh_ttl,
        )

    def _issue(self, claims: dict[str, Any], token_type: str, ttl: timedelta) -> IssuedToken:
        now = self._now()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "token_type": token_type,
            "iss": TOKEN_ISSUER,
            "aud": TOKEN_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
        }
        return IssuedToken(
            token=self._encode_jwt(payload),
            token_type=token_type,
            jti=jti,
            issued_at=now,
            expires_at=expires_at,
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises ``TokenInvalid`` for structural, algorithm, signature, issuer
        or audience problems and ``TokenExpired`` once ``exp`` has passed.
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("token missing")
        # Compact JWTs are base64url; anything else cannot be signed or compared
        if not token.isascii():
            raise TokenInvalid("token is not a compact JWT")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("token is not a compact JWT")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("token header unreadable")
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("token payload unreadable")
        if not isinstance(payload, dict):
            raise TokenInvalid("token payload unreadable")

        if payload.get("iss") != TOKEN_ISSUER:
            raise TokenInvalid("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = TOKEN_AUDIENCE in aud
        else:
            valid_aud = aud == TOKEN_AUDIENCE
        if not valid_aud:
            raise TokenInvalid("token audience mismatch")
        if payload.get("token_type") not in (ACCESS, REFRESH) or not payload.get("sub"):
            raise TokenInvalid("token claims incomplete")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("token expiry missing")
        if exp_ts <= self._now().timestamp() - self.leeway.total_seconds():
            raise TokenExpired()
        return payload

    @staticmethod
    def fingerprint(token: str) -> str:
        return fingerprint(token)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"
