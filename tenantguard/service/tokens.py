from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from tenantguard.logging import get_logger
from tenantguard.service.errors import TokenExpiredError, TokenMalformedError
from tenantguard.storage.models import TokenClaims

logger = get_logger(__name__)


class CredentialIssuer:
    """HS256 signer for session-bound bearer tokens.

    A token names a session and the principal's token version at issue time;
    whether that session is still live is decided elsewhere.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int,
        leeway_seconds: int = 30,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.leeway_seconds = leeway_seconds
        self.clock = clock or time.time

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

    def issue(self, principal_id: int, session_id: str, token_version: int) -> str:
        now = int(self.clock())
        payload = {
            "sub": str(principal_id),
            "sid": session_id,
            "ver": int(token_version),
            "iat": now,
            "exp": now + self.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Check signature, algorithm, issuer, audience and expiry.

        Raises ``TokenMalformedError`` for anything that is not a token this
        issuer signed and ``TokenExpiredError`` once ``exp`` (plus leeway) has
        passed.
        """

        if not token or not isinstance(token, str):
            raise TokenMalformedError(reason="token_missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformedError() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenMalformedError() from None
        # Reject anything but HS256 to prevent algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenMalformedError(reason="token_algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenMalformedError(reason="token_signature")

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError() from None
        if not isinstance(payload, dict):
            raise TokenMalformedError()

        if payload.get("iss") != self.issuer:
            raise TokenMalformedError(reason="token_issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformedError(reason="token_audience")

        try:
            claims = TokenClaims(
                session_id=str(payload["sid"]),
                principal_id=int(payload["sub"]),
                token_version=int(payload["ver"]),
                issued_at=int(payload.get("iat") or 0),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenMalformedError(reason="token_claims") from None
        if not claims.session_id:
            raise TokenMalformedError(reason="token_claims")

        if claims.expires_at <= self.clock() - self.leeway_seconds:
            raise TokenExpiredError()
        return claims
