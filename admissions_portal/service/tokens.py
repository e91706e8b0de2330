from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from admissions_portal.logging import get_logger
from admissions_portal.storage.models import Principal

logger = get_logger(__name__)

SESSION_TOKEN = "session"
PASSWORD_RESET_TOKEN = "password_reset"

_REQUIRED_CLAIMS = ("sub", "ver", "jti", "iat", "exp", "token_type")


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpired(TokenError):
    pass


class TokenMalformed(TokenError):
    pass


class BadSignature(TokenError):
    pass


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issues and verifies HS256-signed session tokens.

    The codec is stateless: the session version is an input to ``issue`` and
    a claim returned by ``verify``; comparing it with the current version is
    left to the caller.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 24 * 3600,
        reset_ttl_seconds: int = 3600,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.reset_ttl_seconds = reset_ttl_seconds
        self._clock = clock or time.time

    def issue(self, principal: Principal, version: int) -> str:
        return self._issue(principal, version, SESSION_TOKEN, self.ttl_seconds)

    def issue_password_reset(self, principal: Principal, version: int) -> str:
        return self._issue(principal, version, PASSWORD_RESET_TOKEN, self.reset_ttl_seconds)

    def _issue(self, principal: Principal, version: int, token_type: str, ttl: int) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal.id,
            "email": principal.email,
            "name": principal.name,
            "role": principal.role,
            "ver": int(version),
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
            "token_type": token_type,
        }
        return self._sign(payload)

    def _sign(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._digest(signing_input))}"

    def _digest(self, signing_input: str) -> bytes:
        return hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()

    def verify(self, token: str, *, token_type: str = SESSION_TOKEN) -> dict[str, Any]:
        """Return the claims of ``token`` or raise a ``TokenError``.

        Expiry is exclusive: a token stops verifying at ``exp`` exactly.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformed("token must have three segments")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise TokenMalformed("token header is not valid JSON") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("token_invalid_algorithm", alg=alg)
            raise BadSignature("unsupported token algorithm")

        expected_sig = _encode_segment(self._digest(f"{header_b64}.{payload_b64}"))
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise BadSignature("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise TokenMalformed("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenMalformed("token payload must be an object")

        missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise TokenMalformed(f"token missing claims: {', '.join(missing)}")
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenMalformed("token audience mismatch")
        if payload.get("token_type") != token_type:
            raise TokenMalformed("unexpected token type")
        try:
            exp_ts = float(payload["exp"])
            payload["ver"] = int(payload["ver"])
        except (TypeError, ValueError) as exc:
            raise TokenMalformed("token has non-numeric claims") from exc

        if self._clock() >= exp_ts:
            raise TokenExpired("token expired")
        return payload
