"""Signed access and refresh tokens (HS256 compact JWS).

Access and refresh tokens are signed with different keys so that a leaked
refresh key cannot be used to forge access tokens, and vice versa.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from enum import Enum
from typing import Any, Callable, Optional

from testhub.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenMalformed(TokenError):
    """Token is not a structurally valid HS256 JWT."""


class TokenSignatureInvalid(TokenError):
    """Signature does not match, or the token belongs to another kind/issuer."""


class TokenExpired(TokenError):
    """Signature is valid but ``exp`` has passed."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str):
        raise TokenMalformed("token must be a string")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise TokenMalformed("token must have three segments")
    return parts[0], parts[1], parts[2]


def _load_json_segment(segment: str) -> dict[str, Any]:
    try:
        value = json.loads(_decode_segment(segment))
    except (ValueError, UnicodeDecodeError, RecursionError) as exc:
        raise TokenMalformed("segment is not base64url JSON") from exc
    if not isinstance(value, dict):
        raise TokenMalformed("segment is not a JSON object")
    return value


def decode(token: str) -> Optional[dict[str, Any]]:
    """Read a token's claims without checking the signature.

    Meant for clients that need to look at ``exp`` or the identity claims and
    do not hold the secret. Returns ``None`` for anything malformed.
    """
    try:
        _, payload_b64, _ = _split(token)
        return _load_json_segment(payload_b64)
    except TokenMalformed:
        return None


def is_token_expired(token: str, *, now: Optional[float] = None) -> bool:
    payload = decode(token)
    if not payload:
        return True
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return True
    return exp <= (now if now is not None else time.time())


def identity_from_token(token: str) -> Optional[dict[str, Any]]:
    """Unverified ``{id, email, role}`` view of an access token, or None."""
    payload = decode(token)
    if not payload or payload.get("type") != TokenKind.ACCESS.value:
        return None
    return {
        "id": payload.get("user_id"),
        "email": payload.get("email"),
        "role": payload.get("role"),
    }


class TokenCodec:
    """Mint and verify access/refresh tokens; holds no state beyond its keys."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str = "testhub",
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def mint_access_token(self, user_id: int, email: str, role: str) -> str:
        now = self._clock()
        now_ms = int(now * 1000)
        # Whole-second iat alone collides for two logins in the same second
        jti = f"{now_ms}-{secrets.token_hex(8)}"
        payload = {
            "user_id": user_id,
            "email": email,
            "role": role,
            "type": TokenKind.ACCESS.value,
            "iss": self.issuer,
            "iat": int(now),
            "exp": int(now) + self.access_ttl_seconds,
            "jti": jti,
        }
        return self._encode(payload, TokenKind.ACCESS)

    def mint_refresh_token(self, user_id: int) -> str:
        now = int(self._clock())
        payload = {
            "user_id": user_id,
            "type": TokenKind.REFRESH.value,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            "jti": secrets.token_hex(16),
        }
        return self._encode(payload, TokenKind.REFRESH)

    def ttl_seconds(self, kind: TokenKind) -> int:
        if kind is TokenKind.ACCESS:
            return self.access_ttl_seconds
        return self.refresh_ttl_seconds

    def verify(self, token: str, kind: TokenKind) -> dict[str, Any]:
        """Check signature, expiry, kind and issuer; return the claims.

        Raises:
            TokenMalformed: structure, header or claims cannot be parsed
            TokenSignatureInvalid: wrong key, wrong kind, or wrong issuer
            TokenExpired: ``exp`` is at or before the current time
        """
        header_b64, payload_b64, sig_b64 = _split(token)
        header = _load_json_segment(header_b64)
        # Only HS256 is accepted; rejects "none" and algorithm-confusion tokens
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenMalformed("unsupported algorithm")

        if not sig_b64.isascii():
            raise TokenMalformed("signature is not base64url")
        expected = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected, sig_b64):
            raise TokenSignatureInvalid("signature mismatch")

        payload = _load_json_segment(payload_b64)
        if payload.get("type") != kind.value:
            raise TokenSignatureInvalid("token kind mismatch")
        if payload.get("iss") != self.issuer:
            raise TokenSignatureInvalid("issuer mismatch")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise TokenMalformed("exp claim missing")
        if not isinstance(payload.get("user_id"), int) or isinstance(payload.get("user_id"), bool):
            raise TokenMalformed("user_id claim missing")
        if exp <= self._clock():
            raise TokenExpired("token expired")
        return payload
