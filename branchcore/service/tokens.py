from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from branchcore.logging import get_logger
from branchcore.service.errors import (
    InvalidCredentialFormatError,
    InvalidSignatureError,
    KindMismatchError,
    TokenExpiredError,
)
from branchcore.storage.models import TokenKind, utcnow

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+\Z")


@dataclass(frozen=True)
class TokenPayload:
    subject: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    jti: str
    session_id: Optional[str] = None

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": self.subject,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "type": self.kind.value,
            "jti": self.jti,
        }
        if self.session_id:
            claims["sid"] = self.session_id
        return claims


@dataclass(frozen=True)
class IssuedToken:
    value: str
    payload: TokenPayload

    @property
    def expires_at(self) -> datetime:
        return self.payload.expires_at


class CredentialIssuer:
    """Signs and verifies HS256 bearer tokens.

    Verification is pure: no store access and no shared mutable state, so one
    instance is safe to share across threads and tasks.
    """

    def __init__(
        self,
        secret: str,
        *,
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self._leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        principal_id: str,
        kind: TokenKind,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
    ) -> IssuedToken:
        now = self._now().replace(microsecond=0)
        payload = TokenPayload(
            subject=str(principal_id),
            kind=TokenKind(kind),
            issued_at=now,
            expires_at=now + ttl,
            jti=str(uuid.uuid4()),
            session_id=session_id,
        )
        header_enc = self._encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload.to_claims(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return IssuedToken(value=f"{signing_input}.{self._sign(signing_input)}", payload=payload)

    def verify(self, token: str, expected_kind: TokenKind) -> TokenPayload:
        """Check format, signature, expiry and kind; raise the matching error."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidCredentialFormatError("malformed token")
        header_b64, payload_b64, sig_b64 = token.split(".")
        # Anything outside the base64url alphabet cannot be one of our tokens
        if not all(_SEGMENT.match(part) for part in (header_b64, payload_b64, sig_b64)):
            raise InvalidCredentialFormatError("malformed token")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidCredentialFormatError("malformed token header")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidCredentialFormatError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise InvalidSignatureError("token signature mismatch")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidCredentialFormatError("malformed token payload")
        payload = self._payload_from_claims(claims)

        if payload.expires_at <= self._now() - self._leeway:
            raise TokenExpiredError("token expired")
        if payload.kind != TokenKind(expected_kind):
            raise KindMismatchError(
                "unexpected token kind",
                detail={"expected": TokenKind(expected_kind).value, "actual": payload.kind.value},
            )
        return payload

    def _payload_from_claims(self, claims: Any) -> TokenPayload:
        if not isinstance(claims, dict):
            raise InvalidCredentialFormatError("token payload must be an object")
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidCredentialFormatError("token subject missing")
        try:
            kind = TokenKind(claims.get("type"))
            iat = datetime.fromtimestamp(float(claims.get("iat")), tz=timezone.utc)
            exp = datetime.fromtimestamp(float(claims.get("exp")), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise InvalidCredentialFormatError("token claims invalid")
        sid = claims.get("sid")
        return TokenPayload(
            subject=sub,
            kind=kind,
            issued_at=iat,
            expires_at=exp,
            jti=str(claims.get("jti") or ""),
            session_id=sid if isinstance(sid, str) else None,
        )
