from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from branchcore.logging import get_logger
from branchcore.service.errors import (
    KindMismatchError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRevokedError,
)
from branchcore.service.sessions import TokenStore
from branchcore.service.tokens import CredentialIssuer, IssuedToken, TokenPayload
from branchcore.storage.models import CredentialToken, TokenKind, utcnow

logger = get_logger(__name__)

ACTION_KINDS = (TokenKind.RESET_PASSWORD, TokenKind.VERIFY_EMAIL)


class ActionTokenService:
    """Single-use reset-password and verify-email tokens.

    The signature alone is not enough: a token is honored only while its
    stored row is not blacklisted, and consuming one blacklists every token of
    that kind for the principal.
    """

    def __init__(
        self,
        store: TokenStore,
        issuer: CredentialIssuer,
        ttls: Dict[TokenKind, timedelta],
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.ttls = ttls
        self._clock = clock or utcnow

    def _require_action_kind(self, kind: TokenKind) -> TokenKind:
        kind = TokenKind(kind)
        if kind not in ACTION_KINDS:
            raise KindMismatchError(
                "not an action token kind", detail={"kind": kind.value}
            )
        return kind

    async def issue(self, principal_id: str, kind: TokenKind) -> IssuedToken:
        kind = self._require_action_kind(kind)
        issued = self.issuer.issue(principal_id, kind, self.ttls[kind])
        self.store.insert_token(
            CredentialToken.new(issued.value, principal_id, kind, issued.expires_at)
        )
        logger.info("action_token_issued", principal_id=principal_id, kind=kind.value)
        return issued

    async def verify(self, token: str, kind: TokenKind) -> TokenPayload:
        kind = self._require_action_kind(kind)
        payload = self.issuer.verify(token, kind)
        row: Optional[CredentialToken] = self.store.get_token(token)
        if row is None or row.kind != kind or row.principal_id != payload.subject:
            raise TokenNotFoundError("token not found")
        if row.blacklisted:
            raise TokenRevokedError("token already used")
        if row.expires_at <= self._clock():
            raise TokenExpiredError("token expired")
        return payload

    async def consume(self, token: str, kind: TokenKind) -> TokenPayload:
        """Verify then burn every outstanding token of ``kind`` for the principal."""
        payload = await self.verify(token, kind)
        # Of two concurrent consumers only the one that flips this row wins
        if not self.store.revoke_token(token):
            raise TokenRevokedError("token already used")
        revoked = self.store.revoke_active_tokens(payload.subject, kind)
        logger.info(
            "action_token_consumed",
            principal_id=payload.subject,
            kind=TokenKind(kind).value,
            revoked=len(revoked),
        )
        return payload
