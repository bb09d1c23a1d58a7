from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from branchcore.logging import get_logger
from branchcore.service.errors import (
    AuthenticationError,
    NoActiveSessionError,
    SessionSupersededError,
)
from branchcore.service.sessions import SUPERSEDED_MESSAGE, SessionManager
from branchcore.service.tokens import CredentialIssuer
from branchcore.storage.models import SessionInfo, TokenKind

logger = get_logger(__name__)


@dataclass
class AuthContext:
    principal_id: str
    session_id: Optional[str]
    expires_at: datetime


class RequestAuthenticator:
    """Call contract for request middleware.

    ``authenticate`` is purely cryptographic and never touches the store;
    ``validate_session`` is the optional stateful check that the caller's
    session is still the principal's active one.
    """

    def __init__(self, issuer: CredentialIssuer, sessions: SessionManager) -> None:
        self.issuer = issuer
        self.sessions = sessions

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        payload = self.issuer.verify(token, TokenKind.ACCESS)
        return AuthContext(
            principal_id=payload.subject,
            session_id=payload.session_id,
            expires_at=payload.expires_at,
        )

    async def validate_session(
        self, principal_id: str, session_id: Optional[str] = None
    ) -> SessionInfo:
        """Confirm the principal still holds an active session.

        With ``session_id`` the presented session must also be the newest
        active one; an older session means another device logged in.
        """
        try:
            active = await self.sessions.active_session_for(principal_id)
        except NoActiveSessionError:
            logger.info("session_validation_no_session", principal_id=principal_id)
            raise
        if session_id and active.session_id != session_id:
            logger.warning(
                "session_validation_superseded",
                principal_id=principal_id,
                presented_session_id=session_id,
            )
            raise SessionSupersededError(
                SUPERSEDED_MESSAGE, detail={"session_id": session_id}
            )
        await self.sessions.touch_session(active.session_id)
        return active

    async def authenticate_request(
        self, authorization: Optional[str], session_id: Optional[str] = None
    ) -> AuthContext:
        """Stateless verification followed by the active-session check."""
        ctx = self.authenticate(authorization)
        presented = session_id or ctx.session_id
        await self.validate_session(ctx.principal_id, presented)
        return AuthContext(
            principal_id=ctx.principal_id,
            session_id=presented,
            expires_at=ctx.expires_at,
        )
