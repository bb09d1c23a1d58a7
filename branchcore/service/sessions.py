from __future__ import annotations

import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Protocol

from branchcore.logging import get_logger
from branchcore.service.errors import (
    ConflictError,
    NoActiveSessionError,
    SessionSupersededError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRevokedError,
)
from branchcore.service.tokens import CredentialIssuer
from branchcore.storage.common import ACTIVE_SESSION_CONSTRAINT
from branchcore.storage.errors import ConstraintViolation, StoreUnavailable
from branchcore.storage.models import (
    CredentialToken,
    DeviceMeta,
    SecurityEvent,
    SessionInfo,
    TokenKind,
    utcnow,
)

logger = get_logger(__name__)

SUPERSEDED_MESSAGE = "Session expired. Another device has logged in with this account."
NO_SESSION_MESSAGE = "No active session found. Please login again."

MULTIPLE_DEVICES_EVENT = "MULTIPLE_DEVICES"
RAPID_REFRESH_EVENT = "RAPID_REFRESH"

_BASE36 = string.digits + string.ascii_lowercase


class TokenStore(Protocol):
    def insert_token(self, token: CredentialToken) -> CredentialToken: ...

    def get_token(self, token_value: str) -> Optional[CredentialToken]: ...

    def find_active_tokens(
        self, principal_id: str, kind: TokenKind, now: datetime
    ) -> List[CredentialToken]: ...

    def find_active_by_session(
        self, session_id: str, now: datetime
    ) -> Optional[CredentialToken]: ...

    def revoke_active_tokens(
        self, principal_id: str, kind: TokenKind
    ) -> List[CredentialToken]: ...

    def revoke_token(self, token_value: str) -> bool: ...

    def restore_token(self, token_value: str, now: datetime) -> bool: ...

    def revoke_session_tokens(self, session_id: str) -> int: ...

    def touch_session(self, session_id: str, now: datetime) -> bool: ...

    def list_tokens(
        self, principal_id: str, kind: TokenKind, limit: int = 50
    ) -> List[CredentialToken]: ...

    def count_session_rotations(self, session_id: str, since: datetime) -> int: ...

    def expire_stale_tokens(self, now: datetime) -> int: ...

    def record_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self, principal_id: str, limit: int = 50
    ) -> List[SecurityEvent]: ...

    def purge_security_events(self, older_than: datetime) -> int: ...


class SessionStatus(str, Enum):
    ACTIVE = "active"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class SessionLookup:
    status: SessionStatus
    token: Optional[CredentialToken] = None

    @property
    def ok(self) -> bool:
        return self.status == SessionStatus.ACTIVE


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    previous_session_terminated: bool = False
    terminated_session_ids: List[str] = field(default_factory=list)


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    session_id: Optional[str]
    access_expires_at: datetime
    refresh_expires_at: datetime
    rotated: bool = True


def generate_session_id(now: Optional[datetime] = None) -> str:
    """``sess_<epoch millis>_<9 base36 chars>``, unique with overwhelming probability."""
    now = now or utcnow()
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"sess_{millis}_{suffix}"


class SessionManager:
    """Single-active-session lifecycle on top of a TokenStore.

    A login revokes every active refresh row of the principal with one
    conditional update, then inserts its own row. The store refuses a second
    active refresh row per principal, so two concurrent logins cannot both
    end up active: the loser revokes the winner and retries.
    """

    def __init__(
        self,
        store: TokenStore,
        issuer: CredentialIssuer,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        rotate_refresh_tokens: bool = True,
        login_retries: int = 3,
        rapid_refresh_limit: int = 10,
        rapid_refresh_window: timedelta = timedelta(minutes=5),
        event_retention: timedelta = timedelta(days=90),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.login_retries = max(1, login_retries)
        self.rapid_refresh_limit = rapid_refresh_limit
        self.rapid_refresh_window = rapid_refresh_window
        self.event_retention = event_retention
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def login(
        self, principal_id: str, device: Optional[DeviceMeta] = None
    ) -> LoginResult:
        device = device or DeviceMeta()
        now = self._now()
        superseded: List[CredentialToken] = []
        session_id = ""
        refresh = None
        for attempt in range(1, self.login_retries + 1):
            revoked = self.store.revoke_active_tokens(principal_id, TokenKind.REFRESH)
            superseded.extend(tok for tok in revoked if tok.expires_at > now)
            session_id = generate_session_id(now)
            refresh = self.issuer.issue(
                principal_id, TokenKind.REFRESH, self.refresh_ttl, session_id=session_id
            )
            row = CredentialToken.new(
                refresh.value,
                principal_id,
                TokenKind.REFRESH,
                refresh.expires_at,
                session_id=session_id,
                device=device,
                now=now,
            )
            try:
                self.store.insert_token(row)
                break
            except ConstraintViolation as exc:
                if exc.detail.get("constraint") != ACTIVE_SESSION_CONSTRAINT:
                    raise
                logger.warning(
                    "session_login_conflict", principal_id=principal_id, attempt=attempt
                )
        else:
            raise ConflictError(
                "concurrent login for this account; please retry",
                detail={"principal_id": principal_id},
            )

        access = self.issuer.issue(
            principal_id, TokenKind.ACCESS, self.access_ttl, session_id=session_id
        )
        terminated = sorted({tok.session_id for tok in superseded if tok.session_id})
        if superseded:
            logger.info(
                "sessions_superseded",
                principal_id=principal_id,
                count=len(superseded),
                new_session_id=session_id,
            )
            self._record_multiple_devices(principal_id, session_id, device, superseded)
        logger.info("session_login", principal_id=principal_id, session_id=session_id)
        return LoginResult(
            access_token=access.value,
            refresh_token=refresh.value,
            session_id=session_id,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            previous_session_terminated=bool(superseded),
            terminated_session_ids=terminated,
        )

    def _record_multiple_devices(
        self,
        principal_id: str,
        session_id: str,
        device: DeviceMeta,
        superseded: List[CredentialToken],
    ) -> None:
        previous = superseded[0]
        self.store.record_security_event(
            SecurityEvent(
                id=str(uuid.uuid4()),
                type=MULTIPLE_DEVICES_EVENT,
                principal_id=principal_id,
                severity="MEDIUM",
                details="New login terminated an active session on another device",
                session_id=session_id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                device_info=device.device_info,
                meta={
                    "terminated_sessions": [tok.session_id for tok in superseded],
                    "previous_device": previous.device_info,
                    "previous_ip_address": previous.ip_address,
                    "previous_user_agent": previous.user_agent,
                },
                created_at=self._now(),
            )
        )

    def lookup_refresh(self, refresh_token: str) -> SessionLookup:
        """Classify a stored refresh row without raising."""
        row = self.store.get_token(refresh_token)
        if row is None or row.kind != TokenKind.REFRESH:
            return SessionLookup(SessionStatus.NOT_FOUND)
        # Expiry wins over the revocation flags
        if row.expires_at <= self._now():
            return SessionLookup(SessionStatus.EXPIRED, row)
        if row.blacklisted or not row.is_active:
            return SessionLookup(SessionStatus.REVOKED, row)
        return SessionLookup(SessionStatus.ACTIVE, row)

    async def refresh(
        self, refresh_token: str, device: Optional[DeviceMeta] = None
    ) -> RefreshResult:
        payload = self.issuer.verify(refresh_token, TokenKind.REFRESH)
        lookup = self.lookup_refresh(refresh_token)
        if lookup.status == SessionStatus.NOT_FOUND:
            raise TokenNotFoundError("refresh token not found")
        if lookup.status == SessionStatus.EXPIRED:
            raise TokenExpiredError("refresh token expired")
        if lookup.status == SessionStatus.REVOKED:
            logger.warning(
                "refresh_token_reuse",
                principal_id=payload.subject,
                session_id=lookup.token.session_id,
            )
            raise TokenRevokedError(SUPERSEDED_MESSAGE)

        row = lookup.token
        if row.principal_id != payload.subject:
            raise TokenNotFoundError("refresh token not found")
        access = self.issuer.issue(
            row.principal_id, TokenKind.ACCESS, self.access_ttl, session_id=row.session_id
        )
        if not self.rotate_refresh_tokens:
            if row.session_id:
                self.store.touch_session(row.session_id, self._now())
            return RefreshResult(
                access_token=access.value,
                refresh_token=refresh_token,
                session_id=row.session_id,
                access_expires_at=access.expires_at,
                refresh_expires_at=row.expires_at,
                rotated=False,
            )

        # Only one concurrent refresh of the same token can flip it
        if not self.store.revoke_token(refresh_token):
            logger.warning("refresh_token_race_lost", session_id=row.session_id)
            raise TokenRevokedError(SUPERSEDED_MESSAGE)
        new_refresh = self.issuer.issue(
            row.principal_id, TokenKind.REFRESH, self.refresh_ttl, session_id=row.session_id
        )
        if device is None:
            device = DeviceMeta(row.device_info, row.ip_address, row.user_agent)
        now = self._now()
        try:
            self.store.insert_token(
                CredentialToken.new(
                    new_refresh.value,
                    row.principal_id,
                    TokenKind.REFRESH,
                    new_refresh.expires_at,
                    session_id=row.session_id,
                    device=device,
                    now=now,
                )
            )
        except ConstraintViolation as exc:
            if exc.detail.get("constraint") == ACTIVE_SESSION_CONSTRAINT:
                # A login for the same principal took the slot in between
                raise SessionSupersededError(SUPERSEDED_MESSAGE) from exc
            self._undo_rotation(row)
            raise
        except StoreUnavailable:
            self._undo_rotation(row)
            raise
        logger.info("session_refreshed", principal_id=row.principal_id, session_id=row.session_id)
        self._check_rapid_refresh(row, device, now)
        return RefreshResult(
            access_token=access.value,
            refresh_token=new_refresh.value,
            session_id=row.session_id,
            access_expires_at=access.expires_at,
            refresh_expires_at=new_refresh.expires_at,
        )

    def _undo_rotation(self, row: CredentialToken) -> None:
        """Reactivate a refresh row whose successor could not be stored.

        The caller still gets the store error, but a retry with the same
        refresh token works instead of failing as revoked. The store refuses
        the restore if a newer login holds the slot by now.
        """
        try:
            restored = self.store.restore_token(row.token_value, self._now())
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error(
                "refresh_rotation_restore_failed",
                principal_id=row.principal_id,
                session_id=row.session_id,
                error=str(exc),
            )
            return
        logger.warning(
            "refresh_rotation_rolled_back",
            principal_id=row.principal_id,
            session_id=row.session_id,
            restored=restored,
        )

    def _check_rapid_refresh(
        self, row: CredentialToken, device: DeviceMeta, now: datetime
    ) -> None:
        # Counted from stored rotations so every node sees the same history
        if not row.session_id:
            return
        try:
            count = self.store.count_session_rotations(
                row.session_id, now - self.rapid_refresh_window
            )
            if count <= self.rapid_refresh_limit:
                return
            minutes = int(self.rapid_refresh_window.total_seconds() // 60)
            logger.warning(
                "rapid_refresh_detected",
                principal_id=row.principal_id,
                session_id=row.session_id,
                refreshes=count,
            )
            self.store.record_security_event(
                SecurityEvent(
                    id=str(uuid.uuid4()),
                    type=RAPID_REFRESH_EVENT,
                    principal_id=row.principal_id,
                    severity="MEDIUM",
                    details=f"Rapid token refresh detected: {count} refreshes in {minutes} minutes",
                    session_id=row.session_id,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                    device_info=device.device_info,
                    meta={
                        "refreshes": count,
                        "window_seconds": int(self.rapid_refresh_window.total_seconds()),
                    },
                    created_at=now,
                )
            )
        except StoreUnavailable as exc:
            # The rotation is already committed; the caller must get its new token
            logger.error(
                "rapid_refresh_check_failed",
                principal_id=row.principal_id,
                session_id=row.session_id,
                error=str(exc),
            )

    async def logout(self, refresh_token: str) -> bool:
        """Revoke the refresh row; repeated calls are no-ops returning False."""
        revoked = self.store.revoke_token(refresh_token)
        logger.info("session_logout", revoked=revoked)
        return revoked

    async def list_active_sessions(self, principal_id: str) -> List[SessionInfo]:
        rows = self.store.find_active_tokens(principal_id, TokenKind.REFRESH, self._now())
        return [SessionInfo.from_token(row) for row in rows]

    async def terminate_session(self, session_id: str) -> int:
        count = self.store.revoke_session_tokens(session_id)
        logger.info("session_terminated", session_id=session_id, revoked=count)
        return count

    async def terminate_all_sessions(self, principal_id: str) -> int:
        revoked = self.store.revoke_active_tokens(principal_id, TokenKind.REFRESH)
        logger.info("sessions_terminated", principal_id=principal_id, revoked=len(revoked))
        return len(revoked)

    def lookup_session(self, session_id: str) -> SessionLookup:
        row = self.store.find_active_by_session(session_id, self._now())
        if row is None:
            return SessionLookup(SessionStatus.NOT_FOUND)
        return SessionLookup(SessionStatus.ACTIVE, row)

    async def touch_session(self, session_id: str) -> bool:
        return self.store.touch_session(session_id, self._now())

    async def session_history(self, principal_id: str, limit: int = 50) -> List[SessionInfo]:
        rows = self.store.list_tokens(principal_id, TokenKind.REFRESH, limit)
        return [SessionInfo.from_token(row) for row in rows]

    async def expire_stale_sessions(self) -> int:
        count = self.store.expire_stale_tokens(self._now())
        if count:
            logger.info("sessions_expired", count=count)
        return count

    async def active_session_for(self, principal_id: str) -> SessionInfo:
        """Newest active session of the principal, or NoActiveSessionError."""
        sessions = await self.list_active_sessions(principal_id)
        if not sessions:
            raise NoActiveSessionError(NO_SESSION_MESSAGE)
        return sessions[0]

    async def security_events(self, principal_id: str, limit: int = 50) -> List[SecurityEvent]:
        return self.store.list_security_events(principal_id, limit)

    async def purge_security_events(self, retention: Optional[timedelta] = None) -> int:
        """Delete security events older than the retention period."""
        cutoff = self._now() - (retention or self.event_retention)
        count = self.store.purge_security_events(cutoff)
        if count:
            logger.info("security_events_purged", count=count, cutoff=cutoff.isoformat())
        return count
