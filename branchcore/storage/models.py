from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"
    RESET_PASSWORD = "RESET_PASSWORD"
    VERIFY_EMAIL = "VERIFY_EMAIL"


@dataclass
class DeviceMeta:
    """Descriptive, non-authoritative client metadata captured at issuance."""

    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class CredentialToken:
    id: str
    token_value: str
    principal_id: str
    kind: TokenKind
    expires_at: datetime
    session_id: Optional[str] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    blacklisted: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token_value: str,
        principal_id: str,
        kind: TokenKind,
        expires_at: datetime,
        *,
        session_id: Optional[str] = None,
        device: Optional[DeviceMeta] = None,
        now: Optional[datetime] = None,
    ) -> "CredentialToken":
        now = now or utcnow()
        device = device or DeviceMeta()
        return cls(
            id=str(uuid.uuid4()),
            token_value=token_value,
            principal_id=principal_id,
            kind=TokenKind(kind),
            expires_at=expires_at,
            session_id=session_id,
            device_info=device.device_info,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            created_at=now,
            updated_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        """Active, not blacklisted and not yet expired."""
        return self.is_active and not self.blacklisted and self.expires_at > now


@dataclass
class SessionInfo:
    """Session metadata exposed to callers; never carries the token value."""

    session_id: Optional[str]
    principal_id: str
    device_info: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool
    blacklisted: bool

    @classmethod
    def from_token(cls, token: CredentialToken) -> "SessionInfo":
        return cls(
            session_id=token.session_id,
            principal_id=token.principal_id,
            device_info=token.device_info,
            ip_address=token.ip_address,
            user_agent=token.user_agent,
            created_at=token.created_at,
            last_activity_at=token.updated_at,
            expires_at=token.expires_at,
            is_active=token.is_active,
            blacklisted=token.blacklisted,
        )


@dataclass
class SecurityEvent:
    id: str
    type: str
    principal_id: str
    severity: str
    details: str
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[str] = None
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AllocatedIdentifier:
    namespace: str
    value: str
    created_at: datetime = field(default_factory=utcnow)
