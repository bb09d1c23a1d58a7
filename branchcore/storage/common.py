"""Common storage utilities shared between memory and postgres implementations.

Keeps the sequence-suffix rules and row conversions identical across backends
so both agree on what "the current maximum identifier" of a scope is.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from branchcore.storage.models import CredentialToken, SecurityEvent, TokenKind

# Name of the rule "one live refresh row per principal"; Postgres enforces it
# with a partial unique index of the same name.
ACTIVE_SESSION_CONSTRAINT = "credential_token_one_active_refresh"
TOKEN_VALUE_CONSTRAINT = "credential_token_token_value_key"
IDENTIFIER_CONSTRAINT = "allocated_identifier_pkey"

_DIGITS = re.compile(r"^[0-9]+$")


def sequence_suffix(value: str, prefix: str) -> Optional[int]:
    """Return the numeric sequence of ``value`` under ``prefix``.

    Values that do not continue ``prefix`` with digits only (for example the
    timestamp fallback identifiers) are not part of the sequence.
    """
    if not value.startswith(prefix):
        return None
    tail = value[len(prefix):]
    if not _DIGITS.match(tail):
        return None
    return int(tail)


def greatest_in_sequence(values: Iterable[str], prefix: str) -> Optional[str]:
    """Pick the identifier with the largest numeric suffix under ``prefix``.

    Ordering is numeric rather than plain lexicographic so a sequence that
    outgrows its zero padding (``999`` -> ``1000``) keeps counting upward.
    """
    best: Optional[str] = None
    best_seq = -1
    for value in values:
        seq = sequence_suffix(value, prefix)
        if seq is not None and seq > best_seq:
            best, best_seq = value, seq
    return best


def ensure_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def token_from_row(row: Dict[str, Any]) -> CredentialToken:
    return CredentialToken(
        id=str(row["id"]),
        token_value=row["token_value"],
        principal_id=str(row["principal_id"]),
        kind=TokenKind(row["kind"]),
        expires_at=ensure_aware(row["expires_at"]),
        session_id=row.get("session_id"),
        device_info=row.get("device_info"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        is_active=bool(row.get("is_active", True)),
        blacklisted=bool(row.get("blacklisted", False)),
        created_at=ensure_aware(row["created_at"]),
        updated_at=ensure_aware(row.get("updated_at") or row["created_at"]),
    )


def token_to_row(token: CredentialToken) -> Dict[str, Any]:
    return {
        "id": token.id,
        "token_value": token.token_value,
        "principal_id": token.principal_id,
        "kind": token.kind.value,
        "expires_at": token.expires_at,
        "session_id": token.session_id,
        "device_info": token.device_info,
        "ip_address": token.ip_address,
        "user_agent": token.user_agent,
        "is_active": token.is_active,
        "blacklisted": token.blacklisted,
        "created_at": token.created_at,
        "updated_at": token.updated_at,
    }


def security_event_from_row(row: Dict[str, Any]) -> SecurityEvent:
    return SecurityEvent(
        id=str(row["id"]),
        type=row["type"],
        principal_id=str(row["principal_id"]),
        severity=row["severity"],
        details=row["details"],
        session_id=row.get("session_id"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        device_info=row.get("device_info"),
        meta=row.get("meta"),
        created_at=ensure_aware(row["created_at"]),
    )
