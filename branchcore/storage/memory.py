from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from branchcore.deadline import check_deadline
from branchcore.logging import get_logger
from branchcore.storage.common import (
    ACTIVE_SESSION_CONSTRAINT,
    IDENTIFIER_CONSTRAINT,
    TOKEN_VALUE_CONSTRAINT,
    greatest_in_sequence,
    security_event_from_row,
    token_from_row,
    token_to_row,
)
from branchcore.storage.errors import ConstraintViolation
from branchcore.storage.models import (
    AllocatedIdentifier,
    CredentialToken,
    SecurityEvent,
    TokenKind,
    utcnow,
)


class MemoryStore:
    """In-process store with the same contract and constraints as PostgresStore.

    Every public method runs under one lock so each call behaves like a single
    SQL statement; nothing spans calls, which keeps the races between
    read-then-write callers identical to the database backend.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.tokens: Dict[str, CredentialToken] = {}
        self.identifiers: Dict[str, Dict[str, AllocatedIdentifier]] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        # None keeps everything in process memory only
        self.state_path: Optional[Path] = None
        if fs_root:
            state_dir = Path(fs_root) / "state"
            state_dir.mkdir(parents=True, exist_ok=True)
            self.state_path = state_dir / "memory_store.json"
            self._load_state()

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        payload = {
            "tokens": [
                {
                    **token_to_row(tok),
                    "expires_at": tok.expires_at.isoformat(),
                    "created_at": tok.created_at.isoformat(),
                    "updated_at": tok.updated_at.isoformat(),
                }
                for tok in self.tokens.values()
            ],
            "identifiers": [
                {
                    "namespace": ident.namespace,
                    "value": ident.value,
                    "created_at": ident.created_at.isoformat(),
                }
                for bucket in self.identifiers.values()
                for ident in bucket.values()
            ],
            "security_events": [
                {**asdict(evt), "created_at": evt.created_at.isoformat()}
                for evt in self.security_events
            ],
        }
        path = self.state_path
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self.state_path
        if path is None or not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_state_unreadable", error=str(exc), path=str(path))
            return False
        for raw in data.get("tokens", []):
            row = dict(raw)
            for key in ("expires_at", "created_at", "updated_at"):
                row[key] = datetime.fromisoformat(row[key])
            tok = token_from_row(row)
            self.tokens[tok.token_value] = tok
        for raw in data.get("identifiers", []):
            ident = AllocatedIdentifier(
                namespace=raw["namespace"],
                value=raw["value"],
                created_at=datetime.fromisoformat(raw["created_at"]),
            )
            self.identifiers.setdefault(ident.namespace, {})[ident.value] = ident
        for raw in data.get("security_events", []):
            row = dict(raw)
            row["created_at"] = datetime.fromisoformat(row["created_at"])
            self.security_events.append(security_event_from_row(row))
        return True

    # credential tokens
    def insert_token(self, token: CredentialToken) -> CredentialToken:
        check_deadline("insert_token")
        with self._data_lock:
            if token.token_value in self.tokens:
                raise ConstraintViolation(
                    "token value already exists",
                    {"constraint": TOKEN_VALUE_CONSTRAINT},
                )
            self._check_single_active(token)
            stored = replace(token)
            self.tokens[stored.token_value] = stored
            self._persist_state()
            return replace(stored)

    def _check_single_active(self, token: CredentialToken) -> None:
        # Mirrors the partial unique index on live refresh rows
        if token.kind != TokenKind.REFRESH or not token.is_active or token.blacklisted:
            return
        for existing in self.tokens.values():
            if (
                existing.token_value != token.token_value
                and existing.principal_id == token.principal_id
                and existing.kind == TokenKind.REFRESH
                and existing.is_active
                and not existing.blacklisted
            ):
                raise ConstraintViolation(
                    "principal already holds an active session",
                    {
                        "constraint": ACTIVE_SESSION_CONSTRAINT,
                        "principal_id": token.principal_id,
                    },
                )

    def get_token(self, token_value: str) -> Optional[CredentialToken]:
        check_deadline("get_token")
        with self._data_lock:
            tok = self.tokens.get(token_value)
            return replace(tok) if tok else None

    def find_active_tokens(
        self, principal_id: str, kind: TokenKind, now: datetime
    ) -> List[CredentialToken]:
        check_deadline("find_active_tokens")
        with self._data_lock:
            rows = [
                replace(tok)
                for tok in self.tokens.values()
                if tok.principal_id == principal_id and tok.kind == kind and tok.is_live(now)
            ]
        return sorted(rows, key=lambda t: t.created_at, reverse=True)

    def find_active_by_session(
        self, session_id: str, now: datetime
    ) -> Optional[CredentialToken]:
        check_deadline("find_active_by_session")
        with self._data_lock:
            for tok in self.tokens.values():
                if (
                    tok.session_id == session_id
                    and tok.kind == TokenKind.REFRESH
                    and tok.is_live(now)
                ):
                    return replace(tok)
        return None

    def _revoke_where(self, predicate) -> List[CredentialToken]:
        now = utcnow()
        revoked: List[CredentialToken] = []
        with self._data_lock:
            for tok in self.tokens.values():
                if predicate(tok):
                    tok.is_active = False
                    tok.blacklisted = True
                    tok.updated_at = now
                    revoked.append(replace(tok))
            if revoked:
                self._persist_state()
        return revoked

    def revoke_active_tokens(
        self, principal_id: str, kind: TokenKind
    ) -> List[CredentialToken]:
        """Revoke every still-active row of ``kind`` for the principal in one step."""
        check_deadline("revoke_active_tokens")
        return self._revoke_where(
            lambda tok: tok.principal_id == principal_id
            and tok.kind == kind
            and (tok.is_active or not tok.blacklisted)
        )

    def revoke_token(self, token_value: str) -> bool:
        """Revoke one row; True only if this call changed it."""
        check_deadline("revoke_token")
        return bool(
            self._revoke_where(
                lambda tok: tok.token_value == token_value
                and (tok.is_active or not tok.blacklisted)
            )
        )

    def restore_token(self, token_value: str, now: datetime) -> bool:
        """Undo a revocation; refused if the principal has a live refresh row again."""
        check_deadline("restore_token")
        with self._data_lock:
            tok = self.tokens.get(token_value)
            if tok is None or not tok.blacklisted or tok.expires_at <= now:
                return False
            candidate = replace(tok, is_active=True, blacklisted=False)
            self._check_single_active(candidate)
            tok.is_active = True
            tok.blacklisted = False
            tok.updated_at = now
            self._persist_state()
        return True

    def revoke_session_tokens(self, session_id: str) -> int:
        check_deadline("revoke_session_tokens")
        return len(
            self._revoke_where(
                lambda tok: tok.session_id == session_id
                and tok.kind == TokenKind.REFRESH
                and (tok.is_active or not tok.blacklisted)
            )
        )

    def touch_session(self, session_id: str, now: datetime) -> bool:
        check_deadline("touch_session")
        touched = False
        with self._data_lock:
            for tok in self.tokens.values():
                if tok.session_id == session_id and tok.kind == TokenKind.REFRESH and tok.is_active:
                    tok.updated_at = now
                    touched = True
            if touched:
                self._persist_state()
        return touched

    def list_tokens(
        self, principal_id: str, kind: TokenKind, limit: int = 50
    ) -> List[CredentialToken]:
        check_deadline("list_tokens")
        with self._data_lock:
            rows = [
                replace(tok)
                for tok in self.tokens.values()
                if tok.principal_id == principal_id and tok.kind == kind
            ]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[:limit]

    def count_session_rotations(self, session_id: str, since: datetime) -> int:
        """Refresh rows of the session issued at or after ``since``, login row excluded."""
        check_deadline("count_session_rotations")
        with self._data_lock:
            rows = [
                tok
                for tok in self.tokens.values()
                if tok.session_id == session_id and tok.kind == TokenKind.REFRESH
            ]
        if not rows:
            return 0
        first = min(rows, key=lambda t: t.created_at)
        return sum(1 for tok in rows if tok is not first and tok.created_at >= since)

    def expire_stale_tokens(self, now: datetime) -> int:
        check_deadline("expire_stale_tokens")
        expired = 0
        with self._data_lock:
            for tok in self.tokens.values():
                if tok.is_active and tok.expires_at <= now:
                    tok.is_active = False
                    tok.updated_at = now
                    expired += 1
            if expired:
                self._persist_state()
        return expired

    # security events
    def record_security_event(self, event: SecurityEvent) -> SecurityEvent:
        check_deadline("record_security_event")
        with self._data_lock:
            self.security_events.append(replace(event))
            self._persist_state()
        return event

    def list_security_events(
        self, principal_id: str, limit: int = 50
    ) -> List[SecurityEvent]:
        check_deadline("list_security_events")
        with self._data_lock:
            rows = [
                replace(evt) for evt in self.security_events if evt.principal_id == principal_id
            ]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[:limit]

    def purge_security_events(self, older_than: datetime) -> int:
        check_deadline("purge_security_events")
        with self._data_lock:
            kept = [evt for evt in self.security_events if evt.created_at >= older_than]
            purged = len(self.security_events) - len(kept)
            if purged:
                self.security_events = kept
                self._persist_state()
        return purged

    # allocated identifiers
    def max_identifier(self, namespace: str, prefix: str) -> Optional[str]:
        check_deadline("max_identifier")
        with self._data_lock:
            values = [v for v in self.identifiers.get(namespace, {}) if v.startswith(prefix)]
        return greatest_in_sequence(values, prefix)

    def claim_identifier(self, namespace: str, value: str) -> AllocatedIdentifier:
        check_deadline("claim_identifier")
        with self._data_lock:
            bucket = self.identifiers.setdefault(namespace, {})
            if value in bucket:
                raise ConstraintViolation(
                    "identifier already allocated",
                    {"constraint": IDENTIFIER_CONSTRAINT, "namespace": namespace, "value": value},
                )
            ident = AllocatedIdentifier(namespace=namespace, value=value)
            bucket[value] = ident
            self._persist_state()
            return ident

    def release_identifier(self, namespace: str, value: str) -> bool:
        check_deadline("release_identifier")
        with self._data_lock:
            released = self.identifiers.get(namespace, {}).pop(value, None) is not None
            if released:
                self._persist_state()
        return released
