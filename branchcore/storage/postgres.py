from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from branchcore.deadline import check_deadline
from branchcore.logging import get_logger
from branchcore.storage.common import (
    ACTIVE_SESSION_CONSTRAINT,
    IDENTIFIER_CONSTRAINT,
    TOKEN_VALUE_CONSTRAINT,
    security_event_from_row,
    token_from_row,
    token_to_row,
)
from branchcore.storage.errors import ConstraintViolation, StoreTimeout, StoreUnavailable
from branchcore.storage.models import (
    AllocatedIdentifier,
    CredentialToken,
    SecurityEvent,
    TokenKind,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credential_token (
        id TEXT PRIMARY KEY,
        token_value TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        session_id TEXT,
        device_info TEXT,
        ip_address TEXT,
        user_agent TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        blacklisted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT credential_token_token_value_key UNIQUE (token_value)
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_SESSION_CONSTRAINT}
        ON credential_token (principal_id)
        WHERE kind = 'REFRESH' AND is_active AND NOT blacklisted
    """,
    "CREATE INDEX IF NOT EXISTS credential_token_session_idx ON credential_token (session_id)",
    "CREATE INDEX IF NOT EXISTS credential_token_principal_idx ON credential_token (principal_id, kind)",
    """
    CREATE TABLE IF NOT EXISTS allocated_identifier (
        namespace TEXT NOT NULL,
        value TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT allocated_identifier_pkey PRIMARY KEY (namespace, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        principal_id TEXT NOT NULL,
        severity TEXT NOT NULL,
        details TEXT NOT NULL,
        session_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_info TEXT,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_created_idx ON security_event (created_at)",
)

_CONSTRAINT_MESSAGES = {
    ACTIVE_SESSION_CONSTRAINT: "principal already holds an active session",
    TOKEN_VALUE_CONSTRAINT: "token value already exists",
    IDENTIFIER_CONSTRAINT: "identifier already allocated",
}


class PostgresStore:
    """Postgres-backed token, security event and identifier store."""

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.statement_timeout_ms = statement_timeout_ms
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        """Check out a connection bounded by the ambient request deadline.

        The remaining budget caps both the pool wait and a transaction-local
        ``statement_timeout``; driver failures leave as storage errors.
        """
        remaining = check_deadline(operation)
        timeout_ms = self.statement_timeout_ms
        pool_timeout = self.statement_timeout_ms / 1000
        if remaining is not None:
            timeout_ms = max(1, min(timeout_ms, int(remaining * 1000)))
            pool_timeout = remaining
        try:
            with self.pool.connection(timeout=pool_timeout) as conn:
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{timeout_ms}ms",),
                )
                yield conn
        except errors.UniqueViolation as exc:
            constraint = exc.diag.constraint_name if exc.diag else None
            raise ConstraintViolation(
                _CONSTRAINT_MESSAGES.get(constraint or "", "unique constraint violated"),
                {"constraint": constraint},
            ) from exc
        except (errors.QueryCanceled, PoolTimeout) as exc:
            self.logger.warning("store_timeout", operation=operation, error=str(exc))
            raise StoreTimeout("store did not answer before the deadline", operation=operation) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable("store unavailable", operation=operation) from exc

    def _ensure_schema(self) -> None:
        """Create the token, identifier and security event tables if missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # credential tokens
    def insert_token(self, token: CredentialToken) -> CredentialToken:
        row = token_to_row(token)
        columns = ", ".join(row)
        placeholders = ", ".join(f"%({name})s" for name in row)
        with self._connect("insert_token") as conn:
            created = conn.execute(
                f"INSERT INTO credential_token ({columns}) VALUES ({placeholders}) RETURNING *",
                {**row, "kind": token.kind.value},
            ).fetchone()
        return token_from_row(created)

    def get_token(self, token_value: str) -> Optional[CredentialToken]:
        with self._connect("get_token") as conn:
            row = conn.execute(
                "SELECT * FROM credential_token WHERE token_value = %s", (token_value,)
            ).fetchone()
        return token_from_row(row) if row else None

    def find_active_tokens(
        self, principal_id: str, kind: TokenKind, now: datetime
    ) -> List[CredentialToken]:
        with self._connect("find_active_tokens") as conn:
            rows = conn.execute(
                """
                SELECT * FROM credential_token
                WHERE principal_id = %s AND kind = %s
                  AND is_active AND NOT blacklisted AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (principal_id, TokenKind(kind).value, now),
            ).fetchall()
        return [token_from_row(row) for row in rows]

    def find_active_by_session(
        self, session_id: str, now: datetime
    ) -> Optional[CredentialToken]:
        with self._connect("find_active_by_session") as conn:
            row = conn.execute(
                """
                SELECT * FROM credential_token
                WHERE session_id = %s AND kind = 'REFRESH'
                  AND is_active AND NOT blacklisted AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (session_id, now),
            ).fetchone()
        return token_from_row(row) if row else None

    def revoke_active_tokens(
        self, principal_id: str, kind: TokenKind
    ) -> List[CredentialToken]:
        """Revoke every still-active row of ``kind`` for the principal in one statement."""
        with self._connect("revoke_active_tokens") as conn:
            rows = conn.execute(
                """
                UPDATE credential_token
                SET is_active = FALSE, blacklisted = TRUE, updated_at = %s
                WHERE principal_id = %s AND kind = %s AND (is_active OR NOT blacklisted)
                RETURNING *
                """,
                (utcnow(), principal_id, TokenKind(kind).value),
            ).fetchall()
        return [token_from_row(row) for row in rows]

    def revoke_token(self, token_value: str) -> bool:
        with self._connect("revoke_token") as conn:
            result = conn.execute(
                """
                UPDATE credential_token
                SET is_active = FALSE, blacklisted = TRUE, updated_at = %s
                WHERE token_value = %s AND (is_active OR NOT blacklisted)
                """,
                (utcnow(), token_value),
            )
            return result.rowcount > 0

    def restore_token(self, token_value: str, now: datetime) -> bool:
        # The partial unique index refuses this if another session went live meanwhile
        with self._connect("restore_token") as conn:
            result = conn.execute(
                """
                UPDATE credential_token
                SET is_active = TRUE, blacklisted = FALSE, updated_at = %s
                WHERE token_value = %s AND blacklisted AND expires_at > %s
                """,
                (now, token_value, now),
            )
            return result.rowcount > 0

    def revoke_session_tokens(self, session_id: str) -> int:
        with self._connect("revoke_session_tokens") as conn:
            result = conn.execute(
                """
                UPDATE credential_token
                SET is_active = FALSE, blacklisted = TRUE, updated_at = %s
                WHERE session_id = %s AND kind = 'REFRESH' AND (is_active OR NOT blacklisted)
                """,
                (utcnow(), session_id),
            )
            return result.rowcount

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._connect("touch_session") as conn:
            result = conn.execute(
                """
                UPDATE credential_token SET updated_at = %s
                WHERE session_id = %s AND kind = 'REFRESH' AND is_active
                """,
                (now, session_id),
            )
            return result.rowcount > 0

    def list_tokens(
        self, principal_id: str, kind: TokenKind, limit: int = 50
    ) -> List[CredentialToken]:
        with self._connect("list_tokens") as conn:
            rows = conn.execute(
                """
                SELECT * FROM credential_token
                WHERE principal_id = %s AND kind = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (principal_id, TokenKind(kind).value, limit),
            ).fetchall()
        return [token_from_row(row) for row in rows]

    def count_session_rotations(self, session_id: str, since: datetime) -> int:
        with self._connect("count_session_rotations") as conn:
            row = conn.execute(
                """
                SELECT count(*) FILTER (WHERE created_at >= %s) AS recent,
                       min(created_at) AS started
                FROM credential_token
                WHERE session_id = %s AND kind = 'REFRESH'
                """,
                (since, session_id),
            ).fetchone()
        if not row or row["started"] is None:
            return 0
        # The login row is not a refresh
        return row["recent"] - (1 if row["started"] >= since else 0)

    def expire_stale_tokens(self, now: datetime) -> int:
        with self._connect("expire_stale_tokens") as conn:
            result = conn.execute(
                """
                UPDATE credential_token SET is_active = FALSE, updated_at = %s
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            return result.rowcount

    # security events
    def record_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect("record_security_event") as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, type, principal_id, severity, details, session_id,
                                            ip_address, user_agent, device_info, meta, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.type,
                    event.principal_id,
                    event.severity,
                    event.details,
                    event.session_id,
                    event.ip_address,
                    event.user_agent,
                    event.device_info,
                    json.dumps(event.meta) if event.meta else None,
                    event.created_at,
                ),
            )
        return event

    def list_security_events(
        self, principal_id: str, limit: int = 50
    ) -> List[SecurityEvent]:
        with self._connect("list_security_events") as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_event WHERE principal_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (principal_id, limit),
            ).fetchall()
        return [security_event_from_row(row) for row in rows]

    def purge_security_events(self, older_than: datetime) -> int:
        with self._connect("purge_security_events") as conn:
            result = conn.execute(
                "DELETE FROM security_event WHERE created_at < %s", (older_than,)
            )
            return result.rowcount

    # allocated identifiers
    def max_identifier(self, namespace: str, prefix: str) -> Optional[str]:
        # Digits-only suffixes of one prefix order numerically by (length, value)
        with self._connect("max_identifier") as conn:
            row = conn.execute(
                """
                SELECT value FROM allocated_identifier
                WHERE namespace = %s
                  AND starts_with(value, %s)
                  AND substr(value, %s) ~ '^[0-9]+$'
                ORDER BY length(value) DESC, value DESC
                LIMIT 1
                """,
                (namespace, prefix, len(prefix) + 1),
            ).fetchone()
        return row["value"] if row else None

    def claim_identifier(self, namespace: str, value: str) -> AllocatedIdentifier:
        with self._connect("claim_identifier") as conn:
            row = conn.execute(
                """
                INSERT INTO allocated_identifier (namespace, value) VALUES (%s, %s)
                RETURNING namespace, value, created_at
                """,
                (namespace, value),
            ).fetchone()
        return AllocatedIdentifier(
            namespace=row["namespace"], value=row["value"], created_at=row["created_at"]
        )

    def release_identifier(self, namespace: str, value: str) -> bool:
        with self._connect("release_identifier") as conn:
            result = conn.execute(
                "DELETE FROM allocated_identifier WHERE namespace = %s AND value = %s",
                (namespace, value),
            )
            return result.rowcount > 0
