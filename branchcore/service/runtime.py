from __future__ import annotations

import threading
from datetime import timedelta
from typing import Union

from branchcore.config import get_settings, reset_settings_cache
from branchcore.logging import get_logger
from branchcore.service.action_tokens import ActionTokenService
from branchcore.service.authenticator import RequestAuthenticator
from branchcore.service.sequences import SequenceAllocator
from branchcore.service.sessions import SessionManager
from branchcore.service.tokens import CredentialIssuer
from branchcore.storage.memory import MemoryStore
from branchcore.storage.models import TokenKind
from branchcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances wired from settings."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.store_statement_timeout_ms,
                    min_size=self.settings.store_pool_min_size,
                    max_size=self.settings.store_pool_max_size,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.issuer = CredentialIssuer(
            self.settings.jwt_secret,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
        )
        self.sessions = SessionManager(
            self.store,
            self.issuer,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            login_retries=self.settings.session_login_retries,
            rapid_refresh_limit=self.settings.rapid_refresh_limit,
            rapid_refresh_window=timedelta(seconds=self.settings.rapid_refresh_window_seconds),
            event_retention=timedelta(days=self.settings.security_event_retention_days),
        )
        self.action_tokens = ActionTokenService(
            self.store,
            self.issuer,
            {
                TokenKind.RESET_PASSWORD: timedelta(
                    minutes=self.settings.reset_password_token_ttl_minutes
                ),
                TokenKind.VERIFY_EMAIL: timedelta(
                    minutes=self.settings.verify_email_token_ttl_minutes
                ),
            },
        )
        self.allocator = SequenceAllocator(
            self.store,
            max_retries=self.settings.sequence_max_retries,
            backoff_ms=self.settings.sequence_retry_backoff_ms,
            timestamp_fallback=self.settings.sequence_timestamp_fallback,
            tz=self.settings.tz,
        )
        self.authenticator = RequestAuthenticator(self.issuer, self.sessions)

        logger.info(
            "runtime_initialized",
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            business_timezone=self.settings.business_timezone,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a freshly read environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
