"""Scoped, human-readable identifier allocation without a database sequence.

The current maximum of a scope is re-read from the store on every attempt and
the write is guarded by a uniqueness constraint, so any number of processes
can allocate concurrently. Conflicts are retried with a short jittered backoff;
when retries run out a timestamp-derived suffix is used instead.
"""

from __future__ import annotations

import random
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Collection, FrozenSet, Optional, Protocol
from zoneinfo import ZoneInfo

from branchcore.logging import get_logger
from branchcore.service.errors import SequenceExhaustedError, ValidationError
from branchcore.storage.common import IDENTIFIER_CONSTRAINT, sequence_suffix
from branchcore.storage.errors import ConstraintViolation, StoreUnavailable
from branchcore.storage.models import AllocatedIdentifier, utcnow

logger = get_logger(__name__)

INVOICE_NUMBER_NAMESPACE = "invoice.invoice_number"
INVOICE_ID_NAMESPACE = "invoice.invoice_id"
TASK_ID_NAMESPACE = "task.task_id"

_FALLBACK_ATTEMPTS = 3


class SequenceStore(Protocol):
    def max_identifier(self, namespace: str, prefix: str) -> Optional[str]: ...

    def claim_identifier(self, namespace: str, value: str) -> AllocatedIdentifier: ...

    def release_identifier(self, namespace: str, value: str) -> bool: ...


@dataclass(frozen=True)
class ScopeKey:
    """(entity type, owning branch, time bucket) partition of a sequence."""

    entity: str
    bucket: str
    branch: Optional[str] = None

    def render(self) -> str:
        return f"{self.branch}-{self.bucket}" if self.branch else self.bucket


@dataclass(frozen=True)
class NamedFormat:
    entity: str
    prefix: str
    width: int
    namespace: str
    bucket_format: str
    per_branch: bool


NAMED_FORMATS = {
    "invoice_number": NamedFormat("INVOICE", "INV-", 4, INVOICE_NUMBER_NAMESPACE, "%Y%m", False),
    "invoice_id": NamedFormat("INVOICE", "INV-", 3, INVOICE_ID_NAMESPACE, "%Y%m%d", True),
    "task_id": NamedFormat("TASK", "TSK-", 3, TASK_ID_NAMESPACE, "%Y", True),
}


@dataclass(frozen=True)
class Allocation:
    identifier: str
    namespace: str
    sequence: Optional[int]
    attempts: int
    fallback: bool = False


def sequence_prefix(prefix: str, scope_key: str) -> str:
    return f"{prefix}{scope_key}-"


def format_identifier(prefix: str, scope_key: str, sequence: int, width: int) -> str:
    if sequence < 1:
        raise ValueError("sequence starts at 1")
    return f"{sequence_prefix(prefix, scope_key)}{str(sequence).zfill(width)}"


def parse_sequence(identifier: str, prefix: str, scope_key: str) -> Optional[int]:
    return sequence_suffix(identifier, sequence_prefix(prefix, scope_key))


def next_expected(identifier: Optional[str], prefix: str, scope_key: str, width: int) -> str:
    """The identifier that follows ``identifier`` in its scope (or the first one)."""
    current = parse_sequence(identifier, prefix, scope_key) if identifier else None
    if identifier and current is None:
        raise ValueError(f"{identifier!r} is not in scope {prefix}{scope_key}")
    return format_identifier(prefix, scope_key, (current or 0) + 1, width)


def timestamp_identifier(prefix: str, scope_key: str, now: datetime) -> str:
    """Collision-resistant fallback; the ``T`` marker keeps it out of the numeric sequence."""
    millis = int(now.timestamp() * 1000)
    return f"{sequence_prefix(prefix, scope_key)}T{millis}{secrets.token_hex(2)}"


class SequenceAllocator:
    def __init__(
        self,
        store: SequenceStore,
        *,
        max_retries: int = 8,
        backoff_ms: int = 5,
        timestamp_fallback: bool = True,
        tz: ZoneInfo | str = "Europe/Rome",
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.max_retries = max(1, max_retries)
        self.backoff_ms = backoff_ms
        self.timestamp_fallback = timestamp_fallback
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._clock = clock or utcnow
        self._sleep = sleep

    def _local_now(self, now: Optional[datetime] = None) -> datetime:
        now = now or self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def _backoff(self, attempt: int) -> None:
        if not self.backoff_ms:
            return
        base = min(self.backoff_ms * (2 ** (attempt - 1)), 100) / 1000
        self._sleep(base * random.uniform(0.5, 1.5))

    def next(
        self, prefix: str, scope_key: str, width: int, *, namespace: str
    ) -> str:
        """Candidate identifier: current scope maximum plus one."""
        current = self.store.max_identifier(namespace, sequence_prefix(prefix, scope_key))
        return next_expected(current, prefix, scope_key, width)

    def allocate(
        self,
        prefix: str,
        scope_key: str,
        width: int,
        *,
        namespace: str,
        persist: Optional[Callable[[str], object]] = None,
        retry_on: Collection[str] = (),
    ) -> Allocation:
        """Reserve the next identifier of the scope.

        The value is claimed in the store's identifier registry; ``persist``
        (for example the insert of the owning business row) runs afterwards.
        Only violations of the registry key, or of a constraint named in
        ``retry_on`` (the business table's own unique key on the identifier),
        count as a lost race and trigger another attempt. Any other error from
        ``persist`` releases the claim and propagates unchanged.
        """
        if width < 1:
            raise ValidationError("width must be positive", detail={"width": width})
        collisions = frozenset({IDENTIFIER_CONSTRAINT, *retry_on})
        for attempt in range(1, self.max_retries + 1):
            candidate = self.next(prefix, scope_key, width, namespace=namespace)
            try:
                self._claim(namespace, candidate, persist, collisions)
            except ConstraintViolation as exc:
                if exc.detail.get("constraint") not in collisions:
                    raise
                logger.info(
                    "sequence_conflict_retry",
                    namespace=namespace,
                    candidate=candidate,
                    attempt=attempt,
                )
                self._backoff(attempt)
                continue
            return Allocation(
                identifier=candidate,
                namespace=namespace,
                sequence=parse_sequence(candidate, prefix, scope_key),
                attempts=attempt,
            )

        if not self.timestamp_fallback:
            logger.error("sequence_exhausted", namespace=namespace, scope=scope_key)
            raise SequenceExhaustedError(
                "identifier allocation retries exhausted",
                detail={"namespace": namespace, "scope": scope_key},
            )
        return self._allocate_fallback(prefix, scope_key, namespace, persist, collisions)

    def _allocate_fallback(
        self,
        prefix: str,
        scope_key: str,
        namespace: str,
        persist: Optional[Callable[[str], object]],
        collisions: FrozenSet[str],
    ) -> Allocation:
        for attempt in range(1, _FALLBACK_ATTEMPTS + 1):
            candidate = timestamp_identifier(prefix, scope_key, self._clock())
            try:
                self._claim(namespace, candidate, persist, collisions)
            except ConstraintViolation as exc:
                if exc.detail.get("constraint") not in collisions:
                    raise
                continue
            logger.warning(
                "sequence_exhausted_fallback",
                namespace=namespace,
                identifier=candidate,
                retries=self.max_retries,
            )
            return Allocation(
                identifier=candidate,
                namespace=namespace,
                sequence=None,
                attempts=self.max_retries + attempt,
                fallback=True,
            )
        raise SequenceExhaustedError(
            "identifier allocation failed even with timestamp fallback",
            detail={"namespace": namespace, "scope": scope_key},
        )

    def _claim(
        self,
        namespace: str,
        value: str,
        persist: Optional[Callable[[str], object]],
        collisions: FrozenSet[str],
    ) -> None:
        self.store.claim_identifier(namespace, value)
        if persist is None:
            return
        try:
            persist(value)
        except Exception as exc:
            # A collision means the value is taken in the business table too
            if not (
                isinstance(exc, ConstraintViolation)
                and exc.detail.get("constraint") in collisions
            ):
                self._release(namespace, value)
            raise

    def _release(self, namespace: str, value: str) -> None:
        try:
            self.store.release_identifier(namespace, value)
        except StoreUnavailable as exc:
            logger.error(
                "sequence_release_failed",
                namespace=namespace,
                identifier=value,
                error=str(exc),
            )

    # named formats
    def named_scope(
        self, name: str, branch_code: Optional[str] = None, now: Optional[datetime] = None
    ) -> tuple[NamedFormat, str]:
        fmt = NAMED_FORMATS.get(name)
        if fmt is None:
            raise ValidationError(f"unknown identifier format: {name}")
        bucket = self._local_now(now).strftime(fmt.bucket_format)
        branch = _branch(branch_code) if fmt.per_branch else None
        return fmt, ScopeKey(fmt.entity, bucket, branch).render()

    def preview(
        self, name: str, branch_code: Optional[str] = None, now: Optional[datetime] = None
    ) -> str:
        """Next identifier of a named format without reserving it."""
        fmt, scope = self.named_scope(name, branch_code, now)
        return self.next(fmt.prefix, scope, fmt.width, namespace=fmt.namespace)

    def allocate_named(
        self,
        name: str,
        branch_code: Optional[str] = None,
        now: Optional[datetime] = None,
        *,
        persist: Optional[Callable[[str], object]] = None,
        retry_on: Collection[str] = (),
    ) -> Allocation:
        fmt, scope = self.named_scope(name, branch_code, now)
        return self.allocate(
            fmt.prefix,
            scope,
            fmt.width,
            namespace=fmt.namespace,
            persist=persist,
            retry_on=retry_on,
        )

    def invoice_number(self, now: Optional[datetime] = None) -> str:
        """``INV-YYYYMM-SSSS``, one sequence per calendar month."""
        return self.allocate_named("invoice_number", now=now).identifier

    def invoice_id(self, branch_code: str, now: Optional[datetime] = None) -> str:
        """``INV-<branchCode>-YYYYMMDD-SSS``, one sequence per branch per day."""
        return self.allocate_named("invoice_id", branch_code, now).identifier

    def task_id(self, branch_code: str, now: Optional[datetime] = None) -> str:
        """``TSK-<branchCode>-YYYY-SSS``, one sequence per branch per year."""
        return self.allocate_named("task_id", branch_code, now).identifier


def _branch(branch_code: Optional[str]) -> str:
    branch_code = (branch_code or "").strip()
    if not branch_code:
        raise ValidationError("branch code is required")
    return branch_code
