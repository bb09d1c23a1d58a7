"""Reset-password and verify-email tokens are stored, verified and single use."""

from datetime import datetime, timedelta, timezone

import pytest

from branchcore.service.action_tokens import ActionTokenService
from branchcore.service.errors import (
    KindMismatchError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRevokedError,
)
from branchcore.service.tokens import CredentialIssuer
from branchcore.storage.memory import MemoryStore
from branchcore.storage.models import TokenKind


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def issuer(clock):
    return CredentialIssuer("action-token-secret-for-tests-0123456789", clock=clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, issuer, clock):
    return ActionTokenService(
        store,
        issuer,
        {
            TokenKind.RESET_PASSWORD: timedelta(minutes=10),
            TokenKind.VERIFY_EMAIL: timedelta(minutes=60),
        },
        clock=clock,
    )


async def test_reset_token_is_single_use(service):
    issued = await service.issue("emp-1", TokenKind.RESET_PASSWORD)

    payload = await service.verify(issued.value, TokenKind.RESET_PASSWORD)
    assert payload.subject == "emp-1"

    consumed = await service.consume(issued.value, TokenKind.RESET_PASSWORD)
    assert consumed.subject == "emp-1"

    with pytest.raises(TokenRevokedError):
        await service.verify(issued.value, TokenKind.RESET_PASSWORD)
    with pytest.raises(TokenRevokedError):
        await service.consume(issued.value, TokenKind.RESET_PASSWORD)


async def test_consume_burns_other_outstanding_tokens_of_kind(service):
    older = await service.issue("emp-1", TokenKind.RESET_PASSWORD)
    newer = await service.issue("emp-1", TokenKind.RESET_PASSWORD)
    verify_email = await service.issue("emp-1", TokenKind.VERIFY_EMAIL)

    await service.consume(newer.value, TokenKind.RESET_PASSWORD)

    with pytest.raises(TokenRevokedError):
        await service.verify(older.value, TokenKind.RESET_PASSWORD)
    assert (await service.verify(verify_email.value, TokenKind.VERIFY_EMAIL)).subject == "emp-1"


async def test_kinds_are_not_interchangeable(service):
    issued = await service.issue("emp-1", TokenKind.VERIFY_EMAIL)
    with pytest.raises(KindMismatchError):
        await service.verify(issued.value, TokenKind.RESET_PASSWORD)
    with pytest.raises(KindMismatchError):
        await service.issue("emp-1", TokenKind.REFRESH)


async def test_unstored_token_is_not_found(service, issuer):
    stray = issuer.issue("emp-1", TokenKind.RESET_PASSWORD, timedelta(minutes=10)).value
    with pytest.raises(TokenNotFoundError):
        await service.verify(stray, TokenKind.RESET_PASSWORD)


async def test_expired_reset_token(service, clock):
    issued = await service.issue("emp-1", TokenKind.RESET_PASSWORD)
    clock.advance(minutes=11)
    with pytest.raises(TokenExpiredError):
        await service.verify(issued.value, TokenKind.RESET_PASSWORD)
