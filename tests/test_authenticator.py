from datetime import timedelta

import pytest

from branchcore.service.authenticator import RequestAuthenticator
from branchcore.service.errors import (
    AuthenticationError,
    InvalidCredentialFormatError,
    KindMismatchError,
    NoActiveSessionError,
    SessionSupersededError,
    TokenExpiredError,
)
from branchcore.service.runtime import get_runtime
from branchcore.service.sessions import SessionManager
from branchcore.service.tokens import CredentialIssuer
from branchcore.storage.models import TokenKind


class ExplodingStore:
    def __getattr__(self, name):
        raise AssertionError(f"store.{name} must not be called for stateless checks")


def test_authenticate_is_stateless():
    issuer = CredentialIssuer("stateless-secret-for-tests-0123456789")
    sessions = SessionManager(
        ExplodingStore(), issuer, access_ttl=timedelta(minutes=5), refresh_ttl=timedelta(days=1)
    )
    auth = RequestAuthenticator(issuer, sessions)
    token = issuer.issue("emp-1", TokenKind.ACCESS, timedelta(minutes=5), session_id="sess_a").value

    ctx = auth.authenticate(f"Bearer {token}")

    assert ctx.principal_id == "emp-1"
    assert ctx.session_id == "sess_a"


@pytest.mark.parametrize("header", [None, "", "Basic dXNlcjpwYXNz", "Bearer ", "Bearer"])
def test_authenticate_requires_bearer(header):
    auth = get_runtime().authenticator
    with pytest.raises(AuthenticationError):
        auth.authenticate(header)


def test_authenticate_accepts_lowercase_scheme():
    runtime = get_runtime()
    token = runtime.issuer.issue("emp-1", TokenKind.ACCESS, timedelta(minutes=5)).value
    assert runtime.authenticator.authenticate(f"bearer {token}").principal_id == "emp-1"


def test_authenticate_rejects_refresh_token():
    runtime = get_runtime()
    token = runtime.issuer.issue("emp-1", TokenKind.REFRESH, timedelta(days=1)).value
    with pytest.raises(KindMismatchError):
        runtime.authenticator.authenticate(f"Bearer {token}")


def test_authenticate_rejects_expired_access_token():
    runtime = get_runtime()
    token = runtime.issuer.issue("emp-1", TokenKind.ACCESS, timedelta(seconds=-1)).value
    with pytest.raises(TokenExpiredError):
        runtime.authenticator.authenticate(f"Bearer {token}")


def test_authenticate_rejects_non_ascii_signature():
    runtime = get_runtime()
    token = runtime.issuer.issue("emp-1", TokenKind.ACCESS, timedelta(minutes=5)).value
    header, payload, _ = token.split(".")
    with pytest.raises(InvalidCredentialFormatError):
        runtime.authenticator.authenticate(f"Bearer {header}.{payload}.ñ")


async def test_validate_session_without_login():
    auth = get_runtime().authenticator
    with pytest.raises(NoActiveSessionError) as exc_info:
        await auth.validate_session("emp-ghost")
    assert exc_info.value.message == "No active session found. Please login again."


async def test_validate_session_detects_other_device():
    runtime = get_runtime()
    first = await runtime.sessions.login("emp-1")
    second = await runtime.sessions.login("emp-1")

    with pytest.raises(SessionSupersededError) as exc_info:
        await runtime.authenticator.validate_session("emp-1", first.session_id)
    assert exc_info.value.message == (
        "Session expired. Another device has logged in with this account."
    )

    info = await runtime.authenticator.validate_session("emp-1", second.session_id)
    assert info.session_id == second.session_id
    # Without a presented session id only the existence check applies
    assert (await runtime.authenticator.validate_session("emp-1")).session_id == second.session_id


async def test_authenticate_request_uses_token_session():
    runtime = get_runtime()
    first = await runtime.sessions.login("emp-1")

    ctx = await runtime.authenticator.authenticate_request(f"Bearer {first.access_token}")
    assert ctx.session_id == first.session_id

    await runtime.sessions.login("emp-1")
    # Old access token still verifies cryptographically but its session is gone
    assert runtime.authenticator.authenticate(f"Bearer {first.access_token}").principal_id == "emp-1"
    with pytest.raises(SessionSupersededError):
        await runtime.authenticator.authenticate_request(f"Bearer {first.access_token}")
