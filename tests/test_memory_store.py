from datetime import datetime, timedelta, timezone

import pytest

from branchcore.storage.common import (
    ACTIVE_SESSION_CONSTRAINT,
    IDENTIFIER_CONSTRAINT,
    TOKEN_VALUE_CONSTRAINT,
    greatest_in_sequence,
    sequence_suffix,
)
from branchcore.storage.errors import ConstraintViolation
from branchcore.storage.memory import MemoryStore
from branchcore.storage.models import CredentialToken, DeviceMeta, SecurityEvent, TokenKind


def _refresh(value: str, principal_id: str = "emp-1", session_id: str = "sess_1", days: int = 1):
    return CredentialToken.new(
        value,
        principal_id,
        TokenKind.REFRESH,
        datetime.now(timezone.utc) + timedelta(days=days),
        session_id=session_id,
        device=DeviceMeta(device_info="laptop"),
    )


def test_duplicate_token_value_rejected():
    store = MemoryStore()
    store.insert_token(_refresh("tok-1"))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_token(_refresh("tok-1", principal_id="emp-2"))
    assert exc_info.value.detail["constraint"] == TOKEN_VALUE_CONSTRAINT


def test_one_active_refresh_row_per_principal():
    store = MemoryStore()
    store.insert_token(_refresh("tok-1"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_token(_refresh("tok-2", session_id="sess_2"))
    assert exc_info.value.detail["constraint"] == ACTIVE_SESSION_CONSTRAINT

    # Other principals and non-refresh kinds are unaffected
    store.insert_token(_refresh("tok-3", principal_id="emp-2"))
    store.insert_token(
        CredentialToken.new(
            "reset-1", "emp-1", TokenKind.RESET_PASSWORD, datetime.now(timezone.utc) + timedelta(minutes=10)
        )
    )

    revoked = store.revoke_active_tokens("emp-1", TokenKind.REFRESH)
    assert [tok.token_value for tok in revoked] == ["tok-1"]
    assert revoked[0].is_active is False and revoked[0].blacklisted is True
    store.insert_token(_refresh("tok-2", session_id="sess_2"))


def test_returned_rows_are_copies():
    store = MemoryStore()
    inserted = store.insert_token(_refresh("tok-1"))
    inserted.blacklisted = True
    assert store.get_token("tok-1").blacklisted is False


def test_revoke_token_reports_change_once():
    store = MemoryStore()
    store.insert_token(_refresh("tok-1"))
    assert store.revoke_token("tok-1") is True
    assert store.revoke_token("tok-1") is False
    assert store.revoke_token("missing") is False


def test_find_active_excludes_expired_and_revoked():
    store = MemoryStore()
    now = datetime.now(timezone.utc)
    store.insert_token(_refresh("tok-1"))
    assert [t.token_value for t in store.find_active_tokens("emp-1", TokenKind.REFRESH, now)] == ["tok-1"]
    assert store.find_active_tokens("emp-1", TokenKind.REFRESH, now + timedelta(days=2)) == []
    assert store.find_active_by_session("sess_1", now).token_value == "tok-1"

    store.revoke_session_tokens("sess_1")
    assert store.find_active_tokens("emp-1", TokenKind.REFRESH, now) == []
    assert store.find_active_by_session("sess_1", now) is None


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_token(_refresh("tok-1"))
    store.revoke_token("tok-1")
    store.insert_token(_refresh("tok-2", session_id="sess_2"))
    store.claim_identifier("invoice.invoice_id", "INV-BR-001-20241225-001")
    store.record_security_event(
        SecurityEvent(
            id="evt-1",
            type="MULTIPLE_DEVICES",
            principal_id="emp-1",
            severity="MEDIUM",
            details="superseded",
            meta={"terminated_sessions": ["sess_1"]},
        )
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_token("tok-1").blacklisted is True
    assert reloaded.get_token("tok-2").device_info == "laptop"
    assert reloaded.get_token("tok-2").kind == TokenKind.REFRESH
    assert reloaded.max_identifier("invoice.invoice_id", "INV-BR-001-20241225-") == "INV-BR-001-20241225-001"
    events = reloaded.list_security_events("emp-1")
    assert events[0].meta == {"terminated_sessions": ["sess_1"]}
    # Constraint still enforced after reload
    with pytest.raises(ConstraintViolation):
        reloaded.insert_token(_refresh("tok-3", session_id="sess_3"))


def test_state_stays_in_memory_without_fs_root(tmp_path):
    assert MemoryStore().state_path is None

    store = MemoryStore(fs_root=str(tmp_path))
    assert store.state_path == tmp_path / "state" / "memory_store.json"
    assert not store.state_path.exists()
    store.insert_token(_refresh("tok-1"))
    assert store.state_path.exists()


def test_restore_token_reactivates_revoked_row():
    store = MemoryStore()
    now = datetime.now(timezone.utc)
    store.insert_token(_refresh("tok-1"))
    store.revoke_token("tok-1")

    assert store.restore_token("tok-1", now) is True
    assert store.get_token("tok-1").is_live(now)
    # Nothing left to undo
    assert store.restore_token("tok-1", now) is False
    assert store.restore_token("missing", now) is False


def test_restore_token_refuses_expired_row():
    store = MemoryStore()
    store.insert_token(_refresh("tok-1"))
    store.revoke_token("tok-1")
    assert store.restore_token("tok-1", datetime.now(timezone.utc) + timedelta(days=2)) is False
    assert store.get_token("tok-1").blacklisted is True


def test_restore_token_refuses_second_active_session():
    store = MemoryStore()
    store.insert_token(_refresh("tok-1"))
    store.revoke_token("tok-1")
    store.insert_token(_refresh("tok-2", session_id="sess_2"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.restore_token("tok-1", datetime.now(timezone.utc))
    assert exc_info.value.detail["constraint"] == ACTIVE_SESSION_CONSTRAINT
    assert store.get_token("tok-1").blacklisted is True


def test_count_session_rotations_skips_login_row_and_old_rows():
    store = MemoryStore()
    start = datetime(2024, 12, 25, 9, 0, tzinfo=timezone.utc)
    expires = start + timedelta(days=1)
    for minute in range(6):
        store.insert_token(
            CredentialToken.new(
                f"tok-{minute}",
                "emp-1",
                TokenKind.REFRESH,
                expires,
                session_id="sess_1",
                now=start + timedelta(minutes=minute),
            )
        )
        store.revoke_token(f"tok-{minute}")

    assert store.count_session_rotations("sess_1", start) == 5
    assert store.count_session_rotations("sess_1", start + timedelta(minutes=3)) == 3
    assert store.count_session_rotations("sess_other", start) == 0


def test_purge_security_events_keeps_recent_rows():
    store = MemoryStore()
    now = datetime.now(timezone.utc)
    for idx, age in enumerate((timedelta(days=100), timedelta(days=1))):
        store.record_security_event(
            SecurityEvent(
                id=f"evt-{idx}",
                type="RAPID_REFRESH",
                principal_id="emp-1",
                severity="MEDIUM",
                details="rapid",
                created_at=now - age,
            )
        )

    assert store.purge_security_events(now - timedelta(days=90)) == 1
    assert [e.id for e in store.list_security_events("emp-1")] == ["evt-1"]
    assert store.purge_security_events(now - timedelta(days=90)) == 0


def test_release_identifier_frees_value():
    store = MemoryStore()
    store.claim_identifier("task.task_id", "TSK-BR-001-2024-001")
    assert store.release_identifier("task.task_id", "TSK-BR-001-2024-001") is True
    assert store.release_identifier("task.task_id", "TSK-BR-001-2024-001") is False
    store.claim_identifier("task.task_id", "TSK-BR-001-2024-001")


def test_duplicate_identifier_rejected():
    store = MemoryStore()
    store.claim_identifier("task.task_id", "TSK-BR-001-2024-001")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.claim_identifier("task.task_id", "TSK-BR-001-2024-001")
    assert exc_info.value.detail["constraint"] == IDENTIFIER_CONSTRAINT
    # Same value in another namespace is a different column
    store.claim_identifier("invoice.invoice_id", "TSK-BR-001-2024-001")


def test_sequence_suffix_rules():
    assert sequence_suffix("INV-202412-0007", "INV-202412-") == 7
    assert sequence_suffix("INV-202412-T17351172000001a2b", "INV-202412-") is None
    assert sequence_suffix("INV-202501-0001", "INV-202412-") is None
    assert greatest_in_sequence(
        ["INV-202412-0009", "INV-202412-0010", "INV-202412-T9999", "INV-202412-0002"], "INV-202412-"
    ) == "INV-202412-0010"
    assert greatest_in_sequence([], "INV-202412-") is None
