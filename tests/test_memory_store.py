"""Tests for the JSON-persisted in-memory store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from authcore.storage.errors import BackendUnavailable, ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _session(user_id, token_hash, **kwargs):
    return Session.new(user_id, token_hash, now=NOW, ttl_minutes=60, **kwargs)


def test_user_and_credential_persist_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "Persist@Example.com ",
        password_hash="digest",
        name="Persist",
        permissions=["b", "a", "a"],
    )
    store.create_session(_session(user.id, "h1", ip_addr="10.0.0.1"))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    again = reloaded.get_user_by_email("persist@example.com")
    assert again.id == user.id
    assert again.permissions == ["a", "b"]
    assert reloaded.get_credential(user.id).password_hash == "digest"
    sessions = reloaded.list_user_sessions(user.id)
    assert [s.refresh_token_hash for s in sessions] == ["h1"]
    assert sessions[0].ip_addr == "10.0.0.1"
    assert (tmp_path / "state" / "auth_store.json").exists()


def test_duplicate_email_violates_constraint(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("dup@example.com", password_hash="x")
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("DUP@example.com", password_hash="y")
    assert excinfo.value.detail == {"field": "email"}


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("copy@example.com", password_hash="x")

    cred = store.get_credential(user.id)
    cred.failed_attempts = 99
    cred.backup_code_hashes.append("leak")

    fresh = store.get_credential(user.id)
    assert fresh.failed_attempts == 0
    assert fresh.backup_code_hashes == []


def test_update_credential_is_conditional_on_version(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("cas@example.com", password_hash="x")
    cred = store.get_credential(user.id)

    updated = store.update_credential(user.id, cred.version, failed_attempts=1)
    assert updated.version == cred.version + 1

    assert store.update_credential(user.id, cred.version, failed_attempts=7) is None
    assert store.get_credential(user.id).failed_attempts == 1


def test_update_credential_rejects_unknown_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("fields@example.com", password_hash="x")
    with pytest.raises(ValueError):
        store.update_credential(user.id, 0, version=10)


def test_concurrent_cas_has_one_winner(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("race@example.com", password_hash="x")
    results = []
    barrier = threading.Barrier(8)

    def _writer(n):
        barrier.wait()
        results.append(store.update_credential(user.id, 0, failed_attempts=n))

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r is not None) == 1
    assert store.get_credential(user.id).version == 1


def test_backup_codes_consumed_once(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("codes@example.com", password_hash="x")
    store.update_credential(user.id, 0, backup_code_hashes=["c1", "c2"])

    assert store.consume_backup_code(user.id, "c1") is True
    assert store.consume_backup_code(user.id, "c1") is False
    assert store.get_credential(user.id).backup_code_hashes == ["c2"]


def test_find_credential_by_reset_hash(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("reset@example.com", password_hash="x")
    store.update_credential(user.id, 0, reset_token_hash="abc")

    assert store.find_credential_by_reset_hash("abc").user_id == user.id
    assert store.find_credential_by_reset_hash("zzz") is None
    assert store.find_credential_by_reset_hash("") is None


def test_active_refresh_hash_must_be_unique(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("hash@example.com", password_hash="x")
    first = store.create_session(_session(user.id, "same"))

    with pytest.raises(ConstraintViolation):
        store.create_session(_session(user.id, "same"))

    store.revoke_session(first.id, revoked_at=NOW)
    store.create_session(_session(user.id, "same"))


def test_rotate_session_requires_current_hash(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("rotate@example.com", password_hash="x")
    session = store.create_session(_session(user.id, "h1"))
    later = NOW + timedelta(minutes=1)

    rotated = store.rotate_session(
        session.id, "h1", "h2", rotated_at=later, expires_at=later + timedelta(hours=1)
    )
    assert rotated.refresh_token_hash == "h2"
    assert store.rotate_session(
        session.id, "h1", "h3", rotated_at=later, expires_at=later
    ) is None

    store.revoke_session(session.id, revoked_at=later)
    assert store.rotate_session(
        session.id, "h2", "h4", rotated_at=later, expires_at=later
    ) is None


def test_find_active_session_respects_expiry(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("expiry@example.com", password_hash="x")
    store.create_session(_session(user.id, "h1"))

    assert store.find_active_session(user.id, "h1", NOW) is not None
    assert store.find_active_session(user.id, "h1", NOW + timedelta(hours=1)) is None
    assert store.find_active_session("other-user", "h1", NOW) is None


def test_lock_timeout_raises_backend_unavailable(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), lock_timeout=0.05)
    acquired = threading.Event()
    release = threading.Event()

    def _hold():
        with store._locked():
            acquired.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=_hold)
    holder.start()
    acquired.wait(timeout=5)
    try:
        with pytest.raises(BackendUnavailable) as excinfo:
            store.get_user("anything")
        assert excinfo.value.backend == "memory"
    finally:
        release.set()
        holder.join()


def test_role_and_active_flag_updates(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("role@example.com", password_hash="x")

    promoted = store.update_user_role(user.id, "admin", ["users:write"])
    assert promoted.role == "admin"
    assert promoted.permissions == ["users:write"]
    assert store.set_user_active(user.id, False).is_active is False
    assert store.update_user_role("missing", "admin") is None


def test_dead_sessions_are_pruned_after_retention(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), session_retention=timedelta(hours=1))
    user = store.create_user("prune@example.com", password_hash="x")
    expired = store.create_session(_session(user.id, "old"))
    revoked = store.create_session(_session(user.id, "gone"))
    store.revoke_session(revoked.id, revoked_at=NOW)
    recent = store.create_session(
        Session.new(user.id, "recent", now=NOW + timedelta(hours=2), ttl_minutes=60)
    )
    store.revoke_session(recent.id, revoked_at=NOW + timedelta(hours=2))

    later = store.create_session(
        Session.new(user.id, "fresh", now=NOW + timedelta(hours=2, minutes=30), ttl_minutes=60)
    )

    assert store.get_session(expired.id) is None
    assert store.get_session(revoked.id) is None
    assert store.get_session(recent.id).revoked is True
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert {s.id for s in reloaded.list_user_sessions(user.id)} == {recent.id, later.id}


def test_recently_revoked_session_is_kept(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("keep@example.com", password_hash="x")
    session = store.create_session(_session(user.id, "h1"))
    store.revoke_session(session.id, revoked_at=NOW)

    store.create_session(_session(user.id, "h2"))

    assert store.get_session(session.id).revoked is True


def test_persist_failure_is_unavailable_and_rolls_back(tmp_path, monkeypatch):
    from authcore.storage import memory as memory_module

    store = MemoryStore(fs_root=str(tmp_path))
    kept = store.create_user("kept@example.com", password_hash="x")

    def _disk_full(*_args, **_kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(memory_module.os, "replace", _disk_full)
    with pytest.raises(BackendUnavailable) as excinfo:
        store.create_user("lost@example.com", password_hash="y")
    monkeypatch.undo()

    assert excinfo.value.backend == "memory"
    assert store.get_user_by_email("lost@example.com") is None
    assert store.get_user(kept.id) is not None
