"""Tests for the brute-force lockout state machine."""

from datetime import timedelta

import pytest

from authcore.service.errors import AccountLocked, InvalidCredentials, StoreUnavailable
from authcore.service.lockout import LockoutManager, apply_credential_update
from authcore.storage.memory import MemoryStore


@pytest.fixture
def user(memory_store, fast_hasher):
    return memory_store.create_user(
        "lockout@example.com", password_hash=fast_hasher.hash("Correct-Horse-9-Battery")
    )


@pytest.fixture
def lockout(memory_store, clock):
    return LockoutManager(memory_store, threshold=5, lock_minutes=30, clock=clock)


def _fail_n(lockout, store, user_id, n):
    cred = store.get_credential(user_id)
    for _ in range(n):
        cred = lockout.record_failure(cred)
    return cred


def test_failures_below_threshold_only_count(lockout, memory_store, user, clock):
    cred = _fail_n(lockout, memory_store, user.id, 4)

    assert cred.failed_attempts == 4
    assert cred.locked_until is None
    assert lockout.ensure_unlocked(cred).failed_attempts == 4


def test_threshold_failure_locks_account(lockout, memory_store, user, clock):
    cred = _fail_n(lockout, memory_store, user.id, 5)

    assert cred.locked_until == clock() + timedelta(minutes=30)
    with pytest.raises(AccountLocked) as excinfo:
        lockout.ensure_unlocked(cred)
    assert excinfo.value.status_code == 423
    assert excinfo.value.locked_until == cred.locked_until


def test_lock_holds_until_expiry(lockout, memory_store, user, clock):
    cred = _fail_n(lockout, memory_store, user.id, 5)

    clock.advance(minutes=29, seconds=59)
    with pytest.raises(AccountLocked):
        lockout.ensure_unlocked(memory_store.get_credential(user.id))


def test_expired_lock_is_cleared(lockout, memory_store, user, clock):
    _fail_n(lockout, memory_store, user.id, 5)
    clock.advance(minutes=30)

    cred = lockout.ensure_unlocked(memory_store.get_credential(user.id))

    assert cred.failed_attempts == 0
    assert cred.locked_until is None
    assert memory_store.get_credential(user.id).locked_until is None


def test_failure_after_expired_lock_restarts_count(lockout, memory_store, user, clock):
    cred = _fail_n(lockout, memory_store, user.id, 5)
    clock.advance(minutes=31)

    cred = lockout.record_failure(cred)

    assert cred.failed_attempts == 1
    assert cred.locked_until is None


def test_failure_while_locked_does_not_extend_lock(lockout, memory_store, user, clock):
    cred = _fail_n(lockout, memory_store, user.id, 5)
    locked_until = cred.locked_until
    clock.advance(minutes=5)

    cred = lockout.record_failure(cred)

    assert cred.locked_until == locked_until
    assert cred.failed_attempts == 5


def test_success_resets_counter(lockout, memory_store, user):
    cred = _fail_n(lockout, memory_store, user.id, 3)

    cred = lockout.record_success(cred)

    assert cred.failed_attempts == 0
    assert memory_store.get_credential(user.id).failed_attempts == 0


def test_success_without_failures_skips_write(lockout, memory_store, user):
    cred = memory_store.get_credential(user.id)
    assert lockout.record_success(cred).version == cred.version


def test_stale_snapshot_recomputes_from_latest(lockout, memory_store, user):
    stale = memory_store.get_credential(user.id)
    # a concurrent failure lands first
    memory_store.update_credential(user.id, stale.version, failed_attempts=2)

    cred = lockout.record_failure(stale)

    assert cred.failed_attempts == 3


def test_concurrent_failures_are_not_lost(lockout, memory_store, user):
    snapshots = [memory_store.get_credential(user.id) for _ in range(5)]

    for snapshot in snapshots:
        lockout.record_failure(snapshot)

    cred = memory_store.get_credential(user.id)
    assert cred.failed_attempts == 5
    assert cred.locked_until is not None


class _AlwaysStaleStore(MemoryStore):
    def update_credential(self, user_id, expected_version, **fields):
        return None


def test_unbounded_contention_surfaces_unavailable(tmp_path, fast_hasher):
    store = _AlwaysStaleStore(fs_root=str(tmp_path))
    user = store.create_user("busy@example.com", password_hash=fast_hasher.hash("x"))

    with pytest.raises(StoreUnavailable):
        apply_credential_update(
            store,
            store.get_credential(user.id),
            lambda _cred: {"failed_attempts": 1},
            max_attempts=3,
        )


def test_missing_credential_on_reread_is_invalid(memory_store, user):
    cred = memory_store.get_credential(user.id)
    memory_store.credentials.pop(user.id)

    with pytest.raises(InvalidCredentials):
        apply_credential_update(memory_store, cred, lambda _c: {"failed_attempts": 1})
