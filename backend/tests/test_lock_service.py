# Overview: Pytest coverage for remittance lease locks and the heartbeat loop.

"""
Lease Lock Tests

Covers the mutual-exclusion guarantee (one live lease per parent),
takeover of expired leases, ownership-checked release, renewal and the
heartbeat thread lifecycle.
"""

import threading
import time
from datetime import timedelta

import pytest

from remitcore.models import ProcessLock
from remitcore.services import lock_service
from remitcore.services.lock_service import (
    LOCKED_BY_OTHER,
    OPERATION_PROCESS,
    OPERATION_UNDO,
    LeaseHeartbeat,
    LockError,
    acquire_lock_with_heartbeat,
    cleanup_expired_locks,
    get_lock,
    release_lock,
    remittance_lock,
    renew_lock,
)
from remitcore.time_utils import utcnow


def _wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _insert_lease(db_session, org_id, parent_id, *, operation_id, expires_in_seconds):
    now = utcnow()
    lease = ProcessLock(
        org_id=org_id,
        parent_transaction_id=parent_id,
        operation=OPERATION_PROCESS,
        operation_id=operation_id,
        locked_by_user_id=None,
        locked_at=now - timedelta(seconds=600),
        expires_at=now + timedelta(seconds=expires_in_seconds),
    )
    db_session.add(lease)
    db_session.commit()
    return lease


class TestAcquireRelease:

    def test_acquire_creates_lease_with_ttl(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 101, admin_a.id, OPERATION_PROCESS)
        try:
            lease = get_lock(org_a.id, 101)
            assert lease is not None
            assert lease.operation_id == handle.operation_id
            assert lease.locked_by_user_id == admin_a.id
            ttl = (lease.expires_at - lease.locked_at).total_seconds()
            assert 299 <= ttl <= 301
            assert handle.heartbeat.is_running
        finally:
            release_lock(handle)

        assert get_lock(org_a.id, 101) is None
        assert not handle.heartbeat.is_running

    def test_second_acquire_fails_fast(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 102, admin_a.id, OPERATION_PROCESS)
        try:
            with pytest.raises(LockError) as exc_info:
                acquire_lock_with_heartbeat(org_a.id, 102, admin_a.id, OPERATION_UNDO)
            assert exc_info.value.code == LOCKED_BY_OTHER
            assert exc_info.value.retryable is True
            assert exc_info.value.locked_by_user_id == admin_a.id
        finally:
            release_lock(handle)

    def test_different_parents_do_not_contend(self, db_session, org_a, admin_a):
        first = acquire_lock_with_heartbeat(org_a.id, 103, admin_a.id, OPERATION_PROCESS)
        second = acquire_lock_with_heartbeat(org_a.id, 104, admin_a.id, OPERATION_PROCESS)
        release_lock(first)
        release_lock(second)

    def test_same_parent_id_in_other_org_does_not_contend(self, db_session, org_a, org_b, admin_a, admin_b):
        first = acquire_lock_with_heartbeat(org_a.id, 105, admin_a.id, OPERATION_PROCESS)
        second = acquire_lock_with_heartbeat(org_b.id, 105, admin_b.id, OPERATION_PROCESS)
        release_lock(first)
        release_lock(second)

    def test_release_is_idempotent(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 106, admin_a.id, OPERATION_PROCESS)
        release_lock(handle)
        release_lock(handle)
        release_lock(None)
        assert handle.released is True

    def test_context_manager_releases_on_error(self, db_session, org_a, admin_a):
        with pytest.raises(RuntimeError):
            with remittance_lock(org_a.id, 107, admin_a.id, OPERATION_PROCESS):
                assert get_lock(org_a.id, 107) is not None
                raise RuntimeError("boom")
        assert get_lock(org_a.id, 107) is None


class TestExpiredLeases:
    """A crashed holder stops renewing; the next attempt takes over."""

    def test_expired_lease_is_taken_over(self, db_session, org_a, admin_a):
        _insert_lease(db_session, org_a.id, 201, operation_id="crashed-op", expires_in_seconds=-1)

        handle = acquire_lock_with_heartbeat(org_a.id, 201, admin_a.id, OPERATION_UNDO)
        try:
            lease = get_lock(org_a.id, 201)
            assert lease.operation_id == handle.operation_id
            assert lease.operation == OPERATION_UNDO
            assert lease.expires_at > utcnow()
        finally:
            release_lock(handle)

    def test_live_foreign_lease_blocks(self, db_session, org_a, admin_a):
        _insert_lease(db_session, org_a.id, 202, operation_id="live-op", expires_in_seconds=120)
        with pytest.raises(LockError):
            acquire_lock_with_heartbeat(org_a.id, 202, admin_a.id, OPERATION_PROCESS)
        assert get_lock(org_a.id, 202).operation_id == "live-op"

    def test_release_never_deletes_lease_of_another_operation(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 203, admin_a.id, OPERATION_PROCESS)
        # Simulate our lease expiring and another request taking it over
        lease = get_lock(org_a.id, 203)
        lease.operation_id = "thief-op"
        db_session.commit()

        release_lock(handle)

        remaining = get_lock(org_a.id, 203)
        assert remaining is not None
        assert remaining.operation_id == "thief-op"

    def test_cleanup_expired_locks(self, db_session, org_a):
        _insert_lease(db_session, org_a.id, 204, operation_id="old-1", expires_in_seconds=-10)
        _insert_lease(db_session, org_a.id, 205, operation_id="live-1", expires_in_seconds=100)

        assert cleanup_expired_locks() == 1
        assert get_lock(org_a.id, 204) is None
        assert get_lock(org_a.id, 205) is not None


class TestRenewLock:

    def test_renew_extends_expiry(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 301, admin_a.id, OPERATION_PROCESS, ttl_seconds=5)
        try:
            before = get_lock(org_a.id, 301).expires_at
            assert renew_lock(org_a.id, 301, handle.operation_id, ttl_seconds=300) is True
            db_session.expire_all()
            lease = get_lock(org_a.id, 301)
            assert lease.expires_at > before
            assert lease.renewed_at is not None
        finally:
            release_lock(handle)

    def test_renew_with_foreign_operation_id_fails(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 302, admin_a.id, OPERATION_PROCESS)
        try:
            assert renew_lock(org_a.id, 302, "not-mine") is False
        finally:
            release_lock(handle)

    def test_renew_after_release_fails(self, db_session, org_a, admin_a):
        handle = acquire_lock_with_heartbeat(org_a.id, 303, admin_a.id, OPERATION_PROCESS)
        release_lock(handle)
        assert renew_lock(org_a.id, 303, handle.operation_id) is False


class TestLeaseHeartbeat:
    """The renewal loop, without a database."""

    def test_ticks_until_stopped(self):
        calls = []
        heartbeat = LeaseHeartbeat(lambda: calls.append(1) or True, 0.01).start()

        assert _wait_for(lambda: heartbeat.ticks >= 3)
        heartbeat.stop()

        assert not heartbeat.is_running
        stopped_at = len(calls)
        time.sleep(0.05)
        assert len(calls) == stopped_at

    def test_stops_when_lease_is_gone(self):
        heartbeat = LeaseHeartbeat(lambda: False, 0.01).start()
        assert _wait_for(lambda: not heartbeat.is_running)
        assert heartbeat.ticks == 1

    def test_failures_are_retried(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("db down")
            return True

        heartbeat = LeaseHeartbeat(flaky, 0.01).start()
        assert _wait_for(lambda: heartbeat.ticks >= 1)
        heartbeat.stop()
        assert len(attempts) >= 3

    def test_runs_in_daemon_thread(self):
        heartbeat = LeaseHeartbeat(lambda: True, 10).start()
        try:
            threads = [t for t in threading.enumerate() if t.name == "lease-heartbeat"]
            assert threads and all(t.daemon for t in threads)
        finally:
            heartbeat.stop()

    def test_acquire_wires_heartbeat_to_renew(self, app, db_session, org_a, admin_a, monkeypatch):
        renewed = threading.Event()
        seen = []

        def fake_renew(org_id, parent_transaction_id, operation_id, *, ttl_seconds=None):
            seen.append((org_id, parent_transaction_id, operation_id))
            renewed.set()
            return True

        monkeypatch.setattr(lock_service, "renew_lock", fake_renew)

        handle = acquire_lock_with_heartbeat(
            org_a.id, 401, admin_a.id, OPERATION_PROCESS, heartbeat_interval=0.01
        )
        try:
            assert renewed.wait(2.0)
        finally:
            release_lock(handle)

        assert seen[0] == (org_a.id, 401, handle.operation_id)
