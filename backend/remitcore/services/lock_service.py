# Overview: Lease-based locks per parent transaction, renewed by a heartbeat thread.

"""
Remittance Lease Locks

WHY: Two admins (or one admin double-clicking) must never split, undo or
repair the same bulk movement at the same time. Handlers can run in
separate worker processes, so the lock is a database row, not a mutex.

DESIGN:
- One process_locks row per (org_id, parent_transaction_id)
- Acquisition = conditional INSERT (unique constraint); a live lease makes
  the caller fail fast with LockError (retryable, HTTP 409)
- expires_at = now + TTL (300s); a heartbeat thread renews it every 60s
  while the owning request is alive
- A crashed holder stops renewing, the lease expires and the next attempt
  takes it over with a compare-and-set UPDATE. There is no other recovery path.
- Release stops the heartbeat and deletes the row, but only if it still
  carries this operation_id; calling it twice is harmless.

USAGE:
    with remittance_lock(org_id, parent_id, user_id, OPERATION_UNDO) as handle:
        ...
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import ProcessLock
from remitcore.time_utils import utcnow, utc_in
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 300
HEARTBEAT_INTERVAL_SECONDS = 60

OPERATION_PROCESS = "remittance_process"
OPERATION_REPAIR = "remittance_repair"
OPERATION_UNDO = "remittance_undo"
OPERATION_SANITIZE = "remittance_sanitize"
OPERATION_AUDIT = "remittance_audit"
OPERATION_ORPHAN_CLEANUP = "remittance_orphan_cleanup"

LOCKED_BY_OTHER = "LOCKED_BY_OTHER"


class LockError(Exception):
    """Raised when a live lease is held by another operation (retryable)."""

    retryable = True

    def __init__(self, message: str, *, code: str = LOCKED_BY_OTHER, locked_by_user_id: int | None = None):
        super().__init__(message)
        self.code = code
        self.locked_by_user_id = locked_by_user_id


class LeaseHeartbeat:
    """
    Background renewal loop bound to one in-flight operation.

    Runs `renew` every `interval` seconds until stop() is called. Failures are
    logged and retried on the next tick; if renewals keep failing the lease
    simply expires.
    """

    def __init__(self, renew, interval: float, *, name: str = "lease-heartbeat"):
        self._renew = renew
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.ticks = 0

    def start(self) -> "LeaseHeartbeat":
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                renewed = self._renew()
            except Exception:
                logger.warning("Lease heartbeat failed", exc_info=True)
                continue
            self.ticks += 1
            if renewed is False:
                logger.warning("Lease heartbeat found the lease gone; stopping renewals")
                return

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()


@dataclass
class LockHandle:
    org_id: int
    parent_transaction_id: int
    operation: str
    operation_id: str
    user_id: int | None
    heartbeat: LeaseHeartbeat | None = field(default=None, repr=False)
    released: bool = False


def _ttl_seconds(ttl_seconds: int | None) -> int:
    if ttl_seconds is not None:
        return ttl_seconds
    return current_app.config.get("REMITTANCE_LOCK_TTL_SECONDS", LOCK_TTL_SECONDS)


def _new_operation_id() -> str:
    return uuid.uuid4().hex


def get_lock(org_id: int, parent_transaction_id: int) -> ProcessLock | None:
    return (
        db.session.query(ProcessLock)
        .filter_by(org_id=org_id, parent_transaction_id=parent_transaction_id)
        .first()
    )


def _claim_lease(
    org_id: int,
    parent_transaction_id: int,
    user_id: int | None,
    operation: str,
    operation_id: str,
    ttl: int,
) -> None:
    now = utcnow()
    expires_at = utc_in(ttl)

    existing = lock_for_update(
        db.session.query(ProcessLock).filter_by(
            org_id=org_id, parent_transaction_id=parent_transaction_id
        )
    ).first()

    if existing is None:
        db.session.add(ProcessLock(
            org_id=org_id,
            parent_transaction_id=parent_transaction_id,
            operation=operation,
            operation_id=operation_id,
            locked_by_user_id=user_id,
            locked_at=now,
            expires_at=expires_at,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise LockError("Operation locked by another request")
        return

    if existing.expires_at > now:
        holder = existing.locked_by_user_id
        db.session.rollback()
        raise LockError(
            f"Operation locked by another user ({holder})",
            locked_by_user_id=holder,
        )

    # Expired lease: take it over only if nobody renewed or stole it meanwhile
    stale_operation_id = existing.operation_id
    updated = (
        db.session.query(ProcessLock)
        .filter(
            ProcessLock.id == existing.id,
            ProcessLock.operation_id == stale_operation_id,
            ProcessLock.expires_at <= now,
        )
        .update(
            {
                ProcessLock.operation: operation,
                ProcessLock.operation_id: operation_id,
                ProcessLock.locked_by_user_id: user_id,
                ProcessLock.locked_at: now,
                ProcessLock.expires_at: expires_at,
                ProcessLock.renewed_at: None,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.session.rollback()
        raise LockError("Operation locked by another request")
    db.session.commit()
    logger.info(
        "Took over expired lease org=%s parent=%s from operation %s",
        org_id, parent_transaction_id, stale_operation_id,
    )


def renew_lock(
    org_id: int,
    parent_transaction_id: int,
    operation_id: str,
    *,
    ttl_seconds: int | None = None,
) -> bool:
    """
    Push expires_at forward for a lease still held by operation_id.

    Returns False when the lease is gone or owned by someone else.
    """
    updated = (
        db.session.query(ProcessLock)
        .filter_by(
            org_id=org_id,
            parent_transaction_id=parent_transaction_id,
            operation_id=operation_id,
        )
        .update(
            {
                ProcessLock.expires_at: utc_in(_ttl_seconds(ttl_seconds)),
                ProcessLock.renewed_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return updated == 1


def _start_heartbeat(handle: LockHandle, ttl: int, interval: float) -> LeaseHeartbeat:
    app = current_app._get_current_object()

    def _renew() -> bool:
        with app.app_context():
            return renew_lock(
                handle.org_id,
                handle.parent_transaction_id,
                handle.operation_id,
                ttl_seconds=ttl,
            )

    return LeaseHeartbeat(
        _renew,
        interval,
        name=f"lease-heartbeat-{handle.org_id}-{handle.parent_transaction_id}",
    ).start()


def acquire_lock_with_heartbeat(
    org_id: int,
    parent_transaction_id: int,
    user_id: int | None,
    operation: str,
    *,
    ttl_seconds: int | None = None,
    heartbeat_interval: float | None = None,
) -> LockHandle:
    """
    Acquire the lease for a parent transaction and start renewing it.

    Raises:
        LockError: a non-expired lease is held by another operation
    """
    ttl = _ttl_seconds(ttl_seconds)
    if heartbeat_interval is None:
        heartbeat_interval = current_app.config.get(
            "REMITTANCE_HEARTBEAT_INTERVAL_SECONDS", HEARTBEAT_INTERVAL_SECONDS
        )

    operation_id = _new_operation_id()
    _claim_lease(org_id, parent_transaction_id, user_id, operation, operation_id, ttl)

    handle = LockHandle(
        org_id=org_id,
        parent_transaction_id=parent_transaction_id,
        operation=operation,
        operation_id=operation_id,
        user_id=user_id,
    )
    handle.heartbeat = _start_heartbeat(handle, ttl, heartbeat_interval)
    return handle


def release_lock(handle: LockHandle | None) -> None:
    """
    Stop the heartbeat and delete the lease. Safe to call more than once.

    A failed delete is logged, not raised: the TTL cleans the lease up.
    """
    if handle is None:
        return
    if handle.heartbeat is not None:
        handle.heartbeat.stop()
    if handle.released:
        return
    try:
        # Discard whatever a failed operation left half-written in the session
        db.session.rollback()
        (
            db.session.query(ProcessLock)
            .filter_by(
                org_id=handle.org_id,
                parent_transaction_id=handle.parent_transaction_id,
                operation_id=handle.operation_id,
            )
            .delete(synchronize_session=False)
        )
        db.session.commit()
        handle.released = True
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning(
            "Could not release lease org=%s parent=%s; it will expire after its TTL",
            handle.org_id, handle.parent_transaction_id, exc_info=True,
        )


@contextmanager
def remittance_lock(org_id: int, parent_transaction_id: int, user_id: int | None, operation: str, **kwargs):
    """Hold the lease for the duration of the block; always released."""
    handle = acquire_lock_with_heartbeat(org_id, parent_transaction_id, user_id, operation, **kwargs)
    try:
        yield handle
    finally:
        release_lock(handle)


def cleanup_expired_locks() -> int:
    """Delete leases whose TTL has passed. Returns count deleted."""
    deleted = (
        db.session.query(ProcessLock)
        .filter(ProcessLock.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
