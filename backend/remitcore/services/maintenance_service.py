# Overview: Periodic cleanup of expired leases, dead sessions and old security events.

from __future__ import annotations

import logging
from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent
from remitcore.time_utils import utcnow
from .lock_service import cleanup_expired_locks
from .session_service import cleanup_expired_sessions

logger = logging.getLogger(__name__)


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """Delete security events older than retention_days."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_locks() -> int:
    """
    Drop leases past their TTL.

    Not needed for correctness (an expired lease is taken over on the next
    acquisition), only to keep process_locks small.
    """
    deleted = cleanup_expired_locks()
    if deleted:
        logger.info("Removed %s expired remittance leases", deleted)
    return deleted


def cleanup_sessions(*, older_than_days: int = 30) -> int:
    return cleanup_expired_sessions(older_than_days=older_than_days)
