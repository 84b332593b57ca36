from __future__ import annotations

from ..extensions import db
from remitcore.time_utils import to_utc_z

class ProcessLock(db.Model):
    """
    Lease on one parent transaction.

    WHY: Request handlers may run in separate processes with no shared
    memory, so mutual exclusion lives in the database. At most one row
    exists per (org_id, parent_transaction_id); the unique constraint is
    the conditional-create guard.

    LIFECYCLE:
    - Inserted on acquisition with expires_at = now + TTL
    - expires_at pushed forward by the heartbeat while the operation runs
    - Deleted on release; an expired row may be taken over by a new holder
    """
    __tablename__ = "process_locks"
    __table_args__ = (
        db.UniqueConstraint("org_id", "parent_transaction_id", name="uq_process_locks_org_parent"),
        db.Index("ix_process_locks_expires", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False)
    parent_transaction_id = db.Column(db.Integer, nullable=False)

    # remittance_process | remittance_repair | remittance_undo | remittance_sanitize
    operation = db.Column(db.String(32), nullable=False)
    operation_id = db.Column(db.String(64), nullable=False, unique=True)
    locked_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    locked_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    renewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "parent_transaction_id": self.parent_transaction_id,
            "operation": self.operation,
            "operation_id": self.operation_id,
            "locked_by_user_id": self.locked_by_user_id,
            "locked_at": to_utc_z(self.locked_at),
            "expires_at": to_utc_z(self.expires_at),
            "renewed_at": to_utc_z(self.renewed_at) if self.renewed_at else None,
        }
