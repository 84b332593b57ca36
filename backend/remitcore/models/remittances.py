from __future__ import annotations

from ..extensions import db
from remitcore.time_utils import to_utc_z

REMITTANCE_STATUS_NONE = "none"
REMITTANCE_STATUS_PROCESSED = "processed"
REMITTANCE_STATUS_UNDONE = "undone"
REMITTANCE_STATUS_UNDONE_LEGACY = "undone_legacy"
REMITTANCE_STATUS_REPAIRED_PENDING = "repaired-pending"

REMITTANCE_TYPE_DONATIONS = "donations"

PENDING_REASONS = (
    "NO_TAXID",
    "INVALID_DATA",
    "NO_MATCH",
    "DUPLICATE",
    "NO_IBAN_MATCH",
    "AMBIGUOUS_IBAN",
)


class Remittance(db.Model):
    """
    Per-parent remittance metadata (the remittance record).

    WHY: Authoritative view of what a bulk bank movement was split into:
    status, idempotency hash, counts, totals and the list of child ids.

    LIFECYCLE:
    - Created on the first successful process (or by repair/sanitize for
      legacy parents that never had a record)
    - Mutated by every later process/repair/undo/sanitize
    - Never deleted (audit trail)

    INVARIANTS (whenever status == processed):
    - R-SUM-1: active children cents + pending cents == parent amount cents
    - R-COUNT-1: len(transaction_ids) == active children count
    """
    __tablename__ = "remittances"
    __table_args__ = (
        db.UniqueConstraint("org_id", "parent_transaction_id", name="uq_remittances_org_parent"),
        db.Index("ix_remittances_org_status", "org_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    parent_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)

    direction = db.Column(db.String(8), nullable=False, default="IN")
    remittance_type = db.Column(db.String(32), nullable=False, default=REMITTANCE_TYPE_DONATIONS)
    status = db.Column(db.String(32), nullable=False, default=REMITTANCE_STATUS_NONE, index=True)

    # SHA-256 of the canonical item set (idempotent replays)
    input_hash = db.Column(db.String(64), nullable=True)

    # Authoritative child id list
    transaction_ids = db.Column(db.JSON, nullable=False, default=list)

    item_count = db.Column(db.Integer, nullable=False, default=0)
    resolved_count = db.Column(db.Integer, nullable=False, default=0)
    pending_count = db.Column(db.Integer, nullable=False, default=0)
    expected_total_cents = db.Column(db.Integer, nullable=False, default=0)
    resolved_total_cents = db.Column(db.Integer, nullable=False, default=0)
    pending_total_cents = db.Column(db.Integer, nullable=False, default=0)

    bank_account_id = db.Column(db.String(64), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    undone_at = db.Column(db.DateTime(timezone=True), nullable=True)
    undone_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    repaired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    repaired_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    sanitized_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sanitized_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    sanitized_reason = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    parent = db.relationship("Transaction", foreign_keys=[parent_transaction_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Remittance id={self.id} parent={self.parent_transaction_id} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "parent_transaction_id": self.parent_transaction_id,
            "direction": self.direction,
            "remittance_type": self.remittance_type,
            "status": self.status,
            "input_hash": self.input_hash,
            "transaction_ids": list(self.transaction_ids or []),
            "item_count": self.item_count,
            "resolved_count": self.resolved_count,
            "pending_count": self.pending_count,
            "expected_total_cents": self.expected_total_cents,
            "resolved_total_cents": self.resolved_total_cents,
            "pending_total_cents": self.pending_total_cents,
            "bank_account_id": self.bank_account_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "undone_at": to_utc_z(self.undone_at) if self.undone_at else None,
            "repaired_at": to_utc_z(self.repaired_at) if self.repaired_at else None,
            "sanitized_at": to_utc_z(self.sanitized_at) if self.sanitized_at else None,
            "sanitized_reason": self.sanitized_reason,
            "version_id": self.version_id,
        }


class RemittancePendingItem(db.Model):
    """
    Unresolved source row of a remittance (staging).

    WHY: Rows that could not be matched to a contact still count toward the
    bank total, so they are kept until someone resolves them.

    NOT FINANCIAL: hard-deleted on undo and on repair purge.
    """
    __tablename__ = "remittance_pending_items"
    __table_args__ = (
        db.Index("ix_remittance_pending_org_remittance", "org_id", "remittance_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    remittance_id = db.Column(db.Integer, db.ForeignKey("remittances.id"), nullable=False, index=True)
    parent_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)

    name_raw = db.Column(db.String(255), nullable=True)
    tax_id = db.Column(db.String(32), nullable=True)
    iban = db.Column(db.String(64), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    source_row_index = db.Column(db.Integer, nullable=False)
    ambiguous_contact_ids = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "remittance_id": self.remittance_id,
            "parent_transaction_id": self.parent_transaction_id,
            "name_raw": self.name_raw,
            "tax_id": self.tax_id,
            "iban": self.iban,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "source_row_index": self.source_row_index,
            "ambiguous_contact_ids": list(self.ambiguous_contact_ids or []),
            "created_at": to_utc_z(self.created_at),
        }
