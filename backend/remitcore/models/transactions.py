from __future__ import annotations

from ..extensions import db
from remitcore.time_utils import to_utc_z

RECORD_STATE_ACTIVE = "ACTIVE"
RECORD_STATE_ARCHIVED = "ARCHIVED"

DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"

SOURCE_BANK = "bank"
SOURCE_REMITTANCE = "remittance"

# Denormalized remittance summary mirrored onto the parent transaction.
# Undo/sanitize reset exactly this set.
PARENT_REMITTANCE_FIELDS = (
    "is_remittance",
    "remittance_id",
    "remittance_type",
    "remittance_direction",
    "remittance_status",
    "remittance_item_count",
    "remittance_resolved_count",
    "remittance_pending_count",
    "remittance_expected_total_cents",
    "remittance_resolved_total_cents",
    "remittance_pending_total_cents",
)


class Transaction(db.Model):
    """
    Bank movement or remittance line item.

    Parents and children share one table:
    - Parent: bank-imported bulk movement (parent_transaction_id IS NULL).
      Created by the bank import, never by the remittance engine. Carries the
      denormalized remittance summary for cheap reads.
    - Child: one resolved line item of a remittance
      (parent_transaction_id set, source='remittance').

    IMMUTABLE AMOUNTS: Children are never hard-deleted. Undo/repair set
    record_state=ARCHIVED plus the archived_* attribution columns.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_org_parent_state", "org_id", "parent_transaction_id", "record_state"),
        db.Index("ix_transactions_org_remittance_state", "org_id", "remittance_id", "record_state"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)

    date = db.Column(db.Date, nullable=True)
    description = db.Column(db.String(512), nullable=True)

    # Signed amount in cents (income > 0)
    amount_cents = db.Column(db.Integer, nullable=False)
    direction = db.Column(db.String(8), nullable=False, default=DIRECTION_IN)

    # normal | return | return_fee | fee | donation
    transaction_type = db.Column(db.String(32), nullable=False, default="normal")
    category = db.Column(db.String(128), nullable=True)
    counterpart = db.Column(db.String(255), nullable=True)
    bank_account_id = db.Column(db.String(64), nullable=True)

    # Donor/contact reference (contacts are managed outside this service)
    contact_id = db.Column(db.String(64), nullable=True, index=True)
    contact_type = db.Column(db.String(16), nullable=True)

    source = db.Column(db.String(16), nullable=False, default=SOURCE_BANK)

    # Child linkage
    parent_transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)
    # Logical link to remittances.id; no FK since remittances already references transactions
    remittance_id = db.Column(db.Integer, nullable=True, index=True)
    is_remittance_item = db.Column(db.Boolean, nullable=False, default=False)
    source_row_index = db.Column(db.Integer, nullable=True)

    # Soft-archive (ACTIVE | ARCHIVED)
    record_state = db.Column(db.String(16), nullable=False, default=RECORD_STATE_ACTIVE, index=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    archived_reason = db.Column(db.String(64), nullable=True)
    archived_from_action = db.Column(db.String(64), nullable=True)

    # Parent-only remittance summary (see PARENT_REMITTANCE_FIELDS)
    is_remittance = db.Column(db.Boolean, nullable=False, default=False)
    remittance_type = db.Column(db.String(32), nullable=True)
    remittance_direction = db.Column(db.String(8), nullable=True)
    remittance_status = db.Column(db.String(32), nullable=True)
    remittance_item_count = db.Column(db.Integer, nullable=True)
    remittance_resolved_count = db.Column(db.Integer, nullable=True)
    remittance_pending_count = db.Column(db.Integer, nullable=True)
    remittance_expected_total_cents = db.Column(db.Integer, nullable=True)
    remittance_resolved_total_cents = db.Column(db.Integer, nullable=True)
    remittance_pending_total_cents = db.Column(db.Integer, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    parent = db.relationship("Transaction", remote_side=[id], backref=db.backref("children", lazy="dynamic"))

    @property
    def is_active(self) -> bool:
        return self.record_state == RECORD_STATE_ACTIVE and self.archived_at is None

    def archive(self, *, archived_at, user_id: int | None, reason: str, action: str) -> None:
        self.record_state = RECORD_STATE_ARCHIVED
        self.archived_at = archived_at
        self.archived_by_user_id = user_id
        self.archived_reason = reason
        self.archived_from_action = action

    def clear_remittance_summary(self) -> None:
        for field in PARENT_REMITTANCE_FIELDS:
            setattr(self, field, False if field == "is_remittance" else None)

    def remittance_summary(self) -> dict:
        return {
            "isRemittance": bool(self.is_remittance),
            "remittanceId": self.remittance_id,
            "remittanceType": self.remittance_type,
            "remittanceDirection": self.remittance_direction,
            "remittanceStatus": self.remittance_status,
            "remittanceItemCount": self.remittance_item_count,
            "remittanceResolvedCount": self.remittance_resolved_count,
            "remittancePendingCount": self.remittance_pending_count,
            "remittanceExpectedTotalCents": self.remittance_expected_total_cents,
            "remittanceResolvedTotalCents": self.remittance_resolved_total_cents,
            "remittancePendingTotalCents": self.remittance_pending_total_cents,
        }

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} amount_cents={self.amount_cents} parent={self.parent_transaction_id}>"

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "org_id": self.org_id,
            "date": self.date.isoformat() if self.date else None,
            "description": self.description,
            "amount_cents": self.amount_cents,
            "direction": self.direction,
            "transaction_type": self.transaction_type,
            "category": self.category,
            "counterpart": self.counterpart,
            "bank_account_id": self.bank_account_id,
            "contact_id": self.contact_id,
            "contact_type": self.contact_type,
            "source": self.source,
            "parent_transaction_id": self.parent_transaction_id,
            "remittance_id": self.remittance_id,
            "is_remittance_item": self.is_remittance_item,
            "source_row_index": self.source_row_index,
            "record_state": self.record_state,
            "archived_at": to_utc_z(self.archived_at) if self.archived_at else None,
            "archived_by_user_id": self.archived_by_user_id,
            "archived_reason": self.archived_reason,
            "archived_from_action": self.archived_from_action,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
        if self.parent_transaction_id is None:
            data["remittance"] = self.remittance_summary()
        return data
