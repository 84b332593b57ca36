# Overview: Chunked operations over remittance children and pending staging rows.

"""
Remittance Children Operations

WHY: Every write over children or staging rows goes through here so the
batch ceiling (50 rows per commit) is applied in one place.

RULES:
- Children are financial records: soft-archive only, never hard-delete
- Pending staging rows are not financial: hard-delete is fine
- Chunks commit in list order; there is no atomicity across chunks
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.orm import aliased

from ..extensions import db
from ..models import Transaction, RemittancePendingItem
from ..models.transactions import RECORD_STATE_ACTIVE, SOURCE_REMITTANCE
from remitcore.time_utils import utcnow
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)

BATCH_SIZE = 50

ARCHIVE_REASON_UNDO = "undo_remittance"
ARCHIVE_REASON_REPAIR_PURGE = "repair_purge"
ARCHIVE_REASON_ORPHAN_CLEANUP = "legacy_orphan_cleanup"

ARCHIVE_ACTION_UNDO = "undo_remittance_in"
ARCHIVE_ACTION_REPAIR = "repair_remittance_in"
ARCHIVE_ACTION_ORPHAN_CLEANUP = "orphan_cleanup"
ARCHIVE_ACTION_MISSING_PARENT_CLEANUP = "orphan_cleanup_missing_parent"


@dataclass(frozen=True)
class ChildrenSummary:
    active_ids: list[int]
    count: int
    sum_cents: int


def _batch_size(max_size: int | None) -> int:
    if max_size is not None:
        return max_size
    return current_app.config.get("REMITTANCE_BATCH_SIZE", BATCH_SIZE)


def chunk_ids(ids: list, max_size: int = BATCH_SIZE) -> list[list]:
    """Split ids into order-preserving groups of at most max_size."""
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    return [ids[i:i + max_size] for i in range(0, len(ids), max_size)]


def _active_filter(query):
    return query.filter(
        Transaction.record_state == RECORD_STATE_ACTIVE,
        Transaction.archived_at.is_(None),
    )


def get_active_child_transaction_ids(
    org_id: int,
    parent_transaction_id: int,
    remittance_id: int | None,
    authoritative_ids: list[int] | None,
    *,
    max_size: int | None = None,
) -> list[int]:
    """
    Resolve the ids of the active children of a remittance.

    Strategy:
    1. If the remittance record has transaction_ids, check each of them for
       existence and active state (chunked), keeping the record's order.
    2. Otherwise (legacy, no record) scan: by remittance_id first, then by
       parent_transaction_id, both restricted to active rows.
    """
    if authoritative_ids:
        active_ids: list[int] = []
        for chunk in chunk_ids(list(authoritative_ids), _batch_size(max_size)):
            rows = (
                _active_filter(db.session.query(Transaction.id))
                .filter(Transaction.org_id == org_id, Transaction.id.in_(chunk))
                .all()
            )
            found = {row.id for row in rows}
            active_ids.extend(tx_id for tx_id in chunk if tx_id in found)
        return active_ids

    logger.info("Fallback scan for active children of parent %s", parent_transaction_id)
    base = _active_filter(db.session.query(Transaction.id)).filter(Transaction.org_id == org_id)

    if remittance_id is not None:
        # The parent mirrors remittance_id too; only rows with a parent are children
        by_remittance = (
            base.filter(
                Transaction.remittance_id == remittance_id,
                Transaction.parent_transaction_id.isnot(None),
            )
            .order_by(Transaction.id)
            .all()
        )
        if by_remittance:
            return [row.id for row in by_remittance]

    by_parent = (
        base.filter(Transaction.parent_transaction_id == parent_transaction_id)
        .order_by(Transaction.id)
        .all()
    )
    return [row.id for row in by_parent]


def summarize_children(org_id: int, ids: list[int], *, max_size: int | None = None) -> ChildrenSummary:
    """Count and sum (cents) the active children among ids."""
    active_ids: list[int] = []
    total = 0
    for chunk in chunk_ids(list(ids), _batch_size(max_size)):
        rows = (
            _active_filter(db.session.query(Transaction.id, Transaction.amount_cents))
            .filter(Transaction.org_id == org_id, Transaction.id.in_(chunk))
            .all()
        )
        amounts = {row.id: row.amount_cents for row in rows}
        for tx_id in chunk:
            if tx_id in amounts:
                active_ids.append(tx_id)
                total += abs(amounts[tx_id])
    return ChildrenSummary(active_ids=active_ids, count=len(active_ids), sum_cents=total)


@dataclass(frozen=True)
class OrphanCandidates:
    archivable: list[Transaction]
    skipped: list[Transaction]


def find_orphan_children(org_id: int, parent_transaction_id: int) -> OrphanCandidates:
    """
    Active children of a parent, split by whether cleanup may archive them.

    Only rows the remittance engine wrote (is_remittance_item and
    source='remittance') are archivable; anything else is reported and left alone.
    """
    rows = (
        _active_filter(db.session.query(Transaction))
        .filter(Transaction.org_id == org_id, Transaction.parent_transaction_id == parent_transaction_id)
        .order_by(Transaction.id)
        .all()
    )
    archivable = [row for row in rows if row.is_remittance_item and row.source == SOURCE_REMITTANCE]
    skipped = [row for row in rows if not (row.is_remittance_item and row.source == SOURCE_REMITTANCE)]
    return OrphanCandidates(archivable=archivable, skipped=skipped)


def find_children_with_missing_parent(org_id: int) -> list[Transaction]:
    """Active rows pointing at a parent id that does not exist in the org."""
    parent = aliased(Transaction)
    existing_parent_ids = db.select(parent.id).where(parent.org_id == org_id)
    return (
        _active_filter(db.session.query(Transaction))
        .filter(
            Transaction.org_id == org_id,
            Transaction.parent_transaction_id.isnot(None),
            Transaction.parent_transaction_id.notin_(existing_parent_ids),
        )
        .order_by(Transaction.id)
        .all()
    )


def create_child_transactions(
    *,
    org_id: int,
    parent: Transaction,
    remittance_id: int,
    items: list,
    user_id: int | None,
    category: str | None = None,
    bank_account_id: str | None = None,
    max_size: int | None = None,
) -> list[int]:
    """
    Create one child per resolved item, one commit per chunk.

    Returns the new child ids in item order.
    """
    created_ids: list[int] = []
    now = utcnow()

    for chunk in chunk_ids(list(items), _batch_size(max_size)):
        def _write_chunk(chunk=chunk):
            rows = [
                Transaction(
                    org_id=org_id,
                    date=parent.date,
                    description=parent.description,
                    amount_cents=item.amount_cents,
                    direction=parent.direction,
                    transaction_type="donation",
                    category=category or parent.category,
                    bank_account_id=bank_account_id or parent.bank_account_id,
                    contact_id=item.contact_id,
                    contact_type="donor",
                    source=SOURCE_REMITTANCE,
                    parent_transaction_id=parent.id,
                    remittance_id=remittance_id,
                    is_remittance_item=True,
                    source_row_index=item.source_row_index,
                    record_state=RECORD_STATE_ACTIVE,
                    created_by_user_id=user_id,
                    created_at=now,
                )
                for item in chunk
            ]
            db.session.add_all(rows)
            db.session.commit()
            return [row.id for row in rows]

        created_ids.extend(run_with_retry(_write_chunk))

    return created_ids


def create_pending_items(
    *,
    org_id: int,
    parent_transaction_id: int,
    remittance_id: int,
    pending_items: list,
    max_size: int | None = None,
) -> int:
    """Stage unresolved rows, one commit per chunk. Returns count created."""
    created = 0
    now = utcnow()
    for chunk in chunk_ids(list(pending_items), _batch_size(max_size)):
        def _write_chunk(chunk=chunk):
            db.session.add_all([
                RemittancePendingItem(
                    org_id=org_id,
                    remittance_id=remittance_id,
                    parent_transaction_id=parent_transaction_id,
                    name_raw=pending.name_raw,
                    tax_id=pending.tax_id,
                    iban=pending.iban,
                    amount_cents=pending.amount_cents,
                    reason=pending.reason,
                    source_row_index=pending.source_row_index,
                    ambiguous_contact_ids=list(pending.ambiguous_contact_ids),
                    created_at=now,
                )
                for pending in chunk
            ])
            db.session.commit()
            return len(chunk)

        created += run_with_retry(_write_chunk)
    return created


def soft_archive_transactions_by_ids(
    org_id: int,
    transaction_ids: list[int],
    user_id: int | None,
    reason: str,
    action: str,
    *,
    max_size: int | None = None,
) -> int:
    """
    Soft-archive transactions in chunks, one atomic commit per chunk.

    NEVER hard-deletes. Rows already archived keep their original
    attribution and are not counted.

    Returns the number of transactions archived across all chunks.
    """
    if not transaction_ids:
        return 0

    archived_count = 0
    archived_at = utcnow()

    for chunk in chunk_ids(list(transaction_ids), _batch_size(max_size)):
        def _archive_chunk(chunk=chunk):
            rows = (
                _active_filter(db.session.query(Transaction))
                .filter(Transaction.org_id == org_id, Transaction.id.in_(chunk))
                .all()
            )
            for row in rows:
                row.archive(archived_at=archived_at, user_id=user_id, reason=reason, action=action)
            db.session.commit()
            return len(rows)

        archived_count += run_with_retry(_archive_chunk)

    return archived_count


def pending_totals(org_id: int, remittance_id: int | None) -> tuple[int, int]:
    """(count, cents) of the staging rows still attached to a remittance."""
    if remittance_id is None:
        return 0, 0
    count, total = (
        db.session.query(
            db.func.count(RemittancePendingItem.id),
            db.func.coalesce(db.func.sum(RemittancePendingItem.amount_cents), 0),
        )
        .filter_by(org_id=org_id, remittance_id=remittance_id)
        .one()
    )
    return int(count), int(total)


def delete_pending_items(org_id: int, remittance_id: int | None, *, max_size: int | None = None) -> int:
    """
    Hard-delete the staging rows of a remittance in chunks.

    Returns 0 when nothing is pending.
    """
    if remittance_id is None:
        return 0

    pending_ids = [
        row.id
        for row in db.session.query(RemittancePendingItem.id)
        .filter_by(org_id=org_id, remittance_id=remittance_id)
        .order_by(RemittancePendingItem.id)
        .all()
    ]
    if not pending_ids:
        return 0

    deleted_count = 0
    for chunk in chunk_ids(pending_ids, _batch_size(max_size)):
        def _delete_chunk(chunk=chunk):
            deleted = (
                db.session.query(RemittancePendingItem)
                .filter(RemittancePendingItem.id.in_(chunk))
                .delete(synchronize_session=False)
            )
            db.session.commit()
            return deleted

        deleted_count += run_with_retry(_delete_chunk)

    return deleted_count
