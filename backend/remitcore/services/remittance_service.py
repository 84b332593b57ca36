# Overview: Process / Repair / Undo / Sanitize / Check for inbound remittances, driven by one transition table.

"""
Remittance Orchestration Service

WHY: A bulk bank movement (one parent transaction) is split into one child
transaction per donor. That split must survive retries, crashes and two
admins clicking at once without ever double-counting money.

DESIGN PRINCIPLES:
- One lease per parent while anything mutates it (lock_service)
- Same input hash + status not undone -> idempotent no-op, zero writes
- Children are soft-archived, never deleted
- Invariants (R-SUM-1, R-COUNT-1) are re-checked on the written children
  before the final status write; a violation skips that write so Check
  can see the drift
- Every allowed status change is listed in TRANSITIONS

LIFECYCLE:
1. process   none / undone / undone_legacy -> processed
2. repair    none / processed / repaired-pending / undone_legacy
             -> repaired-pending -> processed
3. undo      none (legacy) / processed / repaired-pending -> undone
4. sanitize  any -> NOOP | REBUILT_DOC (processed) | MARKED_UNDONE_LEGACY
5. check     read-only, no lease
6. audit, orphan cleanup: operator tooling, dry-run unless apply=True
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..extensions import db
from ..models import Remittance, Transaction
from ..models.remittances import (
    REMITTANCE_STATUS_NONE,
    REMITTANCE_STATUS_PROCESSED,
    REMITTANCE_STATUS_UNDONE,
    REMITTANCE_STATUS_UNDONE_LEGACY,
    REMITTANCE_STATUS_REPAIRED_PENDING,
    REMITTANCE_TYPE_DONATIONS,
)
from ..models.transactions import DIRECTION_IN
from ..validation import apply_safe_update
from remitcore.time_utils import utcnow
from . import children_service
from .concurrency import run_with_retry
from .input_hash import compute_input_hash, sum_cents
from .lock_service import (
    OPERATION_PROCESS,
    OPERATION_REPAIR,
    OPERATION_UNDO,
    OPERATION_SANITIZE,
    OPERATION_AUDIT,
    OPERATION_ORPHAN_CLEANUP,
    LockError,
    remittance_lock,
)
from .remittance_invariants import (
    RemittanceInvariantError,
    assert_count_invariant,
    assert_sum_invariant,
    assert_sum_invariant_exact,
    check_idempotence,
)

logger = logging.getLogger(__name__)


# =============================================================================
# OUTCOMES / CODES
# =============================================================================

OUTCOME_APPLIED = "APPLIED"
OUTCOME_IDEMPOTENT_NOOP = "IDEMPOTENT_NOOP"
OUTCOME_BLOCKED_BY_INVARIANT = "BLOCKED_BY_INVARIANT"
OUTCOME_BLOCKED_BY_CONTENTION = "BLOCKED_BY_CONTENTION"

SANITIZE_NOOP = "NOOP"
SANITIZE_REBUILT_DOC = "REBUILT_DOC"
SANITIZE_MARKED_UNDONE_LEGACY = "MARKED_UNDONE_LEGACY"

SANITIZE_REASON_OUT_OF_SYNC = "DOC_TXIDS_OUT_OF_SYNC"
SANITIZE_REASON_NO_ACTIVE_CHILDREN = "NO_ACTIVE_CHILDREN"

PARENT_NOT_FOUND = "PARENT_NOT_FOUND"
PARENT_NOT_INCOME = "PARENT_NOT_INCOME"
REMITTANCE_ALREADY_PROCESSED = "REMITTANCE_ALREADY_PROCESSED"
INVALID_TRANSITION = "INVALID_TRANSITION"
HAS_ACTIVE_CHILDREN = "HAS_ACTIVE_CHILDREN"
REPAIR_PENDING = "REPAIR_PENDING"
ORPHANS_REMAIN = "ORPHANS_REMAIN"

# Check issues
ISSUE_NO_REM_ID = "NO_REM_ID"
ISSUE_NO_REM_DOC = "NO_REM_DOC"
ISSUE_COUNT_MISMATCH = "COUNT_MISMATCH"
ISSUE_SUM_MISMATCH = "SUM_MISMATCH"
ISSUE_CHILDREN_BUT_PARENT_NOT_REM = "HAS_ACTIVE_CHILDREN_BUT_PARENT_NOT_REM"
ISSUE_PARENT_REM_WITHOUT_CHILDREN = "PARENT_IS_REM_BUT_NO_ACTIVE_CHILDREN"
ISSUE_DOC_TXIDS_OUT_OF_SYNC = "DOC_TXIDS_OUT_OF_SYNC"
ISSUE_STATUS_NOT_FINAL = "STATUS_NOT_FINAL"

NON_INCOME_TRANSACTION_TYPES = {"return", "return_fee", "fee"}
UNDONE_STATUSES = {REMITTANCE_STATUS_UNDONE, REMITTANCE_STATUS_UNDONE_LEGACY}


class RemittanceError(Exception):
    """Raised for remittance operation errors (400 by default)."""

    http_status = 400

    def __init__(self, message: str, *, code: str):
        super().__init__(message)
        self.code = code


class RemittanceNotFoundError(RemittanceError):
    http_status = 404


class RemittanceConflictError(RemittanceError):
    http_status = 409


# =============================================================================
# TRANSITION TABLE
# =============================================================================

@dataclass(frozen=True)
class Transition:
    allowed_from: frozenset | None  # None = any status
    target: str | None
    intermediate: str | None = None


OP_PROCESS = "process"
OP_REPAIR = "repair"
OP_UNDO = "undo"
OP_SANITIZE = "sanitize"

TRANSITIONS: dict[str, Transition] = {
    OP_PROCESS: Transition(
        allowed_from=frozenset({
            REMITTANCE_STATUS_NONE,
            REMITTANCE_STATUS_UNDONE,
            REMITTANCE_STATUS_UNDONE_LEGACY,
        }),
        target=REMITTANCE_STATUS_PROCESSED,
    ),
    OP_REPAIR: Transition(
        allowed_from=frozenset({
            REMITTANCE_STATUS_NONE,
            REMITTANCE_STATUS_PROCESSED,
            REMITTANCE_STATUS_REPAIRED_PENDING,
            REMITTANCE_STATUS_UNDONE_LEGACY,
        }),
        target=REMITTANCE_STATUS_PROCESSED,
        intermediate=REMITTANCE_STATUS_REPAIRED_PENDING,
    ),
    OP_UNDO: Transition(
        allowed_from=frozenset({
            REMITTANCE_STATUS_NONE,
            REMITTANCE_STATUS_PROCESSED,
            REMITTANCE_STATUS_REPAIRED_PENDING,
        }),
        target=REMITTANCE_STATUS_UNDONE,
    ),
    # Target depends on what sanitize finds (processed / undone_legacy / unchanged)
    OP_SANITIZE: Transition(allowed_from=None, target=None),
}


def assert_transition(operation: str, status: str) -> Transition:
    transition = TRANSITIONS[operation]
    if transition.allowed_from is not None and status not in transition.allowed_from:
        raise RemittanceConflictError(
            f"Cannot {operation} a remittance in status '{status}'",
            code=INVALID_TRANSITION,
        )
    return transition


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class RemittanceResult:
    outcome: str
    status: str
    remittance_id: int | None = None
    idempotent: bool = False
    counts: dict = field(default_factory=dict)
    totals: dict = field(default_factory=dict)
    action: str | None = None

    def to_dict(self) -> dict:
        data = {
            "success": True,
            "outcome": self.outcome,
            "status": self.status,
            "idempotent": self.idempotent,
            "remittanceId": self.remittance_id,
            "counts": self.counts,
            "totals": self.totals,
        }
        if self.action is not None:
            data["action"] = self.action
        return data


def _result(
    outcome: str,
    remittance: Remittance | None,
    *,
    archived: int = 0,
    pending_deleted: int = 0,
    action: str | None = None,
) -> RemittanceResult:
    return RemittanceResult(
        outcome=outcome,
        status=_status(remittance),
        remittance_id=remittance.id if remittance else None,
        idempotent=outcome == OUTCOME_IDEMPOTENT_NOOP,
        counts={
            "items": remittance.item_count if remittance else 0,
            "resolved": remittance.resolved_count if remittance else 0,
            "pending": remittance.pending_count if remittance else 0,
            "archived": archived,
            "pendingDeleted": pending_deleted,
        },
        totals={
            "expectedCents": remittance.expected_total_cents if remittance else 0,
            "resolvedCents": remittance.resolved_total_cents if remittance else 0,
            "pendingCents": remittance.pending_total_cents if remittance else 0,
        },
        action=action,
    )


# =============================================================================
# LOADING / GUARDS
# =============================================================================

def _status(remittance: Remittance | None) -> str:
    return remittance.status if remittance else REMITTANCE_STATUS_NONE


def _load_parent(org_id: int, parent_transaction_id: int) -> Transaction:
    parent = db.session.query(Transaction).filter_by(
        org_id=org_id, id=parent_transaction_id
    ).first()
    if not parent or parent.parent_transaction_id is not None:
        raise RemittanceNotFoundError(
            f"Parent transaction {parent_transaction_id} not found",
            code=PARENT_NOT_FOUND,
        )
    return parent


def get_remittance(org_id: int, parent_transaction_id: int) -> Remittance | None:
    return db.session.query(Remittance).filter_by(
        org_id=org_id, parent_transaction_id=parent_transaction_id
    ).first()


def _assert_inbound(parent: Transaction, remittance: Remittance | None) -> None:
    """Process/Repair only accept income: positive, IN, not a return or fee."""
    if parent.amount_cents <= 0:
        raise RemittanceError("Parent amount must be positive for an inbound remittance", code=PARENT_NOT_INCOME)
    if parent.direction != DIRECTION_IN:
        raise RemittanceError(f"Parent direction is {parent.direction}, expected IN", code=PARENT_NOT_INCOME)
    if parent.transaction_type in NON_INCOME_TRANSACTION_TYPES:
        raise RemittanceError(
            f"Parent type '{parent.transaction_type}' is not an inbound collection",
            code=PARENT_NOT_INCOME,
        )
    if remittance is not None and remittance.remittance_type != REMITTANCE_TYPE_DONATIONS:
        raise RemittanceError(
            f"Remittance type '{remittance.remittance_type}' is not an inbound collection",
            code=PARENT_NOT_INCOME,
        )


def _assert_input_totals(parent: Transaction, items: list, pending_items: list) -> None:
    """Reject an input whose resolved + pending rows do not add up before writing anything."""
    assert_sum_invariant_exact(parent.amount_cents, sum_cents(items) + sum_cents(pending_items))


def _ensure_record(org_id: int, parent: Transaction, user_id: int | None, bank_account_id: str | None) -> Remittance:
    """Create the remittance record (status none) so children can reference its id."""
    remittance = Remittance(
        org_id=org_id,
        parent_transaction_id=parent.id,
        direction=DIRECTION_IN,
        remittance_type=REMITTANCE_TYPE_DONATIONS,
        status=REMITTANCE_STATUS_NONE,
        transaction_ids=[],
        expected_total_cents=abs(parent.amount_cents),
        bank_account_id=bank_account_id or parent.bank_account_id,
        created_by_user_id=user_id,
        created_at=utcnow(),
    )
    db.session.add(remittance)
    db.session.commit()
    return remittance


def _write(apply) -> None:
    def _op():
        apply()
        db.session.commit()
    run_with_retry(_op)


def _mirror_onto_parent(parent: Transaction, remittance: Remittance) -> None:
    apply_safe_update(
        parent,
        {
            "is_remittance": True,
            "remittance_id": remittance.id,
            "remittance_type": remittance.remittance_type,
            "remittance_direction": remittance.direction,
            "remittance_status": remittance.status,
            "remittance_item_count": remittance.item_count,
            "remittance_resolved_count": remittance.resolved_count,
            "remittance_pending_count": remittance.pending_count,
            "remittance_expected_total_cents": remittance.expected_total_cents,
            "remittance_resolved_total_cents": remittance.resolved_total_cents,
            "remittance_pending_total_cents": remittance.pending_total_cents,
        },
        required_fields=("remittance_id", "remittance_status"),
    )


def _verify_written_children(org_id: int, parent: Transaction, child_ids: list[int], pending_total: int):
    """
    R-COUNT-1 and exact R-SUM-1 on the children just written.

    Raises RemittanceInvariantError; the caller must then skip the final write.
    """
    summary = children_service.summarize_children(org_id, child_ids)
    assert_count_invariant(child_ids, summary.count)
    assert_sum_invariant_exact(abs(parent.amount_cents) - pending_total, summary.sum_cents)
    return summary


def _write_children(
    *,
    org_id: int,
    parent: Transaction,
    remittance: Remittance,
    items: list,
    pending_items: list,
    user_id: int | None,
    category: str | None,
    bank_account_id: str | None,
) -> tuple[list[int], int]:
    child_ids = children_service.create_child_transactions(
        org_id=org_id,
        parent=parent,
        remittance_id=remittance.id,
        items=items,
        user_id=user_id,
        category=category,
        bank_account_id=bank_account_id,
    )
    children_service.create_pending_items(
        org_id=org_id,
        parent_transaction_id=parent.id,
        remittance_id=remittance.id,
        pending_items=pending_items,
    )
    return child_ids, sum_cents(pending_items)


def _finalize_processed(
    *,
    org_id: int,
    parent: Transaction,
    remittance: Remittance,
    input_hash: str,
    items: list,
    pending_items: list,
    child_ids: list[int],
    user_id: int | None,
    bank_account_id: str | None,
    repaired: bool,
) -> None:
    pending_total = sum_cents(pending_items)
    try:
        summary = _verify_written_children(org_id, parent, child_ids, pending_total)
    except RemittanceInvariantError as exc:
        db.session.rollback()
        logger.warning(
            "Invariant %s failed for org=%s parent=%s; final status not written: %s",
            exc.code, org_id, parent.id, exc,
        )
        raise

    now = utcnow()
    data = {
        "status": REMITTANCE_STATUS_PROCESSED,
        "input_hash": input_hash,
        "transaction_ids": list(child_ids),
        "item_count": len(items) + len(pending_items),
        "resolved_count": len(items),
        "pending_count": len(pending_items),
        "expected_total_cents": abs(parent.amount_cents),
        "resolved_total_cents": summary.sum_cents,
        "pending_total_cents": pending_total,
        "bank_account_id": bank_account_id or parent.bank_account_id,
        "processed_at": now,
        "processed_by_user_id": user_id,
    }
    if repaired:
        data["repaired_at"] = now
        data["repaired_by_user_id"] = user_id

    def _apply():
        apply_safe_update(remittance, data, required_fields=("status", "input_hash"))
        _mirror_onto_parent(parent, remittance)

    _write(_apply)


# =============================================================================
# PROCESS
# =============================================================================

def process_remittance(
    org_id: int,
    parent_transaction_id: int,
    items: list,
    *,
    user_id: int | None,
    pending_items: list | None = None,
    category: str | None = None,
    bank_account_id: str | None = None,
) -> RemittanceResult:
    """
    Split an inbound parent into one child per resolved item.

    Raises:
        RemittanceNotFoundError: parent missing or not a parent
        RemittanceError: parent is not an inbound collection
        RemittanceInvariantError: input or written children do not add up
        RemittanceConflictError: already processed with different input, or
            a status that cannot be processed
        LockError: another operation holds the lease
    """
    pending_items = list(pending_items or [])
    parent = _load_parent(org_id, parent_transaction_id)
    _assert_inbound(parent, get_remittance(org_id, parent_transaction_id))
    _assert_input_totals(parent, items, pending_items)

    with remittance_lock(org_id, parent_transaction_id, user_id, OPERATION_PROCESS):
        remittance = get_remittance(org_id, parent_transaction_id)
        status = _status(remittance)
        input_hash = compute_input_hash(parent_transaction_id, items)

        # The stored hash predates the aborted repair, so a replay cannot be a no-op
        if status == REMITTANCE_STATUS_REPAIRED_PENDING:
            raise RemittanceConflictError(
                "A repair of this remittance did not finish; run repair or undo",
                code=REPAIR_PENDING,
            )

        decision = check_idempotence(remittance.input_hash if remittance else None, input_hash, status)
        if not decision.should_process:
            logger.info("Process no-op for org=%s parent=%s: %s", org_id, parent_transaction_id, decision.reason)
            return _result(OUTCOME_IDEMPOTENT_NOOP, remittance)

        if status == REMITTANCE_STATUS_PROCESSED:
            raise RemittanceConflictError(
                "Remittance already processed with different input; use repair or undo",
                code=REMITTANCE_ALREADY_PROCESSED,
            )
        assert_transition(OP_PROCESS, status)

        # Leftover active children (legacy data or an aborted attempt) would be double-counted
        leftover = children_service.get_active_child_transaction_ids(
            org_id, parent_transaction_id, remittance.id if remittance else None, None
        )
        if leftover:
            raise RemittanceConflictError(
                f"Parent has {len(leftover)} active children; use repair or sanitize",
                code=HAS_ACTIVE_CHILDREN,
            )

        if remittance is None:
            remittance = _ensure_record(org_id, parent, user_id, bank_account_id)
        pending_deleted = children_service.delete_pending_items(org_id, remittance.id)

        child_ids, _ = _write_children(
            org_id=org_id,
            parent=parent,
            remittance=remittance,
            items=items,
            pending_items=pending_items,
            user_id=user_id,
            category=category,
            bank_account_id=bank_account_id,
        )
        _finalize_processed(
            org_id=org_id,
            parent=parent,
            remittance=remittance,
            input_hash=input_hash,
            items=items,
            pending_items=pending_items,
            child_ids=child_ids,
            user_id=user_id,
            bank_account_id=bank_account_id,
            repaired=False,
        )

        logger.info(
            "Processed remittance %s (org=%s parent=%s): %s children, %s pending",
            remittance.id, org_id, parent_transaction_id, len(child_ids), len(pending_items),
        )
        return _result(OUTCOME_APPLIED, remittance, pending_deleted=pending_deleted)


# =============================================================================
# REPAIR
# =============================================================================

def _is_consistent(org_id: int, parent: Transaction, remittance: Remittance) -> bool:
    report = _inspect(org_id, parent, remittance)
    return not report["issues"]


def repair_remittance(
    org_id: int,
    parent_transaction_id: int,
    items: list,
    *,
    user_id: int | None,
    pending_items: list | None = None,
    category: str | None = None,
    bank_account_id: str | None = None,
) -> RemittanceResult:
    """
    Purge every active child and rebuild from the given input, under one lease.

    No-op only when the stored hash matches, the status is processed and
    Check finds nothing wrong. Otherwise the record passes through
    repaired-pending, so a crash mid-repair is visible as STATUS_NOT_FINAL.
    """
    pending_items = list(pending_items or [])
    parent = _load_parent(org_id, parent_transaction_id)
    _assert_inbound(parent, get_remittance(org_id, parent_transaction_id))
    _assert_input_totals(parent, items, pending_items)

    with remittance_lock(org_id, parent_transaction_id, user_id, OPERATION_REPAIR):
        remittance = get_remittance(org_id, parent_transaction_id)
        status = _status(remittance)
        transition = assert_transition(OP_REPAIR, status)
        input_hash = compute_input_hash(parent_transaction_id, items)

        if (
            remittance is not None
            and status == REMITTANCE_STATUS_PROCESSED
            and remittance.input_hash == input_hash
            and _is_consistent(org_id, parent, remittance)
        ):
            logger.info("Repair no-op for org=%s parent=%s: already consistent", org_id, parent_transaction_id)
            return _result(OUTCOME_IDEMPOTENT_NOOP, remittance)

        if remittance is None:
            remittance = _ensure_record(org_id, parent, user_id, bank_account_id)

        _write(lambda: apply_safe_update(
            remittance,
            {"status": transition.intermediate},
            required_fields=("status",),
        ))

        # Purge by full parent scan: the stored id list may be the thing that is wrong
        stale_ids = children_service.get_active_child_transaction_ids(
            org_id, parent_transaction_id, None, None
        )
        archived = children_service.soft_archive_transactions_by_ids(
            org_id,
            stale_ids,
            user_id,
            children_service.ARCHIVE_REASON_REPAIR_PURGE,
            children_service.ARCHIVE_ACTION_REPAIR,
        )
        pending_deleted = children_service.delete_pending_items(org_id, remittance.id)

        child_ids, _ = _write_children(
            org_id=org_id,
            parent=parent,
            remittance=remittance,
            items=items,
            pending_items=pending_items,
            user_id=user_id,
            category=category,
            bank_account_id=bank_account_id,
        )
        _finalize_processed(
            org_id=org_id,
            parent=parent,
            remittance=remittance,
            input_hash=input_hash,
            items=items,
            pending_items=pending_items,
            child_ids=child_ids,
            user_id=user_id,
            bank_account_id=bank_account_id,
            repaired=True,
        )

        logger.info(
            "Repaired remittance %s (org=%s parent=%s): archived %s, created %s",
            remittance.id, org_id, parent_transaction_id, archived, len(child_ids),
        )
        return _result(OUTCOME_APPLIED, remittance, archived=archived, pending_deleted=pending_deleted)


# =============================================================================
# UNDO
# =============================================================================

def undo_remittance(org_id: int, parent_transaction_id: int, *, user_id: int | None) -> RemittanceResult:
    """
    Soft-archive every active child, drop staging rows, clear the parent summary.

    Idempotent: an undone remittance, or a parent with neither record nor
    active children, returns IDEMPOTENT_NOOP without writing.
    The input hash is kept; status undone forces the next process to run.
    """
    parent = _load_parent(org_id, parent_transaction_id)

    with remittance_lock(org_id, parent_transaction_id, user_id, OPERATION_UNDO):
        remittance = get_remittance(org_id, parent_transaction_id)
        status = _status(remittance)

        if status in UNDONE_STATUSES:
            return _result(OUTCOME_IDEMPOTENT_NOOP, remittance)

        active_ids = children_service.get_active_child_transaction_ids(
            org_id,
            parent_transaction_id,
            remittance.id if remittance else None,
            list(remittance.transaction_ids or []) if remittance else None,
        )
        # The id list is stale after an aborted process/repair; the parent scan catches what it misses
        scanned_ids = children_service.get_active_child_transaction_ids(
            org_id, parent_transaction_id, None, None
        )
        listed = set(active_ids)
        active_ids.extend(tx_id for tx_id in scanned_ids if tx_id not in listed)
        if remittance is None and not active_ids:
            return _result(OUTCOME_IDEMPOTENT_NOOP, None)

        transition = assert_transition(OP_UNDO, status)

        archived = children_service.soft_archive_transactions_by_ids(
            org_id,
            active_ids,
            user_id,
            children_service.ARCHIVE_REASON_UNDO,
            children_service.ARCHIVE_ACTION_UNDO,
        )

        if remittance is None:
            # Legacy parent split before remittance records existed
            remittance = _ensure_record(org_id, parent, user_id, None)
        pending_deleted = children_service.delete_pending_items(org_id, remittance.id)

        def _apply():
            apply_safe_update(
                remittance,
                {
                    "status": transition.target,
                    "undone_at": utcnow(),
                    "undone_by_user_id": user_id,
                },
                required_fields=("status",),
            )
            parent.clear_remittance_summary()

        _write(_apply)

        logger.info(
            "Undid remittance %s (org=%s parent=%s): archived %s, pending deleted %s",
            remittance.id, org_id, parent_transaction_id, archived, pending_deleted,
        )
        return _result(OUTCOME_APPLIED, remittance, archived=archived, pending_deleted=pending_deleted)


# =============================================================================
# SANITIZE
# =============================================================================

def sanitize_remittance(org_id: int, parent_transaction_id: int, *, user_id: int | None) -> RemittanceResult:
    """
    Correct remittance metadata from the real children. Never writes children.

    - active children, record consistent           -> NOOP
    - active children, record missing/out of sync  -> REBUILT_DOC (processed)
    - no active children, parent still flagged     -> MARKED_UNDONE_LEGACY
    - nothing flagged and nothing active           -> NOOP
    """
    parent = _load_parent(org_id, parent_transaction_id)

    with remittance_lock(org_id, parent_transaction_id, user_id, OPERATION_SANITIZE):
        remittance = get_remittance(org_id, parent_transaction_id)
        status = _status(remittance)
        assert_transition(OP_SANITIZE, status)

        active_ids = children_service.get_active_child_transaction_ids(
            org_id, parent_transaction_id, None, None
        )

        if not active_ids:
            if not parent.is_remittance and (remittance is None or status in UNDONE_STATUSES):
                return _result(OUTCOME_IDEMPOTENT_NOOP, remittance, action=SANITIZE_NOOP)
            return _mark_undone_legacy(org_id, parent, remittance, user_id)

        if remittance is not None and status == REMITTANCE_STATUS_PROCESSED and _is_consistent(org_id, parent, remittance):
            return _result(OUTCOME_IDEMPOTENT_NOOP, remittance, action=SANITIZE_NOOP)

        return _rebuild_doc(org_id, parent, remittance, active_ids, user_id)


def _mark_undone_legacy(org_id: int, parent: Transaction, remittance: Remittance | None, user_id: int | None):
    if remittance is None:
        remittance = _ensure_record(org_id, parent, user_id, None)

    def _apply():
        apply_safe_update(
            remittance,
            {
                "status": REMITTANCE_STATUS_UNDONE_LEGACY,
                "transaction_ids": [],
                "sanitized_at": utcnow(),
                "sanitized_by_user_id": user_id,
                "sanitized_reason": SANITIZE_REASON_NO_ACTIVE_CHILDREN,
            },
            required_fields=("status",),
        )
        parent.clear_remittance_summary()

    _write(_apply)
    logger.info("Sanitize marked parent %s (org=%s) undone_legacy", parent.id, org_id)
    return _result(OUTCOME_APPLIED, remittance, action=SANITIZE_MARKED_UNDONE_LEGACY)


def _rebuild_doc(
    org_id: int,
    parent: Transaction,
    remittance: Remittance | None,
    active_ids: list[int],
    user_id: int | None,
):
    if remittance is None:
        remittance = _ensure_record(org_id, parent, user_id, None)

    summary = children_service.summarize_children(org_id, active_ids)
    pending_count, pending_total = children_service.pending_totals(org_id, remittance.id)

    def _apply():
        apply_safe_update(
            remittance,
            {
                "status": REMITTANCE_STATUS_PROCESSED,
                "transaction_ids": summary.active_ids,
                "item_count": summary.count + pending_count,
                "resolved_count": summary.count,
                "pending_count": pending_count,
                "expected_total_cents": abs(parent.amount_cents),
                "resolved_total_cents": summary.sum_cents,
                "pending_total_cents": pending_total,
                "sanitized_at": utcnow(),
                "sanitized_by_user_id": user_id,
                "sanitized_reason": SANITIZE_REASON_OUT_OF_SYNC,
            },
            required_fields=("status",),
        )
        _mirror_onto_parent(parent, remittance)

    _write(_apply)
    logger.info(
        "Sanitize rebuilt remittance %s (org=%s parent=%s) from %s active children",
        remittance.id, org_id, parent.id, summary.count,
    )
    return _result(OUTCOME_APPLIED, remittance, action=SANITIZE_REBUILT_DOC)


# =============================================================================
# CHECK (read-only)
# =============================================================================

def _inspect(org_id: int, parent: Transaction, remittance: Remittance | None) -> dict:
    authoritative = list(remittance.transaction_ids or []) if remittance else []
    scanned_ids = children_service.get_active_child_transaction_ids(org_id, parent.id, None, None)
    summary = children_service.summarize_children(org_id, scanned_ids)
    pending_count, pending_total = children_service.pending_totals(
        org_id, remittance.id if remittance else None
    )
    status = _status(remittance)
    issues: list[str] = []

    if parent.is_remittance and not parent.remittance_id:
        issues.append(ISSUE_NO_REM_ID)
    if parent.is_remittance and remittance is None:
        issues.append(ISSUE_NO_REM_DOC)
    if scanned_ids and not parent.is_remittance:
        issues.append(ISSUE_CHILDREN_BUT_PARENT_NOT_REM)
    if parent.is_remittance and not scanned_ids:
        issues.append(ISSUE_PARENT_REM_WITHOUT_CHILDREN)

    active_from_record = 0
    if remittance is not None and status == REMITTANCE_STATUS_PROCESSED:
        active_from_record = len(children_service.get_active_child_transaction_ids(
            org_id, parent.id, remittance.id, authoritative
        )) if authoritative else 0
        try:
            assert_count_invariant(authoritative, active_from_record)
        except RemittanceInvariantError:
            issues.append(ISSUE_COUNT_MISMATCH)
        if set(authoritative) != set(scanned_ids):
            issues.append(ISSUE_DOC_TXIDS_OUT_OF_SYNC)

    if remittance is not None and status in (REMITTANCE_STATUS_NONE, REMITTANCE_STATUS_REPAIRED_PENDING):
        issues.append(ISSUE_STATUS_NOT_FINAL)

    expected_children_cents = abs(parent.amount_cents) - pending_total
    if scanned_ids:
        # Records with an input hash were written by the exact path; only legacy gets the tolerance
        exact = remittance is not None and bool(remittance.input_hash)
        try:
            if exact:
                assert_sum_invariant_exact(expected_children_cents, summary.sum_cents)
            else:
                assert_sum_invariant(expected_children_cents, summary.sum_cents)
        except RemittanceInvariantError:
            issues.append(ISSUE_SUM_MISMATCH)

    return {
        "consistent": not issues,
        "remittanceId": remittance.id if remittance else parent.remittance_id,
        "status": status,
        "issues": issues,
        "details": {
            "parentAmountCents": parent.amount_cents,
            "activeChildCount": summary.count,
            "activeChildSumCents": summary.sum_cents,
            "expectedChildSumCents": expected_children_cents,
            "pendingCount": pending_count,
            "pendingTotalCents": pending_total,
            "docTransactionIdsCount": len(authoritative),
            "docActiveTransactionIdsCount": active_from_record,
            "parentIsRemittance": bool(parent.is_remittance),
            "inputHash": remittance.input_hash if remittance else None,
        },
    }


def check_remittance(org_id: int, parent_transaction_id: int) -> dict:
    """
    Recompute children, sum and count; report drift without locking or writing.

    Returns {consistent, remittanceId, status, issues, details}.
    """
    parent = _load_parent(org_id, parent_transaction_id)
    remittance = get_remittance(org_id, parent_transaction_id)
    return _inspect(org_id, parent, remittance)


# =============================================================================
# ORG-WIDE AUDIT (operator tooling)
# =============================================================================

@dataclass
class CounterAuditEntry:
    parent_transaction_id: int
    remittance_id: int | None
    recorded_count: int
    actual_count: int
    issues: list[str]
    fixed: bool = False

    @property
    def counter_drift(self) -> bool:
        return self.recorded_count != self.actual_count

    def to_dict(self) -> dict:
        return {
            "parentTxId": self.parent_transaction_id,
            "remittanceId": self.remittance_id,
            "recordedCount": self.recorded_count,
            "actualCount": self.actual_count,
            "difference": self.recorded_count - self.actual_count,
            "issues": self.issues,
            "fixed": self.fixed,
        }


def _audited_parents(org_id: int) -> list[Transaction]:
    """Parents flagged as remittances, plus parents whose record is not undone."""
    live_records = db.select(Remittance.parent_transaction_id).where(
        Remittance.org_id == org_id,
        Remittance.status.notin_(sorted(UNDONE_STATUSES)),
    )
    return (
        db.session.query(Transaction)
        .filter(
            Transaction.org_id == org_id,
            Transaction.parent_transaction_id.is_(None),
            db.or_(Transaction.is_remittance.is_(True), Transaction.id.in_(live_records)),
        )
        .order_by(Transaction.id)
        .all()
    )


def _fix_counters(org_id: int, parent: Transaction, user_id: int | None) -> None:
    """Rewrite item/resolved/pending counters from the real children. Status and ids are untouched."""
    with remittance_lock(org_id, parent.id, user_id, OPERATION_AUDIT):
        remittance = get_remittance(org_id, parent.id)
        scanned_ids = children_service.get_active_child_transaction_ids(org_id, parent.id, None, None)
        summary = children_service.summarize_children(org_id, scanned_ids)
        pending_count, _ = children_service.pending_totals(org_id, remittance.id if remittance else None)

        def _apply():
            if remittance is not None:
                apply_safe_update(
                    remittance,
                    {
                        "item_count": summary.count + pending_count,
                        "resolved_count": summary.count,
                        "pending_count": pending_count,
                    },
                )
            if parent.is_remittance:
                apply_safe_update(
                    parent,
                    {
                        "remittance_item_count": summary.count + pending_count,
                        "remittance_resolved_count": summary.count,
                        "remittance_pending_count": pending_count,
                    },
                )

        _write(_apply)


def audit_remittances(org_id: int, *, apply: bool = False, user_id: int | None = None) -> list[CounterAuditEntry]:
    """
    Sweep every remittance of an org and report the ones that drifted.

    The recorded counter is the parent's resolved child count (falling back
    to the record's). With apply=True, counters that disagree with the
    active children are rewritten under the parent's lease; other issues are
    only reported, since fixing them is a job for sanitize or repair.
    A parent whose lease is held is reported with fixed=False.
    """
    entries: list[CounterAuditEntry] = []
    for parent in _audited_parents(org_id):
        remittance = get_remittance(org_id, parent.id)
        report = _inspect(org_id, parent, remittance)

        if parent.is_remittance:
            recorded = parent.remittance_resolved_count or 0
        else:
            recorded = remittance.resolved_count if remittance else 0
        entry = CounterAuditEntry(
            parent_transaction_id=parent.id,
            remittance_id=report["remittanceId"],
            recorded_count=recorded,
            actual_count=report["details"]["activeChildCount"],
            issues=list(report["issues"]),
        )
        if not entry.counter_drift and not entry.issues:
            continue

        if apply and entry.counter_drift:
            try:
                _fix_counters(org_id, parent, user_id)
                entry.fixed = True
            except LockError as e:
                logger.warning("Audit skipped parent %s (org=%s): %s", parent.id, org_id, e)
        entries.append(entry)

    logger.info(
        "Audited remittances of org=%s: %s flagged, %s counters fixed",
        org_id, len(entries), sum(1 for entry in entries if entry.fixed),
    )
    return entries


# =============================================================================
# ORPHAN CHILDREN CLEANUP (operator tooling)
# =============================================================================

@dataclass
class OrphanCleanupResult:
    candidate_ids: list[int]
    skipped_ids: list[int] = field(default_factory=list)
    archived: int = 0
    applied: bool = False

    def to_dict(self) -> dict:
        return {
            "mode": "apply" if self.applied else "dry-run",
            "candidates": len(self.candidate_ids),
            "candidateIds": self.candidate_ids,
            "skippedIds": self.skipped_ids,
            "archived": self.archived,
        }


def archive_orphan_children(
    org_id: int,
    parent_transaction_id: int,
    *,
    user_id: int | None,
    apply: bool = False,
) -> OrphanCleanupResult:
    """
    Soft-archive the leftover children of a legacy parent.

    Only children written by the remittance engine are touched. A parent
    with a processed (or mid-repair) record is refused: undo or repair own
    those children. Dry-run unless apply=True.
    """
    _load_parent(org_id, parent_transaction_id)
    status = _status(get_remittance(org_id, parent_transaction_id))
    if status in (REMITTANCE_STATUS_PROCESSED, REMITTANCE_STATUS_REPAIRED_PENDING):
        raise RemittanceConflictError(
            f"Parent {parent_transaction_id} has a '{status}' remittance; use undo or repair",
            code=INVALID_TRANSITION,
        )

    candidates = children_service.find_orphan_children(org_id, parent_transaction_id)
    result = OrphanCleanupResult(
        candidate_ids=[row.id for row in candidates.archivable],
        skipped_ids=[row.id for row in candidates.skipped],
    )
    if not apply or not result.candidate_ids:
        return result

    with remittance_lock(org_id, parent_transaction_id, user_id, OPERATION_ORPHAN_CLEANUP):
        result.archived = children_service.soft_archive_transactions_by_ids(
            org_id,
            result.candidate_ids,
            user_id,
            children_service.ARCHIVE_REASON_ORPHAN_CLEANUP,
            children_service.ARCHIVE_ACTION_ORPHAN_CLEANUP,
        )
    result.applied = True

    remaining = children_service.find_orphan_children(org_id, parent_transaction_id).archivable
    if remaining:
        raise RemittanceError(
            f"{len(remaining)} children still active after cleanup of parent {parent_transaction_id}",
            code=ORPHANS_REMAIN,
        )

    logger.info(
        "Archived %s orphan children of parent %s (org=%s), skipped %s",
        result.archived, parent_transaction_id, org_id, len(result.skipped_ids),
    )
    return result


def archive_children_with_missing_parent(
    org_id: int,
    *,
    user_id: int | None,
    apply: bool = False,
) -> OrphanCleanupResult:
    """Soft-archive active children whose parent no longer exists. Dry-run unless apply=True."""
    orphans = children_service.find_children_with_missing_parent(org_id)
    result = OrphanCleanupResult(candidate_ids=[row.id for row in orphans])
    if not apply or not result.candidate_ids:
        return result

    result.archived = children_service.soft_archive_transactions_by_ids(
        org_id,
        result.candidate_ids,
        user_id,
        children_service.ARCHIVE_REASON_ORPHAN_CLEANUP,
        children_service.ARCHIVE_ACTION_MISSING_PARENT_CLEANUP,
    )
    result.applied = True
    logger.info("Archived %s children with a missing parent (org=%s)", result.archived, org_id)
    return result
