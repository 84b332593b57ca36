# Overview: Pure assertions over a remittance's children; no database access.

"""
Remittance Invariants (blocking)

If any of these fail, the current operation aborts before the final status
write. Callers must treat RemittanceInvariantError as a financial
inconsistency: never persist it silently, surface it and require a repair.

- R-SUM-1: children sum == parent amount (exact for fresh processing,
  +/- SUM_TOLERANCE_CENTS only for legacy reconciliation)
- R-COUNT-1: len(transaction_ids) == actually active children
- R-IDEMP-1: same input hash and status != undone -> no-op
"""

from __future__ import annotations

from dataclasses import dataclass

from ..models.remittances import REMITTANCE_STATUS_UNDONE, REMITTANCE_STATUS_UNDONE_LEGACY

# Bank rounding tolerance for legacy/imported data (+/- 0.02 EUR)
SUM_TOLERANCE_CENTS = 2

INVARIANT_SUM = "R-SUM-1"
INVARIANT_COUNT = "R-COUNT-1"


class RemittanceInvariantError(Exception):
    """Raised when a remittance invariant is broken (422-class, needs repair)."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.details = details or {}


@dataclass(frozen=True)
class IdempotenceDecision:
    should_process: bool
    reason: str


def assert_sum_invariant_exact(parent_amount_cents: int, children_sum_cents: int) -> None:
    """R-SUM-1 with zero tolerance (every newly processed remittance)."""
    if parent_amount_cents != children_sum_cents:
        delta = abs(parent_amount_cents - children_sum_cents)
        raise RemittanceInvariantError(
            INVARIANT_SUM,
            f"Children sum ({children_sum_cents} cents) does not match parent "
            f"({parent_amount_cents} cents). Delta: {delta} cents",
            {
                "parentAmountCents": parent_amount_cents,
                "childrenSumCents": children_sum_cents,
                "deltaCents": delta,
                "tolerance": 0,
            },
        )


def assert_sum_invariant(parent_amount_cents: int, children_sum_cents: int) -> None:
    """R-SUM-1 with bank rounding tolerance. Legacy reconciliation only."""
    parent_abs = abs(parent_amount_cents)
    children_abs = abs(children_sum_cents)
    delta = abs(parent_abs - children_abs)
    if delta > SUM_TOLERANCE_CENTS:
        raise RemittanceInvariantError(
            INVARIANT_SUM,
            f"Children sum ({children_abs} cents) does not match parent "
            f"({parent_abs} cents). Delta: {delta} cents, tolerance: {SUM_TOLERANCE_CENTS}",
            {
                "parentAmountCents": parent_abs,
                "childrenSumCents": children_abs,
                "deltaCents": delta,
                "tolerance": SUM_TOLERANCE_CENTS,
            },
        )


def assert_count_invariant(transaction_ids: list, active_child_count: int) -> None:
    if len(transaction_ids) != active_child_count:
        raise RemittanceInvariantError(
            INVARIANT_COUNT,
            f"transaction_ids ({len(transaction_ids)}) != active children ({active_child_count})",
            {
                "transactionIdsLength": len(transaction_ids),
                "activeChildCount": active_child_count,
            },
        )


def check_idempotence(
    existing_hash: str | None,
    new_hash: str,
    existing_status: str | None = None,
) -> IdempotenceDecision:
    """
    Decide whether an operation must run or is an idempotent replay.

    An undone (or undone_legacy) remittance is always reprocessable, even
    with an identical hash.
    """
    if not existing_hash:
        return IdempotenceDecision(True, "No previous input hash")

    if existing_status in (REMITTANCE_STATUS_UNDONE, REMITTANCE_STATUS_UNDONE_LEGACY):
        return IdempotenceDecision(True, "Remittance was undone")

    if existing_hash == new_hash:
        return IdempotenceDecision(False, f"Already processed with hash {new_hash[:8]}...")

    return IdempotenceDecision(True, "Input hash changed")
