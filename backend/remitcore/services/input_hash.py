# Overview: Canonical fingerprint of a remittance's intended contents, plus exact cent helpers.

"""
Remittance Input Hash

WHY: A retried request (or a re-parse of the same bank file) must be
recognized as the same remittance so it is not applied twice. The hash is
computed server-side only and is the sole input to idempotency decisions.

CANONICAL ITEM SCHEMA (hash-relevant fields):
- contact_id   (string, trimmed)
- amount_cents (integer cents)
- iban         (uppercase, all whitespace removed, "" when absent)
- tax_id       (trimmed, uppercase, "" when absent)

source_row_index is carried on items for traceability but does NOT take part
in the hash: re-ordering rows in the source file yields the same hash.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable

_WHITESPACE = re.compile(r"\s+")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class HashableItem:
    contact_id: str
    amount_cents: int
    iban: str | None = None
    tax_id: str | None = None
    source_row_index: int | None = None


def normalize_iban(iban: str | None) -> str:
    if not iban:
        return ""
    return _WHITESPACE.sub("", iban).upper()


def normalize_tax_id(tax_id: str | None) -> str:
    if not tax_id:
        return ""
    return tax_id.strip().upper()


def _canonical(item: HashableItem) -> tuple[str, int, str, str]:
    if isinstance(item.amount_cents, bool) or not isinstance(item.amount_cents, int):
        raise ValueError(f"amount_cents must be integer cents, got {item.amount_cents!r}")
    return (
        str(item.contact_id).strip(),
        item.amount_cents,
        normalize_iban(item.iban),
        normalize_tax_id(item.tax_id),
    )


def compute_input_hash(parent_transaction_id, items: Iterable[HashableItem]) -> str:
    """
    SHA-256 hex digest of the parent id plus the sorted, normalized items.

    Two logically identical item sets always hash identically regardless of
    order; changing any item's contact, amount, iban or tax id changes it.
    """
    normalized = sorted(_canonical(item) for item in items)
    raw = json.dumps(
        {
            "parent_transaction_id": str(parent_transaction_id),
            "items": [
                {"c": c, "a": a, "i": i, "t": t}
                for c, a, i, t in normalized
            ],
        },
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def to_cents(amount_euros) -> int:
    """
    Exact euro -> integer cents conversion (half-up, no float drift).

    Accepts int, float, Decimal or numeric string. Floats go through their
    shortest repr so 12.34 becomes 1234, not 1233.
    """
    if isinstance(amount_euros, bool):
        raise ValueError("amount must be numeric")
    if isinstance(amount_euros, float) and not math.isfinite(amount_euros):
        raise ValueError("amount must be finite")
    try:
        value = Decimal(str(amount_euros).strip())
    except InvalidOperation:
        raise ValueError(f"amount is not a number: {amount_euros!r}")
    if not value.is_finite():
        raise ValueError("amount must be finite")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_euros(amount_cents: int) -> Decimal:
    """Integer cents -> Decimal euros with exactly two places."""
    return (Decimal(amount_cents) / 100).quantize(_CENT)


def sum_cents(items) -> int:
    """Sum amount_cents over objects or dicts (integer arithmetic only)."""
    total = 0
    for item in items:
        total += item["amount_cents"] if isinstance(item, dict) else item.amount_cents
    return total
