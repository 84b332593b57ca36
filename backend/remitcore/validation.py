from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from remitcore.models.remittances import PENDING_REASONS
from remitcore.services.input_hash import HashableItem, to_cents


# Maximum single amount: 99,999,999.99 EUR (9,999,999,999 cents)
# Keeps one malformed row from overflowing report totals
MAX_AMOUNT_CENTS = 9_999_999_999

INVALID_PAYLOAD = "INVALID_PAYLOAD"
SAFE_WRITE_INVALID_PAYLOAD = "SAFE_WRITE_INVALID_PAYLOAD"


class ValidationError(ValueError):
    """400-level input problem."""

    code = INVALID_PAYLOAD


class SafeWriteValidationError(ValidationError):
    """
    A document about to be persisted carries NaN/Infinity or misses a
    required field. Raised before the write, never after.
    """

    code = SAFE_WRITE_INVALID_PAYLOAD

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class PendingItemInput:
    amount_cents: int
    reason: str
    source_row_index: int
    name_raw: str | None = None
    tax_id: str | None = None
    iban: str | None = None
    ambiguous_contact_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class RemittanceRequest:
    org_id: int
    parent_transaction_id: int
    items: list[HashableItem] = field(default_factory=list)
    pending_items: list[PendingItemInput] = field(default_factory=list)
    category: str | None = None
    bank_account_id: str | None = None


# =============================================================================
# SAFE WRITE GATE
# =============================================================================

def _is_non_finite(value: Any) -> bool:
    if isinstance(value, float):
        return not math.isfinite(value)
    if isinstance(value, Decimal):
        return not value.is_finite()
    return False


def _find_non_finite(value: Any, path: str) -> str | None:
    if _is_non_finite(value):
        return path
    if isinstance(value, dict):
        for key, nested in value.items():
            found = _find_non_finite(nested, f"{path}.{key}" if path else str(key))
            if found:
                return found
    elif isinstance(value, (list, tuple)):
        for index, nested in enumerate(value):
            found = _find_non_finite(nested, f"{path}[{index}]")
            if found:
                return found
    return None


def validate_write_payload(data: dict, *, required_fields: tuple[str, ...] = ()) -> dict:
    """
    Gate every document on its way to storage.

    Rejects:
    - NaN / Infinity anywhere in the document (nested dicts and lists included)
    - required fields that are missing, None or blank strings

    Returns the same dict so callers can chain.
    """
    if not isinstance(data, dict):
        raise SafeWriteValidationError("Write payload must be an object")

    bad_path = _find_non_finite(data, "")
    if bad_path:
        raise SafeWriteValidationError(f"Non-finite number at {bad_path}", path=bad_path)

    for name in required_fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and value.strip() == ""):
            raise SafeWriteValidationError(f"Missing required field: {name}", path=name)

    return data


def apply_safe_update(obj, data: dict, *, required_fields: tuple[str, ...] = ()) -> None:
    """Validate then copy data onto a model instance. Nothing is set on failure."""
    validate_write_payload(data, required_fields=required_fields)
    for key in data:
        if not hasattr(obj, key):
            raise SafeWriteValidationError(f"Unknown field: {key}", path=key)
    for key, value in data.items():
        setattr(obj, key, value)


# =============================================================================
# REQUEST PARSING
# =============================================================================

def coerce_int(value: Any, name: str) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings. Rejects bools, floats,
    decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        # Reject scientific notation (e.g., "1e5")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"{name} must be a finite number")
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _optional_str(value: Any, name: str, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{name} must be a string")
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{name} exceeds max length {max_length}")
    return text or None


def _amount_cents(raw: dict, name: str) -> int:
    """
    Read an amount from amountCents (integer cents) or amount (euros).

    Exactly one of the two must be present.
    """
    has_cents = raw.get("amountCents") is not None
    has_euros = raw.get("amount") is not None
    if has_cents == has_euros:
        raise ValidationError(f"{name}: provide exactly one of amountCents or amount")

    if has_cents:
        cents = coerce_int(raw["amountCents"], f"{name}.amountCents")
    else:
        euros = raw["amount"]
        if isinstance(euros, bool) or not isinstance(euros, (int, float, str)):
            raise ValidationError(f"{name}.amount must be a number")
        try:
            cents = to_cents(euros)
        except ValueError as exc:
            raise ValidationError(f"{name}.amount: {exc}")

    if cents <= 0:
        raise ValidationError(f"{name} amount must be > 0")
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{name} amount cannot exceed {MAX_AMOUNT_CENTS} cents")
    return cents


def parse_items(raw_items: Any) -> list[HashableItem]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    items: list[HashableItem] = []
    for index, raw in enumerate(raw_items):
        name = f"items[{index}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{name} must be an object")
        contact_id = _optional_str(raw.get("contactId"), f"{name}.contactId", 64)
        if not contact_id:
            raise ValidationError(f"{name}.contactId is required")
        row_index = raw.get("sourceRowIndex")
        items.append(HashableItem(
            contact_id=contact_id,
            amount_cents=_amount_cents(raw, name),
            iban=_optional_str(raw.get("iban"), f"{name}.iban", 64),
            tax_id=_optional_str(raw.get("taxId"), f"{name}.taxId", 32),
            source_row_index=coerce_int(row_index, f"{name}.sourceRowIndex") if row_index is not None else index,
        ))
    return items


def parse_pending_items(raw_items: Any) -> list[PendingItemInput]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("pendingItems must be a list")

    pending: list[PendingItemInput] = []
    for index, raw in enumerate(raw_items):
        name = f"pendingItems[{index}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{name} must be an object")

        reason = raw.get("reason")
        if reason not in PENDING_REASONS:
            raise ValidationError(f"{name}.reason must be one of: {', '.join(PENDING_REASONS)}")

        row_index = raw.get("sourceRowIndex")
        if row_index is None:
            raise ValidationError(f"{name}.sourceRowIndex is required")

        ambiguous = raw.get("ambiguousContactIds") or []
        if not isinstance(ambiguous, list):
            raise ValidationError(f"{name}.ambiguousContactIds must be a list")

        pending.append(PendingItemInput(
            amount_cents=_amount_cents(raw, name),
            reason=reason,
            source_row_index=coerce_int(row_index, f"{name}.sourceRowIndex"),
            name_raw=_optional_str(raw.get("nameRaw"), f"{name}.nameRaw", 255),
            tax_id=_optional_str(raw.get("taxId"), f"{name}.taxId", 32),
            iban=_optional_str(raw.get("iban"), f"{name}.iban", 64),
            ambiguous_contact_ids=tuple(str(c) for c in ambiguous),
        ))
    return pending


def parse_target(payload: Any) -> tuple[int, int]:
    """Read (orgId, parentTxId) from a request body or query args."""
    if payload is None:
        payload = {}
    if not hasattr(payload, "get"):
        raise ValidationError("Invalid JSON payload")

    missing = [name for name in ("orgId", "parentTxId") if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    return coerce_int(payload.get("orgId"), "orgId"), coerce_int(payload.get("parentTxId"), "parentTxId")


def parse_remittance_request(payload: Any, *, require_items: bool) -> RemittanceRequest:
    """
    Validate + normalize a process/repair/undo/sanitize body.

    Every numeric field is checked for finiteness before anything is written.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    bad_path = _find_non_finite(payload, "")
    if bad_path:
        raise ValidationError(f"Non-finite number at {bad_path}")

    org_id, parent_transaction_id = parse_target(payload)

    items = parse_items(payload.get("items"))
    pending_items = parse_pending_items(payload.get("pendingItems"))
    if require_items and not items:
        raise ValidationError("items must contain at least one resolved item")

    return RemittanceRequest(
        org_id=org_id,
        parent_transaction_id=parent_transaction_id,
        items=items,
        pending_items=pending_items,
        category=_optional_str(payload.get("category"), "category", 128),
        bank_account_id=_optional_str(payload.get("bankAccountId"), "bankAccountId", 64),
    )
