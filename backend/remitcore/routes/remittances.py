# Overview: Flask API routes for inbound remittances; parses input and returns JSON responses.

"""
Inbound Remittance API Routes

WHY: Admin-triggered split, undo, repair and sanitize of bulk bank
movements, plus a read-only consistency check.

DESIGN:
- Every endpoint is org-scoped: orgId must match the caller's session org
- Every mutating response says what happened (outcome):
  APPLIED | IDEMPOTENT_NOOP | BLOCKED_BY_INVARIANT | BLOCKED_BY_CONTENTION
- Error bodies carry {success: false, error, code}

SECURITY:
- Organization admin role required for every endpoint
- Denials written to security_events
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_org_admin
from ..services import remittance_service
from ..services.lock_service import LockError
from ..services.remittance_invariants import RemittanceInvariantError
from ..services.remittance_service import (
    RemittanceError,
    OUTCOME_BLOCKED_BY_CONTENTION,
    OUTCOME_BLOCKED_BY_INVARIANT,
)
from ..validation import ValidationError, parse_remittance_request, parse_target


remittances_bp = Blueprint("remittances", __name__, url_prefix="/api/remittances/in")


def _error(message: str, code: str, status: int, **extra):
    body = {"success": False, "error": message, "code": code}
    body.update(extra)
    return jsonify(body), status


def _execute(label: str, operation):
    """Run a remittance operation and map its failure classes to HTTP."""
    try:
        return jsonify(operation()), 200

    except ValidationError as e:
        return _error(str(e), e.code, 400)
    except RemittanceInvariantError as e:
        return _error(
            str(e), e.code, 422,
            outcome=OUTCOME_BLOCKED_BY_INVARIANT,
            details=e.details,
        )
    except LockError as e:
        return _error(
            str(e), e.code, 409,
            outcome=OUTCOME_BLOCKED_BY_CONTENTION,
            retryable=True,
        )
    except RemittanceError as e:
        return _error(str(e), e.code, e.http_status)
    except Exception:
        current_app.logger.exception("Failed to %s remittance", label)
        return _error("Internal server error", "INTERNAL_ERROR", 500)


# =============================================================================
# READ-ONLY
# =============================================================================

@remittances_bp.get("/check")
@require_auth
@require_org_admin
def check_remittance_route():
    """
    Report whether a parent's remittance data is consistent. No lease, no writes.

    Query: ?orgId=1&parentTxId=42

    Returns:
        200: {consistent, remittanceId, status, issues, details}
        404: PARENT_NOT_FOUND
    """
    def _op():
        org_id, parent_tx_id = parse_target(request.args)
        report = remittance_service.check_remittance(org_id, parent_tx_id)
        return {"success": True, **report}

    return _execute("check", _op)


# =============================================================================
# MUTATING
# =============================================================================

@remittances_bp.post("/process")
@require_auth
@require_org_admin
def process_remittance_route():
    """
    Split a parent into one child per resolved item.

    Request body:
    {
        "orgId": 1,
        "parentTxId": 42,
        "items": [{"contactId": "c-1", "amountCents": 2500, "iban": "...", "taxId": "..."}],
        "pendingItems": [{"amountCents": 500, "reason": "NO_MATCH", "sourceRowIndex": 3}],  (optional)
        "category": "donations",  (optional)
        "bankAccountId": "acc-1"  (optional)
    }

    Returns:
        200: APPLIED or IDEMPOTENT_NOOP
        400: invalid payload / parent not income
        409: lease held (BLOCKED_BY_CONTENTION) or already processed
        422: R-SUM-1 / R-COUNT-1 (BLOCKED_BY_INVARIANT)
    """
    def _op():
        req = parse_remittance_request(request.get_json(silent=True), require_items=True)
        result = remittance_service.process_remittance(
            req.org_id,
            req.parent_transaction_id,
            req.items,
            user_id=g.current_user.id,
            pending_items=req.pending_items,
            category=req.category,
            bank_account_id=req.bank_account_id,
        )
        return result.to_dict()

    return _execute("process", _op)


@remittances_bp.post("/repair")
@require_auth
@require_org_admin
def repair_remittance_route():
    """
    Purge active children and rebuild them from the given items.

    Request body: same as /process.
    """
    def _op():
        req = parse_remittance_request(request.get_json(silent=True), require_items=True)
        result = remittance_service.repair_remittance(
            req.org_id,
            req.parent_transaction_id,
            req.items,
            user_id=g.current_user.id,
            pending_items=req.pending_items,
            category=req.category,
            bank_account_id=req.bank_account_id,
        )
        return result.to_dict()

    return _execute("repair", _op)


@remittances_bp.post("/undo")
@require_auth
@require_org_admin
def undo_remittance_route():
    """
    Soft-archive the children and mark the remittance undone.

    Request body: {"orgId": 1, "parentTxId": 42}
    """
    def _op():
        req = parse_remittance_request(request.get_json(silent=True), require_items=False)
        result = remittance_service.undo_remittance(
            req.org_id,
            req.parent_transaction_id,
            user_id=g.current_user.id,
        )
        return result.to_dict()

    return _execute("undo", _op)


@remittances_bp.post("/sanitize")
@require_auth
@require_org_admin
def sanitize_remittance_route():
    """
    Fix legacy remittance metadata from the real children (no child writes).

    Request body: {"orgId": 1, "parentTxId": 42}

    Response adds "action": NOOP | REBUILT_DOC | MARKED_UNDONE_LEGACY
    """
    def _op():
        req = parse_remittance_request(request.get_json(silent=True), require_items=False)
        result = remittance_service.sanitize_remittance(
            req.org_id,
            req.parent_transaction_id,
            user_id=g.current_user.id,
        )
        return result.to_dict()

    return _execute("sanitize", _op)
