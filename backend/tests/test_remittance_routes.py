"""
HTTP tests for /api/remittances/in.

Verifies:
- Unauthenticated requests return 401
- Non-admin members and other tenants get 403 (and a security event)
- Invalid payloads return 400 before anything is written
- Contention and invariant failures map to 409 / 422 with an outcome
- Successful calls report APPLIED / IDEMPOTENT_NOOP
"""

from datetime import timedelta

import pytest

from conftest import auth_headers
from remitcore.models import ProcessLock, Remittance, SecurityEvent, Transaction
from remitcore.services import remittance_service
from remitcore.services.permission_service import CROSS_TENANT_ACCESS_DENIED
from remitcore.time_utils import utcnow


BASE = "/api/remittances/in"


def _body(org_id, parent_id, *amounts, **extra):
    body = {
        "orgId": org_id,
        "parentTxId": parent_id,
        "items": [
            {"contactId": f"donor-{n}", "amountCents": amount, "taxId": f"1234567{n}Z"}
            for n, amount in enumerate(amounts)
        ],
    }
    body.update(extra)
    return body


# =============================================================================
# AUTHENTICATION / AUTHORIZATION
# =============================================================================


class TestAccessControl:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", f"{BASE}/check?orgId=1&parentTxId=1"),
            ("POST", f"{BASE}/process"),
            ("POST", f"{BASE}/repair"),
            ("POST", f"{BASE}/undo"),
            ("POST", f"{BASE}/sanitize"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401
        assert resp.get_json()["code"] == "UNAUTHORIZED"

    def test_invalid_token_is_rejected(self, client, db_session):
        resp = client.post(f"{BASE}/undo", json={"orgId": 1, "parentTxId": 1}, headers=auth_headers("bogus"))
        assert resp.status_code == 401

    def test_member_is_not_admin(self, client, make_parent, member_token_a):
        parent = make_parent(10000)
        resp = client.post(
            f"{BASE}/process",
            json=_body(parent.org_id, parent.id, 10000),
            headers=auth_headers(member_token_a),
        )
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "NOT_ADMIN"
        assert Remittance.query.count() == 0

    def test_other_tenant_is_not_member(self, client, db_session, make_parent, org_b, admin_token_a):
        parent_b = make_parent(10000, org=org_b)

        resp = client.post(
            f"{BASE}/process",
            json=_body(org_b.id, parent_b.id, 10000),
            headers=auth_headers(admin_token_a),
        )

        assert resp.status_code == 403
        assert resp.get_json()["code"] == "NOT_MEMBER"
        events = SecurityEvent.query.filter_by(event_type=CROSS_TENANT_ACCESS_DENIED).all()
        assert len(events) == 1
        assert events[0].success is False
        assert events[0].resource == f"{BASE}/process"
        assert Remittance.query.count() == 0

    def test_check_of_other_tenant_is_denied(self, client, make_parent, org_b, admin_token_a):
        parent_b = make_parent(10000, org=org_b)
        resp = client.get(
            f"{BASE}/check?orgId={org_b.id}&parentTxId={parent_b.id}",
            headers=auth_headers(admin_token_a),
        )
        assert resp.status_code == 403

    def test_missing_org_id_is_bad_request(self, client, db_session, admin_token_a):
        resp = client.post(f"{BASE}/undo", json={"parentTxId": 1}, headers=auth_headers(admin_token_a))
        assert resp.status_code == 400


# =============================================================================
# INPUT VALIDATION (400, NO WRITES)
# =============================================================================


class TestValidation:

    def test_nan_amount_is_rejected(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        raw = (
            '{"orgId": %d, "parentTxId": %d, "items": [{"contactId": "c-1", "amountCents": NaN}]}'
            % (parent.org_id, parent.id)
        )

        resp = client.post(
            f"{BASE}/process", data=raw, content_type="application/json", headers=auth_headers(admin_token_a)
        )

        assert resp.status_code == 400
        assert resp.get_json()["success"] is False
        assert Remittance.query.count() == 0

    def test_infinite_amount_in_euros_is_rejected(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        raw = (
            '{"orgId": %d, "parentTxId": %d, "items": [{"contactId": "c-1", "amount": Infinity}]}'
            % (parent.org_id, parent.id)
        )
        resp = client.post(
            f"{BASE}/process", data=raw, content_type="application/json", headers=auth_headers(admin_token_a)
        )
        assert resp.status_code == 400

    @pytest.mark.parametrize("broken", [
        {"items": []},
        {"items": [{"amountCents": 10000}]},
        {"items": [{"contactId": "c-1"}]},
        {"items": [{"contactId": "c-1", "amountCents": "1e4"}]},
        {"items": [{"contactId": "c-1", "amountCents": -5}]},
        {"items": [{"contactId": "c-1", "amountCents": 10000, "amount": 100}]},
        {"parentTxId": None},
    ])
    def test_malformed_body_is_rejected(self, client, make_parent, admin_token_a, broken):
        parent = make_parent(10000)
        body = _body(parent.org_id, parent.id, 10000)
        body.update(broken)

        resp = client.post(f"{BASE}/process", json=body, headers=auth_headers(admin_token_a))

        assert resp.status_code == 400
        assert Remittance.query.count() == 0
        assert Transaction.query.filter(Transaction.parent_transaction_id.isnot(None)).count() == 0

    def test_unknown_pending_reason_is_rejected(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        body = _body(
            parent.org_id, parent.id, 9000,
            pendingItems=[{"amountCents": 1000, "reason": "WHATEVER", "sourceRowIndex": 1}],
        )
        resp = client.post(f"{BASE}/process", json=body, headers=auth_headers(admin_token_a))
        assert resp.status_code == 400


# =============================================================================
# OPERATIONS
# =============================================================================


class TestOperations:

    def test_process_then_replay(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        body = _body(parent.org_id, parent.id, 4000, 6000)

        first = client.post(f"{BASE}/process", json=body, headers=auth_headers(admin_token_a))
        assert first.status_code == 200
        data = first.get_json()
        assert data["success"] is True
        assert data["outcome"] == "APPLIED"
        assert data["status"] == "processed"
        assert data["counts"]["items"] == 2

        second = client.post(f"{BASE}/process", json=body, headers=auth_headers(admin_token_a))
        assert second.status_code == 200
        assert second.get_json()["outcome"] == "IDEMPOTENT_NOOP"
        assert second.get_json()["idempotent"] is True

    def test_amounts_in_euros_are_accepted(self, client, make_parent, admin_token_a):
        parent = make_parent(3000)
        body = {
            "orgId": parent.org_id,
            "parentTxId": parent.id,
            "items": [{"contactId": "c-1", "amount": 10.10}, {"contactId": "c-2", "amount": "19.90"}],
        }
        resp = client.post(f"{BASE}/process", json=body, headers=auth_headers(admin_token_a))
        assert resp.status_code == 200
        assert resp.get_json()["totals"]["resolvedCents"] == 3000

    def test_sum_mismatch_is_blocked_by_invariant(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)

        resp = client.post(
            f"{BASE}/process", json=_body(parent.org_id, parent.id, 4000, 5000), headers=auth_headers(admin_token_a)
        )

        assert resp.status_code == 422
        data = resp.get_json()
        assert data["outcome"] == "BLOCKED_BY_INVARIANT"
        assert data["code"] == "R-SUM-1"
        assert data["details"]["deltaCents"] == 1000
        assert Remittance.query.count() == 0

    def test_live_lease_is_blocked_by_contention(self, client, db_session, make_parent, admin_a, admin_token_a):
        parent = make_parent(10000)
        now = utcnow()
        db_session.add(ProcessLock(
            org_id=parent.org_id,
            parent_transaction_id=parent.id,
            operation="undo",
            operation_id="other-request",
            locked_by_user_id=admin_a.id,
            locked_at=now,
            expires_at=now + timedelta(seconds=300),
        ))
        db_session.commit()

        resp = client.post(
            f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=auth_headers(admin_token_a)
        )

        assert resp.status_code == 409
        data = resp.get_json()
        assert data["outcome"] == "BLOCKED_BY_CONTENTION"
        assert data["retryable"] is True
        assert Remittance.query.count() == 0

    def test_process_with_different_input_conflicts(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        client.post(f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=auth_headers(admin_token_a))

        resp = client.post(
            f"{BASE}/process", json=_body(parent.org_id, parent.id, 5000, 5000), headers=auth_headers(admin_token_a)
        )

        assert resp.status_code == 409
        assert resp.get_json()["code"] == "REMITTANCE_ALREADY_PROCESSED"

    def test_unknown_parent_is_404(self, client, org_a, admin_token_a):
        resp = client.post(f"{BASE}/undo", json={"orgId": org_a.id, "parentTxId": 424242}, headers=auth_headers(admin_token_a))
        assert resp.status_code == 404
        assert resp.get_json()["code"] == "PARENT_NOT_FOUND"

    def test_return_parent_is_rejected(self, client, make_parent, admin_token_a):
        parent = make_parent(10000, transaction_type="return")
        resp = client.post(
            f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=auth_headers(admin_token_a)
        )
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "PARENT_NOT_INCOME"

    def test_undo_repair_sanitize_round(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        headers = auth_headers(admin_token_a)
        target = {"orgId": parent.org_id, "parentTxId": parent.id}

        client.post(f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=headers)

        repaired = client.post(f"{BASE}/repair", json=_body(parent.org_id, parent.id, 2500, 7500), headers=headers)
        assert repaired.status_code == 200
        assert repaired.get_json()["counts"]["archived"] == 1

        sanitized = client.post(f"{BASE}/sanitize", json=target, headers=headers)
        assert sanitized.status_code == 200
        assert sanitized.get_json()["action"] == "NOOP"

        undone = client.post(f"{BASE}/undo", json=target, headers=headers)
        assert undone.status_code == 200
        assert undone.get_json()["status"] == "undone"
        assert undone.get_json()["counts"]["archived"] == 2

        again = client.post(f"{BASE}/undo", json=target, headers=headers)
        assert again.get_json()["outcome"] == "IDEMPOTENT_NOOP"

    def test_check_endpoint(self, client, make_parent, admin_token_a):
        parent = make_parent(10000)
        headers = auth_headers(admin_token_a)
        client.post(f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=headers)

        resp = client.get(f"{BASE}/check?orgId={parent.org_id}&parentTxId={parent.id}", headers=headers)

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["consistent"] is True
        assert data["status"] == "processed"
        assert data["issues"] == []
        assert data["details"]["activeChildCount"] == 1

    def test_unexpected_failure_is_500(self, client, make_parent, admin_token_a, monkeypatch):
        parent = make_parent(10000)

        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(remittance_service, "process_remittance", boom)

        resp = client.post(
            f"{BASE}/process", json=_body(parent.org_id, parent.id, 10000), headers=auth_headers(admin_token_a)
        )

        assert resp.status_code == 500
        assert resp.get_json() == {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}


# =============================================================================
# SYSTEM
# =============================================================================


class TestSystem:

    def test_health_is_healthy(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["leases"]["details"]["live_leases"] == 0

    def test_expired_lease_degrades_health(self, client, db_session, make_parent):
        parent = make_parent(10000)
        now = utcnow()
        db_session.add(ProcessLock(
            org_id=parent.org_id,
            parent_transaction_id=parent.id,
            operation="process",
            operation_id="crashed",
            locked_at=now - timedelta(seconds=900),
            expires_at=now - timedelta(seconds=600),
        ))
        db_session.commit()

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "degraded"

    def test_version(self, client):
        assert "api_version" in client.get("/version").get_json()
