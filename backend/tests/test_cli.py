"""
CLI tests for the flask command groups.
"""

from datetime import timedelta

import pytest

from conftest import make_items
from remitcore.models import ProcessLock, Remittance, Transaction
from remitcore.services.remittance_service import process_remittance
from remitcore.time_utils import utcnow


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_orgs_list(runner, org_a, org_b):
    result = runner.invoke(args=["orgs", "list"])
    assert result.exit_code == 0
    assert "ALFA" in result.output
    assert "BETA" in result.output


def test_seed_parent_and_check(runner, db_session, org_a):
    result = runner.invoke(args=["transactions", "seed-parent", "--org-id", str(org_a.id), "--amount-cents", "12500"])
    assert result.exit_code == 0
    parent = db_session.query(Transaction).filter_by(org_id=org_a.id).one()
    assert parent.direction == "IN"

    result = runner.invoke(args=["remittances", "check", "--org-id", str(org_a.id), "--parent-id", str(parent.id)])
    assert result.exit_code == 0
    assert '"consistent": true' in result.output


def test_undo_via_cli(runner, db_session, make_parent, admin_a):
    parent = make_parent(10000)
    process_remittance(parent.org_id, parent.id, make_items(10000), user_id=admin_a.id)

    result = runner.invoke(args=[
        "remittances", "undo", "--org-id", str(parent.org_id), "--parent-id", str(parent.id), "--username", "admin_a",
    ])

    assert result.exit_code == 0
    assert '"status": "undone"' in result.output
    assert db_session.query(Remittance).one().status == "undone"


def test_remittance_ops_require_admin(runner, make_parent, member_a):
    parent = make_parent(10000)
    result = runner.invoke(args=[
        "remittances", "sanitize", "--org-id", str(parent.org_id), "--parent-id", str(parent.id), "--username", "member_a",
    ])
    assert result.exit_code != 0
    assert "not an admin" in result.output


def test_cleanup_locks(runner, db_session, make_parent):
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

    result = runner.invoke(args=["maintenance", "cleanup-locks"])

    assert result.exit_code == 0
    assert "Deleted 1 expired leases." in result.output
    assert db_session.query(ProcessLock).count() == 0


def test_audit_dry_run_then_apply(runner, db_session, make_parent, admin_a):
    parent = make_parent(10000)
    process_remittance(parent.org_id, parent.id, make_items(4000, 6000), user_id=admin_a.id)
    parent.remittance_resolved_count = 9
    db_session.commit()

    result = runner.invoke(args=["remittances", "audit", "--org-id", str(parent.org_id)])
    assert result.exit_code == 0
    assert "Mode: DRY-RUN" in result.output
    assert '"recordedCount": 9' in result.output
    assert "--apply" in result.output
    db_session.refresh(parent)
    assert parent.remittance_resolved_count == 9

    result = runner.invoke(args=[
        "remittances", "audit", "--org-id", str(parent.org_id), "--apply", "--username", "admin_a",
    ])
    assert result.exit_code == 0
    assert "PASS 1 counters rewritten" in result.output
    db_session.refresh(parent)
    assert parent.remittance_resolved_count == 2

    result = runner.invoke(args=["remittances", "audit", "--org-id", str(parent.org_id)])
    assert "PASS All remittances are consistent." in result.output


def test_audit_apply_needs_an_admin(runner, org_a, member_a):
    result = runner.invoke(args=["remittances", "audit", "--org-id", str(org_a.id), "--apply"])
    assert result.exit_code != 0
    assert "--apply requires --username" in result.output

    result = runner.invoke(args=[
        "remittances", "audit", "--org-id", str(org_a.id), "--apply", "--username", "member_a",
    ])
    assert result.exit_code != 0
    assert "not an admin" in result.output


def test_archive_orphans_of_legacy_parent(runner, db_session, make_parent, admin_a):
    parent = make_parent(500, is_remittance=True)
    db_session.add_all([
        Transaction(
            org_id=parent.org_id, amount_cents=amount, direction="IN", transaction_type="donation",
            source="remittance", parent_transaction_id=parent.id, is_remittance_item=True,
        )
        for amount in (200, 300)
    ])
    db_session.commit()
    args = ["remittances", "archive-orphans", "--org-id", str(parent.org_id), "--parent-id", str(parent.id)]

    result = runner.invoke(args=args)
    assert result.exit_code == 0
    assert '"candidates": 2' in result.output
    assert "DRY-RUN" in result.output
    assert db_session.query(Transaction).filter_by(parent_transaction_id=parent.id, record_state="ACTIVE").count() == 2

    result = runner.invoke(args=args + ["--apply", "--username", "admin_a"])
    assert result.exit_code == 0
    assert "PASS Archived 2 children" in result.output
    assert db_session.query(Transaction).filter_by(parent_transaction_id=parent.id, record_state="ACTIVE").count() == 0


def test_archive_orphans_refuses_processed_parent(runner, make_parent, admin_a):
    parent = make_parent(10000)
    process_remittance(parent.org_id, parent.id, make_items(10000), user_id=admin_a.id)

    result = runner.invoke(args=[
        "remittances", "archive-orphans", "--org-id", str(parent.org_id), "--parent-id", str(parent.id),
        "--apply", "--username", "admin_a",
    ])
    assert result.exit_code != 0
    assert "INVALID_TRANSITION" in result.output


def test_archive_orphans_with_missing_parent(runner, db_session, org_a, admin_a):
    stray = Transaction(
        org_id=org_a.id, amount_cents=100, direction="IN", transaction_type="donation",
        source="remittance", parent_transaction_id=424242, is_remittance_item=True,
    )
    db_session.add(stray)
    db_session.commit()

    result = runner.invoke(args=[
        "remittances", "archive-orphans", "--org-id", str(org_a.id), "--missing-parent",
        "--apply", "--username", "admin_a",
    ])

    assert result.exit_code == 0
    assert "PASS Archived 1 children" in result.output
    db_session.refresh(stray)
    assert stray.record_state == "ARCHIVED"


def test_archive_orphans_needs_exactly_one_target(runner, org_a):
    result = runner.invoke(args=["remittances", "archive-orphans", "--org-id", str(org_a.id)])
    assert result.exit_code != 0
    assert "exactly one of --parent-id or --missing-parent" in result.output
