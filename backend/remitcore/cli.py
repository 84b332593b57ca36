# Overview: Flask CLI command groups for bootstrap, remittance inspection, and maintenance.

# backend/remitcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Org Name"] [--org-code DEFAULT]
#   Idempotent bootstrap: creates the schema, a default org and an admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Organization management (MULTI-TENANT):
# - python -m flask orgs list
# - python -m flask orgs create --name "Fundacio Exemple" --code "FEX" [--tax-id G00000000]
#
# Users and tokens:
# - python -m flask users create --org-id 1 --username admin --email admin@example.org --role admin
# - python -m flask users issue-token --username admin --org-id 1
#   Print a bearer token for an already-verified member.
# - python -m flask users revoke-token --token <token>
#
# Transactions:
# - python -m flask transactions seed-parent --org-id 1 --amount-cents 12500 --description "REMESA 2026-01"
#   Create a bank parent transaction (normally done by the bank import).
#
# Remittances (run outside the HTTP API, same lease and invariants):
# - python -m flask remittances check --org-id 1 --parent-id 42
# - python -m flask remittances sanitize --org-id 1 --parent-id 42 --username admin
# - python -m flask remittances undo --org-id 1 --parent-id 42 --username admin
# - python -m flask remittances audit --org-id 1 [--apply --username admin]
#   Org-wide sweep; --apply rewrites counters that disagree with the active children.
# - python -m flask remittances archive-orphans --org-id 1 --parent-id 42 [--apply --username admin]
# - python -m flask remittances archive-orphans --org-id 1 --missing-parent [--apply --username admin]
#   Soft-archive leftover children of a legacy parent, or children whose parent is gone.
#
# Maintenance:
# - python -m flask maintenance cleanup-locks
# - python -m flask maintenance cleanup-sessions --older-than-days 30
# - python -m flask maintenance cleanup-security-events --retention-days 90

import json
from datetime import date

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Organization, User, Transaction
from .models.auth import ROLE_ADMIN, VALID_ROLES
from .models.transactions import DIRECTION_IN
from .services import maintenance_service, remittance_service, session_service
from .services.lock_service import LockError
from .services.remittance_service import RemittanceError


def _get_org_or_fail(org_id: int) -> Organization:
    org = db.session.get(Organization, org_id)
    if not org:
        raise click.ClickException(f"Organization ID {org_id} not found")
    return org


def _get_user_or_fail(org_id: int, username: str) -> User:
    user = db.session.query(User).filter_by(org_id=org_id, username=username).first()
    if not user:
        raise click.ClickException(f"User '{username}' not found in organization {org_id}")
    return user


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Organization', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--admin-username', default='admin', show_default=True)
@click.option('--admin-email', default='admin@example.org', show_default=True)
@with_appcontext
def init_system(org_name, org_code, admin_username, admin_email):
    """
    Create the schema, a default organization and its first admin.

    Safe to run more than once: existing rows are reused.
    """
    click.echo("START Initializing remitcore...")
    db.create_all()

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    admin = db.session.query(User).filter_by(org_id=org.id, username=admin_username).first()
    if not admin:
        admin = User(org_id=org.id, username=admin_username, email=admin_email, role=ROLE_ADMIN, is_active=True)
        db.session.add(admin)
        db.session.commit()
        click.echo(f"PASS Created admin user: {admin.username} (ID: {admin.id})")
    else:
        click.echo(f"PASS Using existing admin user: {admin.username} (ID: {admin.id})")

    click.echo("DONE Run 'python -m flask users issue-token' to get a bearer token.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# ORGANIZATIONS
# =============================================================================

@click.group('orgs')
def orgs_group():
    """Organization (tenant) management commands."""


@orgs_group.command('list')
@with_appcontext
def list_orgs():
    """List all organizations."""
    orgs = db.session.query(Organization).order_by(Organization.id).all()

    if not orgs:
        click.echo("No organizations found.")
        return

    click.echo("\n" + "="*72)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Active':<8} {'Users'}")
    click.echo("="*72)

    for org in orgs:
        user_count = db.session.query(User).filter_by(org_id=org.id).count()
        active_str = "Yes" if org.is_active else "No"
        click.echo(f"{org.id:<5} {org.name:<30} {org.code or '-':<15} {active_str:<8} {user_count}")

    click.echo("="*72 + "\n")


@orgs_group.command('create')
@click.option('--name', required=True, help='Organization name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--tax-id', default=None, help='Fiscal identifier (CIF/NIF)')
@with_appcontext
def create_org_cli(name, code, tax_id):
    """Create a new organization (tenant)."""
    existing = db.session.query(Organization).filter_by(code=code).first()
    if existing:
        raise click.ClickException(f"Organization with code '{code}' already exists")

    org = Organization(name=name, code=code, tax_id=tax_id, is_active=True)
    db.session.add(org)
    db.session.commit()

    click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """Organization members and bearer tokens."""


@users_group.command('create')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--username', required=True)
@click.option('--email', required=True)
@click.option('--role', type=click.Choice(VALID_ROLES), default='user', show_default=True)
@with_appcontext
def create_user_cli(org_id, username, email, role):
    """Create a member of an organization."""
    org = _get_org_or_fail(org_id)

    existing = db.session.query(User).filter_by(org_id=org_id, username=username).first()
    if existing:
        raise click.ClickException(f"User '{username}' already exists in '{org.name}'")

    user = User(org_id=org_id, username=username, email=email, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()

    click.echo(f"PASS Created user: {user.username} (ID: {user.id}, Role: {user.role}) in '{org.name}'")


@users_group.command('issue-token')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--username', required=True)
@with_appcontext
def issue_token_cli(org_id, username):
    """Print a bearer token for an already-verified member."""
    user = _get_user_or_fail(org_id, username)
    try:
        session, token = session_service.create_session(user.id)
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Token for {user.username} (expires {session.expires_at.isoformat()}Z):")
    click.echo(token)


@users_group.command('revoke-token')
@click.option('--token', required=True)
@with_appcontext
def revoke_token_cli(token):
    """Revoke a bearer token before it expires."""
    if not session_service.revoke_session(token):
        raise click.ClickException("Token not found or already revoked")
    click.echo("PASS Token revoked")


# =============================================================================
# TRANSACTIONS
# =============================================================================

@click.group('transactions')
def transactions_group():
    """Bank transaction helpers."""


@transactions_group.command('seed-parent')
@click.option('--org-id', type=int, required=True, help='Organization ID')
@click.option('--amount-cents', type=int, required=True, help='Signed amount in cents (income > 0)')
@click.option('--description', default='REMESA', show_default=True)
@click.option('--date', 'tx_date', type=click.DateTime(formats=['%Y-%m-%d']), default=None)
@click.option('--bank-account-id', default=None)
@click.option('--category', default=None)
@with_appcontext
def seed_parent_cli(org_id, amount_cents, description, tx_date, bank_account_id, category):
    """Create a bank parent transaction, as the bank import would."""
    _get_org_or_fail(org_id)

    parent = Transaction(
        org_id=org_id,
        date=tx_date.date() if tx_date else date.today(),
        description=description,
        amount_cents=amount_cents,
        direction=DIRECTION_IN if amount_cents > 0 else "OUT",
        transaction_type="normal",
        bank_account_id=bank_account_id,
        category=category,
    )
    db.session.add(parent)
    db.session.commit()

    click.echo(f"PASS Created parent transaction ID {parent.id} ({parent.amount_cents} cents)")


# =============================================================================
# REMITTANCES
# =============================================================================

@click.group('remittances')
def remittances_group():
    """Inspect and fix inbound remittances."""


def _echo_json(data: dict) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _run_remittance_op(operation, org_id: int, parent_id: int, username: str) -> None:
    user = _get_user_or_fail(org_id, username)
    if not user.is_admin:
        raise click.ClickException(f"User '{username}' is not an admin of organization {org_id}")
    try:
        result = operation(org_id, parent_id, user_id=user.id)
    except LockError as e:
        raise click.ClickException(f"{e.code}: {e} (retry later)")
    except RemittanceError as e:
        raise click.ClickException(f"{e.code}: {e}")
    _echo_json(result.to_dict())


@remittances_group.command('check')
@click.option('--org-id', type=int, required=True)
@click.option('--parent-id', type=int, required=True)
@with_appcontext
def check_remittance_cli(org_id, parent_id):
    """Read-only consistency report (no lease)."""
    try:
        report = remittance_service.check_remittance(org_id, parent_id)
    except RemittanceError as e:
        raise click.ClickException(f"{e.code}: {e}")
    _echo_json(report)
    if not report["consistent"]:
        click.echo(f"WARN Inconsistent: {', '.join(report['issues'])}")


@remittances_group.command('sanitize')
@click.option('--org-id', type=int, required=True)
@click.option('--parent-id', type=int, required=True)
@click.option('--username', required=True, help='Admin user to attribute the change to')
@with_appcontext
def sanitize_remittance_cli(org_id, parent_id, username):
    """Rebuild or retire legacy remittance metadata."""
    _run_remittance_op(remittance_service.sanitize_remittance, org_id, parent_id, username)


@remittances_group.command('undo')
@click.option('--org-id', type=int, required=True)
@click.option('--parent-id', type=int, required=True)
@click.option('--username', required=True, help='Admin user to attribute the change to')
@with_appcontext
def undo_remittance_cli(org_id, parent_id, username):
    """Soft-archive a remittance's children and mark it undone."""
    _run_remittance_op(remittance_service.undo_remittance, org_id, parent_id, username)


def _admin_for_apply(org_id: int, username: str | None, apply: bool) -> int | None:
    """Dry runs need no user; --apply writes are attributed to an admin."""
    if not apply:
        return None
    if not username:
        raise click.UsageError("--apply requires --username")
    user = _get_user_or_fail(org_id, username)
    if not user.is_admin:
        raise click.ClickException(f"User '{username}' is not an admin of organization {org_id}")
    return user.id


@remittances_group.command('audit')
@click.option('--org-id', type=int, required=True)
@click.option('--apply', is_flag=True, help='Rewrite drifted counters (default: dry run)')
@click.option('--username', default=None, help='Admin user to attribute the fix to (required with --apply)')
@with_appcontext
def audit_remittances_cli(org_id, apply, username):
    """Check every remittance of an organization and recompute drifted counters."""
    _get_org_or_fail(org_id)
    user_id = _admin_for_apply(org_id, username, apply)

    entries = remittance_service.audit_remittances(org_id, apply=apply, user_id=user_id)
    click.echo(f"Mode: {'APPLY' if apply else 'DRY-RUN'}")
    if not entries:
        click.echo("PASS All remittances are consistent.")
        return

    _echo_json({"remittances": [entry.to_dict() for entry in entries]})
    drifted = [entry for entry in entries if entry.counter_drift]
    click.echo(f"WARN {len(entries)} remittances flagged, {len(drifted)} with a wrong counter")
    if apply:
        click.echo(f"PASS {sum(1 for entry in entries if entry.fixed)} counters rewritten")
    elif drifted:
        click.echo("Run again with --apply to rewrite the counters.")
    if any(entry.issues for entry in entries):
        click.echo("Other issues need 'remittances sanitize' or a repair.")


@remittances_group.command('archive-orphans')
@click.option('--org-id', type=int, required=True)
@click.option('--parent-id', type=int, default=None, help='Legacy parent whose leftover children to archive')
@click.option('--missing-parent', is_flag=True, help='Archive active children whose parent no longer exists')
@click.option('--apply', is_flag=True, help='Archive for real (default: dry run)')
@click.option('--username', default=None, help='Admin user to attribute the archive to (required with --apply)')
@with_appcontext
def archive_orphans_cli(org_id, parent_id, missing_parent, apply, username):
    """Soft-archive orphan remittance children (never deletes)."""
    if (parent_id is None) == (not missing_parent):
        raise click.UsageError("Pass exactly one of --parent-id or --missing-parent")
    _get_org_or_fail(org_id)
    user_id = _admin_for_apply(org_id, username, apply)

    try:
        if missing_parent:
            result = remittance_service.archive_children_with_missing_parent(org_id, user_id=user_id, apply=apply)
        else:
            result = remittance_service.archive_orphan_children(org_id, parent_id, user_id=user_id, apply=apply)
    except LockError as e:
        raise click.ClickException(f"{e.code}: {e} (retry later)")
    except RemittanceError as e:
        raise click.ClickException(f"{e.code}: {e}")

    _echo_json(result.to_dict())
    if result.skipped_ids:
        click.echo(f"WARN {len(result.skipped_ids)} active children are not remittance items and were left alone")
    if not apply and result.candidate_ids:
        click.echo("DRY-RUN: nothing archived. Run again with --apply.")
    elif apply:
        click.echo(f"PASS Archived {result.archived} children")


# =============================================================================
# MAINTENANCE
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-locks')
@with_appcontext
def cleanup_locks_cli():
    """Delete remittance leases whose TTL has passed."""
    deleted = maintenance_service.cleanup_locks()
    click.echo(f"Deleted {deleted} expired leases.")


@maintenance_group.command('cleanup-sessions')
@click.option('--older-than-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(older_than_days):
    """Delete expired or revoked session tokens."""
    deleted = maintenance_service.cleanup_sessions(older_than_days=older_than_days)
    click.echo(f"Deleted {deleted} sessions older than {older_than_days} days.")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orgs_group)
    app.cli.add_command(users_group)
    app.cli.add_command(transactions_group)
    app.cli.add_command(remittances_group)
    app.cli.add_command(maintenance_group)
