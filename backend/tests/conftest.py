"""
Pytest fixtures for remitcore backend tests.

Provides test database setup, two tenants with admins and members,
bearer tokens, and a factory for bank parent transactions.
"""

from datetime import date

import pytest
from remitcore import create_app
from remitcore.extensions import db
from remitcore.models import Organization, User, Transaction
from remitcore.models.auth import ROLE_ADMIN, ROLE_USER
from remitcore.services.input_hash import HashableItem
from remitcore.services.session_service import create_session


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'REMITTANCE_LOCK_TTL_SECONDS': 300,
        'REMITTANCE_HEARTBEAT_INTERVAL_SECONDS': 60,
        'REMITTANCE_BATCH_SIZE': 50,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


def _make_org(db_session, name, code):
    org = Organization(name=name, code=code, is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


def _make_user(db_session, org, username, role):
    user = User(
        org_id=org.id,
        username=username,
        email=f"{username}@{org.code.lower()}.org",
        role=role,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    return _make_org(db_session, "Org A - Fundacio Alfa", "ALFA")


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    return _make_org(db_session, "Org B - Associacio Beta", "BETA")


@pytest.fixture(scope='function')
def admin_a(db_session, org_a):
    """Admin of Organization A."""
    return _make_user(db_session, org_a, "admin_a", ROLE_ADMIN)


@pytest.fixture(scope='function')
def member_a(db_session, org_a):
    """Non-admin member of Organization A."""
    return _make_user(db_session, org_a, "member_a", ROLE_USER)


@pytest.fixture(scope='function')
def admin_b(db_session, org_b):
    """Admin of Organization B."""
    return _make_user(db_session, org_b, "admin_b", ROLE_ADMIN)


@pytest.fixture(scope='function')
def admin_token_a(admin_a):
    _, token = create_session(admin_a.id)
    return token


@pytest.fixture(scope='function')
def member_token_a(member_a):
    _, token = create_session(member_a.id)
    return token


@pytest.fixture(scope='function')
def admin_token_b(admin_b):
    _, token = create_session(admin_b.id)
    return token


@pytest.fixture(scope='function')
def make_parent(db_session, org_a):
    """Factory for bank parent transactions (defaults: org A, income)."""
    def _make(amount_cents=10000, org=None, **overrides):
        fields = {
            "org_id": (org or org_a).id,
            "date": date(2026, 1, 15),
            "description": "REMESA RECIBOS ENERO",
            "amount_cents": amount_cents,
            "direction": "IN",
            "transaction_type": "normal",
            "bank_account_id": "ES-ACC-1",
        }
        fields.update(overrides)
        parent = Transaction(**fields)
        db_session.add(parent)
        db_session.commit()
        return parent
    return _make


def make_items(*amounts, prefix="donor"):
    """One HashableItem per amount, with distinct contact ids."""
    return [
        HashableItem(contact_id=f"{prefix}-{index}", amount_cents=amount, source_row_index=index)
        for index, amount in enumerate(amounts)
    ]


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
