"""Remittance core schema: tenants, members, transactions, remittances, leases

Revision ID: 20261018_remittance_core
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_remittance_core"
down_revision = None
branch_labels = None
depends_on = None


def _now():
    return sa.text("CURRENT_TIMESTAMP")


def upgrade():
    op.create_table(
        "organizations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("tax_id", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_organizations_code", "organizations", ["code"], unique=True)
    op.create_index("ix_organizations_is_active", "organizations", ["is_active"], unique=False)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "username", name="uq_users_org_username"),
        sa.UniqueConstraint("org_id", "email", name="uq_users_org_email"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_users_org_id", "users", ["org_id"], unique=False)
    op.create_index("ix_users_username", "users", ["username"], unique=False)

    op.create_table(
        "session_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_revoked", sa.Boolean(), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_session_tokens_token_hash", "session_tokens", ["token_hash"], unique=True)
    op.create_index("ix_session_tokens_user_id", "session_tokens", ["user_id"], unique=False)
    op.create_index("ix_session_tokens_expires_at", "session_tokens", ["expires_at"], unique=False)
    op.create_index("ix_session_tokens_is_revoked", "session_tokens", ["is_revoked"], unique=False)
    op.create_index("ix_session_tokens_user_active", "session_tokens", ["user_id", "is_revoked"], unique=False)
    op.create_index("ix_session_tokens_org_id", "session_tokens", ["org_id"], unique=False)

    op.create_table(
        "security_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("resource", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_security_events_org_id", "security_events", ["org_id"], unique=False)
    op.create_index("ix_security_events_user_id", "security_events", ["user_id"], unique=False)
    op.create_index("ix_security_events_event_type", "security_events", ["event_type"], unique=False)
    op.create_index("ix_security_events_success", "security_events", ["success"], unique=False)
    op.create_index("ix_security_events_occurred_at", "security_events", ["occurred_at"], unique=False)
    op.create_index("ix_security_events_user_type", "security_events", ["user_id", "event_type"], unique=False)
    op.create_index("ix_security_events_occurred", "security_events", ["occurred_at"], unique=False)
    op.create_index("ix_security_events_org_occurred", "security_events", ["org_id", "occurred_at"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(length=8), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("category", sa.String(length=128), nullable=True),
        sa.Column("counterpart", sa.String(length=255), nullable=True),
        sa.Column("bank_account_id", sa.String(length=64), nullable=True),
        sa.Column("contact_id", sa.String(length=64), nullable=True),
        sa.Column("contact_type", sa.String(length=16), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("parent_transaction_id", sa.Integer(), nullable=True),
        sa.Column("remittance_id", sa.Integer(), nullable=True),
        sa.Column("is_remittance_item", sa.Boolean(), nullable=False),
        sa.Column("source_row_index", sa.Integer(), nullable=True),
        sa.Column("record_state", sa.String(length=16), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_by_user_id", sa.Integer(), nullable=True),
        sa.Column("archived_reason", sa.String(length=64), nullable=True),
        sa.Column("archived_from_action", sa.String(length=64), nullable=True),
        sa.Column("is_remittance", sa.Boolean(), nullable=False),
        sa.Column("remittance_type", sa.String(length=32), nullable=True),
        sa.Column("remittance_direction", sa.String(length=8), nullable=True),
        sa.Column("remittance_status", sa.String(length=32), nullable=True),
        sa.Column("remittance_item_count", sa.Integer(), nullable=True),
        sa.Column("remittance_resolved_count", sa.Integer(), nullable=True),
        sa.Column("remittance_pending_count", sa.Integer(), nullable=True),
        sa.Column("remittance_expected_total_cents", sa.Integer(), nullable=True),
        sa.Column("remittance_resolved_total_cents", sa.Integer(), nullable=True),
        sa.Column("remittance_pending_total_cents", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["parent_transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["archived_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_transactions_org_id", "transactions", ["org_id"], unique=False)
    op.create_index("ix_transactions_contact_id", "transactions", ["contact_id"], unique=False)
    op.create_index("ix_transactions_parent_transaction_id", "transactions", ["parent_transaction_id"], unique=False)
    op.create_index("ix_transactions_remittance_id", "transactions", ["remittance_id"], unique=False)
    op.create_index("ix_transactions_record_state", "transactions", ["record_state"], unique=False)
    op.create_index(
        "ix_transactions_org_parent_state",
        "transactions",
        ["org_id", "parent_transaction_id", "record_state"],
        unique=False,
    )
    op.create_index(
        "ix_transactions_org_remittance_state",
        "transactions",
        ["org_id", "remittance_id", "record_state"],
        unique=False,
    )

    op.create_table(
        "remittances",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("parent_transaction_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(length=8), nullable=False),
        sa.Column("remittance_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("input_hash", sa.String(length=64), nullable=True),
        sa.Column("transaction_ids", sa.JSON(), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("resolved_count", sa.Integer(), nullable=False),
        sa.Column("pending_count", sa.Integer(), nullable=False),
        sa.Column("expected_total_cents", sa.Integer(), nullable=False),
        sa.Column("resolved_total_cents", sa.Integer(), nullable=False),
        sa.Column("pending_total_cents", sa.Integer(), nullable=False),
        sa.Column("bank_account_id", sa.String(length=64), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("undone_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("undone_by_user_id", sa.Integer(), nullable=True),
        sa.Column("repaired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("repaired_by_user_id", sa.Integer(), nullable=True),
        sa.Column("sanitized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sanitized_by_user_id", sa.Integer(), nullable=True),
        sa.Column("sanitized_reason", sa.String(length=64), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["parent_transaction_id"], ["transactions.id"]),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["processed_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["undone_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["repaired_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["sanitized_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "parent_transaction_id", name="uq_remittances_org_parent"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_remittances_org_id", "remittances", ["org_id"], unique=False)
    op.create_index("ix_remittances_parent_transaction_id", "remittances", ["parent_transaction_id"], unique=False)
    op.create_index("ix_remittances_status", "remittances", ["status"], unique=False)
    op.create_index("ix_remittances_org_status", "remittances", ["org_id", "status"], unique=False)

    op.create_table(
        "remittance_pending_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("remittance_id", sa.Integer(), nullable=False),
        sa.Column("parent_transaction_id", sa.Integer(), nullable=False),
        sa.Column("name_raw", sa.String(length=255), nullable=True),
        sa.Column("tax_id", sa.String(length=32), nullable=True),
        sa.Column("iban", sa.String(length=64), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("source_row_index", sa.Integer(), nullable=False),
        sa.Column("ambiguous_contact_ids", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=_now(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["remittance_id"], ["remittances.id"]),
        sa.ForeignKeyConstraint(["parent_transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_remittance_pending_items_org_id", "remittance_pending_items", ["org_id"], unique=False)
    op.create_index(
        "ix_remittance_pending_items_remittance_id", "remittance_pending_items", ["remittance_id"], unique=False
    )
    op.create_index(
        "ix_remittance_pending_items_parent_transaction_id",
        "remittance_pending_items",
        ["parent_transaction_id"],
        unique=False,
    )
    op.create_index(
        "ix_remittance_pending_org_remittance", "remittance_pending_items", ["org_id", "remittance_id"], unique=False
    )

    op.create_table(
        "process_locks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("parent_transaction_id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(length=32), nullable=False),
        sa.Column("operation_id", sa.String(length=64), nullable=False),
        sa.Column("locked_by_user_id", sa.Integer(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["locked_by_user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "parent_transaction_id", name="uq_process_locks_org_parent"),
        sa.UniqueConstraint("operation_id", name="uq_process_locks_operation_id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_process_locks_expires", "process_locks", ["expires_at"], unique=False)


def downgrade():
    op.drop_index("ix_process_locks_expires", table_name="process_locks")
    op.drop_table("process_locks")

    for name in (
        "ix_remittance_pending_org_remittance",
        "ix_remittance_pending_items_parent_transaction_id",
        "ix_remittance_pending_items_remittance_id",
        "ix_remittance_pending_items_org_id",
    ):
        op.drop_index(name, table_name="remittance_pending_items")
    op.drop_table("remittance_pending_items")

    for name in (
        "ix_remittances_org_status",
        "ix_remittances_status",
        "ix_remittances_parent_transaction_id",
        "ix_remittances_org_id",
    ):
        op.drop_index(name, table_name="remittances")
    op.drop_table("remittances")

    for name in (
        "ix_transactions_org_remittance_state",
        "ix_transactions_org_parent_state",
        "ix_transactions_record_state",
        "ix_transactions_remittance_id",
        "ix_transactions_parent_transaction_id",
        "ix_transactions_contact_id",
        "ix_transactions_org_id",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")

    for name in (
        "ix_security_events_org_occurred",
        "ix_security_events_occurred",
        "ix_security_events_user_type",
        "ix_security_events_occurred_at",
        "ix_security_events_success",
        "ix_security_events_event_type",
        "ix_security_events_user_id",
        "ix_security_events_org_id",
    ):
        op.drop_index(name, table_name="security_events")
    op.drop_table("security_events")

    for name in (
        "ix_session_tokens_org_id",
        "ix_session_tokens_user_active",
        "ix_session_tokens_is_revoked",
        "ix_session_tokens_expires_at",
        "ix_session_tokens_user_id",
        "ix_session_tokens_token_hash",
    ):
        op.drop_index(name, table_name="session_tokens")
    op.drop_table("session_tokens")

    op.drop_index("ix_users_username", table_name="users")
    op.drop_index("ix_users_org_id", table_name="users")
    op.drop_table("users")

    op.drop_index("ix_organizations_is_active", table_name="organizations")
    op.drop_index("ix_organizations_code", table_name="organizations")
    op.drop_table("organizations")
