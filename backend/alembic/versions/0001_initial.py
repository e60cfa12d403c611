"""initial schema for accounts, usage counters, auth ledger and billing."""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("plan", sa.String(length=16), nullable=False, server_default="free"),
        sa.Column("billing_customer_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("plan IN ('free', 'pro', 'team')", name="ck_profiles_plan"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "uploads",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_uploads_account_id", "uploads", ["account_id"], unique=False)

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("consumed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consumed_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("consumed_count >= 0", name="ck_usage_counters_count"),
        sa.CheckConstraint("consumed_bytes >= 0", name="ck_usage_counters_bytes"),
        sa.ForeignKeyConstraint(["account_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "period", name="uq_usage_counters_account_period"),
    )

    op.create_table(
        "auth_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("origin_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "event_type IN ('signup_success', 'signup_failure', 'login_success', 'login_failure', "
            "'email_verified', 'account_locked', 'ip_blocked', 'account_deleted')",
            name="ck_auth_events_event_type",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_auth_events_type_email_created", "auth_events", ["event_type", "email", "created_at"], unique=False
    )
    op.create_index(
        "ix_auth_events_type_account_created",
        "auth_events",
        ["event_type", "account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_auth_events_type_origin_created",
        "auth_events",
        ["event_type", "origin_address", "created_at"],
        unique=False,
    )

    op.create_table(
        "external_events",
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("external_id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("external_subscription_id", sa.String(length=128), nullable=False),
        sa.Column("plan_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("plan_type IN ('pro', 'team')", name="ck_subscriptions_plan_type"),
        sa.CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled', 'suspended', 'incomplete', 'unpaid')",
            name="ck_subscriptions_status",
        ),
        sa.ForeignKeyConstraint(["account_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_subscription_id"),
    )
    op.create_index("ix_subscriptions_account_id", "subscriptions", ["account_id"], unique=False)

    op.create_table(
        "cleanup_tasks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("target", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("kind IN ('storage', 'identity')", name="ck_cleanup_tasks_kind"),
        sa.CheckConstraint("status IN ('pending', 'done')", name="ck_cleanup_tasks_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cleanup_tasks_status_created", "cleanup_tasks", ["status", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_cleanup_tasks_status_created", table_name="cleanup_tasks")
    op.drop_table("cleanup_tasks")
    op.drop_index("ix_subscriptions_account_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("external_events")
    op.drop_index("ix_auth_events_type_origin_created", table_name="auth_events")
    op.drop_index("ix_auth_events_type_account_created", table_name="auth_events")
    op.drop_index("ix_auth_events_type_email_created", table_name="auth_events")
    op.drop_table("auth_events")
    op.drop_table("usage_counters")
    op.drop_index("ix_uploads_account_id", table_name="uploads")
    op.drop_table("uploads")
    op.drop_table("profiles")
