"""subscription lifecycle history."""

from alembic import op
import sqlalchemy as sa


revision = "0002_subscription_events"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscription_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("previous_plan", sa.String(length=16), nullable=True),
        sa.Column("new_plan", sa.String(length=16), nullable=True),
        sa.Column("previous_status", sa.String(length=16), nullable=True),
        sa.Column("new_status", sa.String(length=16), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "event_type IN ('created', 'trial_started', 'trial_converted', 'trial_canceled', 'upgraded', "
            "'downgraded', 'canceled', 'reactivated', 'payment_succeeded', 'payment_failed', 'suspended', "
            "'resumed')",
            name="ck_subscription_events_event_type",
        ),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["account_id"], ["profiles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_events_account_created",
        "subscription_events",
        ["account_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_subscription_events_subscription_created",
        "subscription_events",
        ["subscription_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_events_subscription_created", table_name="subscription_events")
    op.drop_index("ix_subscription_events_account_created", table_name="subscription_events")
    op.drop_table("subscription_events")
