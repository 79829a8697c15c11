"""Create accounts, credit ledger, schedule and execution tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("credit_balance >= 0", name="ck_accounts_balance_non_negative"),
        sa.CheckConstraint("reserved_credits >= 0", name="ck_accounts_reserved_non_negative"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("account_id", sa.String(64), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("account_id", "idempotency_key", name="uq_credit_transactions_account_idempotency"),
    )
    op.create_index(
        "idx_credit_transactions_account_created", "credit_transactions", ["account_id", "created_at"]
    )

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("account_id", sa.String(64), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="held"),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_credit_reservations_status", "credit_reservations", ["status", "created_at"])

    op.create_table(
        "skill_schedules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("agent_slug", sa.String(255), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("schedule_type", sa.String(20), nullable=False),
        sa.Column("interval_minutes", sa.Integer(), nullable=True),
        sa.Column("cron_expression", sa.String(255), nullable=True),
        sa.Column("event_trigger", sa.String(255), nullable=True),
        sa.Column("max_concurrent", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("timeout_seconds", sa.Float(), nullable=True),
        sa.Column("default_context", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_skill_schedules_active_next_run", "skill_schedules", ["is_active", "next_run_at"])
    op.create_index("idx_skill_schedules_event_trigger", "skill_schedules", ["event_trigger"])

    op.create_table(
        "skill_executions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("skill_id", sa.String(255), nullable=False),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("trigger_source", sa.String(20), nullable=False),
        sa.Column("triggered_by", sa.String(255), nullable=True),
        sa.Column("input", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("output", JSONB, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("schedule_id", sa.String(64), nullable=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True, unique=True),
        sa.Column("retry_of", sa.String(64), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reservation_id", sa.String(64), nullable=True),
        sa.Column("reserved_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_charged", sa.Integer(), nullable=True),
        sa.Column("billing_note", sa.Text(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("cost", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_skill_executions_status_created", "skill_executions", ["status", "created_at"])
    op.create_index("idx_skill_executions_schedule_status", "skill_executions", ["schedule_id", "status"])
    op.create_index("idx_skill_executions_account_created", "skill_executions", ["account_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_skill_executions_account_created", table_name="skill_executions")
    op.drop_index("idx_skill_executions_schedule_status", table_name="skill_executions")
    op.drop_index("idx_skill_executions_status_created", table_name="skill_executions")
    op.drop_table("skill_executions")

    op.drop_index("idx_skill_schedules_event_trigger", table_name="skill_schedules")
    op.drop_index("idx_skill_schedules_active_next_run", table_name="skill_schedules")
    op.drop_table("skill_schedules")

    op.drop_index("idx_credit_reservations_status", table_name="credit_reservations")
    op.drop_table("credit_reservations")

    op.drop_index("idx_credit_transactions_account_created", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_table("accounts")
