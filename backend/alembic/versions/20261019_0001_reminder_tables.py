"""Create the reminder ledger and reminder policy tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "invoice_reminders",
        sa.Column("reminder_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("reason", sa.String(length=128), nullable=True),
        sa.Column("rescheduled_reason", sa.String(length=128), nullable=True),
        sa.Column("message_id", sa.String(length=256), nullable=True),
        sa.Column("manual", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_invoice_reminders_invoice_id", "invoice_reminders", ["invoice_id"], unique=False)
    op.create_index("ix_invoice_reminders_status", "invoice_reminders", ["status"], unique=False)
    op.create_index("ix_invoice_reminders_next_attempt_at", "invoice_reminders", ["next_attempt_at"], unique=False)

    op.create_table(
        "reminder_policy_state",
        sa.Column("store_key", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("store_key"),
    )


def downgrade() -> None:
    op.drop_table("reminder_policy_state")
    op.drop_index("ix_invoice_reminders_next_attempt_at", table_name="invoice_reminders")
    op.drop_index("ix_invoice_reminders_status", table_name="invoice_reminders")
    op.drop_index("ix_invoice_reminders_invoice_id", table_name="invoice_reminders")
    op.drop_table("invoice_reminders")
