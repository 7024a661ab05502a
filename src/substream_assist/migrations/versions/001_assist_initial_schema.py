"""Create initial assist_ schema tables.

Revision ID: 001_assist_initial
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_assist_initial"
down_revision = None
branch_labels = None
depends_on = None


def _owned_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    """Create all assist_ tables."""

    # assist_subscriptions
    op.create_table(
        "assist_subscriptions",
        *_owned_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("billing_interval", sa.String(32), nullable=False, server_default="MONTHLY"),
        sa.Column("next_billing_date", sa.Date, nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("is_trial", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.CheckConstraint("amount >= 0", name="ck_assist_subscriptions_amount_non_negative"),
    )
    op.create_index("ix_assist_subscriptions_owner_id", "assist_subscriptions", ["owner_id"])

    # assist_permissions
    op.create_table(
        "assist_permissions",
        sa.Column("owner_id", sa.String(255), primary_key=True),
        sa.Column("ai_assist_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # assist_proposals
    op.create_table(
        "assist_proposals",
        *_owned_columns(),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="ACTIVE"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("summary", sa.String(300), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("confidence", sa.Float, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_patch_id", UUID(as_uuid=True), nullable=True),
    )
    op.create_index("ix_assist_proposals_owner_id", "assist_proposals", ["owner_id"])
    op.create_index("ix_assist_proposals_owner_status", "assist_proposals", ["owner_id", "status"])
    op.create_index("ix_assist_proposals_expires_at", "assist_proposals", ["expires_at"])

    # assist_patches
    op.create_table(
        "assist_patches",
        *_owned_columns(),
        sa.Column("proposal_id", UUID(as_uuid=True), sa.ForeignKey("assist_proposals.id"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="APPLIED"),
        sa.Column("forward_patch", JSONB, nullable=False),
        sa.Column("rollback_patch", JSONB, nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_assist_patches_owner_id", "assist_patches", ["owner_id"])
    op.create_index("ix_assist_patches_proposal_id", "assist_patches", ["proposal_id"])

    # assist_action_logs
    op.create_table(
        "assist_action_logs",
        *_owned_columns(),
        sa.Column("action_type", sa.String(32), nullable=False),
        sa.Column("topic", sa.String(64), nullable=True),
        sa.Column("input_redacted", JSONB, nullable=False),
        sa.Column("output_summary", sa.String(500), nullable=True),
        sa.Column("confidence", sa.Float, nullable=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("latency_ms", sa.Integer, nullable=False),
        sa.Column("error_reason", sa.Text, nullable=True),
    )
    op.create_index("ix_assist_action_logs_owner_id", "assist_action_logs", ["owner_id"])
    op.create_index("ix_assist_action_logs_owner_created", "assist_action_logs", ["owner_id", "created_at"])

    # assist_audit_logs
    op.create_table(
        "assist_audit_logs",
        *_owned_columns(),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("metadata", JSONB, nullable=False, server_default="{}"),
    )
    op.create_index("ix_assist_audit_logs_owner_id", "assist_audit_logs", ["owner_id"])
    op.create_index("ix_assist_audit_logs_owner_created", "assist_audit_logs", ["owner_id", "created_at"])


def downgrade() -> None:
    """Drop all assist_ tables in reverse dependency order."""
    op.drop_table("assist_audit_logs")
    op.drop_table("assist_action_logs")
    op.drop_table("assist_patches")
    op.drop_table("assist_proposals")
    op.drop_table("assist_permissions")
    op.drop_table("assist_subscriptions")
