"""Add users, content_items and the moderation tables.

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

revision = "5c1e9a7d2b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("avatar_url", sa.String(2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("banned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_table(
        "content_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("image_url", sa.String(2000), nullable=False),
        sa.Column("caption", sa.Text, nullable=True),
        sa.Column("moderation_status", sa.String(20), nullable=False, server_default="unreviewed"),
        sa.Column("is_hidden", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("hidden_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hidden_reason", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_content_items_owner_id", "content_items", ["owner_id"])
    op.create_index("ix_content_items_status_created", "content_items", ["moderation_status", "created_at"])

    op.create_table(
        "moderation_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "content_item_id", sa.String(36),
            sa.ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("is_safe", sa.Boolean, nullable=False),
        sa.Column("overall_confidence", sa.Float, nullable=False),
        sa.Column("nsfw_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("violence_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("hate_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("harassment_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("self_harm_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("drugs_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("illegal_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("reasoning", sa.Text, nullable=True),
        sa.Column("model_version", sa.String(100), nullable=True),
        sa.Column("processing_time_ms", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("raw_response", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_moderation_results_content_item_id", "moderation_results", ["content_item_id"])
    op.create_index("ix_moderation_results_created_at", "moderation_results", ["created_at"])

    op.create_table(
        "review_queue",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "content_item_id", sa.String(36),
            sa.ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "moderation_result_id", sa.String(36),
            sa.ForeignKey("moderation_results.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("trigger_category", sa.String(20), nullable=False),
        sa.Column("trigger_confidence", sa.Float, nullable=False),
        sa.Column("reviewer_id", sa.String(36), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_decision", sa.String(20), nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_review_queue_pending_item", "review_queue", ["content_item_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_review_queue_status_priority", "review_queue", ["status", "priority", "created_at"])
    op.create_index("ix_review_queue_item", "review_queue", ["content_item_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor_id", sa.String(36), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=False),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_action_created", "audit_log", ["action", "created_at"])
    op.create_index("ix_audit_log_created", "audit_log", ["created_at"])
    op.create_index("ix_audit_log_target", "audit_log", ["target_type", "target_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("review_queue")
    op.drop_table("moderation_results")
    op.drop_table("content_items")
    op.drop_table("users")
