"""Moderation tables — analysis results, review queue, audit trail."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Float, Boolean, JSON,
    ForeignKey, Index, text,
)
from sqlalchemy.orm import relationship

from vibeguard.db.tables import Base
from vibeguard.models.moderation import QueueStatus


def _now():
    return datetime.now(timezone.utc)


class ModerationResultRow(Base):
    """One classifier analysis attempt. Append-only; failed attempts included."""
    __tablename__ = "moderation_results"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    content_item_id = Column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    is_safe = Column(Boolean, nullable=False)
    overall_confidence = Column(Float, nullable=False)

    nsfw_score = Column(Float, nullable=False, default=0.0)
    violence_score = Column(Float, nullable=False, default=0.0)
    hate_score = Column(Float, nullable=False, default=0.0)
    harassment_score = Column(Float, nullable=False, default=0.0)
    self_harm_score = Column(Float, nullable=False, default=0.0)
    drugs_score = Column(Float, nullable=False, default=0.0)
    illegal_score = Column(Float, nullable=False, default=0.0)

    reasoning = Column(Text, nullable=True)
    model_version = Column(String(100), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    raw_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now, index=True)

    def category_scores(self) -> dict[str, float]:
        return {
            "nsfw": self.nsfw_score or 0.0,
            "violence": self.violence_score or 0.0,
            "hate": self.hate_score or 0.0,
            "harassment": self.harassment_score or 0.0,
            "self_harm": self.self_harm_score or 0.0,
            "drugs": self.drugs_score or 0.0,
            "illegal": self.illegal_score or 0.0,
        }


class ReviewQueueRow(Base):
    """A content item awaiting (or having received) a human decision."""
    __tablename__ = "review_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    content_item_id = Column(
        String(36), ForeignKey("content_items.id", ondelete="CASCADE"), nullable=False,
    )
    moderation_result_id = Column(
        String(36), ForeignKey("moderation_results.id", ondelete="SET NULL"), nullable=True,
    )
    priority = Column(Integer, nullable=False, default=0)  # 0-100
    status = Column(String(20), nullable=False, default=QueueStatus.PENDING.value)
    trigger_category = Column(String(20), nullable=False)
    trigger_confidence = Column(Float, nullable=False)

    reviewer_id = Column(String(36), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_decision = Column(String(20), nullable=True)  # approve, reject, reject_and_ban, escalate
    review_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    content_item = relationship("ContentItemRow")
    moderation_result = relationship("ModerationResultRow")

    __table_args__ = (
        # At most one pending entry per content item; target of the enqueue upsert.
        Index(
            "uq_review_queue_pending_item",
            "content_item_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_review_queue_status_priority", "status", "priority", "created_at"),
        Index("ix_review_queue_item", "content_item_id"),
    )


class AuditLogRow(Base):
    """Append-only record of automated and manual moderation actions."""
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id = Column(String(36), nullable=True, index=True)  # NULL = automated
    action = Column(String(50), nullable=False)
    target_type = Column(String(20), nullable=False)  # content_item, user, review_queue
    target_id = Column(String(36), nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        Index("ix_audit_log_action_created", "action", "created_at"),
        Index("ix_audit_log_created", "created_at"),
        Index("ix_audit_log_target", "target_type", "target_id"),
    )
