"""SQLAlchemy ORM models for the platform entities the pipeline mutates.

Users and content items are owned by the wider platform; only the columns
moderation reads or writes are declared here.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import DeclarativeBase, relationship

from vibeguard.models.moderation import ModerationStatus


class Base(DeclarativeBase):
    pass


def _now():
    return datetime.now(timezone.utc)


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(100), nullable=True)
    avatar_url = Column(String(2000), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    # Set once on ban; never overwritten by a second ban.
    banned_at = Column(DateTime(timezone=True), nullable=True)

    content_items = relationship("ContentItemRow", back_populates="owner")

    @property
    def is_banned(self) -> bool:
        return self.banned_at is not None


class ContentItemRow(Base):
    """A daily photo post."""
    __tablename__ = "content_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    image_url = Column(String(2000), nullable=False)
    caption = Column(Text, nullable=True)

    moderation_status = Column(
        String(20), nullable=False, default=ModerationStatus.UNREVIEWED.value,
    )  # unreviewed, approved, flagged, rejected, manual_review
    is_hidden = Column(Boolean, nullable=False, default=False)
    hidden_at = Column(DateTime(timezone=True), nullable=True)
    hidden_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_now)

    owner = relationship("UserRow", back_populates="content_items")

    __table_args__ = (
        Index("ix_content_items_status_created", "moderation_status", "created_at"),
    )
