"""Review queue — durable, priority-ordered work for human moderators.

The queue holds at most one ``pending`` entry per content item. ``enqueue`` is
a single conditional upsert against the partial unique index
``uq_review_queue_pending_item``, so concurrent re-analysis of the same item
raises the existing entry's priority instead of inserting a second row.

Status transitions are guarded updates (``WHERE status = ...``); whoever
flips the row first wins and everyone else gets ``QueueEntryConflict``.
"""
from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from vibeguard.db.moderation_tables import AuditLogRow, ModerationResultRow, ReviewQueueRow
from vibeguard.db.tables import ContentItemRow
from vibeguard.errors import QueueEntryConflict, QueueEntryNotFound
from vibeguard.models.moderation import QueueStatus, ReviewDecision
from vibeguard.services import audit_log

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def priority_for(confidence: float) -> int:
    """Map a [0, 1] confidence to a 0-100 priority, rounding half up."""
    return max(0, min(100, int(confidence * 100 + 0.5)))


def _upsert_dialect(session: AsyncSession):
    """Return (insert, greatest) for the bound database."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert, func.greatest
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        # SQLite's multi-argument max() is a scalar, not the aggregate.
        return insert, func.max
    raise NotImplementedError(f"review queue upsert not supported on {name}")


async def enqueue(
    session: AsyncSession,
    content_item_id: str,
    moderation_result_id: Optional[str],
    category: str,
    confidence: float,
) -> str:
    """Insert a pending entry, or raise the existing pending entry's priority.

    Runs inside the caller's transaction. Returns the queue entry id.
    """
    insert, greatest = _upsert_dialect(session)
    now = _now()
    priority = priority_for(confidence)

    stmt = insert(ReviewQueueRow).values(
        id=str(uuid.uuid4()),
        content_item_id=content_item_id,
        moderation_result_id=moderation_result_id,
        priority=priority,
        status=QueueStatus.PENDING.value,
        trigger_category=category,
        trigger_confidence=confidence,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ReviewQueueRow.content_item_id],
        index_where=ReviewQueueRow.status == QueueStatus.PENDING.value,
        set_={
            "priority": greatest(ReviewQueueRow.priority, stmt.excluded.priority),
            "trigger_confidence": greatest(
                ReviewQueueRow.trigger_confidence, stmt.excluded.trigger_confidence,
            ),
            "updated_at": now,
        },
    ).returning(ReviewQueueRow.id)

    queue_id = (await session.execute(stmt)).scalar_one()
    logger.info(
        "Queued content %s for review (entry %s, %s @ priority %d)",
        content_item_id, queue_id, category, priority,
    )
    return queue_id


# ── Listing ──────────────────────────────────────────────────────────────────

def encode_cursor(entry: ReviewQueueRow) -> str:
    raw = json.dumps([entry.priority, entry.created_at.isoformat(), entry.id])
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> tuple[int, datetime, str]:
    """Inverse of encode_cursor. Raises ValueError on garbage."""
    try:
        priority, created_at, entry_id = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return int(priority), datetime.fromisoformat(created_at), str(entry_id)
    except (ValueError, TypeError) as e:
        raise ValueError("Invalid cursor") from e


def _joined():
    return (
        selectinload(ReviewQueueRow.content_item).selectinload(ContentItemRow.owner),
        selectinload(ReviewQueueRow.moderation_result),
    )


async def list_entries(
    session: AsyncSession,
    *,
    status: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
) -> tuple[list[ReviewQueueRow], Optional[str], bool]:
    """Highest priority first; oldest first among equal priority.

    The cursor is the (priority, created_at, id) of the last row returned,
    so pages continue exactly where the previous one stopped.
    """
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    query = select(ReviewQueueRow).options(*_joined())
    if status:
        query = query.where(ReviewQueueRow.status == status)
    if cursor:
        priority, created_at, entry_id = decode_cursor(cursor)
        query = query.where(or_(
            ReviewQueueRow.priority < priority,
            and_(
                ReviewQueueRow.priority == priority,
                or_(
                    ReviewQueueRow.created_at > created_at,
                    and_(ReviewQueueRow.created_at == created_at, ReviewQueueRow.id > entry_id),
                ),
            ),
        ))

    query = query.order_by(
        ReviewQueueRow.priority.desc(),
        ReviewQueueRow.created_at.asc(),
        ReviewQueueRow.id.asc(),
    ).limit(limit + 1)
    rows = list((await session.execute(query)).scalars().all())

    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = encode_cursor(items[-1]) if has_more and items else None
    return items, next_cursor, has_more


async def get_by_id(session: AsyncSession, queue_id: str) -> Optional[ReviewQueueRow]:
    """Single entry with its content item, owner and moderation result loaded."""
    result = await session.execute(
        select(ReviewQueueRow)
        .options(*_joined())
        .where(ReviewQueueRow.id == queue_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def pending_for_item(session: AsyncSession, content_item_id: str) -> list[ReviewQueueRow]:
    result = await session.execute(
        select(ReviewQueueRow).where(
            ReviewQueueRow.content_item_id == content_item_id,
            ReviewQueueRow.status == QueueStatus.PENDING.value,
        )
    )
    return list(result.scalars().all())


# ── Transitions ──────────────────────────────────────────────────────────────

async def _missing_or_conflict(session: AsyncSession, queue_id: str, verb: str) -> Exception:
    status = (await session.execute(
        select(ReviewQueueRow.status).where(ReviewQueueRow.id == queue_id)
    )).scalar_one_or_none()
    if status is None:
        return QueueEntryNotFound(f"Queue entry {queue_id} not found")
    return QueueEntryConflict(f"Cannot {verb} queue entry {queue_id}: status is {status}")


async def claim(session: AsyncSession, queue_id: str, reviewer_id: str) -> None:
    """pending → in_review for one reviewer."""
    now = _now()
    result = await session.execute(
        update(ReviewQueueRow)
        .where(ReviewQueueRow.id == queue_id, ReviewQueueRow.status == QueueStatus.PENDING.value)
        .values(
            status=QueueStatus.IN_REVIEW.value,
            reviewer_id=reviewer_id,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise await _missing_or_conflict(session, queue_id, "claim")


async def release(session: AsyncSession, queue_id: str, reviewer_id: str) -> None:
    """in_review → pending, only by the reviewer holding the claim."""
    result = await session.execute(
        update(ReviewQueueRow)
        .where(
            ReviewQueueRow.id == queue_id,
            ReviewQueueRow.status == QueueStatus.IN_REVIEW.value,
            ReviewQueueRow.reviewer_id == reviewer_id,
        )
        .values(
            status=QueueStatus.PENDING.value,
            reviewer_id=None,
            claimed_at=None,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise await _missing_or_conflict(session, queue_id, "release")


async def record_decision(
    session: AsyncSession,
    queue_id: str,
    reviewer_id: str,
    decision: ReviewDecision,
    notes: Optional[str],
) -> str:
    """Stamp the decision on an open entry and close it. Returns the content item id.

    Open means ``pending``, or ``in_review`` claimed by this reviewer.
    ``escalate`` closes the entry as ``escalated``; everything else as ``completed``.
    """
    terminal = QueueStatus.ESCALATED if decision is ReviewDecision.ESCALATE else QueueStatus.COMPLETED
    now = _now()
    result = await session.execute(
        update(ReviewQueueRow)
        .where(
            ReviewQueueRow.id == queue_id,
            or_(
                ReviewQueueRow.status == QueueStatus.PENDING.value,
                and_(
                    ReviewQueueRow.status == QueueStatus.IN_REVIEW.value,
                    ReviewQueueRow.reviewer_id == reviewer_id,
                ),
            ),
        )
        .values(
            status=terminal.value,
            reviewer_id=reviewer_id,
            reviewed_at=now,
            review_decision=decision.value,
            review_notes=notes,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise await _missing_or_conflict(session, queue_id, "review")

    return (await session.execute(
        select(ReviewQueueRow.content_item_id).where(ReviewQueueRow.id == queue_id)
    )).scalar_one()


# ── Stats ────────────────────────────────────────────────────────────────────

@dataclass
class QueueStats:
    pending: int = 0
    in_review: int = 0
    escalated: int = 0
    completed_24h: int = 0
    auto_rejected_24h: int = 0
    auto_approved_24h: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


async def stats(
    session: AsyncSession,
    *,
    review_threshold: float,
    now: Optional[datetime] = None,
) -> QueueStats:
    """Queue depth plus the last 24h of reviewer and automated throughput.

    Automated approvals are analyses that completed without error below the
    review threshold; automated rejections come from the audit log.
    """
    now = now or _now()
    since = now - timedelta(hours=24)
    result = QueueStats()

    by_status = await session.execute(
        select(ReviewQueueRow.status, func.count(ReviewQueueRow.id))
        .where(ReviewQueueRow.status.in_([
            QueueStatus.PENDING.value, QueueStatus.IN_REVIEW.value, QueueStatus.ESCALATED.value,
        ]))
        .group_by(ReviewQueueRow.status)
    )
    for status, count in by_status.all():
        setattr(result, status, count or 0)

    result.completed_24h = (await session.execute(
        select(func.count(ReviewQueueRow.id)).where(
            ReviewQueueRow.status == QueueStatus.COMPLETED.value,
            ReviewQueueRow.reviewed_at >= since,
        )
    )).scalar() or 0

    result.auto_rejected_24h = (await session.execute(
        select(func.count(AuditLogRow.id)).where(
            AuditLogRow.action == audit_log.AUTO_REJECT,
            AuditLogRow.created_at >= since,
        )
    )).scalar() or 0

    result.auto_approved_24h = (await session.execute(
        select(func.count(ModerationResultRow.id)).where(
            ModerationResultRow.error_message.is_(None),
            ModerationResultRow.overall_confidence < review_threshold,
            ModerationResultRow.created_at >= since,
        )
    )).scalar() or 0

    return result


# ── Serialization ────────────────────────────────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def result_to_dict(result: ModerationResultRow) -> dict:
    return {
        "id": result.id,
        "content_item_id": result.content_item_id,
        "is_safe": result.is_safe,
        "overall_confidence": result.overall_confidence,
        "categories": result.category_scores(),
        "reasoning": result.reasoning,
        "model_version": result.model_version,
        "processing_time_ms": result.processing_time_ms,
        "error_message": result.error_message,
        "created_at": _iso(result.created_at),
    }


def entry_to_dict(entry: ReviewQueueRow) -> dict:
    data = {
        "id": entry.id,
        "content_item_id": entry.content_item_id,
        "moderation_result_id": entry.moderation_result_id,
        "priority": entry.priority,
        "status": entry.status,
        "trigger_category": entry.trigger_category,
        "trigger_confidence": entry.trigger_confidence,
        "reviewer_id": entry.reviewer_id,
        "claimed_at": _iso(entry.claimed_at),
        "reviewed_at": _iso(entry.reviewed_at),
        "review_decision": entry.review_decision,
        "review_notes": entry.review_notes,
        "created_at": _iso(entry.created_at),
        "updated_at": _iso(entry.updated_at),
    }

    item = entry.__dict__.get("content_item")
    if item is not None:
        data["content_item"] = {
            "id": item.id,
            "image_url": item.image_url,
            "caption": item.caption,
            "moderation_status": item.moderation_status,
            "is_hidden": item.is_hidden,
            "hidden_reason": item.hidden_reason,
            "created_at": _iso(item.created_at),
        }
        owner = item.__dict__.get("owner")
        if owner is not None:
            data["owner"] = {
                "id": owner.id,
                "username": owner.username,
                "display_name": owner.display_name,
                "avatar_url": owner.avatar_url,
                "is_banned": owner.is_banned,
            }

    result = entry.__dict__.get("moderation_result")
    if result is not None:
        data["moderation_result"] = result_to_dict(result)
    return data
