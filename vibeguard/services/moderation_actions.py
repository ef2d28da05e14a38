"""Moderation action executor — content visibility and ban side effects.

Every function here stages its writes, including the matching audit
entries, in the caller's session. The caller commits once, so a ban or a
rejection is never visible without its audit trail.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vibeguard.db.moderation_tables import ReviewQueueRow
from vibeguard.db.tables import ContentItemRow, UserRow
from vibeguard.errors import QueueEntryNotFound
from vibeguard.models.moderation import ModerationStatus, ReviewDecision
from vibeguard.services import audit_log, review_queue

logger = logging.getLogger(__name__)

DEFAULT_REJECT_REASON = "Rejected by moderator"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _pct(confidence: float) -> str:
    return f"{confidence * 100:.0f}%"


def auto_reject_summary(category: str, confidence: float, reasoning: Optional[str]) -> str:
    summary = f"Auto-rejected by AI moderation: {category} ({_pct(confidence)} confidence)."
    if reasoning:
        summary = f"{summary} {reasoning}"
    return summary


async def _load_item(session: AsyncSession, item_id: str) -> ContentItemRow:
    item = await session.get(ContentItemRow, item_id)
    if item is None:
        raise LookupError(f"Content item {item_id} not found")
    return item


def hide(item: ContentItemRow, reason: str) -> None:
    item.moderation_status = ModerationStatus.REJECTED.value
    item.is_hidden = True
    item.hidden_at = _now()
    item.hidden_reason = reason


def unhide(item: ContentItemRow) -> None:
    item.moderation_status = ModerationStatus.APPROVED.value
    item.is_hidden = False
    item.hidden_at = None
    item.hidden_reason = None


async def ban_user(session: AsyncSession, user_id: str) -> bool:
    """Ban a user unless already banned. Returns True if this call banned them.

    The ``banned_at IS NULL`` guard makes concurrent bans safe: the first
    timestamp wins and is never overwritten.
    """
    result = await session.execute(
        update(UserRow)
        .where(UserRow.id == user_id, UserRow.banned_at.is_(None))
        .values(banned_at=_now())
        .execution_options(synchronize_session=False)
    )
    banned = result.rowcount == 1
    if banned:
        logger.warning("User %s banned", user_id)
    else:
        logger.info("User %s already banned; ban timestamp unchanged", user_id)
    return banned


async def is_banned(session: AsyncSession, user_id: str) -> bool:
    banned_at = (await session.execute(
        select(UserRow.banned_at).where(UserRow.id == user_id)
    )).scalar_one_or_none()
    return banned_at is not None


async def auto_reject_and_ban(
    session: AsyncSession,
    item_id: str,
    category: str,
    confidence: float,
    reasoning: Optional[str],
) -> None:
    """Hide the item, ban its owner, and write both audit entries (actor = system)."""
    item = await _load_item(session, item_id)
    hide(item, auto_reject_summary(category, confidence, reasoning))

    newly_banned = await ban_user(session, item.owner_id)

    audit_log.append(
        session, None, audit_log.AUTO_REJECT, audit_log.TARGET_CONTENT, item_id,
        {"category": category, "confidence": confidence, "reasoning": reasoning},
    )
    audit_log.append(
        session, None, audit_log.AUTO_BAN, audit_log.TARGET_USER, item.owner_id,
        {
            "content_item_id": item_id,
            "category": category,
            "confidence": confidence,
            "reasoning": reasoning,
            "already_banned": not newly_banned,
        },
    )


async def process_review_decision(
    session: AsyncSession,
    queue_id: str,
    decision: ReviewDecision | str,
    reviewer_id: str,
    notes: Optional[str] = None,
) -> ReviewQueueRow:
    """Apply a reviewer's decision to a queue entry and its content item, then commit.

    Raises QueueEntryNotFound / QueueEntryConflict (nothing applied) when the
    entry does not exist or another reviewer got there first.
    """
    decision = ReviewDecision(decision)
    try:
        item_id = await review_queue.record_decision(session, queue_id, reviewer_id, decision, notes)

        if decision is ReviewDecision.APPROVE:
            unhide(await _load_item(session, item_id))

        elif decision in (ReviewDecision.REJECT, ReviewDecision.REJECT_AND_BAN):
            item = await _load_item(session, item_id)
            hide(item, notes or DEFAULT_REJECT_REASON)

            if decision is ReviewDecision.REJECT_AND_BAN:
                newly_banned = await ban_user(session, item.owner_id)
                audit_log.append(
                    session, reviewer_id, audit_log.MANUAL_BAN, audit_log.TARGET_USER, item.owner_id,
                    {"content_item_id": item_id, "notes": notes, "already_banned": not newly_banned},
                )

        # escalate: queue status only; visibility untouched

        audit_log.append(
            session, reviewer_id, audit_log.review_action(decision.value),
            audit_log.TARGET_CONTENT, item_id,
            {"queue_id": queue_id, "notes": notes},
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Reviewer %s: %s on queue entry %s (item %s)", reviewer_id, decision.value, queue_id, item_id)

    entry = await review_queue.get_by_id(session, queue_id)
    if entry is None:  # pragma: no cover - deleted between commit and read
        raise QueueEntryNotFound(f"Queue entry {queue_id} not found")
    return entry
