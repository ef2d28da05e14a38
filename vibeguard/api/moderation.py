"""Moderation API — analysis trigger plus the review surface used by the admin UI.

Upload workflow:
- POST /api/v1/moderation/analyze            — schedule analysis for a new item

Review surface (X-Admin-Key):
- GET  /api/v1/admin/moderation/queue        — list queue entries
- GET  /api/v1/admin/moderation/queue/{id}   — one entry with item, owner, result
- POST /api/v1/admin/moderation/queue/{id}/claim
- POST /api/v1/admin/moderation/queue/{id}/release
- POST /api/v1/admin/moderation/queue/{id}/review
- GET  /api/v1/admin/moderation/stats
- GET  /api/v1/admin/moderation/audit-log
- GET  /api/v1/admin/moderation/items/{id}/results
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from vibeguard.auth import verify_admin_key
from vibeguard.db.engine import get_session
from vibeguard.db.tables import ContentItemRow
from vibeguard.errors import QueueEntryConflict, QueueEntryNotFound
from vibeguard.models.moderation import ReviewDecision
from vibeguard.services import audit_log, moderation_actions, review_queue
from vibeguard.services.analysis_tasks import AnalysisRunner
from vibeguard.services.moderation import results_for_item

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["moderation"], dependencies=[Depends(verify_admin_key)])

_QUEUE_STATUS_PATTERN = "^(pending|in_review|completed|escalated|all)$"


class AnalyzeRequest(BaseModel):
    content_item_id: str = Field(..., min_length=1, max_length=36)
    image_url: str = Field(..., min_length=1, max_length=2000)


class ReviewerRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1, max_length=36)


class ReviewRequest(ReviewerRequest):
    decision: ReviewDecision
    notes: Optional[str] = Field(None, max_length=2000)


def get_runner(request: Request) -> AnalysisRunner:
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(503, "Moderation pipeline not initialized")
    return runner


def _queue_error(exc: Exception) -> HTTPException:
    if isinstance(exc, QueueEntryNotFound):
        return HTTPException(404, "Queue entry not found")
    return HTTPException(409, str(exc))


# ── Upload workflow trigger ──────────────────────────────────────────────────

@router.post("/moderation/analyze", status_code=202)
async def schedule_analysis(
    body: AnalyzeRequest,
    runner: AnalysisRunner = Depends(get_runner),
):
    """Queue a freshly uploaded item for analysis; returns before the verdict."""
    runner.schedule(body.content_item_id, body.image_url)
    return {"content_item_id": body.content_item_id, "status": "scheduled"}


# ── Review queue ─────────────────────────────────────────────────────────────

@router.get("/admin/moderation/queue")
async def list_queue(
    status: Optional[str] = Query(None, pattern=_QUEUE_STATUS_PATTERN),
    limit: int = Query(review_queue.DEFAULT_PAGE_SIZE, ge=1, le=review_queue.MAX_PAGE_SIZE),
    cursor: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """Highest risk first; oldest first among equal risk."""
    try:
        items, next_cursor, has_more = await review_queue.list_entries(
            session,
            status=None if status in (None, "all") else status,
            limit=limit,
            cursor=cursor,
        )
    except ValueError:
        raise HTTPException(400, "Invalid cursor")
    return {
        "items": [review_queue.entry_to_dict(e) for e in items],
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


@router.get("/admin/moderation/queue/{queue_id}")
async def get_queue_entry(queue_id: str, session: AsyncSession = Depends(get_session)):
    entry = await review_queue.get_by_id(session, queue_id)
    if entry is None:
        raise HTTPException(404, "Queue entry not found")
    return review_queue.entry_to_dict(entry)


@router.post("/admin/moderation/queue/{queue_id}/claim")
async def claim_queue_entry(
    queue_id: str,
    body: ReviewerRequest,
    session: AsyncSession = Depends(get_session),
):
    """Reserve a pending entry for one reviewer."""
    try:
        await review_queue.claim(session, queue_id, body.reviewer_id)
        await session.commit()
    except (QueueEntryNotFound, QueueEntryConflict) as e:
        await session.rollback()
        raise _queue_error(e)
    return review_queue.entry_to_dict(await review_queue.get_by_id(session, queue_id))


@router.post("/admin/moderation/queue/{queue_id}/release")
async def release_queue_entry(
    queue_id: str,
    body: ReviewerRequest,
    session: AsyncSession = Depends(get_session),
):
    """Hand a claimed entry back to the pending pool."""
    try:
        await review_queue.release(session, queue_id, body.reviewer_id)
        await session.commit()
    except (QueueEntryNotFound, QueueEntryConflict) as e:
        await session.rollback()
        raise _queue_error(e)
    return review_queue.entry_to_dict(await review_queue.get_by_id(session, queue_id))


@router.post("/admin/moderation/queue/{queue_id}/review")
async def review_queue_entry(
    queue_id: str,
    body: ReviewRequest,
    session: AsyncSession = Depends(get_session),
):
    """Apply a reviewer decision: approve, reject, reject_and_ban or escalate."""
    try:
        entry = await moderation_actions.process_review_decision(
            session, queue_id, body.decision, body.reviewer_id, body.notes,
        )
    except (QueueEntryNotFound, QueueEntryConflict) as e:
        raise _queue_error(e)
    return review_queue.entry_to_dict(entry)


@router.get("/admin/moderation/stats")
async def queue_stats(session: AsyncSession = Depends(get_session)):
    stats = await review_queue.stats(session, review_threshold=settings.MODERATION_REVIEW_THRESHOLD)
    return stats.to_dict()


# ── Audit + history ──────────────────────────────────────────────────────────

@router.get("/admin/moderation/audit-log")
async def list_audit_log(
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """Newest first."""
    try:
        entries, next_cursor, has_more = await audit_log.list_entries(
            session, actor_id=actor_id, action=action, target_id=target_id, limit=limit, cursor=cursor,
        )
    except ValueError:
        raise HTTPException(400, "Invalid cursor")
    return {
        "entries": [audit_log.to_dict(e) for e in entries],
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


@router.get("/admin/moderation/items/{content_item_id}/results")
async def item_results(content_item_id: str, session: AsyncSession = Depends(get_session)):
    """Every analysis attempt for one item, newest first."""
    item = await session.get(ContentItemRow, content_item_id)
    if item is None:
        raise HTTPException(404, "Content item not found")
    results = await results_for_item(session, content_item_id)
    return {
        "content_item_id": content_item_id,
        "moderation_status": item.moderation_status,
        "is_hidden": item.is_hidden,
        "results": [review_queue.result_to_dict(r) for r in results],
    }
