"""Tests for reviewer decisions and ban side effects."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from tests.conftest import get_test_session
from vibeguard.db.moderation_tables import AuditLogRow
from vibeguard.db.tables import ContentItemRow, UserRow
from vibeguard.errors import QueueEntryConflict, QueueEntryNotFound
from vibeguard.models.moderation import ReviewDecision
from vibeguard.services import moderation_actions, review_queue


async def queued_item(seed_item, **kwargs):
    item = await seed_item(**kwargs)
    async with get_test_session() as session:
        stored = await session.get(ContentItemRow, item.id)
        stored.moderation_status = "flagged"
        queue_id = await review_queue.enqueue(session, item.id, None, "nsfw", 0.6)
        await session.commit()
    return item, queue_id


async def decide(queue_id, decision, reviewer="mod-1", notes=None):
    async with get_test_session() as session:
        return await moderation_actions.process_review_decision(session, queue_id, decision, reviewer, notes)


async def load(model, id_):
    async with get_test_session() as session:
        return await session.get(model, id_)


async def audit_actions():
    async with get_test_session() as session:
        rows = (await session.execute(select(AuditLogRow).order_by(AuditLogRow.created_at))).scalars().all()
    return [r.action for r in rows]


@pytest.mark.asyncio
async def test_approve_unhides(seed_item):
    item, queue_id = await queued_item(seed_item)
    entry = await decide(queue_id, ReviewDecision.APPROVE)

    assert entry.status == "completed"
    assert entry.review_decision == "approve"
    stored = await load(ContentItemRow, item.id)
    assert stored.moderation_status == "approved"
    assert stored.is_hidden is False
    assert await audit_actions() == ["review_approve"]


@pytest.mark.asyncio
async def test_approve_reverses_automated_rejection(seed_item):
    item, queue_id = await queued_item(seed_item)
    async with get_test_session() as session:
        await moderation_actions.auto_reject_and_ban(session, item.id, "nsfw", 0.95, "explicit")
        await session.commit()
    assert (await load(ContentItemRow, item.id)).is_hidden is True

    await decide(queue_id, "approve")

    stored = await load(ContentItemRow, item.id)
    assert stored.is_hidden is False
    assert stored.hidden_at is None
    assert stored.hidden_reason is None
    assert stored.moderation_status == "approved"
    # Approval restores the post; the ban stands until lifted separately
    assert (await load(UserRow, item.owner_id)).banned_at is not None


@pytest.mark.asyncio
async def test_reject_hides_with_notes(seed_item):
    item, queue_id = await queued_item(seed_item)
    await decide(queue_id, ReviewDecision.REJECT, notes="Graphic injury photo")

    stored = await load(ContentItemRow, item.id)
    assert stored.is_hidden is True
    assert stored.moderation_status == "rejected"
    assert stored.hidden_reason == "Graphic injury photo"
    assert (await load(UserRow, item.owner_id)).banned_at is None


@pytest.mark.asyncio
async def test_reject_without_notes_uses_default_reason(seed_item):
    item, queue_id = await queued_item(seed_item)
    await decide(queue_id, ReviewDecision.REJECT)
    assert (await load(ContentItemRow, item.id)).hidden_reason == moderation_actions.DEFAULT_REJECT_REASON


@pytest.mark.asyncio
async def test_reject_and_ban(seed_item):
    item, queue_id = await queued_item(seed_item)
    await decide(queue_id, ReviewDecision.REJECT_AND_BAN, notes="Repeat offender")

    assert (await load(ContentItemRow, item.id)).is_hidden is True
    assert (await load(UserRow, item.owner_id)).banned_at is not None
    assert sorted(await audit_actions()) == ["manual_ban", "review_reject_and_ban"]


@pytest.mark.asyncio
async def test_reject_and_ban_keeps_existing_ban_timestamp(seed_item):
    first_ban = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)
    item, queue_id = await queued_item(seed_item, banned_at=first_ban)

    await decide(queue_id, ReviewDecision.REJECT_AND_BAN)

    owner = await load(UserRow, item.owner_id)
    assert owner.banned_at.replace(tzinfo=None) == first_ban.replace(tzinfo=None)
    async with get_test_session() as session:
        ban = (await session.execute(
            select(AuditLogRow).where(AuditLogRow.action == "manual_ban")
        )).scalar_one()
    assert ban.actor_id == "mod-1"
    assert ban.details["already_banned"] is True


@pytest.mark.asyncio
async def test_escalate_leaves_visibility_alone(seed_item):
    item, queue_id = await queued_item(seed_item)
    entry = await decide(queue_id, ReviewDecision.ESCALATE, notes="Needs legal")

    assert entry.status == "escalated"
    stored = await load(ContentItemRow, item.id)
    assert stored.moderation_status == "flagged"
    assert stored.is_hidden is False
    assert await audit_actions() == ["review_escalate"]


@pytest.mark.asyncio
async def test_second_reviewer_loses_race(seed_item):
    item, queue_id = await queued_item(seed_item)
    await decide(queue_id, ReviewDecision.APPROVE, reviewer="mod-1")

    with pytest.raises(QueueEntryConflict):
        await decide(queue_id, ReviewDecision.REJECT_AND_BAN, reviewer="mod-2")

    assert (await load(ContentItemRow, item.id)).is_hidden is False
    assert (await load(UserRow, item.owner_id)).banned_at is None
    assert await audit_actions() == ["review_approve"]


@pytest.mark.asyncio
async def test_unknown_entry():
    with pytest.raises(QueueEntryNotFound):
        await decide("missing", ReviewDecision.APPROVE)


@pytest.mark.asyncio
async def test_invalid_decision():
    with pytest.raises(ValueError):
        await decide("missing", "delete")


@pytest.mark.asyncio
async def test_ban_user_is_idempotent(seed_item):
    item = await seed_item()
    async with get_test_session() as session:
        assert await moderation_actions.ban_user(session, item.owner_id) is True
        await session.commit()
        first = (await session.execute(select(UserRow.banned_at).where(UserRow.id == item.owner_id))).scalar_one()

        assert await moderation_actions.ban_user(session, item.owner_id) is False
        await session.commit()
        second = (await session.execute(select(UserRow.banned_at).where(UserRow.id == item.owner_id))).scalar_one()

        assert first == second
        assert await moderation_actions.is_banned(session, item.owner_id) is True
