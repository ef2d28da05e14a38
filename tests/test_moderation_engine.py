"""Tests for the moderation decision engine — thresholds, bans, failure path."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from tests.conftest import FakeClassifier, TestSession, get_test_session, make_analysis
from vibeguard.db.moderation_tables import AuditLogRow, ModerationResultRow, ReviewQueueRow
from vibeguard.db.tables import ContentItemRow, UserRow
from vibeguard.errors import ConfigurationError, ExhaustedRetriesError, MalformedResponseError
from vibeguard.models.moderation import ModerationOutcome
from vibeguard.services.moderation import ModerationEngine, results_for_item


def engine_for(outcome, **kwargs) -> ModerationEngine:
    kwargs.setdefault("auto_reject_threshold", 0.9)
    kwargs.setdefault("review_threshold", 0.5)
    return ModerationEngine(FakeClassifier(outcome), TestSession, **kwargs)


async def count(model, *where) -> int:
    async with get_test_session() as session:
        return (await session.execute(select(func.count()).select_from(model).where(*where))).scalar()


async def load(model, id_):
    async with get_test_session() as session:
        return await session.get(model, id_)


@pytest.mark.asyncio
async def test_high_confidence_rejects_hides_and_bans(seed_item):
    item = await seed_item()
    engine = engine_for(make_analysis(0.95, nsfw=0.95))

    action = await engine.decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.REJECTED
    assert action.reason == "Auto-rejected: nsfw (95% confidence)"
    assert action.result_id is not None

    stored = await load(ContentItemRow, item.id)
    assert stored.moderation_status == "rejected"
    assert stored.is_hidden is True
    assert stored.hidden_at is not None
    assert stored.hidden_reason.startswith("Auto-rejected by AI moderation: nsfw (95% confidence).")

    owner = await load(UserRow, item.owner_id)
    assert owner.banned_at is not None

    async with get_test_session() as session:
        entries = (await session.execute(select(AuditLogRow))).scalars().all()
    assert sorted(e.action for e in entries) == ["auto_ban", "auto_reject"]
    assert all(e.actor_id is None for e in entries)
    ban = next(e for e in entries if e.action == "auto_ban")
    assert ban.target_type == "user" and ban.target_id == item.owner_id
    assert ban.details["already_banned"] is False

    assert await count(ReviewQueueRow) == 0


@pytest.mark.asyncio
async def test_rejection_of_banned_owner_keeps_original_ban(seed_item):
    from datetime import datetime, timezone
    first_ban = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    item = await seed_item(banned_at=first_ban)

    await engine_for(make_analysis(0.97, violence=0.97)).decide(item.id, item.image_url)

    owner = await load(UserRow, item.owner_id)
    assert owner.banned_at.replace(tzinfo=None) == first_ban.replace(tzinfo=None)
    async with get_test_session() as session:
        ban = (await session.execute(
            select(AuditLogRow).where(AuditLogRow.action == "auto_ban")
        )).scalar_one()
    assert ban.details["already_banned"] is True


@pytest.mark.asyncio
async def test_mid_confidence_queues_for_review(seed_item):
    item = await seed_item()
    action = await engine_for(make_analysis(0.6, nsfw=0.6)).decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.QUEUED
    assert action.reason == "Queued for review: nsfw (60% confidence)"

    async with get_test_session() as session:
        entries = (await session.execute(select(ReviewQueueRow))).scalars().all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.id == action.queue_id
    assert entry.status == "pending"
    assert entry.priority == 60
    assert entry.trigger_category == "nsfw"
    assert entry.trigger_confidence == pytest.approx(0.6)
    assert entry.moderation_result_id == action.result_id

    stored = await load(ContentItemRow, item.id)
    assert stored.moderation_status == "flagged"
    assert stored.is_hidden is False

    owner = await load(UserRow, item.owner_id)
    assert owner.banned_at is None
    assert await count(AuditLogRow) == 0


@pytest.mark.asyncio
async def test_low_confidence_approves(seed_item):
    item = await seed_item()
    action = await engine_for(make_analysis(0.3, drugs=0.3)).decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.APPROVED
    assert action.reason == "Approved: highest category drugs (30% confidence)"
    assert (await load(ContentItemRow, item.id)).moderation_status == "approved"
    assert await count(ReviewQueueRow) == 0
    assert await count(ModerationResultRow) == 1


@pytest.mark.asyncio
async def test_thresholds_are_inclusive(seed_item):
    item = await seed_item()
    action = await engine_for(make_analysis(0.5, hate=0.5)).decide(item.id, item.image_url)
    assert action.action == ModerationOutcome.QUEUED

    other = await seed_item()
    action = await engine_for(make_analysis(0.9, hate=0.9)).decide(other.id, other.image_url)
    assert action.action == ModerationOutcome.REJECTED


@pytest.mark.asyncio
async def test_dominant_category_tie_prefers_earlier_category(seed_item):
    item = await seed_item()
    analysis = make_analysis(0.7, violence=0.7, nsfw=0.7, drugs=0.7)
    action = await engine_for(analysis).decide(item.id, item.image_url)

    assert "nsfw (70% confidence)" in action.reason
    async with get_test_session() as session:
        entry = (await session.execute(select(ReviewQueueRow))).scalar_one()
    assert entry.trigger_category == "nsfw"


@pytest.mark.asyncio
async def test_malformed_response_goes_to_manual_review(seed_item):
    item = await seed_item()
    engine = engine_for(MalformedResponseError("No JSON object found in response"))

    action = await engine.decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.ERROR
    async with get_test_session() as session:
        result = (await session.execute(select(ModerationResultRow))).scalar_one()
        entry = (await session.execute(select(ReviewQueueRow))).scalar_one()
    assert result.is_safe is False
    assert result.overall_confidence == 0.5
    assert result.error_message == "No JSON object found in response"
    assert entry.trigger_category == "classifier_error"
    assert entry.priority == 50

    stored = await load(ContentItemRow, item.id)
    assert stored.moderation_status == "manual_review"
    assert stored.is_hidden is False
    assert (await load(UserRow, item.owner_id)).banned_at is None


@pytest.mark.asyncio
async def test_exhausted_retries_never_bans(seed_item):
    item = await seed_item()
    err = ExhaustedRetriesError("Max retries exceeded after 3 attempts", attempts=3, status_code=429)
    action = await engine_for(err).decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.ERROR
    assert (await load(UserRow, item.owner_id)).banned_at is None
    assert await count(AuditLogRow) == 0


@pytest.mark.asyncio
async def test_disabled_engine_approves_without_classifier(seed_item):
    item = await seed_item()
    engine = ModerationEngine(None, TestSession, enabled=False)

    action = await engine.decide(item.id, item.image_url)

    assert action.action == ModerationOutcome.APPROVED
    assert (await load(ContentItemRow, item.id)).moderation_status == "approved"
    assert await count(ModerationResultRow) == 0


@pytest.mark.asyncio
async def test_disabled_engine_never_calls_classifier(seed_item):
    item = await seed_item()
    classifier = AsyncMock()
    engine = ModerationEngine(classifier, TestSession, enabled=False)

    await engine.decide(item.id, item.image_url)

    classifier.analyze.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_item_discards_analysis():
    action = await engine_for(make_analysis(0.95, nsfw=0.95)).decide("no-such-item", "https://x/y.jpg")
    assert action.action == ModerationOutcome.ERROR
    assert action.reason == "Content item not found"
    assert await count(ModerationResultRow) == 0


@pytest.mark.asyncio
async def test_reanalysis_raises_existing_entry_priority(seed_item):
    item = await seed_item()
    await engine_for(make_analysis(0.6, nsfw=0.6)).decide(item.id, item.image_url)
    await engine_for(make_analysis(0.8, violence=0.8)).decide(item.id, item.image_url)

    async with get_test_session() as session:
        entries = (await session.execute(select(ReviewQueueRow))).scalars().all()
        results = await results_for_item(session, item.id)
    assert len(entries) == 1
    assert entries[0].priority == 80
    assert entries[0].trigger_confidence == pytest.approx(0.8)
    assert len(results) == 2


def test_invalid_thresholds_rejected():
    with pytest.raises(ConfigurationError):
        engine_for(make_analysis(0.1), auto_reject_threshold=0.4, review_threshold=0.6)


def test_enabled_without_classifier_rejected():
    with pytest.raises(ConfigurationError):
        ModerationEngine(None, TestSession, enabled=True)
