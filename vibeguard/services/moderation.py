"""Moderation decision engine.

Turns a classifier verdict (or a classifier failure) into exactly one of:
approve, reject + ban, queue for human review, or error → manual review.

The classifier call happens before any database session is opened, so a slow
or retrying analysis never holds a connection. Each outcome is then written
in a single transaction: the moderation result, the item status, any queue
entry and any audit entries commit together.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vibeguard.db.moderation_tables import ModerationResultRow
from vibeguard.db.tables import ContentItemRow
from vibeguard.errors import ClassifierError, ConfigurationError
from vibeguard.middleware.metrics import metrics
from vibeguard.models.moderation import (
    Analysis,
    ModerationAction,
    ModerationOutcome,
    ModerationStatus,
)
from vibeguard.services import moderation_actions, review_queue
from vibeguard.services.vision_classifier import VisionClassifier

logger = logging.getLogger(__name__)

# Stored on failed analyses: not safe, mid-scale confidence, so nothing
# downstream mistakes an infrastructure failure for a clean verdict.
ERROR_SENTINEL_CONFIDENCE = 0.5
ERROR_TRIGGER_CATEGORY = "classifier_error"


def _pct(confidence: float) -> str:
    return f"{confidence * 100:.0f}%"


class ModerationEngine:
    """Runs one content item through classification and the threshold policy."""

    def __init__(
        self,
        classifier: Optional[VisionClassifier],
        session_factory: async_sessionmaker[AsyncSession],
        *,
        enabled: bool = True,
        auto_reject_threshold: float = 0.9,
        review_threshold: float = 0.5,
    ):
        if enabled and classifier is None:
            raise ConfigurationError("Moderation is enabled but no classifier is configured")
        if not (0.0 <= review_threshold <= auto_reject_threshold <= 1.0):
            raise ConfigurationError(
                f"Invalid thresholds: review={review_threshold}, auto_reject={auto_reject_threshold}"
            )
        self.classifier = classifier
        self.session_factory = session_factory
        self.enabled = enabled
        self.auto_reject_threshold = auto_reject_threshold
        self.review_threshold = review_threshold

    @classmethod
    def from_settings(cls, settings, classifier, session_factory) -> "ModerationEngine":
        return cls(
            classifier,
            session_factory,
            enabled=settings.MODERATION_ENABLED,
            auto_reject_threshold=settings.MODERATION_AUTO_REJECT_THRESHOLD,
            review_threshold=settings.MODERATION_REVIEW_THRESHOLD,
        )

    async def decide(self, content_item_id: str, image_url: str) -> ModerationAction:
        """Classify one content item and apply the resulting decision."""
        if not self.enabled:
            async with self.session_factory() as session:
                item = await session.get(ContentItemRow, content_item_id)
                if item is not None:
                    item.moderation_status = ModerationStatus.APPROVED.value
                    await session.commit()
            return self._finish(ModerationAction(
                action=ModerationOutcome.APPROVED,
                content_item_id=content_item_id,
                reason="Moderation disabled",
            ))

        try:
            analysis = await self.classifier.analyze(image_url)
        except ClassifierError as e:
            return await self._record_failure(content_item_id, e)

        return await self._apply(content_item_id, analysis)

    # ── Outcomes ─────────────────────────────────────────────────────────────

    async def _record_failure(self, content_item_id: str, error: ClassifierError) -> ModerationAction:
        """Fail safe: keep the attempt on record and hand the item to a human."""
        logger.error(
            "Classifier failed for content %s (%s): %s",
            content_item_id, error.__class__.__name__, error.message,
        )
        async with self.session_factory() as session:
            if not await self._item_exists(session, content_item_id):
                return self._missing(content_item_id)

            result = ModerationResultRow(
                content_item_id=content_item_id,
                is_safe=False,
                overall_confidence=ERROR_SENTINEL_CONFIDENCE,
                error_message=error.message,
                model_version=getattr(self.classifier, "model", None),
            )
            session.add(result)
            await session.flush()

            queue_id = await review_queue.enqueue(
                session, content_item_id, result.id,
                ERROR_TRIGGER_CATEGORY, ERROR_SENTINEL_CONFIDENCE,
            )
            await self._set_status(session, content_item_id, ModerationStatus.MANUAL_REVIEW)
            await session.commit()

        return self._finish(ModerationAction(
            action=ModerationOutcome.ERROR,
            content_item_id=content_item_id,
            reason=f"Analysis failed, sent to manual review: {error.message}",
            result_id=result.id,
            queue_id=queue_id,
        ))

    async def _apply(self, content_item_id: str, analysis: Analysis) -> ModerationAction:
        category, category_confidence = analysis.categories.dominant()
        label = f"{category.value} ({_pct(category_confidence)} confidence)"
        overall = analysis.overall_confidence

        async with self.session_factory() as session:
            if not await self._item_exists(session, content_item_id):
                return self._missing(content_item_id)

            result = self._result_row(content_item_id, analysis)
            session.add(result)
            await session.flush()

            # Uncommitted work is rolled back when the session closes on error.
            queue_id = None
            if overall >= self.auto_reject_threshold:
                await moderation_actions.auto_reject_and_ban(
                    session, content_item_id, category.value, category_confidence, analysis.reasoning,
                )
                outcome = ModerationOutcome.REJECTED
                reason = f"Auto-rejected: {label}"
            elif overall >= self.review_threshold:
                queue_id = await review_queue.enqueue(
                    session, content_item_id, result.id, category.value, category_confidence,
                )
                await self._set_status(session, content_item_id, ModerationStatus.FLAGGED)
                outcome = ModerationOutcome.QUEUED
                reason = f"Queued for review: {label}"
            else:
                await self._set_status(session, content_item_id, ModerationStatus.APPROVED)
                outcome = ModerationOutcome.APPROVED
                reason = f"Approved: highest category {label}"
            await session.commit()

        return self._finish(ModerationAction(
            action=outcome,
            content_item_id=content_item_id,
            reason=reason,
            result_id=result.id,
            queue_id=queue_id,
        ))

    # ── Helpers ──────────────────────────────────────────────────────────────

    @staticmethod
    def _result_row(content_item_id: str, analysis: Analysis) -> ModerationResultRow:
        scores = analysis.categories
        return ModerationResultRow(
            content_item_id=content_item_id,
            is_safe=analysis.is_safe,
            overall_confidence=analysis.overall_confidence,
            nsfw_score=scores.nsfw,
            violence_score=scores.violence,
            hate_score=scores.hate,
            harassment_score=scores.harassment,
            self_harm_score=scores.self_harm,
            drugs_score=scores.drugs,
            illegal_score=scores.illegal,
            reasoning=analysis.reasoning,
            model_version=analysis.model_version,
            processing_time_ms=analysis.processing_time_ms,
            raw_response=analysis.raw_response,
        )

    @staticmethod
    async def _item_exists(session: AsyncSession, content_item_id: str) -> bool:
        found = await session.execute(
            select(ContentItemRow.id).where(ContentItemRow.id == content_item_id)
        )
        return found.scalar_one_or_none() is not None

    @staticmethod
    async def _set_status(session: AsyncSession, content_item_id: str, status: ModerationStatus) -> None:
        item = await session.get(ContentItemRow, content_item_id)
        item.moderation_status = status.value

    def _missing(self, content_item_id: str) -> ModerationAction:
        logger.warning("Content %s no longer exists; analysis discarded", content_item_id)
        return self._finish(ModerationAction(
            action=ModerationOutcome.ERROR,
            content_item_id=content_item_id,
            reason="Content item not found",
        ))

    @staticmethod
    def _finish(action: ModerationAction) -> ModerationAction:
        metrics.record_decision(action.action.value)
        log = logger.warning if action.action in (ModerationOutcome.REJECTED, ModerationOutcome.ERROR) else logger.info
        log("Moderation %s for content %s: %s", action.action.value, action.content_item_id, action.reason)
        return action


async def results_for_item(session: AsyncSession, content_item_id: str) -> list[ModerationResultRow]:
    """Every analysis attempt recorded for one item, newest first."""
    result = await session.execute(
        select(ModerationResultRow)
        .where(ModerationResultRow.content_item_id == content_item_id)
        .order_by(ModerationResultRow.created_at.desc())
    )
    return list(result.scalars().all())
