"""Fire-and-forget analysis runner.

The upload workflow hands a freshly persisted content item to ``schedule``
and returns to the user immediately. Each analysis runs as its own asyncio
task; the runner keeps a strong reference until it finishes, so an abandoned
caller never cancels an in-flight classification or loses its result.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from vibeguard.models.moderation import ModerationAction
from vibeguard.services.moderation import ModerationEngine

logger = logging.getLogger(__name__)


class AnalysisRunner:
    def __init__(self, engine: ModerationEngine):
        self.engine = engine
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> set[str]:
        return set(self._tasks)

    def schedule(self, content_item_id: str, image_url: str) -> asyncio.Task:
        """Start analysis in the background. Re-scheduling an in-flight item is a no-op."""
        existing = self._tasks.get(content_item_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(
            self._run(content_item_id, image_url), name=f"moderate:{content_item_id}",
        )
        self._tasks[content_item_id] = task
        task.add_done_callback(lambda t, key=content_item_id: self._forget(key, t))
        return task

    async def analyze(self, content_item_id: str, image_url: str) -> Optional[ModerationAction]:
        """Schedule and wait. Cancelling the waiter does not cancel the analysis."""
        return await asyncio.shield(self.schedule(content_item_id, image_url))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding analyses (used at shutdown)."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("Waiting for %d in-flight analyses", len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("%d analyses still running at shutdown", len(pending))

    async def _run(self, content_item_id: str, image_url: str) -> Optional[ModerationAction]:
        try:
            return await self.engine.decide(content_item_id, image_url)
        except Exception:
            # Item stays unreviewed; the periodic sweep picks it up again.
            logger.exception("Moderation failed for content %s", content_item_id)
            return None

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
