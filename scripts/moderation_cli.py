#!/usr/bin/env python3
"""Vibeguard moderation CLI — operator tool for the moderation pipeline.

Usage:
  python scripts/moderation_cli.py stats              # Print queue depth + 24h throughput
  python scripts/moderation_cli.py sweep              # Re-drive stuck unreviewed content now
  python scripts/moderation_cli.py analyze <item_id>  # Analyze one content item and print the outcome
"""
import asyncio
import os
import sys
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _shutdown(runner=None):
    """Let in-flight analyses finish, then release the classifier client and DB pool."""
    import vibeguard.db.engine as db

    if runner is not None:
        await runner.drain()
        if runner.engine.classifier is not None:
            await runner.engine.classifier.close()
    await db.engine.dispose()


async def cmd_stats():
    from config.settings import settings
    from vibeguard.db.engine import async_session
    from vibeguard.services import review_queue

    try:
        async with async_session() as session:
            s = await review_queue.stats(session, review_threshold=settings.MODERATION_REVIEW_THRESHOLD)
    finally:
        await _shutdown()

    print("=" * 44)
    print("  Vibeguard Moderation")
    print("=" * 44)
    print(f"  Pending:            {s.pending:>8,}")
    print(f"  In review:          {s.in_review:>8,}")
    print(f"  Escalated:          {s.escalated:>8,}")
    print(f"  Completed (24h):    {s.completed_24h:>8,}")
    print(f"  Auto-rejected (24h):{s.auto_rejected_24h:>8,}")
    print(f"  Auto-approved (24h):{s.auto_approved_24h:>8,}")
    print("=" * 44)


async def cmd_sweep():
    from config.settings import settings
    from vibeguard.api.main import build_runner
    from vibeguard.db.engine import async_session
    from vibeguard.services.scheduler import sweep_unreviewed

    runner = build_runner()
    try:
        count = await sweep_unreviewed(
            runner, async_session, timedelta(minutes=settings.SWEEP_STALE_AFTER_MINUTES),
        )
    finally:
        await _shutdown(runner)
    print(f"✅ Re-analyzed {count} stuck items")


async def cmd_analyze():
    if len(sys.argv) < 3:
        print(__doc__)
        sys.exit(1)
    from vibeguard.api.main import build_runner
    from vibeguard.db.engine import async_session
    from vibeguard.db.tables import ContentItemRow

    item_id = sys.argv[2]
    async with async_session() as session:
        item = await session.get(ContentItemRow, item_id)
    if item is None:
        await _shutdown()
        print(f"❌ Content item {item_id} not found")
        sys.exit(1)

    runner = build_runner()
    try:
        action = await runner.analyze(item.id, item.image_url)
    finally:
        await _shutdown(runner)
    if action is None:
        print("❌ Analysis failed; see logs")
        sys.exit(1)
    print(f"{action.action.value}: {action.reason}")


COMMANDS = {
    "stats": cmd_stats,
    "sweep": cmd_sweep,
    "analyze": cmd_analyze,
}


def main():
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        print(__doc__)
        sys.exit(1)
    asyncio.run(COMMANDS[sys.argv[1]]())


if __name__ == "__main__":
    main()
