"""Audit log — append-only accountability trail for moderation actions.

There is deliberately no update or delete path. Writes join the caller's
transaction so an action and its audit entry commit together.
"""
from __future__ import annotations

import base64
import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from vibeguard.db.moderation_tables import AuditLogRow

logger = logging.getLogger(__name__)

# Action names
AUTO_REJECT = "auto_reject"
AUTO_BAN = "auto_ban"
MANUAL_BAN = "manual_ban"

# Target types
TARGET_CONTENT = "content_item"
TARGET_USER = "user"


def review_action(decision: str) -> str:
    return f"review_{decision}"


def append(
    session: AsyncSession,
    actor_id: Optional[str],
    action: str,
    target_type: str,
    target_id: str,
    details: Optional[dict[str, Any]] = None,
) -> AuditLogRow:
    """Stage one audit entry in the current transaction. ``actor_id=None`` means automated."""
    entry = AuditLogRow(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
    )
    session.add(entry)
    logger.info(
        "audit: %s %s %s/%s", actor_id or "system", action, target_type, target_id,
    )
    return entry


def encode_cursor(entry: AuditLogRow) -> str:
    raw = json.dumps([entry.created_at.isoformat(), entry.id])
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        created_at, entry_id = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return datetime.fromisoformat(created_at), str(entry_id)
    except (ValueError, TypeError) as e:
        raise ValueError("Invalid cursor") from e


async def list_entries(
    session: AsyncSession,
    *,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[str] = None,
) -> tuple[list[AuditLogRow], Optional[str], bool]:
    """Newest first. Returns (entries, next_cursor, has_more).

    Entries written in the same transaction share a timestamp, so the cursor
    carries the id as a tie-breaker. Raises ValueError on a bad cursor.
    """
    query = select(AuditLogRow)
    if actor_id:
        query = query.where(AuditLogRow.actor_id == actor_id)
    if action:
        query = query.where(AuditLogRow.action == action)
    if target_id:
        query = query.where(AuditLogRow.target_id == target_id)
    if cursor:
        created_at, entry_id = decode_cursor(cursor)
        query = query.where(or_(
            AuditLogRow.created_at < created_at,
            and_(AuditLogRow.created_at == created_at, AuditLogRow.id < entry_id),
        ))

    query = query.order_by(AuditLogRow.created_at.desc(), AuditLogRow.id.desc()).limit(limit + 1)
    rows = list((await session.execute(query)).scalars().all())

    has_more = len(rows) > limit
    entries = rows[:limit]
    next_cursor = encode_cursor(entries[-1]) if has_more and entries else None
    return entries, next_cursor, has_more


def to_dict(entry: AuditLogRow) -> dict:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "details": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
