"""Admin authentication for the review surface.

Reviewers reach these endpoints through the admin UI, which holds the shared
admin key; the reviewer's own identity travels in the request body.
"""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException

from config.settings import settings


def verify_admin_key(x_admin_key: str = Header(None)) -> None:
    """Verify admin API key from request header (timing-safe)."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        raise HTTPException(503, "Admin endpoints disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected_key):
        raise HTTPException(403, "Invalid admin key")
