"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging

from config.settings import settings as default_settings
from vibeguard.errors import ConfigurationError

logger = logging.getLogger(__name__)


def validate_settings(settings=default_settings) -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises ConfigurationError for anything that would make moderation decisions
    unsafe: a missing classifier credential or nonsensical thresholds.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    auto_reject = settings.MODERATION_AUTO_REJECT_THRESHOLD
    review = settings.MODERATION_REVIEW_THRESHOLD
    if not (0.0 <= review <= 1.0 and 0.0 <= auto_reject <= 1.0):
        raise ConfigurationError(
            f"Moderation thresholds must lie in [0, 1] (review={review}, auto_reject={auto_reject})"
        )
    if review > auto_reject:
        raise ConfigurationError(
            f"MODERATION_REVIEW_THRESHOLD ({review}) exceeds MODERATION_AUTO_REJECT_THRESHOLD ({auto_reject})"
        )

    if settings.MODERATION_ENABLED:
        if not settings.CLASSIFIER_API_KEY:
            logger.critical("CLASSIFIER_API_KEY is not set but moderation is enabled.")
            raise ConfigurationError("CLASSIFIER_API_KEY is required when MODERATION_ENABLED is true")
    else:
        warnings.append("MODERATION_ENABLED is false — every upload will be auto-approved")

    if not settings.ADMIN_API_KEY:
        warnings.append("ADMIN_API_KEY not set — review endpoints disabled")

    # CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if settings.SWEEP_INTERVAL_MINUTES <= 0:
        warnings.append("SWEEP_INTERVAL_MINUTES <= 0 — stuck unreviewed content will not be re-driven")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
