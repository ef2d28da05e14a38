"""Moderation data models — enums and value objects shared by the pipeline."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ModerationStatus(str, Enum):
    UNREVIEWED = "unreviewed"
    APPROVED = "approved"
    FLAGGED = "flagged"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"


class QueueStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    ESCALATED = "escalated"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REJECT_AND_BAN = "reject_and_ban"
    ESCALATE = "escalate"


class ViolationCategory(str, Enum):
    """Violation categories, in dominant-category tie-break order."""
    NSFW = "nsfw"
    VIOLENCE = "violence"
    HATE = "hate"
    HARASSMENT = "harassment"
    SELF_HARM = "self_harm"
    DRUGS = "drugs"
    ILLEGAL = "illegal"


# Enum iteration order is definition order; argmax relies on it.
CATEGORY_ORDER: tuple[ViolationCategory, ...] = tuple(ViolationCategory)


class ModerationOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    QUEUED = "queued"
    ERROR = "error"


class CategoryScores(BaseModel):
    """Per-category violation confidence, each already clamped to [0, 1]."""
    model_config = ConfigDict(frozen=True)

    nsfw: float = Field(0.0, ge=0.0, le=1.0)
    violence: float = Field(0.0, ge=0.0, le=1.0)
    hate: float = Field(0.0, ge=0.0, le=1.0)
    harassment: float = Field(0.0, ge=0.0, le=1.0)
    self_harm: float = Field(0.0, ge=0.0, le=1.0)
    drugs: float = Field(0.0, ge=0.0, le=1.0)
    illegal: float = Field(0.0, ge=0.0, le=1.0)

    def score(self, category: ViolationCategory) -> float:
        return getattr(self, category.value)

    def dominant(self) -> tuple[ViolationCategory, float]:
        """Highest-scoring category; ties keep the earliest in CATEGORY_ORDER."""
        best = CATEGORY_ORDER[0]
        best_score = self.score(best)
        for category in CATEGORY_ORDER[1:]:
            value = self.score(category)
            if value > best_score:
                best, best_score = category, value
        return best, best_score


class Analysis(BaseModel):
    """A validated classifier verdict for one image."""
    model_config = ConfigDict(frozen=True)

    is_safe: bool
    overall_confidence: float = Field(..., ge=0.0, le=1.0)
    categories: CategoryScores
    reasoning: str = ""
    model_version: str
    processing_time_ms: int = 0
    raw_response: Optional[dict] = None


class ModerationAction(BaseModel):
    """What the decision engine did with a content item."""
    action: ModerationOutcome
    content_item_id: str
    reason: str
    result_id: Optional[str] = None
    queue_id: Optional[str] = None
