"""Feedback submission: validation and upsert.

A down-vote must carry one of the five fixed reasons; an up-vote clears any
stored reason. One row survives per (nudge, user).
"""

from typing import Any

from margin_engine.core.logging import get_logger
from margin_engine.core.margin_store import NudgeRepository
from margin_engine.core.schemas_margin import (
    DOWNVOTE_REASONS,
    DownReason,
    Feedback,
    FeedbackValue,
)

logger = get_logger(__name__)


class FeedbackValidationError(ValueError):
    """Malformed feedback payload (maps to HTTP 400)."""


class NudgeNotFoundError(LookupError):
    """Nudge id unknown or owned by another user (maps to HTTP 404)."""


def validate_feedback(user_id: str, nudge_id: Any, value: Any, reason: Any = None) -> Feedback:
    if not isinstance(nudge_id, str) or not nudge_id or value not in ("up", "down"):
        raise FeedbackValidationError("nudgeId and valid feedback are required")

    if value == "down":
        if not isinstance(reason, str) or reason not in DOWNVOTE_REASONS:
            raise FeedbackValidationError(
                f"reason is required for down feedback (one of: {', '.join(DOWNVOTE_REASONS)})"
            )
        return Feedback(
            nudge_id=nudge_id,
            user_id=user_id,
            value=FeedbackValue.DOWN,
            reason=DownReason(reason),
        )

    return Feedback(nudge_id=nudge_id, user_id=user_id, value=FeedbackValue.UP, reason=None)


def record_feedback(
    repo: NudgeRepository,
    user_id: str,
    nudge_id: Any,
    value: Any,
    reason: Any = None,
) -> Feedback:
    """
    Validate and upsert feedback for a nudge the caller owns.

    Raises:
        FeedbackValidationError: Missing id, unknown value, or bad down reason
        NudgeNotFoundError: Nudge does not resolve for this user
    """
    feedback = validate_feedback(user_id, nudge_id, value, reason)

    if repo.get_nudge(user_id, feedback.nudge_id) is None:
        raise NudgeNotFoundError(f"Nudge {feedback.nudge_id} not found")

    repo.upsert_feedback(feedback)
    logger.info(
        f"Recorded {feedback.value.value} feedback on nudge {feedback.nudge_id}"
        + (f" ({feedback.reason.value})" if feedback.reason else "")
    )
    return feedback
