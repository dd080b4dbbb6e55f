"""Persistence contract consumed by the margin pipeline and feedback API."""

from typing import Protocol

from margin_engine.core.schemas_margin import (
    Feedback,
    FeedbackSignal,
    HistoricalNudge,
    NudgeType,
    SparkNudge,
)
from margin_engine.core.schemas_tuning import MarginTuningSettings


class NudgeRepository(Protocol):
    def save_nudge(self, user_id: str, nudge: SparkNudge) -> None: ...

    def get_nudge(self, user_id: str, nudge_id: str) -> SparkNudge | None:
        """Return the nudge only if it belongs to user_id."""
        ...

    def upsert_feedback(self, feedback: Feedback) -> None: ...

    def load_recent_history(self, user_id: str, limit: int) -> list[HistoricalNudge]:
        """Most-recent-first."""
        ...

    def load_recent_feedback(self, user_id: str, limit: int) -> list[FeedbackSignal]: ...

    def today_type_distribution(self, user_id: str) -> dict[NudgeType, int]: ...

    def load_tuning(self, scope: str) -> MarginTuningSettings | None: ...

    def save_tuning(self, scope: str, tuning: MarginTuningSettings) -> MarginTuningSettings: ...
