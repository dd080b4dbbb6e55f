"""Supabase-backed NudgeRepository."""

from margin_engine.core.logging import get_logger
from margin_engine.core.schemas_margin import (
    Feedback,
    FeedbackSignal,
    HistoricalNudge,
    NudgeType,
    SparkNudge,
    count_by_type,
)
from margin_engine.core.schemas_tuning import MarginTuningSettings, coerce_margin_tuning
from margin_engine.db import margin_feedback, margin_nudges, margin_tuning

logger = get_logger(__name__)

_TYPE_VALUES = {t.value for t in NudgeType}


class SupabaseNudgeRepository:
    def save_nudge(self, user_id: str, nudge: SparkNudge) -> None:
        margin_nudges.insert_nudge(user_id, nudge.model_dump(mode="json"))

    def get_nudge(self, user_id: str, nudge_id: str) -> SparkNudge | None:
        row = margin_nudges.get_nudge_for_user(user_id, nudge_id)
        if not row:
            return None
        return SparkNudge.model_validate(row)

    def upsert_feedback(self, feedback: Feedback) -> None:
        margin_feedback.upsert_feedback(
            feedback.nudge_id,
            feedback.user_id,
            feedback.value.value,
            feedback.reason.value if feedback.reason else None,
        )

    def load_recent_history(self, user_id: str, limit: int) -> list[HistoricalNudge]:
        history = []
        for row in margin_nudges.list_recent_nudges(user_id, limit):
            try:
                history.append(HistoricalNudge.model_validate(row))
            except ValueError:
                logger.warning(f"Skipping malformed nudge history row: {row}")
        return history

    def load_recent_feedback(self, user_id: str, limit: int) -> list[FeedbackSignal]:
        signals = []
        for row in margin_feedback.list_recent_feedback(user_id, limit):
            nudge = row.get("journal_nudges") or {}
            if not nudge.get("type"):
                continue
            try:
                signals.append(FeedbackSignal(
                    type=nudge["type"],
                    value=row["feedback"],
                    reason=row.get("reason"),
                ))
            except ValueError:
                logger.warning(f"Skipping malformed feedback row: {row}")
        return signals

    def today_type_distribution(self, user_id: str) -> dict[NudgeType, int]:
        types = margin_nudges.list_nudge_types_since(user_id, margin_nudges.start_of_today())
        return count_by_type([HistoricalNudge(type=t) for t in types if t in _TYPE_VALUES])

    def load_tuning(self, scope: str) -> MarginTuningSettings | None:
        row = margin_tuning.get_latest_tuning(scope)
        if not row:
            return None
        settings = dict(row.get("settings") or {})
        settings["version"] = row.get("version", 1)
        return coerce_margin_tuning(settings)

    def save_tuning(self, scope: str, tuning: MarginTuningSettings) -> MarginTuningSettings:
        current = margin_tuning.get_latest_tuning(scope)
        version = (current["version"] + 1) if current else 1
        stored = tuning.model_copy(update={"version": version})
        margin_tuning.insert_tuning_version(
            scope, version, stored.model_dump(mode="json", by_alias=True)
        )
        return stored
