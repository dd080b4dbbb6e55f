"""Database operations for journal_nudge_feedback."""

from datetime import datetime, timezone
from typing import Any

from margin_engine.db.supabase_client import get_supabase

TABLE = "journal_nudge_feedback"


def upsert_feedback(nudge_id: str, user_id: str, feedback: str, reason: str | None) -> None:
    """One row per (nudge_id, user_id); later writes win."""
    supabase = get_supabase()
    supabase.table(TABLE).upsert(
        {
            "nudge_id": nudge_id,
            "user_id": user_id,
            "feedback": feedback,
            "reason": reason if feedback == "down" else None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        },
        on_conflict="nudge_id,user_id",
    ).execute()


def list_recent_feedback(user_id: str, limit: int = 100) -> list[dict[str, Any]]:
    """Recent feedback joined with the nudge type."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("feedback, reason, journal_nudges(type)")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []
