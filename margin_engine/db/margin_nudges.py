"""Database operations for journal_nudges."""

from datetime import datetime, timezone
from typing import Any

from margin_engine.core.logging import get_logger
from margin_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "journal_nudges"


def insert_nudge(user_id: str, nudge: dict[str, Any]) -> None:
    """Insert a nudge row. Re-saving the same id is a no-op update."""
    supabase = get_supabase()
    row = {
        "id": nudge["id"],
        "user_id": user_id,
        "type": nudge["type"],
        "hook": nudge["hook"],
        "why_now": nudge["why_now"],
        "action_prompt": nudge["action_prompt"],
        "paragraph_index": nudge["paragraph_index"],
        "paragraph_hash": nudge["paragraph_hash"],
        "evidence_memory_id": nudge.get("evidence_memory_id"),
        "evidence_memory_date": nudge.get("evidence_memory_date"),
        "evidence_memory_snippet": nudge.get("evidence_memory_snippet"),
        "scores": nudge["scores"],
    }
    supabase.table(TABLE).upsert(row, on_conflict="id").execute()


def get_nudge_for_user(user_id: str, nudge_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("*")
        .eq("id", nudge_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def list_recent_nudges(user_id: str, limit: int = 30) -> list[dict[str, Any]]:
    """Most recent nudges first (type, evidence id, hook only)."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("type, evidence_memory_id, hook")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return response.data or []


def list_nudge_types_since(user_id: str, since: datetime) -> list[str]:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("type")
        .eq("user_id", user_id)
        .gte("created_at", since.isoformat())
        .execute()
    )
    return [row["type"] for row in response.data or []]


def start_of_today() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
