"""Database operations for margin_tuning (versioned tuning per scope)."""

from typing import Any

from margin_engine.db.supabase_client import get_supabase

TABLE = "margin_tuning"


def get_latest_tuning(scope: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .select("scope, version, settings")
        .eq("scope", scope)
        .order("version", desc=True)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


def insert_tuning_version(scope: str, version: int, settings: dict[str, Any]) -> dict[str, Any]:
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .insert({"scope": scope, "version": version, "settings": settings})
        .execute()
    )
    return response.data[0] if response.data else {"scope": scope, "version": version, "settings": settings}
