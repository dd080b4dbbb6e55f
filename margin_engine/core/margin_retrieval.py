"""Retrieval stage: evidence lookup and the clear-signal gate.

Generation and judging are the expensive stages, so they only run when the
retrieved evidence has a clear winner:

    has_clear_signal = top >= min_top_activation
        and (top - second >= min_top_gap or top >= strong_top_override)
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from margin_engine.core.logging import get_logger
from margin_engine.core.schemas_margin import (
    EvidenceItem,
    RetrievalResponse,
    RetrievalSample,
    RetrievalSummary,
)
from margin_engine.core.schemas_tuning import MarginServerTuning

logger = get_logger(__name__)

SAMPLE_COUNT = 4
SAMPLE_SNIPPET_CHARS = 60


class RetrievalService(Protocol):
    async def retrieve(
        self, query_text: str, max_memories: int, max_implications: int
    ) -> RetrievalResponse: ...


def has_clear_signal(top_score: float, second_score: float, server: MarginServerTuning) -> bool:
    if top_score < server.min_top_activation:
        return False
    return (
        top_score - second_score >= server.min_top_gap
        or top_score >= server.strong_top_override
    )


def summarize_retrieval(
    response: RetrievalResponse, server: MarginServerTuning
) -> RetrievalSummary:
    memories = response.memories
    top_score = memories[0].activation_score if memories else 0.0
    second_score = memories[1].activation_score if len(memories) > 1 else 0.0
    strong = [m for m in memories if m.activation_score >= server.min_activation_score]

    return RetrievalSummary(
        total_candidates=len(memories),
        strong_candidates=len(strong),
        top_score=top_score,
        second_score=second_score,
        has_clear_signal=has_clear_signal(top_score, second_score, server),
        implication_count=len(response.implications),
        top_samples=[
            RetrievalSample(
                score=round(m.activation_score, 3),
                hop=m.hop_distance,
                snippet=m.snippet[:SAMPLE_SNIPPET_CHARS],
            )
            for m in memories[:SAMPLE_COUNT]
        ],
    )


def strong_memories(response: RetrievalResponse, server: MarginServerTuning) -> list[EvidenceItem]:
    """Memories above the activation floor, capped to the context budget."""
    strong = [m for m in response.memories if m.activation_score >= server.min_activation_score]
    return strong[: server.max_memories_context]


def context_implications(
    response: RetrievalResponse, server: MarginServerTuning
) -> list[EvidenceItem]:
    return response.implications[: server.max_implications_context]


def normalize_score_from_top(score: float) -> float:
    return min(1.0, max(0.0, score / 2))


def retrieval_strength_for(
    evidence_memory_id: str | None,
    evidence: list[EvidenceItem],
    top_score: float,
) -> float:
    """Normalized activation of the cited memory (top score if none cited)."""
    if evidence_memory_id:
        for item in evidence:
            if item.id == evidence_memory_id:
                return normalize_score_from_top(item.activation_score)
    return normalize_score_from_top(top_score)


# =============================================================================
# Supabase-backed retrieval collaborator
# =============================================================================


class SupabaseMemoryRetriever:
    """Vector search over a user's journal memories and implications."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    async def retrieve(
        self, query_text: str, max_memories: int, max_implications: int
    ) -> RetrievalResponse:
        from margin_engine.core.embeddings import embed_query_async
        from margin_engine.db.supabase_client import get_supabase

        embedding = await embed_query_async(query_text)
        sb = get_supabase()

        def _match(rpc: str, count: int) -> list[dict]:
            result = sb.rpc(rpc, {
                "query_embedding": embedding,
                "match_count": count,
                "filter_user_id": self.user_id,
            }).execute()
            return result.data or []

        memory_rows, implication_rows = await asyncio.gather(
            asyncio.to_thread(_match, "match_journal_memories", max_memories),
            asyncio.to_thread(_match, "match_journal_implications", max_implications),
        )

        items = [_row_to_evidence(row, "memory") for row in memory_rows]
        items += [_row_to_evidence(row, "implication") for row in implication_rows]
        return RetrievalResponse(
            evidence_items=items,
            summary_stats={"memories": len(memory_rows), "implications": len(implication_rows)},
        )


def _row_to_evidence(row: dict, kind: str) -> EvidenceItem:
    score = row.get("activation_score", row.get("similarity", 0.0)) or 0.0
    return EvidenceItem(
        id=str(row.get("id", "")),
        snippet=row.get("content") or "",
        date=row.get("source_date"),
        activation_score=min(1.0, max(0.0, float(score))),
        hop_distance=int(row.get("hop", 0) or 0),
        kind=kind,
    )
