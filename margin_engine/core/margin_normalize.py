"""Sanitize raw model drafts into CandidateDrafts.

Long-but-good drafts are truncated rather than rejected; only drafts with an
unknown type, missing text, or low model confidence are dropped.
"""

from collections import Counter
from typing import Any

from margin_engine.core.logging import get_logger
from margin_engine.core.margin_retrieval import retrieval_strength_for
from margin_engine.core.schemas_margin import (
    CandidateDraft,
    EvidenceItem,
    FailureMode,
    NudgeType,
    normalize_whitespace,
)

logger = get_logger(__name__)

HOOK_MAX_WORDS = 14
WHY_NOW_MAX_WORDS = 12
ACTION_PROMPT_MAX_WORDS = 9
EVIDENCE_MAX_WORDS = 18

# Order used to break ties when picking the run-level failure mode
_FILTER_ORDER = [
    FailureMode.FILTERED_TYPE,
    FailureMode.FILTERED_TEXT,
    FailureMode.FILTERED_CONFIDENCE,
]


def trim_to_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return " ".join(words)
    kept = words[:max_words]
    kept[-1] = kept[-1].rstrip(".,;:!?-")
    if not kept[-1]:
        kept.pop()
    return " ".join(kept) + "."


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _text(value: Any) -> str:
    return normalize_whitespace(value) if isinstance(value, str) else ""


def _unit(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return 0.0
    return min(1.0, max(0.0, float(value)))


def normalize_candidate(
    raw: dict[str, Any],
    retrieval_strength: float,
    min_model_confidence: float,
) -> tuple[CandidateDraft | None, FailureMode | None]:
    """Return (draft, None) or (None, rejection)."""
    raw_type = _pick(raw, "type")
    try:
        nudge_type = NudgeType(raw_type)
    except ValueError:
        return None, FailureMode.FILTERED_TYPE

    hook = _text(_pick(raw, "hook"))
    why_now = _text(_pick(raw, "whyNow", "why_now"))
    action_prompt = _text(_pick(raw, "actionPrompt", "action_prompt"))
    if not hook or not why_now or not action_prompt:
        return None, FailureMode.FILTERED_TEXT

    confidence = _unit(_pick(raw, "modelConfidence", "model_confidence", "confidence"))
    if confidence < min_model_confidence:
        return None, FailureMode.FILTERED_CONFIDENCE

    snippet = _text(_pick(raw, "evidenceMemorySnippet", "evidence_memory_snippet"))
    memory_date = _text(_pick(raw, "evidenceMemoryDate", "evidence_memory_date"))
    memory_id = _pick(raw, "evidenceMemoryId", "evidence_memory_id")

    draft = CandidateDraft(
        type=nudge_type,
        hook=trim_to_words(hook, HOOK_MAX_WORDS),
        why_now=trim_to_words(why_now, WHY_NOW_MAX_WORDS),
        action_prompt=trim_to_words(action_prompt, ACTION_PROMPT_MAX_WORDS),
        evidence_memory_id=str(memory_id) if memory_id not in (None, "") else None,
        evidence_memory_date=memory_date or None,
        evidence_memory_snippet=trim_to_words(snippet, EVIDENCE_MAX_WORDS) if snippet else None,
        model_confidence=confidence,
        retrieval_strength_normalized=_unit(retrieval_strength),
    )
    return draft, None


def normalize_candidates(
    raw_candidates: list[dict[str, Any]],
    evidence: list[EvidenceItem],
    top_score: float,
    min_model_confidence: float,
) -> tuple[list[CandidateDraft], dict[str, int], FailureMode | None]:
    """Normalize every raw draft.

    Returns:
        (drafts, rejection counts, failure mode when nothing survived)
    """
    drafts: list[CandidateDraft] = []
    rejections: Counter[FailureMode] = Counter()

    for raw in raw_candidates:
        memory_id = _pick(raw, "evidenceMemoryId", "evidence_memory_id")
        strength = retrieval_strength_for(
            str(memory_id) if memory_id is not None else None, evidence, top_score
        )
        draft, rejection = normalize_candidate(raw, strength, min_model_confidence)
        if draft is None:
            rejections[rejection] += 1
            continue
        drafts.append(draft)

    counts = {mode.value: n for mode, n in rejections.items()}
    if drafts:
        return drafts, counts, None

    if not rejections:
        return drafts, counts, FailureMode.MODEL_EMPTY
    most = max(rejections.values())
    failure = next(mode for mode in _FILTER_ORDER if rejections[mode] == most)
    logger.debug(f"All drafts filtered during normalization: {counts}")
    return drafts, counts, failure
