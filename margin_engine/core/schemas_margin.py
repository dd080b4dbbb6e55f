"""Pydantic schemas for margin intelligence (spark nudges).

Wire format is camelCase to match the journal editor; Python attributes stay
snake_case. All models accept either spelling on input.
"""

import hashlib
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Enums
# =============================================================================


class NudgeType(str, Enum):
    TENSION = "tension"
    CALLBACK = "callback"
    EYEBROW_RAISE = "eyebrow_raise"


class FeedbackValue(str, Enum):
    UP = "up"
    DOWN = "down"


class DownReason(str, Enum):
    TOO_VAGUE = "too_vague"
    WRONG_CONNECTION = "wrong_connection"
    ALREADY_OBVIOUS = "already_obvious"
    BAD_TONE = "bad_tone"
    NOT_NOW = "not_now"


class FailureMode(str, Enum):
    """Terminal outcome of a pipeline run. Only ACCEPTED carries nudges."""

    ACCEPTED = "accepted"
    MODEL_EMPTY = "model_empty"
    NO_JSON = "no_json"
    JSON_PARSE_ERROR = "json_parse_error"
    FILTERED_TEXT = "filtered_text"
    FILTERED_TYPE = "filtered_type"
    FILTERED_CONFIDENCE = "filtered_confidence"
    JUDGE_PARSE_ERROR = "judge_parse_error"
    JUDGE_EMPTY = "judge_empty"
    GATE_REJECTED = "gate_rejected"


TARGET_MIX: dict[NudgeType, float] = {
    NudgeType.TENSION: 0.60,
    NudgeType.CALLBACK: 0.25,
    NudgeType.EYEBROW_RAISE: 0.15,
}

DOWNVOTE_REASONS: tuple[str, ...] = tuple(r.value for r in DownReason)


# =============================================================================
# Hashing helpers
# =============================================================================


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def paragraph_hash(text: str) -> str:
    """Stable 12-char hash of the trimmed paragraph text."""
    return hashlib.md5(text.strip().encode("utf-8")).hexdigest()[:12]


def nudge_signature(
    nudge_type: str,
    hook: str,
    memory_date: str | None = None,
    memory_snippet: str | None = None,
) -> str:
    """Signature used to recognise the same nudge across runs."""
    return "|".join([
        nudge_type,
        normalize_whitespace(hook).lower(),
        memory_date or "",
        normalize_whitespace(memory_snippet or "").lower(),
    ])


def nudge_fingerprint(
    nudge_type: str,
    hook: str,
    memory_date: str | None,
    memory_snippet: str | None,
    paragraph_index: int,
    user_id: str,
) -> str:
    """Stable nudge id, scoped to its owner so users never share a row."""
    signature = nudge_signature(nudge_type, hook, memory_date, memory_snippet)
    digest = hashlib.md5(f"{user_id}|{signature}".encode("utf-8")).hexdigest()[:16]
    return f"{digest}-{paragraph_index}"


# =============================================================================
# Retrieval
# =============================================================================


class ParagraphAnchor(CamelModel):
    index: int = Field(..., ge=0)
    content_hash: str

    @classmethod
    def from_text(cls, index: int, text: str) -> "ParagraphAnchor":
        return cls(index=index, content_hash=paragraph_hash(text))


class EvidenceItem(CamelModel):
    """A retrieved memory or implication. Read-only to the pipeline."""

    id: str
    snippet: str
    date: str | None = None
    activation_score: float = Field(default=0.0, ge=0.0, le=1.0)
    hop_distance: int = 0
    kind: str = Field(default="memory", description="memory or implication")


class RetrievalResponse(CamelModel):
    evidence_items: list[EvidenceItem] = Field(default_factory=list)
    summary_stats: dict[str, Any] = Field(default_factory=dict)

    @property
    def memories(self) -> list[EvidenceItem]:
        ranked = [e for e in self.evidence_items if e.kind != "implication"]
        return sorted(ranked, key=lambda e: e.activation_score, reverse=True)

    @property
    def implications(self) -> list[EvidenceItem]:
        return [e for e in self.evidence_items if e.kind == "implication"]


class RetrievalSample(CamelModel):
    score: float
    hop: int
    snippet: str


class RetrievalSummary(CamelModel):
    total_candidates: int = 0
    strong_candidates: int = 0
    top_score: float = 0.0
    second_score: float = 0.0
    has_clear_signal: bool = False
    implication_count: int = 0
    top_samples: list[RetrievalSample] = Field(default_factory=list)


# =============================================================================
# Candidates
# =============================================================================


class CandidateDraft(CamelModel):
    """Transient draft produced by generation; never persisted directly."""

    type: NudgeType
    hook: str
    why_now: str
    action_prompt: str
    evidence_memory_id: str | None = None
    evidence_memory_date: str | None = None
    evidence_memory_snippet: str | None = None
    model_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    retrieval_strength_normalized: float = Field(default=0.0, ge=0.0, le=1.0)


class JudgeScores(CamelModel):
    tension_score: float = Field(default=0.0, ge=0.0, le=5.0)
    actionability_score: float = Field(default=0.0, ge=0.0, le=5.0)
    novelty_score: float = Field(default=0.0, ge=0.0, le=5.0)
    specificity_score: float = Field(default=0.0, ge=0.0, le=5.0)
    overall_utility: float = Field(default=0.0, ge=0.0, le=5.0)


class JudgedCandidate(CandidateDraft):
    tension_score: float = 0.0
    actionability_score: float = 0.0
    novelty_score: float = 0.0
    specificity_score: float = 0.0
    overall_utility: float = 0.0
    personalization_weight: float = 0.0
    rank_score: float = 0.0

    @classmethod
    def from_draft(cls, draft: CandidateDraft, scores: JudgeScores) -> "JudgedCandidate":
        return cls(**draft.model_dump(), **scores.model_dump())


class GateResult(CamelModel):
    accepted: list[JudgedCandidate] = Field(default_factory=list)
    rejection_counts: dict[str, int] = Field(default_factory=dict)


# =============================================================================
# Persisted nudges and feedback
# =============================================================================


class SparkNudgeScores(CamelModel):
    overall_utility: float
    tension_score: float
    actionability_score: float
    novelty_score: float
    specificity_score: float
    model_confidence: float
    rank_score: float = 0.0


class SparkNudge(CamelModel):
    """A surfaced nudge. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: NudgeType
    hook: str
    why_now: str
    action_prompt: str
    paragraph_index: int
    paragraph_hash: str
    evidence_memory_id: str | None = None
    evidence_memory_date: str | None = None
    evidence_memory_snippet: str | None = None
    scores: SparkNudgeScores

    @property
    def signature(self) -> str:
        return nudge_signature(
            self.type.value, self.hook, self.evidence_memory_date, self.evidence_memory_snippet
        )

    @classmethod
    def from_candidate(
        cls, candidate: JudgedCandidate, anchor: ParagraphAnchor, user_id: str
    ) -> "SparkNudge":
        return cls(
            id=nudge_fingerprint(
                candidate.type.value,
                candidate.hook,
                candidate.evidence_memory_date,
                candidate.evidence_memory_snippet,
                anchor.index,
                user_id,
            ),
            type=candidate.type,
            hook=candidate.hook,
            why_now=candidate.why_now,
            action_prompt=candidate.action_prompt,
            paragraph_index=anchor.index,
            paragraph_hash=anchor.content_hash,
            evidence_memory_id=candidate.evidence_memory_id,
            evidence_memory_date=candidate.evidence_memory_date,
            evidence_memory_snippet=candidate.evidence_memory_snippet,
            scores=SparkNudgeScores(
                overall_utility=candidate.overall_utility,
                tension_score=candidate.tension_score,
                actionability_score=candidate.actionability_score,
                novelty_score=candidate.novelty_score,
                specificity_score=candidate.specificity_score,
                model_confidence=candidate.model_confidence,
                rank_score=round(candidate.rank_score, 4),
            ),
        )


class Feedback(CamelModel):
    """One row per (nudge, user); later writes overwrite earlier ones."""

    nudge_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    value: FeedbackValue
    reason: DownReason | None = None

    @model_validator(mode="after")
    def _reason_matches_value(self) -> "Feedback":
        if self.value == FeedbackValue.DOWN and self.reason is None:
            raise ValueError("reason is required for down feedback")
        if self.value == FeedbackValue.UP:
            self.reason = None
        return self


class FeedbackSignal(CamelModel):
    """Feedback joined with the type of the nudge it was given on."""

    type: NudgeType
    value: FeedbackValue
    reason: DownReason | None = None


class HistoricalNudge(CamelModel):
    type: NudgeType
    evidence_memory_id: str | None = None
    hook: str = ""


class PersonalizationContext(CamelModel):
    type_weights: dict[NudgeType, float] = Field(default_factory=dict)
    reason_penalties: dict[str, float] = Field(default_factory=dict)

    def weight_for(self, nudge_type: NudgeType, default: float = 0.0) -> float:
        return self.type_weights.get(nudge_type, default)


# =============================================================================
# Run trace
# =============================================================================


class LlmTrace(CamelModel):
    raw_candidates: int = 0
    judged_candidates: int = 0
    accepted: int = 0
    failure_mode: FailureMode | None = None
    min_model_confidence: float = 0.0


class FunnelTrace(CamelModel):
    generated: int = 0
    judged: int = 0
    accepted: int = 0
    rejection_counts: dict[str, int] = Field(default_factory=dict)
    target_mix: dict[str, float] = Field(
        default_factory=lambda: {t.value: share for t, share in TARGET_MIX.items()}
    )
    today_type_distribution: dict[str, int] = Field(default_factory=dict)
    session_type_distribution: dict[str, int] = Field(default_factory=dict)


class StageTimings(CamelModel):
    retrieve: int = 0
    generate: int = 0
    judge: int = 0
    total: int = 0


class MarginTrace(CamelModel):
    run_id: str
    reason: str
    stage_reached: str = "start"
    retrieval: RetrievalSummary | None = None
    llm: LlmTrace | None = None
    funnel: FunnelTrace | None = None
    timings_ms: StageTimings = Field(default_factory=StageTimings)


class PipelineResult(CamelModel):
    nudges: list[SparkNudge] = Field(default_factory=list)
    paragraph_hash: str = ""
    trace: MarginTrace | None = None

    @property
    def failure_mode(self) -> FailureMode | None:
        if self.trace and self.trace.llm:
            return self.trace.llm.failure_mode
        return None


# =============================================================================
# API payloads
# =============================================================================


class MarginRequest(CamelModel):
    paragraph: str = ""
    full_entry: str = ""
    entry_date: str | None = None
    paragraph_index: int = Field(default=0, ge=0)
    tuning: dict[str, Any] | None = None


class FeedbackRequest(CamelModel):
    """Raw feedback body. Validated by hand so errors map to HTTP 400."""

    nudge_id: Any = None
    feedback: Any = None
    reason: Any = None


def count_by_type(items: list[Any]) -> dict[NudgeType, int]:
    """Count nudges (anything with a .type) per nudge type."""
    counts = {t: 0 for t in NudgeType}
    for item in items:
        counts[NudgeType(item.type)] += 1
    return counts
