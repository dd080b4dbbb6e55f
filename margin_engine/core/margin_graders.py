"""Deterministic (code-based) graders for candidate nudges.

Pure Python, no LLM calls. Each grader produces a 0.0-5.0 score from the
draft text, its cited memory, and the paragraph it annotates. Used when
MARGIN_JUDGE_MODE=deterministic, and handy as a baseline in evals.
"""

import re

from margin_engine.core.cancellation import CancelToken
from margin_engine.core.logging import get_logger
from margin_engine.core.schemas_margin import (
    CandidateDraft,
    FailureMode,
    JudgedCandidate,
    JudgeScores,
)

logger = get_logger(__name__)

# Weights for overall utility
WEIGHTS = {
    "tension": 0.25,
    "actionability": 0.20,
    "novelty": 0.20,
    "specificity": 0.35,
}

CONTRAST_MARKERS = {
    "but", "yet", "still", "though", "although", "instead", "despite",
    "now", "again", "never", "always", "said", "promised", "swore",
}
HEDGES = {"perhaps", "maybe", "might", "considered", "feel", "feeling"}
ACTION_VERBS = {
    "ask", "call", "text", "write", "name", "list", "check", "decide",
    "tell", "plan", "try", "pick", "send", "note", "compare",
}

_DATE_RE = re.compile(r"\b(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2})\b")
_NUMBER_RE = re.compile(r"\b\d+\b")
_NAME_RE = re.compile(r"\b[A-Z][a-z]{2,}\b")


def _words(text: str) -> list[str]:
    return re.findall(r"[a-z']+", text.lower())


def _clamp(score: float) -> float:
    return round(min(5.0, max(0.0, score)), 2)


def grade_specificity(draft: CandidateDraft) -> float:
    """Concrete anchors: dates, names, numbers, overlap with the cited memory."""
    text = f"{draft.hook} {draft.why_now}"
    score = 0.0
    if _DATE_RE.search(text):
        score += 1.5
    # capitalised words past the sentence start read as names
    if any(m.start() > 0 for m in _NAME_RE.finditer(text)):
        score += 1.0
    if _NUMBER_RE.search(text):
        score += 0.5
    if draft.evidence_memory_snippet:
        snippet_words = {w for w in _words(draft.evidence_memory_snippet) if len(w) > 3}
        hook_words = {w for w in _words(draft.hook) if len(w) > 3}
        if snippet_words:
            score += 2.0 * min(1.0, len(snippet_words & hook_words) / 3)
    if set(_words(text)) & HEDGES:
        score -= 1.0
    return _clamp(score)


def grade_actionability(draft: CandidateDraft) -> float:
    """Action prompt is a direct question or starts with a doable verb."""
    words = _words(draft.action_prompt)
    if not words:
        return 0.0
    score = 1.0
    if words[0] in ACTION_VERBS:
        score += 2.5
    if draft.action_prompt.rstrip().endswith("?"):
        score += 1.5
    if set(words) & HEDGES:
        score -= 1.5
    return _clamp(score)


def grade_novelty(draft: CandidateDraft, paragraph: str) -> float:
    """Less verbatim overlap with the paragraph means more new information."""
    hook_words = {w for w in _words(draft.hook) if len(w) > 3}
    if not hook_words:
        return 0.0
    para_words = {w for w in _words(paragraph) if len(w) > 3}
    overlap = len(hook_words & para_words) / len(hook_words)
    return _clamp(5.0 * (1.0 - overlap))


def grade_tension(draft: CandidateDraft) -> float:
    """Contrast language, weighted up for tension-type drafts."""
    markers = len(set(_words(f"{draft.hook} {draft.why_now}")) & CONTRAST_MARKERS)
    score = 1.0 + 1.25 * markers
    if draft.type.value == "tension":
        score += 1.0
    return _clamp(score)


def compute_judge_scores(draft: CandidateDraft, paragraph: str) -> JudgeScores:
    tension = grade_tension(draft)
    actionability = grade_actionability(draft)
    novelty = grade_novelty(draft, paragraph)
    specificity = grade_specificity(draft)
    overall = (
        WEIGHTS["tension"] * tension
        + WEIGHTS["actionability"] * actionability
        + WEIGHTS["novelty"] * novelty
        + WEIGHTS["specificity"] * specificity
    )
    return JudgeScores(
        tension_score=tension,
        actionability_score=actionability,
        novelty_score=novelty,
        specificity_score=specificity,
        overall_utility=_clamp(overall),
    )


class DeterministicJudge:
    """CandidateJudge that never touches the network."""

    async def judge(
        self,
        drafts: list[CandidateDraft],
        paragraph: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ):
        from margin_engine.chains.judge_margin_candidates import JudgeOutcome

        if cancel_token:
            cancel_token.raise_if_cancelled()
        if not drafts:
            return JudgeOutcome(failure_mode=FailureMode.JUDGE_EMPTY)
        judged = [
            JudgedCandidate.from_draft(d, compute_judge_scores(d, paragraph)) for d in drafts
        ]
        logger.debug(f"Deterministic judge scored {len(judged)} drafts")
        return JudgeOutcome(judged=judged)
