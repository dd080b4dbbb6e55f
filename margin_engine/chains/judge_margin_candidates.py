"""Score candidate nudges along quality axes.

LLMCandidateJudge makes a second completion call that grades every draft in
one batch. Scores are clamped to [0, 5]; drafts the judge skipped are dropped.

    no text / no scores            -> judge_empty
    no JSON block / bad JSON shape -> judge_parse_error
"""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from margin_engine.core.cancellation import CancelToken
from margin_engine.core.llm import NoJsonBlock, TextCompletionService, parse_embedded_json
from margin_engine.core.logging import get_logger
from margin_engine.core.schemas_margin import (
    CandidateDraft,
    FailureMode,
    JudgedCandidate,
    JudgeScores,
)

logger = get_logger(__name__)

SCORE_FIELDS = {
    "tension_score": ("tensionScore", "tension_score", "tension"),
    "actionability_score": ("actionabilityScore", "actionability_score", "actionability"),
    "novelty_score": ("noveltyScore", "novelty_score", "novelty"),
    "specificity_score": ("specificityScore", "specificity_score", "specificity"),
    "overall_utility": ("overallUtility", "overall_utility", "utility"),
}

JUDGE_PROMPT = """You are a strict editor grading margin notes for a personal journal.

PARAGRAPH THE WRITER JUST WROTE:
"{paragraph}"

CANDIDATE NOTES:
{candidates}

Score each candidate from 0 to 5 on:
- tensionScore: does it surface a real contradiction or unresolved pull?
- actionabilityScore: could the writer act on the action prompt in the next few minutes?
- noveltyScore: would the writer NOT have noticed this on their own?
- specificityScore: does it name concrete people, dates or events from the cited memory?
- overallUtility: would a thoughtful friend be glad they said it?

Be harsh. Generic, therapy-speak, or stretched connections score 0-2.

JSON only:
{{"scores": [{{"index": 0, "tensionScore": 0, "actionabilityScore": 0, "noveltyScore": 0, "specificityScore": 0, "overallUtility": 0}}]}}"""


class CandidateJudge(Protocol):
    async def judge(
        self,
        drafts: list[CandidateDraft],
        paragraph: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> "JudgeOutcome": ...


@dataclass
class JudgeOutcome:
    judged: list[JudgedCandidate] = field(default_factory=list)
    failure_mode: FailureMode | None = None


def normalize_judge_score(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        return 0.0
    return min(5.0, max(0.0, float(value)))


def scores_from_raw(raw: dict[str, Any]) -> JudgeScores:
    values = {}
    for name, keys in SCORE_FIELDS.items():
        value = next((raw[k] for k in keys if k in raw), None)
        values[name] = normalize_judge_score(value)
    return JudgeScores(**values)


def format_candidates(drafts: list[CandidateDraft]) -> str:
    lines = []
    for i, d in enumerate(drafts):
        lines.append(
            f"[{i}] type={d.type.value}\n"
            f"    hook: {d.hook}\n"
            f"    whyNow: {d.why_now}\n"
            f"    actionPrompt: {d.action_prompt}\n"
            f"    memory: [{d.evidence_memory_date or 'none'}] {d.evidence_memory_snippet or '(none)'}"
        )
    return "\n".join(lines)


def build_judge_prompt(drafts: list[CandidateDraft], paragraph: str) -> str:
    return JUDGE_PROMPT.format(paragraph=paragraph, candidates=format_candidates(drafts))


def parse_judge_output(raw_text: str, drafts: list[CandidateDraft]) -> JudgeOutcome:
    if not raw_text or not raw_text.strip():
        return JudgeOutcome(failure_mode=FailureMode.JUDGE_EMPTY)

    try:
        parsed = parse_embedded_json(raw_text)
    except (NoJsonBlock, json.JSONDecodeError) as e:
        logger.warning(f"Judge output unparseable: {e}; head={raw_text[:200]!r}")
        return JudgeOutcome(failure_mode=FailureMode.JUDGE_PARSE_ERROR)

    entries = parsed.get("scores", []) if isinstance(parsed, dict) else parsed
    if not isinstance(entries, list):
        return JudgeOutcome(failure_mode=FailureMode.JUDGE_PARSE_ERROR)

    judged: list[JudgedCandidate] = []
    seen: set[int] = set()
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        index = entry.get("index", position)
        if not isinstance(index, int) or not 0 <= index < len(drafts) or index in seen:
            continue
        seen.add(index)
        judged.append(JudgedCandidate.from_draft(drafts[index], scores_from_raw(entry)))

    if not judged:
        return JudgeOutcome(failure_mode=FailureMode.JUDGE_EMPTY)
    return JudgeOutcome(judged=judged)


class LLMCandidateJudge:
    """Batch judge backed by a text-completion service."""

    def __init__(self, service: TextCompletionService):
        self.service = service

    async def judge(
        self,
        drafts: list[CandidateDraft],
        paragraph: str,
        *,
        timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ) -> JudgeOutcome:
        if not drafts:
            return JudgeOutcome(failure_mode=FailureMode.JUDGE_EMPTY)
        raw_text = await self.service.complete(
            build_judge_prompt(drafts, paragraph),
            timeout=timeout,
            cancel_token=cancel_token,
        )
        return parse_judge_output(raw_text, drafts)
