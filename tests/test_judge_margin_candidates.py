"""Tests for the LLM judge and the deterministic graders."""

import json

import pytest

from margin_engine.chains.judge_margin_candidates import (
    LLMCandidateJudge,
    build_judge_prompt,
    normalize_judge_score,
    parse_judge_output,
)
from margin_engine.core.margin_graders import (
    DeterministicJudge,
    compute_judge_scores,
    grade_actionability,
    grade_novelty,
    grade_specificity,
)
from margin_engine.core.schemas_margin import CandidateDraft, FailureMode, NudgeType
from tests.fakes.fake_margin import ScriptedCompletionService


def _draft(**overrides) -> CandidateDraft:
    base = dict(
        type=NudgeType.TENSION,
        hook="On 1/10 you told Sam no more weekend calls.",
        why_now="You just booked another Saturday call.",
        action_prompt="What made this one different?",
        evidence_memory_id="m1",
        evidence_memory_date="2025-01-10",
        evidence_memory_snippet="Told Sam I'd stop taking weekend calls",
        model_confidence=0.9,
        retrieval_strength_normalized=0.2,
    )
    base.update(overrides)
    return CandidateDraft(**base)


PARAGRAPH = "Booked another Saturday call with the Denver client, it seemed easier than saying no."


class TestParseJudgeOutput:
    def test_scores_attached_by_index(self):
        drafts = [_draft(), _draft(type=NudgeType.CALLBACK)]
        raw = json.dumps({"scores": [
            {"index": 1, "tensionScore": 2, "actionabilityScore": 3, "noveltyScore": 4,
             "specificityScore": 3.5, "overallUtility": 3.2},
            {"index": 0, "tensionScore": 5, "actionabilityScore": 4, "noveltyScore": 4,
             "specificityScore": 4, "overallUtility": 4.5},
        ]})

        outcome = parse_judge_output(raw, drafts)

        assert outcome.failure_mode is None
        assert [j.type for j in outcome.judged] == [NudgeType.CALLBACK, NudgeType.TENSION]
        assert outcome.judged[1].overall_utility == 4.5
        assert outcome.judged[0].hook == drafts[1].hook

    def test_scores_clamped(self):
        raw = json.dumps([{"index": 0, "tensionScore": 9, "overallUtility": -2, "noveltyScore": "high"}])

        judged = parse_judge_output(raw, [_draft()]).judged[0]

        assert judged.tension_score == 5.0
        assert judged.overall_utility == 0.0
        assert judged.novelty_score == 0.0

    def test_out_of_range_and_duplicate_indexes_ignored(self):
        raw = json.dumps({"scores": [
            {"index": 0, "overallUtility": 4},
            {"index": 0, "overallUtility": 1},
            {"index": 7, "overallUtility": 5},
        ]})

        outcome = parse_judge_output(raw, [_draft()])

        assert len(outcome.judged) == 1
        assert outcome.judged[0].overall_utility == 4.0

    def test_empty_text_is_judge_empty(self):
        assert parse_judge_output("", [_draft()]).failure_mode == FailureMode.JUDGE_EMPTY

    def test_no_scores_is_judge_empty(self):
        assert parse_judge_output('{"scores": []}', [_draft()]).failure_mode == FailureMode.JUDGE_EMPTY

    @pytest.mark.parametrize("raw", ["I think they're all good.", "{scores: [}", '{"scores": 3}'])
    def test_unparseable_is_judge_parse_error(self, raw):
        assert parse_judge_output(raw, [_draft()]).failure_mode == FailureMode.JUDGE_PARSE_ERROR


@pytest.mark.parametrize("value,expected", [(3, 3.0), (7.5, 5.0), (-1, 0.0), (None, 0.0), (True, 0.0)])
def test_normalize_judge_score(value, expected):
    assert normalize_judge_score(value) == expected


def test_judge_prompt_lists_every_draft():
    prompt = build_judge_prompt([_draft(), _draft(type=NudgeType.EYEBROW_RAISE)], PARAGRAPH)

    assert "[0] type=tension" in prompt
    assert "[1] type=eyebrow_raise" in prompt
    assert PARAGRAPH in prompt


class TestLLMCandidateJudge:
    @pytest.mark.asyncio
    async def test_single_batched_call(self):
        service = ScriptedCompletionService([json.dumps({"scores": [
            {"index": 0, "overallUtility": 4}, {"index": 1, "overallUtility": 3},
        ]})])

        outcome = await LLMCandidateJudge(service).judge([_draft(), _draft()], PARAGRAPH)

        assert service.call_count == 1
        assert len(outcome.judged) == 2

    @pytest.mark.asyncio
    async def test_no_drafts_skips_call(self):
        service = ScriptedCompletionService()

        outcome = await LLMCandidateJudge(service).judge([], PARAGRAPH)

        assert outcome.failure_mode == FailureMode.JUDGE_EMPTY
        assert service.call_count == 0


class TestDeterministicGraders:
    def test_specific_draft_scores_higher_than_vague(self):
        vague = _draft(
            hook="Perhaps there is something here worth noticing.",
            why_now="Maybe it matters.",
            evidence_memory_snippet="A different memory entirely",
        )

        assert grade_specificity(_draft()) > grade_specificity(vague)

    def test_actionability(self):
        assert grade_actionability(_draft(action_prompt="Ask Sam about Saturday?")) == 5.0
        assert grade_actionability(_draft(action_prompt="Perhaps reflect on it.")) < 1.0

    def test_novelty_drops_with_paragraph_overlap(self):
        echo = _draft(hook="Booked another Saturday call with the Denver client.")

        assert grade_novelty(echo, PARAGRAPH) < grade_novelty(_draft(), PARAGRAPH)

    def test_scores_in_range(self):
        scores = compute_judge_scores(_draft(), PARAGRAPH)

        for value in scores.model_dump().values():
            assert 0.0 <= value <= 5.0

    @pytest.mark.asyncio
    async def test_deterministic_judge(self):
        outcome = await DeterministicJudge().judge([_draft()], PARAGRAPH)

        assert outcome.failure_mode is None
        assert outcome.judged[0].evidence_memory_id == "m1"
