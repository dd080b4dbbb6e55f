"""Tests for draft normalization (word ceilings and filters)."""

import pytest

from margin_engine.core.margin_normalize import (
    ACTION_PROMPT_MAX_WORDS,
    HOOK_MAX_WORDS,
    normalize_candidate,
    normalize_candidates,
    trim_to_words,
)
from margin_engine.core.schemas_margin import FailureMode, NudgeType
from tests.fakes.fake_margin import memory, raw_candidate

EVIDENCE = [memory("m1", 0.4), memory("m2", 0.2)]


def _words(n: int) -> str:
    return " ".join(f"word{i}" for i in range(n))


class TestTrimToWords:
    def test_short_text_untouched(self):
        assert trim_to_words("You said no weekend calls.", 14) == "You said no weekend calls."

    def test_long_text_truncated_with_period(self):
        assert trim_to_words("one two three, four five", 3) == "one two three."

    def test_collapses_whitespace(self):
        assert trim_to_words("a   b\n c", 5) == "a b c"


class TestNormalizeCandidate:
    def test_valid_draft_trimmed_not_rejected(self):
        raw = raw_candidate(hook=_words(20), actionPrompt=_words(15))

        draft, rejection = normalize_candidate(raw, 0.2, 0.72)

        assert rejection is None
        assert len(draft.hook.split()) == HOOK_MAX_WORDS
        assert draft.hook.endswith(".")
        assert len(draft.action_prompt.split()) == ACTION_PROMPT_MAX_WORDS
        assert draft.type == NudgeType.TENSION
        assert draft.model_confidence == 0.9
        assert draft.retrieval_strength_normalized == 0.2

    def test_unknown_type_filtered(self):
        draft, rejection = normalize_candidate(raw_candidate(type="insight"), 0.2, 0.72)

        assert draft is None
        assert rejection == FailureMode.FILTERED_TYPE

    @pytest.mark.parametrize("field", ["hook", "whyNow", "actionPrompt"])
    def test_missing_text_filtered(self, field):
        draft, rejection = normalize_candidate(raw_candidate(**{field: "   "}), 0.2, 0.72)

        assert draft is None
        assert rejection == FailureMode.FILTERED_TEXT

    def test_low_confidence_filtered(self):
        draft, rejection = normalize_candidate(raw_candidate(confidence=0.5), 0.2, 0.72)

        assert draft is None
        assert rejection == FailureMode.FILTERED_CONFIDENCE

    def test_confidence_clamped_and_snake_case_accepted(self):
        raw = raw_candidate()
        del raw["confidence"]
        raw["model_confidence"] = 3
        raw["why_now"] = raw.pop("whyNow")

        draft, rejection = normalize_candidate(raw, 0.2, 0.72)

        assert rejection is None
        assert draft.model_confidence == 1.0
        assert draft.why_now == "You just booked another Saturday call."

    def test_missing_anchor_is_not_a_filter(self):
        raw = raw_candidate(evidenceMemoryDate=None, evidenceMemorySnippet="")

        draft, rejection = normalize_candidate(raw, 0.2, 0.72)

        assert rejection is None
        assert draft.evidence_memory_date is None
        assert draft.evidence_memory_snippet is None


class TestNormalizeCandidates:
    def test_strength_from_cited_memory(self):
        drafts, counts, failure = normalize_candidates(
            [raw_candidate(evidenceMemoryId="m2")], EVIDENCE, 0.4, 0.72
        )

        assert failure is None
        assert counts == {}
        assert drafts[0].retrieval_strength_normalized == pytest.approx(0.1)

    def test_partial_filtering_keeps_survivors(self):
        drafts, counts, failure = normalize_candidates(
            [raw_candidate(), raw_candidate(type="bogus")], EVIDENCE, 0.4, 0.72
        )

        assert failure is None
        assert len(drafts) == 1
        assert counts == {"filtered_type": 1}

    def test_all_filtered_reports_most_common_filter(self):
        raws = [
            raw_candidate(confidence=0.1),
            raw_candidate(confidence=0.2),
            raw_candidate(hook=""),
        ]

        drafts, counts, failure = normalize_candidates(raws, EVIDENCE, 0.4, 0.72)

        assert drafts == []
        assert failure == FailureMode.FILTERED_CONFIDENCE
        assert counts == {"filtered_confidence": 2, "filtered_text": 1}

    def test_tie_prefers_earlier_filter(self):
        raws = [raw_candidate(confidence=0.1), raw_candidate(hook="")]

        _, _, failure = normalize_candidates(raws, EVIDENCE, 0.4, 0.72)

        assert failure == FailureMode.FILTERED_TEXT

    def test_nothing_to_normalize_is_model_empty(self):
        drafts, counts, failure = normalize_candidates([], EVIDENCE, 0.4, 0.72)

        assert drafts == []
        assert failure == FailureMode.MODEL_EMPTY
