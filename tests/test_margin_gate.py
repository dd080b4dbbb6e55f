"""Tests for the post-judge gate."""

from margin_engine.core.margin_gate import apply_gate, rejection_reason
from margin_engine.core.schemas_margin import JudgedCandidate, NudgeType
from margin_engine.core.schemas_tuning import MarginServerTuning

SERVER = MarginServerTuning()
PERMISSIVE = MarginServerTuning(
    min_model_confidence=0.01,
    min_overall_utility=0,
    min_specificity_score=0,
    min_actionability_score=0,
)


def _judged(**overrides) -> JudgedCandidate:
    base = dict(
        type=NudgeType.TENSION,
        hook="On 1/10 you told Sam no more weekend calls.",
        why_now="You just booked another Saturday call.",
        action_prompt="What made this one different?",
        evidence_memory_id="m1",
        evidence_memory_date="2025-01-10",
        evidence_memory_snippet="Told Sam I'd stop taking weekend calls",
        model_confidence=0.9,
        overall_utility=4.0,
        specificity_score=4.0,
        actionability_score=3.5,
        novelty_score=3.0,
        tension_score=4.0,
    )
    base.update(overrides)
    return JudgedCandidate(**base)


def test_good_candidate_passes():
    assert rejection_reason(_judged(), SERVER) is None


def test_missing_anchor_rejected_even_when_permissive():
    assert rejection_reason(_judged(evidence_memory_date=None), PERMISSIVE) == "missing_evidence_anchor"
    assert rejection_reason(_judged(evidence_memory_snippet=""), PERMISSIVE) == "missing_evidence_anchor"


def test_first_failing_check_names_rejection():
    candidate = _judged(model_confidence=0.5, overall_utility=1.0, specificity_score=0.0)

    assert rejection_reason(candidate, SERVER) == "model_confidence"


def test_threshold_checks():
    assert rejection_reason(_judged(overall_utility=2.9), SERVER) == "overall_utility"
    assert rejection_reason(_judged(specificity_score=2.0), SERVER) == "specificity"
    assert rejection_reason(_judged(actionability_score=1.0), SERVER) == "actionability"


def test_apply_gate_counts_rejections():
    result = apply_gate(
        [
            _judged(),
            _judged(evidence_memory_date=None),
            _judged(overall_utility=1.0),
            _judged(overall_utility=2.0),
        ],
        SERVER,
    )

    assert len(result.accepted) == 1
    assert result.rejection_counts == {"missing_evidence_anchor": 1, "overall_utility": 2}
