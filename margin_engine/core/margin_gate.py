"""Hard pass/fail gate applied after judging, before ranking.

Checks run in a fixed order and the first failure names the rejection.
The evidence anchor check is unconditional: no tuning can let an
unanchored nudge through.
"""

from collections import Counter

from margin_engine.core.schemas_margin import GateResult, JudgedCandidate
from margin_engine.core.schemas_tuning import MarginServerTuning


def rejection_reason(candidate: JudgedCandidate, server: MarginServerTuning) -> str | None:
    if not candidate.evidence_memory_date or not candidate.evidence_memory_snippet:
        return "missing_evidence_anchor"
    if candidate.model_confidence < server.min_model_confidence:
        return "model_confidence"
    if candidate.overall_utility < server.min_overall_utility:
        return "overall_utility"
    if candidate.specificity_score < server.min_specificity_score:
        return "specificity"
    if candidate.actionability_score < server.min_actionability_score:
        return "actionability"
    return None


def apply_gate(candidates: list[JudgedCandidate], server: MarginServerTuning) -> GateResult:
    accepted = []
    rejections: Counter[str] = Counter()
    for candidate in candidates:
        reason = rejection_reason(candidate, server)
        if reason:
            rejections[reason] += 1
            continue
        accepted.append(candidate)
    return GateResult(accepted=accepted, rejection_counts=dict(rejections))
