"""Rank gated candidates and pick up to three with type diversity.

Base score:
    0.55 * utility + 0.2 * retrieval_strength * 5 + 0.15 * novelty
    + 0.1 * personalization

History adjustments, both computed from the three most recent nudges:
    - repetition: -0.45 when the cited memory or the first four hook words
      match one of the last three nudges
    - type mix: +0.2 * (target_share * max(1, total) - count_so_far)

Selection takes the best candidate of each distinct type first, then fills
remaining slots by score regardless of type.
"""

from margin_engine.core.schemas_margin import (
    TARGET_MIX,
    HistoricalNudge,
    JudgedCandidate,
    NudgeType,
    PersonalizationContext,
    count_by_type,
)

MAX_SELECTED = 3
RECENT_WINDOW = 3
REPETITION_PENALTY = 0.45
MIX_BOOST_WEIGHT = 0.2
HOOK_PREFIX_WORDS = 4


def base_rank_score(candidate: JudgedCandidate) -> float:
    return (
        0.55 * candidate.overall_utility
        + 0.2 * candidate.retrieval_strength_normalized * 5
        + 0.15 * candidate.novelty_score
        + 0.1 * candidate.personalization_weight
    )


def hook_prefix(hook: str) -> str:
    return " ".join(hook.lower().split()[:HOOK_PREFIX_WORDS])


def mix_priority(nudge_type: NudgeType, type_counts: dict[NudgeType, int]) -> float:
    total = sum(type_counts.values())
    expected = TARGET_MIX[nudge_type] * max(total, 1)
    return expected - type_counts.get(nudge_type, 0)


def is_repetition(candidate: JudgedCandidate, recent: list[HistoricalNudge]) -> bool:
    recent_ids = {h.evidence_memory_id for h in recent if h.evidence_memory_id}
    if candidate.evidence_memory_id and candidate.evidence_memory_id in recent_ids:
        return True
    recent_prefixes = {hook_prefix(h.hook) for h in recent if h.hook}
    return hook_prefix(candidate.hook) in recent_prefixes


def apply_personalization(
    candidates: list[JudgedCandidate],
    personalization: PersonalizationContext | None,
) -> list[JudgedCandidate]:
    if personalization is None:
        return candidates
    return [
        c.model_copy(update={
            "personalization_weight": personalization.weight_for(c.type, c.personalization_weight)
        })
        for c in candidates
    ]


def score_candidates(
    candidates: list[JudgedCandidate],
    history: list[HistoricalNudge],
) -> list[JudgedCandidate]:
    """Attach adjusted rank scores. History is most-recent-first."""
    recent = history[:RECENT_WINDOW]
    type_counts = count_by_type(recent)

    scored = []
    for candidate in candidates:
        score = base_rank_score(candidate)
        score += MIX_BOOST_WEIGHT * mix_priority(candidate.type, type_counts)
        if is_repetition(candidate, recent):
            score -= REPETITION_PENALTY
        scored.append(candidate.model_copy(update={"rank_score": score}))
    return scored


def select_diverse(scored: list[JudgedCandidate], limit: int = MAX_SELECTED) -> list[JudgedCandidate]:
    ordered = sorted(scored, key=lambda c: c.rank_score, reverse=True)

    picked: list[int] = []
    picked_types: set[NudgeType] = set()
    for i, candidate in enumerate(ordered):
        if len(picked) >= limit:
            break
        if candidate.type in picked_types:
            continue
        picked.append(i)
        picked_types.add(candidate.type)

    for i in range(len(ordered)):
        if len(picked) >= limit:
            break
        if i not in picked:
            picked.append(i)

    selected = [ordered[i] for i in picked]
    selected.sort(key=lambda c: c.rank_score, reverse=True)
    return selected


def rank_and_diversify(
    candidates: list[JudgedCandidate],
    history: list[HistoricalNudge],
    personalization: PersonalizationContext | None = None,
    limit: int = MAX_SELECTED,
) -> list[JudgedCandidate]:
    personalized = apply_personalization(candidates, personalization)
    return select_diverse(score_candidates(personalized, history), limit)
