"""Feedback-driven personalization weights.

The mapping from feedback history to weight is policy, not physics; every
constant lives in Settings so it can be tuned without a deploy:

    weight(type) = clamp(
        base + up_step * ups - down_step * downs
        - sum(reason_penalty[reason] * downs_with_reason),
        min_weight, max_weight,
    )
"""

from collections import defaultdict
from dataclasses import dataclass, field

from margin_engine.core.config import Settings, get_settings
from margin_engine.core.schemas_margin import (
    FeedbackSignal,
    FeedbackValue,
    NudgeType,
    PersonalizationContext,
)


@dataclass
class PersonalizationPolicy:
    base_weight: float = 2.5
    up_step: float = 0.25
    down_step: float = 0.2
    min_weight: float = 0.0
    max_weight: float = 5.0
    reason_penalties: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PersonalizationPolicy":
        settings = settings or get_settings()
        return cls(
            base_weight=settings.PERSONALIZATION_BASE_WEIGHT,
            up_step=settings.PERSONALIZATION_UP_STEP,
            down_step=settings.PERSONALIZATION_DOWN_STEP,
            min_weight=settings.PERSONALIZATION_MIN_WEIGHT,
            max_weight=settings.PERSONALIZATION_MAX_WEIGHT,
            reason_penalties=dict(settings.PERSONALIZATION_REASON_PENALTIES),
        )


def build_personalization_context(
    signals: list[FeedbackSignal],
    policy: PersonalizationPolicy,
) -> PersonalizationContext:
    ups: dict[NudgeType, int] = defaultdict(int)
    downs: dict[NudgeType, int] = defaultdict(int)
    reason_loss: dict[NudgeType, float] = defaultdict(float)

    for signal in signals:
        if signal.value == FeedbackValue.UP:
            ups[signal.type] += 1
        else:
            downs[signal.type] += 1
            if signal.reason is not None:
                reason_loss[signal.type] += policy.reason_penalties.get(signal.reason.value, 0.0)

    weights = {}
    for nudge_type in NudgeType:
        raw = (
            policy.base_weight
            + policy.up_step * ups[nudge_type]
            - policy.down_step * downs[nudge_type]
            - reason_loss[nudge_type]
        )
        weights[nudge_type] = min(policy.max_weight, max(policy.min_weight, raw))

    return PersonalizationContext(
        type_weights=weights,
        reason_penalties=dict(policy.reason_penalties),
    )
