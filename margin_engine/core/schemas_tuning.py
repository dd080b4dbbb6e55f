"""Tuning settings for margin intelligence.

Two entry points:
- MarginTuningSettings validates strictly (stored writes via the API).
- coerce_margin_tuning() clamps whatever the editor's lab panel sends, so a
  live experiment never fails a run.
"""

from typing import Any

from pydantic import Field
from pydantic.alias_generators import to_camel

from margin_engine.core.schemas_margin import CamelModel

# name -> (default, min, max)
CLIENT_LIMITS: dict[str, tuple[float, float, float]] = {
    "debounce_ms": (3500, 500, 15000),
    "min_paragraph_length": (30, 10, 500),
    "min_paragraph_words": (8, 1, 60),
    "min_query_gap_ms": (7000, 0, 60000),
    "annotation_cooldown_ms": (20000, 0, 180000),
    "max_annotations_per_entry": (8, 1, 30),
    "min_paragraph_gap": (0, 0, 20),
}

SERVER_LIMITS: dict[str, tuple[float, float, float]] = {
    "min_paragraph_words": (6, 1, 40),
    "min_activation_score": (0.09, 0.01, 1),
    "min_top_activation": (0.11, 0.01, 1),
    "min_top_gap": (0.015, 0, 0.5),
    "strong_top_override": (0.17, 0.01, 1),
    "min_model_confidence": (0.72, 0.01, 1),
    "max_memories_context": (4, 1, 12),
    "max_implications_context": (2, 0, 8),
    "min_overall_utility": (3.0, 0, 5),
    "min_specificity_score": (2.5, 0, 5),
    "min_actionability_score": (2.5, 0, 5),
}

PROMPT_ADDENDUM_MAX_CHARS = 12000
PROMPT_OVERRIDE_MAX_CHARS = 24000


def _bounded(limits: tuple[float, float, float]) -> Any:
    default, low, high = limits
    return Field(default=default, ge=low, le=high)


class MarginClientTuning(CamelModel):
    """Editor-side pacing."""

    debounce_ms: int = _bounded(CLIENT_LIMITS["debounce_ms"])
    min_paragraph_length: int = _bounded(CLIENT_LIMITS["min_paragraph_length"])
    min_paragraph_words: int = _bounded(CLIENT_LIMITS["min_paragraph_words"])
    min_query_gap_ms: int = _bounded(CLIENT_LIMITS["min_query_gap_ms"])
    annotation_cooldown_ms: int = _bounded(CLIENT_LIMITS["annotation_cooldown_ms"])
    max_annotations_per_entry: int = _bounded(CLIENT_LIMITS["max_annotations_per_entry"])
    min_paragraph_gap: int = _bounded(CLIENT_LIMITS["min_paragraph_gap"])


class MarginServerTuning(CamelModel):
    """Retrieval signal and gate thresholds."""

    min_paragraph_words: int = _bounded(SERVER_LIMITS["min_paragraph_words"])
    min_activation_score: float = _bounded(SERVER_LIMITS["min_activation_score"])
    min_top_activation: float = _bounded(SERVER_LIMITS["min_top_activation"])
    min_top_gap: float = _bounded(SERVER_LIMITS["min_top_gap"])
    strong_top_override: float = _bounded(SERVER_LIMITS["strong_top_override"])
    min_model_confidence: float = _bounded(SERVER_LIMITS["min_model_confidence"])
    max_memories_context: int = _bounded(SERVER_LIMITS["max_memories_context"])
    max_implications_context: int = _bounded(SERVER_LIMITS["max_implications_context"])
    min_overall_utility: float = _bounded(SERVER_LIMITS["min_overall_utility"])
    min_specificity_score: float = _bounded(SERVER_LIMITS["min_specificity_score"])
    min_actionability_score: float = _bounded(SERVER_LIMITS["min_actionability_score"])


class MarginTuningSettings(CamelModel):
    version: int = Field(default=1, ge=1)
    client: MarginClientTuning = Field(default_factory=MarginClientTuning)
    server: MarginServerTuning = Field(default_factory=MarginServerTuning)
    prompt_addendum: str = Field(default="", max_length=PROMPT_ADDENDUM_MAX_CHARS)
    prompt_override: str = Field(default="", max_length=PROMPT_OVERRIDE_MAX_CHARS)


DEFAULT_MARGIN_TUNING = MarginTuningSettings()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _clamp_number(value: Any, limits: tuple[float, float, float]) -> float:
    default, low, high = limits
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
        value = default
    clamped = min(high, max(low, value))
    if isinstance(default, int):
        return int(clamped)
    return float(clamped)


def _coerce_group(raw: dict[str, Any], limits: dict[str, tuple[float, float, float]]) -> dict:
    out = {}
    for name, bounds in limits.items():
        value = raw.get(to_camel(name), raw.get(name))
        out[name] = _clamp_number(value, bounds)
    return out


def _clean_text(value: Any, max_len: int) -> str:
    if not isinstance(value, str):
        return ""
    return value[:max_len]


def coerce_margin_tuning(raw: Any) -> MarginTuningSettings:
    """Leniently coerce arbitrary input into valid tuning settings."""
    root = _as_dict(raw)
    version = root.get("version")
    return MarginTuningSettings(
        version=version if isinstance(version, int) and not isinstance(version, bool) and version >= 1 else 1,
        client=MarginClientTuning(**_coerce_group(_as_dict(root.get("client")), CLIENT_LIMITS)),
        server=MarginServerTuning(**_coerce_group(_as_dict(root.get("server")), SERVER_LIMITS)),
        prompt_addendum=_clean_text(
            root.get("promptAddendum", root.get("prompt_addendum")), PROMPT_ADDENDUM_MAX_CHARS
        ),
        prompt_override=_clean_text(
            root.get("promptOverride", root.get("prompt_override")), PROMPT_OVERRIDE_MAX_CHARS
        ),
    )
