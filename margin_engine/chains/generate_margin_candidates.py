"""Draft candidate margin nudges from retrieved evidence.

One completion call per run. The model sees the paragraph just written, the
entry so far, the strongest memories and a few implications, and returns a
small JSON array of drafts. Parsing failures map onto run failure modes:

    empty text       -> model_empty
    no {...}/[...]   -> no_json
    json.loads fails -> json_parse_error
"""

import json
from dataclasses import dataclass, field
from typing import Any

from margin_engine.core.cancellation import CancelToken
from margin_engine.core.llm import NoJsonBlock, TextCompletionService, parse_embedded_json
from margin_engine.core.logging import get_logger
from margin_engine.core.schemas_margin import EvidenceItem, FailureMode

logger = get_logger(__name__)

ENTRY_MAX_CHARS = 1500

MARGIN_PROMPT = """You are a margin annotator for a personal journal. You can see the writer's past memories. Draft up to 3 short margin nudges, or none.

TODAY: {entry_date}

ENTRY SO FAR:
{entry}

PARAGRAPH JUST WRITTEN:
"{paragraph}"

PAST MEMORIES (cite by id):
{memories}

PATTERNS:
{implications}

NUDGE TYPES:
- tension: name a concrete contradiction between the paragraph and a specific memory. "On 2/14 you said X. Now Y."
- callback: bring back a specific earlier moment the paragraph echoes without saying so.
- eyebrow_raise: flag a pattern or blind spot a sharp friend would quietly notice.

WHEN TO DRAFT (all must hold):
- There is a DIRECT connection between the paragraph and one specific memory.
- The connection shows something the writer likely hasn't noticed.
- A thoughtful friend reading both would spot the same thing.

WHEN TO STAY SILENT:
- The memory only shares a name or topic with the paragraph.
- The paragraph is mundane, logistical, or purely descriptive.
- You'd have to stretch. Empty is always better than forced.

STRICT RULES:
- hook: one sentence, at most 14 words, concrete (who, when, what).
- whyNow: at most 12 words on why it matters right now.
- actionPrompt: at most 9 words, a question or small next step.
- Every nudge cites exactly one memory: its id, date and a short snippet.
- No therapy-speak. No "perhaps". No "have you considered". No "how did that feel".
{addendum}
JSON only:
{{"candidates": [{{"type": "tension" | "callback" | "eyebrow_raise", "hook": "...", "whyNow": "...", "actionPrompt": "...", "evidenceMemoryId": "...", "evidenceMemoryDate": "YYYY-MM-DD", "evidenceMemorySnippet": "...", "confidence": 0.0}}]}}

Nothing worth saying? {{"candidates": []}}"""


@dataclass
class GenerationOutcome:
    raw_candidates: list[dict[str, Any]] = field(default_factory=list)
    failure_mode: FailureMode | None = None
    raw_text: str = ""


def format_memories(memories: list[EvidenceItem]) -> str:
    return "\n".join(f"[{m.date or 'undated'}] (id:{m.id}) {m.snippet}" for m in memories)


def format_implications(implications: list[EvidenceItem]) -> str:
    return "\n".join(f"- {i.snippet}" for i in implications)


def build_margin_prompt(
    paragraph: str,
    full_entry: str,
    entry_date: str,
    memories: list[EvidenceItem],
    implications: list[EvidenceItem],
    prompt_addendum: str = "",
    prompt_override: str = "",
) -> str:
    entry = full_entry if len(full_entry) <= ENTRY_MAX_CHARS else full_entry[:ENTRY_MAX_CHARS] + "..."
    memories_context = format_memories(memories) or "(none)"
    implications_context = format_implications(implications) or "(none)"

    if prompt_override.strip():
        return (
            prompt_override
            .replace("{{entryDate}}", entry_date)
            .replace("{{entry}}", entry)
            .replace("{{paragraph}}", paragraph)
            .replace("{{memories}}", memories_context)
            .replace("{{implications}}", implications_context)
        )

    addendum = ""
    if prompt_addendum.strip():
        addendum = f"\nEXTRA DIRECTIVE FROM USER:\n{prompt_addendum.strip()}\n"

    return MARGIN_PROMPT.format(
        entry_date=entry_date,
        entry=entry,
        paragraph=paragraph,
        memories=memories_context,
        implications=implications_context,
        addendum=addendum,
    )


def parse_candidates(raw_text: str) -> GenerationOutcome:
    """Turn raw model text into raw candidate dicts or a failure mode."""
    if not raw_text or not raw_text.strip():
        return GenerationOutcome(failure_mode=FailureMode.MODEL_EMPTY)

    try:
        parsed = parse_embedded_json(raw_text)
    except NoJsonBlock:
        return GenerationOutcome(failure_mode=FailureMode.NO_JSON, raw_text=raw_text)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse margin candidates: {e}; head={raw_text[:200]!r}")
        return GenerationOutcome(failure_mode=FailureMode.JSON_PARSE_ERROR, raw_text=raw_text)

    if isinstance(parsed, dict):
        entries = parsed.get("candidates", parsed.get("nudges", []))
    else:
        entries = parsed
    if not isinstance(entries, list):
        return GenerationOutcome(failure_mode=FailureMode.JSON_PARSE_ERROR, raw_text=raw_text)

    raw_candidates = [e for e in entries if isinstance(e, dict)]
    if not raw_candidates:
        return GenerationOutcome(failure_mode=FailureMode.MODEL_EMPTY, raw_text=raw_text)

    return GenerationOutcome(raw_candidates=raw_candidates, raw_text=raw_text)


async def generate_margin_candidates(
    service: TextCompletionService,
    prompt: str,
    *,
    timeout: float | None = None,
    cancel_token: CancelToken | None = None,
) -> GenerationOutcome:
    """Call the completion service once and parse its drafts.

    Cancellation and timeouts propagate to the caller.
    """
    raw_text = await service.complete(prompt, timeout=timeout, cancel_token=cancel_token)
    outcome = parse_candidates(raw_text)
    logger.debug(
        f"Margin generation: {len(outcome.raw_candidates)} raw candidates, "
        f"failure_mode={outcome.failure_mode.value if outcome.failure_mode else None}"
    )
    return outcome
