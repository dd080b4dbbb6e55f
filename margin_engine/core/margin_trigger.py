"""Trigger controller: decides when a paragraph is settled enough to query.

One controller per editing session (journal entry). It owns all pacing state
in a TriggerState; nothing here is process-global. Timers go through a
Scheduler so tests can drive virtual time.

Rules, in the order an edit meets them:
    1. ignore paragraphs shorter than min_paragraph_length chars or
       min_paragraph_words words
    2. debounce: fire only after debounce_ms without further edits
    3. per-entry caps: max annotations shown, cooldown since the last shown
       nudge, distance from the last annotated paragraph
    4. drop content already queried this session (trimmed-text hash)
    5. wait out min_query_gap_ms since the previous run started
    6. cancel whatever run is still in flight, then start exactly one run
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from margin_engine.core.cancellation import CancelToken, PipelineCancelled
from margin_engine.core.logging import get_logger
from margin_engine.core.scheduler import Scheduler, TimerHandle
from margin_engine.core.schemas_margin import SparkNudge, paragraph_hash
from margin_engine.core.schemas_tuning import MarginClientTuning, MarginTuningSettings

logger = get_logger(__name__)


@dataclass
class TriggerRequest:
    paragraph_index: int
    text: str
    full_entry: str
    content_hash: str
    entry_date: str
    session_nudges: list[SparkNudge] = field(default_factory=list)


RunPipeline = Callable[[TriggerRequest, CancelToken], Awaitable[list[SparkNudge]]]


@dataclass
class TriggerState:
    queried_hashes: set[str] = field(default_factory=set)
    last_query_at: float | None = None
    last_annotated_at: float | None = None
    last_annotated_paragraph: int | None = None
    annotation_count: int = 0
    shown_signatures: set[str] = field(default_factory=set)
    dismissed_signatures: set[str] = field(default_factory=set)
    nudges: list[SparkNudge] = field(default_factory=list)
    # every nudge returned for this entry, shown or not
    session_nudges: list[SparkNudge] = field(default_factory=list)
    runs_started: int = 0


class TriggerController:
    def __init__(
        self,
        run_pipeline: RunPipeline,
        scheduler: Scheduler,
        tuning: MarginClientTuning | None = None,
        entry_date: str = "",
        enabled: bool = True,
    ):
        self.run_pipeline = run_pipeline
        self.scheduler = scheduler
        self.tuning = tuning or MarginClientTuning()
        self.entry_date = entry_date
        self.enabled = enabled
        self.state = TriggerState()
        self._debounce: TimerHandle | None = None
        self._pending: TriggerRequest | None = None
        self._in_flight: asyncio.Task | None = None
        self._in_flight_token: CancelToken | None = None
        self._in_flight_paragraph: int | None = None

    # ------------------------------------------------------------------
    # Editor events
    # ------------------------------------------------------------------

    def on_paragraph_change(self, paragraph_index: int, text: str, full_entry: str = "") -> bool:
        """Handle an edit. Returns True if a debounced trigger was armed."""
        if not self.enabled:
            return False
        trimmed = text.strip()
        if len(trimmed) < self.tuning.min_paragraph_length:
            return False
        if len(trimmed.split()) < self.tuning.min_paragraph_words:
            return False

        request = TriggerRequest(
            paragraph_index=paragraph_index,
            text=trimmed,
            full_entry=full_entry or trimmed,
            content_hash=paragraph_hash(trimmed),
            entry_date=self.entry_date,
        )
        self._arm(request, self.tuning.debounce_ms)
        return True

    def dismiss(self, nudge_id: str) -> None:
        for nudge in self.state.nudges:
            if nudge.id == nudge_id:
                self.state.dismissed_signatures.add(nudge.signature)
        self.state.nudges = [n for n in self.state.nudges if n.id != nudge_id]

    def update_tuning(self, tuning: MarginTuningSettings | MarginClientTuning) -> None:
        self.tuning = tuning.client if isinstance(tuning, MarginTuningSettings) else tuning

    def reset(self, entry_date: str) -> None:
        """Clear all session state when the editor switches entries."""
        self._cancel_timer()
        self._cancel_in_flight("entry_switched")
        self.entry_date = entry_date
        self.state = TriggerState()

    async def close(self) -> None:
        self._cancel_timer()
        self._cancel_in_flight("closed")
        if self._in_flight is not None:
            await asyncio.gather(self._in_flight, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for the in-flight run (if any) to finish."""
        if self._in_flight is not None:
            await asyncio.gather(self._in_flight, return_exceptions=True)

    @property
    def visible_nudges(self) -> list[SparkNudge]:
        return list(self.state.nudges)

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def _arm(self, request: TriggerRequest, delay_ms: float) -> None:
        self._cancel_timer()
        self._pending = request
        self._debounce = self.scheduler.call_later(delay_ms, self._fire)

    def _cancel_timer(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = None
        self._pending = None

    def _blocked_by_caps(self, request: TriggerRequest) -> str | None:
        state = self.state
        now = self.scheduler.now()
        if state.annotation_count >= self.tuning.max_annotations_per_entry:
            return "max_annotations"
        if (
            state.last_annotated_paragraph is not None
            and abs(request.paragraph_index - state.last_annotated_paragraph)
            <= self.tuning.min_paragraph_gap
        ):
            return "paragraph_gap"
        if (
            state.last_annotated_at is not None
            and now - state.last_annotated_at < self.tuning.annotation_cooldown_ms
        ):
            return "cooldown"
        return None

    def _fire(self) -> None:
        request = self._pending
        self._debounce = None
        self._pending = None
        if request is None:
            return

        blocked = self._blocked_by_caps(request)
        if blocked:
            logger.debug(f"Margin trigger skipped ({blocked}) for paragraph {request.paragraph_index}")
            return

        if request.content_hash in self.state.queried_hashes:
            return

        now = self.scheduler.now()
        last = self.state.last_query_at
        if last is not None and now - last < self.tuning.min_query_gap_ms:
            self._arm(request, self.tuning.min_query_gap_ms - (now - last))
            return

        self._start(request, now)

    def _start(self, request: TriggerRequest, now: float) -> None:
        self.state.queried_hashes.add(request.content_hash)
        self.state.last_query_at = now
        self.state.runs_started += 1
        request.session_nudges = list(self.state.session_nudges)

        self._cancel_in_flight("superseded")
        token = CancelToken()
        self._in_flight_token = token
        self._in_flight_paragraph = request.paragraph_index
        self._in_flight = asyncio.get_running_loop().create_task(self._execute(request, token))

    def _cancel_in_flight(self, reason: str) -> None:
        if self._in_flight_token is not None and self.in_flight:
            logger.debug(
                f"Cancelling in-flight margin run for paragraph {self._in_flight_paragraph} ({reason})"
            )
            self._in_flight_token.cancel(reason)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _execute(self, request: TriggerRequest, token: CancelToken) -> None:
        try:
            nudges = await self.run_pipeline(request, token)
        except PipelineCancelled:
            return
        except Exception as e:
            logger.warning(f"Margin run failed for paragraph {request.paragraph_index}: {e}")
            return
        if token.cancelled:
            return
        self.state.session_nudges.extend(nudges)
        self._present(request.paragraph_index, nudges)

    def _present(self, paragraph_index: int, nudges: list[SparkNudge]) -> None:
        state = self.state
        fresh = [
            n for n in nudges
            if n.signature not in state.dismissed_signatures
            and n.signature not in state.shown_signatures
        ]
        state.nudges = [n for n in state.nudges if n.paragraph_index != paragraph_index] + fresh
        if not fresh:
            return
        state.shown_signatures.update(n.signature for n in fresh)
        state.annotation_count += len(fresh)
        state.last_annotated_at = self.scheduler.now()
        state.last_annotated_paragraph = paragraph_index


def pipeline_runner(pipeline, user_id: str, tuning: MarginTuningSettings | None = None) -> RunPipeline:
    """Adapt a MarginPipeline into the controller's run callback."""

    async def run(request: TriggerRequest, token: CancelToken) -> list[SparkNudge]:
        result = await pipeline.run(
            user_id=user_id,
            paragraph=request.text,
            paragraph_index=request.paragraph_index,
            full_entry=request.full_entry,
            entry_date=request.entry_date or None,
            tuning=tuning,
            cancel_token=token,
            session_nudges=request.session_nudges,
        )
        return result.nudges

    return run
