"""Margin intelligence pipeline: paragraph in, zero to three nudges out.

Stages run strictly in sequence, each gated on the previous one:

    retrieve -> clear-signal gate -> generate -> normalize -> judge
             -> gate -> rank & diversify -> persist

Every run returns a PipelineResult with a trace, whatever happens. Collaborator
errors, timeouts and cancellation are caught at the stage boundary and mapped
to a failure mode; to the writer they all look like "no nudges".

Usage:
    from margin_engine.core.margin_pipeline import build_default_pipeline

    pipeline = build_default_pipeline(user_id)
    result = await pipeline.run(
        user_id=user_id,
        paragraph="Told Sam I'd stop taking weekend calls...",
        paragraph_index=3,
    )
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date

from margin_engine.chains.generate_margin_candidates import (
    build_margin_prompt,
    generate_margin_candidates,
)
from margin_engine.chains.judge_margin_candidates import CandidateJudge, LLMCandidateJudge
from margin_engine.core.cancellation import CancelToken, PipelineCancelled, StageTimeout
from margin_engine.core.config import get_settings
from margin_engine.core.llm import AnthropicCompletionService, TextCompletionService
from margin_engine.core.logging import get_logger, log_with_context
from margin_engine.core.margin_gate import apply_gate
from margin_engine.core.margin_graders import DeterministicJudge
from margin_engine.core.margin_normalize import normalize_candidates
from margin_engine.core.margin_personalization import (
    PersonalizationPolicy,
    build_personalization_context,
)
from margin_engine.core.margin_rank import rank_and_diversify
from margin_engine.core.margin_retrieval import (
    RetrievalService,
    SupabaseMemoryRetriever,
    context_implications,
    strong_memories,
    summarize_retrieval,
)
from margin_engine.core.margin_store import NudgeRepository
from margin_engine.core.schemas_margin import (
    FailureMode,
    FunnelTrace,
    HistoricalNudge,
    LlmTrace,
    MarginTrace,
    ParagraphAnchor,
    PersonalizationContext,
    PipelineResult,
    SparkNudge,
    count_by_type,
)
from margin_engine.core.schemas_tuning import DEFAULT_MARGIN_TUNING, MarginTuningSettings

logger = get_logger(__name__)

MIN_PARAGRAPH_CHARS = 20
RETRIEVAL_POOL = 8


def _ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _by_value(counts: dict) -> dict[str, int]:
    return {getattr(k, "value", k): v for k, v in counts.items()}


@dataclass
class MarginPipeline:
    retriever: RetrievalService
    generator: TextCompletionService
    judge: CandidateJudge
    repository: NudgeRepository | None = None
    retrieve_timeout: float | None = 4.0
    generate_timeout: float | None = 10.0
    judge_timeout: float | None = 8.0
    history_limit: int = 3
    feedback_window: int = 100
    personalization_policy: PersonalizationPolicy = field(default_factory=PersonalizationPolicy)

    async def run(
        self,
        *,
        user_id: str,
        paragraph: str,
        paragraph_index: int,
        full_entry: str = "",
        entry_date: str | None = None,
        tuning: MarginTuningSettings | None = None,
        cancel_token: CancelToken | None = None,
        session_nudges: list[SparkNudge] | None = None,
    ) -> PipelineResult:
        tuning = tuning or DEFAULT_MARGIN_TUNING
        server = tuning.server
        token = cancel_token or CancelToken()
        run_id = uuid.uuid4().hex[:12]
        started = time.perf_counter()
        trace = MarginTrace(run_id=run_id, reason="start")

        text = paragraph.strip()
        if len(text) < MIN_PARAGRAPH_CHARS or len(text.split()) < server.min_paragraph_words:
            trace.reason = "paragraph_too_short"
            return self._finish(trace, [], "", started)

        anchor = ParagraphAnchor.from_text(paragraph_index, text)

        try:
            nudges = await self._run_stages(
                trace=trace,
                user_id=user_id,
                text=text,
                anchor=anchor,
                full_entry=full_entry or text,
                entry_date=entry_date or date.today().isoformat(),
                tuning=tuning,
                token=token,
                session_nudges=session_nudges or [],
            )
        except PipelineCancelled:
            trace.reason = "cancelled"
            nudges = []

        return self._finish(trace, nudges, anchor.content_hash, started)

    async def _run_stages(
        self,
        *,
        trace: MarginTrace,
        user_id: str,
        text: str,
        anchor: ParagraphAnchor,
        full_entry: str,
        entry_date: str,
        tuning: MarginTuningSettings,
        token: CancelToken,
        session_nudges: list[SparkNudge],
    ) -> list[SparkNudge]:
        server = tuning.server
        llm = LlmTrace(min_model_confidence=server.min_model_confidence)
        funnel = FunnelTrace(
            session_type_distribution=_by_value(count_by_type(session_nudges)),
        )

        # 1. Retrieve
        trace.stage_reached = "retrieve"
        stage_start = time.perf_counter()
        try:
            response = await token.run(
                self.retriever.retrieve(
                    text,
                    max(RETRIEVAL_POOL, server.max_memories_context),
                    server.max_implications_context,
                ),
                timeout=self.retrieve_timeout,
                stage="retrieve",
            )
        except StageTimeout as e:
            logger.warning(f"Margin retrieval timed out: {e}")
            trace.reason = "timeout"
            return []
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning(f"Margin retrieval failed: {e}")
            trace.reason = "retrieval_error"
            return []
        finally:
            trace.timings_ms.retrieve = _ms(stage_start)

        summary = summarize_retrieval(response, server)
        trace.retrieval = summary
        if not summary.has_clear_signal:
            trace.reason = "no_signal"
            llm.failure_mode = FailureMode.MODEL_EMPTY
            trace.llm = llm
            return []

        evidence = response.memories
        memories = strong_memories(response, server)
        implications = context_implications(response, server)
        if not memories and not implications:
            # Nothing above the activation floor to anchor a draft on
            trace.reason = "no_signal"
            llm.failure_mode = FailureMode.MODEL_EMPTY
            trace.llm = llm
            return []

        # 2. Generate
        token.raise_if_cancelled()
        trace.stage_reached = "generate"
        trace.llm = llm
        trace.funnel = funnel
        prompt = build_margin_prompt(
            text,
            full_entry,
            entry_date,
            memories,
            implications,
            tuning.prompt_addendum,
            tuning.prompt_override,
        )
        stage_start = time.perf_counter()
        try:
            outcome = await token.run(
                generate_margin_candidates(
                    self.generator,
                    prompt,
                    timeout=self.generate_timeout,
                    cancel_token=token,
                ),
                timeout=self.generate_timeout,
                stage="generate",
            )
        except StageTimeout as e:
            logger.warning(f"Margin generation timed out: {e}")
            trace.reason = "timeout"
            llm.failure_mode = FailureMode.MODEL_EMPTY
            return []
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning(f"Margin generation failed: {e}")
            trace.reason = "generation_error"
            llm.failure_mode = FailureMode.MODEL_EMPTY
            return []
        finally:
            trace.timings_ms.generate = _ms(stage_start)

        llm.raw_candidates = len(outcome.raw_candidates)
        funnel.generated = len(outcome.raw_candidates)
        if outcome.failure_mode:
            trace.reason = outcome.failure_mode.value
            llm.failure_mode = outcome.failure_mode
            return []

        # 3. Normalize
        drafts, filter_counts, filter_failure = normalize_candidates(
            outcome.raw_candidates,
            evidence,
            summary.top_score,
            server.min_model_confidence,
        )
        funnel.rejection_counts.update(filter_counts)
        if filter_failure:
            trace.reason = filter_failure.value
            llm.failure_mode = filter_failure
            return []

        # 4. Judge
        token.raise_if_cancelled()
        trace.stage_reached = "judge"
        stage_start = time.perf_counter()
        try:
            judge_outcome = await token.run(
                self.judge.judge(
                    drafts,
                    text,
                    timeout=self.judge_timeout,
                    cancel_token=token,
                ),
                timeout=self.judge_timeout,
                stage="judge",
            )
        except StageTimeout as e:
            logger.warning(f"Margin judging timed out: {e}")
            trace.reason = "timeout"
            llm.failure_mode = FailureMode.JUDGE_EMPTY
            return []
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning(f"Margin judging failed: {e}")
            trace.reason = "judge_error"
            llm.failure_mode = FailureMode.JUDGE_EMPTY
            return []
        finally:
            trace.timings_ms.judge = _ms(stage_start)

        llm.judged_candidates = len(judge_outcome.judged)
        funnel.judged = len(judge_outcome.judged)
        if judge_outcome.failure_mode:
            trace.reason = judge_outcome.failure_mode.value
            llm.failure_mode = judge_outcome.failure_mode
            return []

        # 5. Gate
        trace.stage_reached = "gate"
        gate = apply_gate(judge_outcome.judged, server)
        for reason, count in gate.rejection_counts.items():
            funnel.rejection_counts[reason] = funnel.rejection_counts.get(reason, 0) + count
        if not gate.accepted:
            trace.reason = FailureMode.GATE_REJECTED.value
            llm.failure_mode = FailureMode.GATE_REJECTED
            return []

        # 6. Rank & diversify
        token.raise_if_cancelled()
        trace.stage_reached = "rank"
        history, personalization = self._load_history(user_id)
        funnel.today_type_distribution = self._today_distribution(user_id)
        selected = rank_and_diversify(gate.accepted, history, personalization)

        nudges = [SparkNudge.from_candidate(c, anchor, user_id) for c in selected]

        # 7. Persist
        trace.stage_reached = "persist"
        self._save(user_id, nudges)

        llm.accepted = len(nudges)
        llm.failure_mode = FailureMode.ACCEPTED
        funnel.accepted = len(nudges)
        trace.reason = FailureMode.ACCEPTED.value
        return nudges

    def _load_history(
        self, user_id: str
    ) -> tuple[list[HistoricalNudge], PersonalizationContext | None]:
        if self.repository is None:
            return [], None
        try:
            history = self.repository.load_recent_history(user_id, self.history_limit)
        except Exception as e:
            logger.warning(f"Failed to load nudge history: {e}")
            history = []
        try:
            signals = self.repository.load_recent_feedback(user_id, self.feedback_window)
            personalization = build_personalization_context(signals, self.personalization_policy)
        except Exception as e:
            logger.warning(f"Failed to load feedback for personalization: {e}")
            personalization = None
        return history, personalization

    def _today_distribution(self, user_id: str) -> dict[str, int]:
        if self.repository is None:
            return {}
        try:
            return _by_value(self.repository.today_type_distribution(user_id))
        except Exception as e:
            logger.warning(f"Failed to load today's nudge distribution: {e}")
            return {}

    def _save(self, user_id: str, nudges: list[SparkNudge]) -> None:
        if self.repository is None:
            return
        for nudge in nudges:
            try:
                self.repository.save_nudge(user_id, nudge)
            except Exception as e:
                logger.warning(f"Failed to save nudge {nudge.id}: {e}")

    def _finish(
        self,
        trace: MarginTrace,
        nudges: list[SparkNudge],
        paragraph_hash: str,
        started: float,
    ) -> PipelineResult:
        trace.timings_ms.total = _ms(started)
        log_with_context(
            logger,
            logging.INFO,
            "Margin run finished",
            run_id=trace.run_id,
            reason=trace.reason,
            stage=trace.stage_reached,
            failure_mode=trace.llm.failure_mode.value if trace.llm and trace.llm.failure_mode else None,
            accepted=len(nudges),
            retrieve_ms=trace.timings_ms.retrieve,
            generate_ms=trace.timings_ms.generate,
            judge_ms=trace.timings_ms.judge,
            total_ms=trace.timings_ms.total,
            rejections=trace.funnel.rejection_counts if trace.funnel else {},
        )
        return PipelineResult(nudges=nudges, paragraph_hash=paragraph_hash, trace=trace)


def build_judge(generator: TextCompletionService | None = None) -> CandidateJudge:
    settings = get_settings()
    if settings.MARGIN_JUDGE_MODE == "deterministic":
        return DeterministicJudge()
    return LLMCandidateJudge(
        generator
        or AnthropicCompletionService(
            model=settings.MARGIN_JUDGE_MODEL,
            max_tokens=settings.MARGIN_JUDGE_MAX_TOKENS,
            temperature=0.0,
            chain="judge_margin_candidates",
        )
    )


def build_default_pipeline(
    user_id: str,
    repository: NudgeRepository | None = None,
) -> MarginPipeline:
    """Wire the production collaborators from settings."""
    from margin_engine.db.margin_repository import SupabaseNudgeRepository

    settings = get_settings()
    return MarginPipeline(
        retriever=SupabaseMemoryRetriever(user_id),
        generator=AnthropicCompletionService(
            model=settings.MARGIN_GENERATE_MODEL,
            max_tokens=settings.MARGIN_GENERATE_MAX_TOKENS,
            temperature=0.3,
            chain="generate_margin_candidates",
        ),
        judge=build_judge(),
        repository=repository or SupabaseNudgeRepository(),
        retrieve_timeout=settings.MARGIN_RETRIEVE_TIMEOUT,
        generate_timeout=settings.MARGIN_GENERATE_TIMEOUT,
        judge_timeout=settings.MARGIN_JUDGE_TIMEOUT,
        history_limit=settings.MARGIN_HISTORY_LIMIT,
        feedback_window=settings.PERSONALIZATION_FEEDBACK_WINDOW,
        personalization_policy=PersonalizationPolicy.from_settings(settings),
    )
