"""API endpoints for journal margin intelligence."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from margin_engine.core.margin_feedback import (
    FeedbackValidationError,
    NudgeNotFoundError,
    record_feedback,
)
from margin_engine.core.margin_pipeline import MarginPipeline, build_default_pipeline
from margin_engine.core.margin_store import NudgeRepository
from margin_engine.core.schemas_margin import FeedbackRequest, MarginRequest, PipelineResult
from margin_engine.core.schemas_tuning import (
    DEFAULT_MARGIN_TUNING,
    MarginTuningSettings,
    coerce_margin_tuning,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/journal/margin", tags=["margin"])


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def get_repository() -> NudgeRepository:
    from margin_engine.db.margin_repository import SupabaseNudgeRepository

    return SupabaseNudgeRepository()


def get_pipeline_factory():
    return build_default_pipeline


def _tuning_scope(user_id: str) -> str:
    return f"user:{user_id}"


def _resolve_tuning(
    raw: dict | None, user_id: str, repo: NudgeRepository
) -> MarginTuningSettings:
    if raw is not None:
        return coerce_margin_tuning(raw)
    try:
        return repo.load_tuning(_tuning_scope(user_id)) or DEFAULT_MARGIN_TUNING
    except Exception as e:
        logger.warning(f"Failed to load tuning for {user_id}, using defaults: {e}")
        return DEFAULT_MARGIN_TUNING


@router.post("", response_model=PipelineResult)
async def run_margin(
    body: MarginRequest,
    user_id: str = Depends(get_current_user_id),
    repo: NudgeRepository = Depends(get_repository),
    pipeline_factory=Depends(get_pipeline_factory),
) -> PipelineResult:
    """Run the nudge pipeline for a paragraph that just settled."""
    tuning = _resolve_tuning(body.tuning, user_id, repo)
    pipeline: MarginPipeline = pipeline_factory(user_id, repo)
    return await pipeline.run(
        user_id=user_id,
        paragraph=body.paragraph,
        paragraph_index=body.paragraph_index,
        full_entry=body.full_entry,
        entry_date=body.entry_date,
        tuning=tuning,
    )


@router.post("/feedback")
async def submit_feedback(
    body: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
    repo: NudgeRepository = Depends(get_repository),
) -> dict:
    """Record an up/down vote on a nudge the caller owns."""
    try:
        record_feedback(repo, user_id, body.nudge_id, body.feedback, body.reason)
    except FeedbackValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NudgeNotFoundError:
        raise HTTPException(status_code=404, detail="Nudge not found")
    return {"ok": True}


@router.get("/tuning", response_model=MarginTuningSettings)
async def get_tuning(
    user_id: str = Depends(get_current_user_id),
    repo: NudgeRepository = Depends(get_repository),
) -> MarginTuningSettings:
    try:
        return repo.load_tuning(_tuning_scope(user_id)) or DEFAULT_MARGIN_TUNING
    except Exception as e:
        logger.exception(f"Failed to load tuning for {user_id}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/tuning", response_model=MarginTuningSettings)
async def put_tuning(
    body: MarginTuningSettings,
    user_id: str = Depends(get_current_user_id),
    repo: NudgeRepository = Depends(get_repository),
) -> MarginTuningSettings:
    """Store a new tuning version. Out-of-range values are rejected, not clamped."""
    try:
        return repo.save_tuning(_tuning_scope(user_id), body)
    except Exception as e:
        logger.exception(f"Failed to save tuning for {user_id}")
        raise HTTPException(status_code=500, detail=str(e))
