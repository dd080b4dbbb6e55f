"""API router for v1 endpoints."""

from fastapi import APIRouter

from margin_engine.api import margin

router = APIRouter()

router.include_router(margin.router)
