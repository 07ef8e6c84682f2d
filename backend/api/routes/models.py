"""Local model discovery endpoints.

GET /api/models/local   — list models served by the local provider
GET /api/models/health  — check whether the local provider is reachable
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_orchestrator
from llm.errors import ProviderError
from schemas.api import ModelInfo
from schemas.entities import ErrorKind
from services.orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()

# Never expose raw provider errors to the client; they can leak hosts and paths.
_SAFE_ERRORS = {
    ErrorKind.CONNECTION_FAILED: "Cannot connect to the local model server. Is Ollama running?",
    ErrorKind.TIMEOUT: "The local model server did not respond in time.",
    ErrorKind.INVALID_CONFIG: "Invalid local model server URL.",
    ErrorKind.DECODE_ERROR: "The local model server returned an unreadable response.",
}


@router.get("/local", response_model=list[ModelInfo])
async def list_local_models(
    base_url: str | None = Query(None),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.list_local_models(base_url)
    except ProviderError as exc:
        logger.warning("Listing local models failed: %s", exc)
        raise HTTPException(
            status_code=502,
            detail=_SAFE_ERRORS.get(exc.kind, "Failed to list local models."),
        )


@router.get("/health")
async def check_provider_health(
    base_url: str | None = Query(None),
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    return {"healthy": await orchestrator.check_provider_health(base_url)}
