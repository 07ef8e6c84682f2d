"""Streaming AI request endpoints.

POST   /api/ai/requests               — start a request (supersedes the current one)
DELETE /api/ai/requests/{request_id}  — cancel a request
GET    /api/ai/events                 — SSE stream of ``ai:chunk`` / ``ai:error`` events

Results never come back on the POST: every chunk, completion and failure is
delivered through the event stream, tagged with its request id.  An optional
``timeoutSeconds`` cancels the request with ``TIMEOUT`` if it is still
running when the deadline passes.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from api.dependencies import get_orchestrator
from config import get_settings
from schemas.api import AIChunkPayload, AIRequest
from services.orchestrator import OutboundEvent, RequestOrchestrator

router = APIRouter()

CHUNK_EVENT = "ai:chunk"
ERROR_EVENT = "ai:error"


@router.post("/requests", status_code=202)
async def send_ai_request(
    body: AIRequest,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    config = body.config or get_settings().provider_config()
    handle = orchestrator.start(
        body.prompt,
        config,
        body.request_id,
        use_privacy_shield=body.use_privacy_shield,
        timeout=body.timeout_seconds,
    )
    return {"requestId": handle.request_id}


@router.delete("/requests/{request_id}", status_code=204)
async def cancel_ai_request(
    request_id: str,
    orchestrator: RequestOrchestrator = Depends(get_orchestrator),
):
    orchestrator.cancel_ai_request(request_id)


async def event_stream(
    orchestrator: RequestOrchestrator,
    queue: asyncio.Queue[OutboundEvent],
) -> AsyncIterator[dict[str, str]]:
    """Yield SSE messages from *queue*; unsubscribes when the client goes away."""
    try:
        while True:
            event = await queue.get()
            name = CHUNK_EVENT if isinstance(event, AIChunkPayload) else ERROR_EVENT
            yield {
                "event": name,
                "data": event.model_dump_json(by_alias=True),
            }
    finally:
        orchestrator.unsubscribe(queue)


@router.get("/events")
async def events(orchestrator: RequestOrchestrator = Depends(get_orchestrator)):
    """Subscribe to request events until the client disconnects."""
    # Subscribe now, not on first iteration, so nothing emitted in between is lost.
    queue = orchestrator.subscribe()
    return EventSourceResponse(event_stream(orchestrator, queue))
