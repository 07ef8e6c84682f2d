from __future__ import annotations

from fastapi import APIRouter

from llm.intent import detect_content_intent
from schemas.api import ActionChipResponse, TextRequest

router = APIRouter()


@router.post("", response_model=list[ActionChipResponse])
async def detect_intent(body: TextRequest):
    """Suggest up to three follow-up actions for a captured text."""
    return [ActionChipResponse.from_chip(c) for c in detect_content_intent(body.text)]
