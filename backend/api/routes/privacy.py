"""Privacy shield endpoints.

POST /api/privacy/scan     — detect PII spans in a text
POST /api/privacy/mask     — replace PII with placeholders, return the mapping
POST /api/privacy/restore  — put original values back using a mapping

Scanning is CPU-bound, so it runs in the default executor and never blocks
open event streams.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter

from schemas.api import (
    MaskResponse,
    RestoreRequest,
    RestoreResponse,
    ScanResponse,
    TextRequest,
)
from shield.masker import mask_pii, restore_pii
from shield.scanner import scan_pii

router = APIRouter()


@router.post("/scan", response_model=ScanResponse)
async def scan(body: TextRequest):
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, scan_pii, body.text)
    return ScanResponse.from_result(result)


@router.post("/mask", response_model=MaskResponse)
async def mask(body: TextRequest):
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, mask_pii, body.text)
    return MaskResponse.from_result(result)


@router.post("/restore", response_model=RestoreResponse)
async def restore(body: RestoreRequest):
    return RestoreResponse(text=restore_pii(body.text, body.mapping))
