"""Incremental decoders for the two streaming transports.

- Ollama streams newline-delimited JSON objects.
- OpenAI-compatible servers stream Server-Sent Events whose ``data`` field
  carries one JSON chunk (or the ``[DONE]`` sentinel).

Both decoders consume an async iterator of text lines (as produced by
``httpx.Response.aiter_lines``) and raise :class:`ProviderError` with
``DECODE_ERROR`` on malformed framing.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from llm.errors import ProviderError
from schemas.entities import ErrorKind


async def iter_ndjson(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Yield one JSON object per non-blank line."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                ErrorKind.DECODE_ERROR, f"Malformed JSON line: {exc.msg}"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(ErrorKind.DECODE_ERROR, "Expected a JSON object per line")
        yield data


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each Server-Sent Event.

    Multi-line ``data`` fields are joined with newlines, comment lines
    (starting with ``:``) and the ``event``/``id``/``retry`` fields are
    ignored.  A trailing event without a blank line is still delivered.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)


def parse_json_object(payload: str) -> dict[str, Any]:
    """Parse one SSE payload, raising ``DECODE_ERROR`` if it is not an object."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ProviderError(
            ErrorKind.DECODE_ERROR, f"Malformed JSON event: {exc.msg}"
        ) from exc
    if not isinstance(data, dict):
        raise ProviderError(ErrorKind.DECODE_ERROR, "Expected a JSON object per event")
    return data
