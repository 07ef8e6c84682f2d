"""LLM provider abstraction layer.

Two backends over a fixed, closed set of provider kinds:
  - Ollama-compatible local server (``ProviderKind.LOCAL``, default)
  - OpenAI-compatible cloud API (``ProviderKind.CLOUD``, HTTPS only)

Both implement the same interface so the orchestrator doesn't need to know
which backend is active.  ``complete()`` never raises for provider failures:
every stream ends with exactly one ``Done`` or exactly one ``StreamError``.
Privacy guarantee: masking runs *before* any provider sees the prompt.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

import httpx

from llm.decoders import iter_ndjson, iter_sse_data, parse_json_object
from llm.errors import ProviderError
from schemas.api import ModelInfo, ProviderConfig, ProviderKind
from schemas.entities import Delta, Done, ErrorKind, StreamEvent

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class LLMProvider(ABC):
    """Abstract base class for all LLM providers."""

    provider_name: str = "base"
    kind: ProviderKind

    def __init__(
        self,
        *,
        timeout: float = 120.0,
        health_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._health_timeout = health_timeout
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self._timeout,
            transport=self._transport,
        )

    @staticmethod
    def _base_url(config: ProviderConfig) -> str:
        return config.base_url.rstrip("/")

    def validate_config(self, config: ProviderConfig) -> None:
        """Raise ``INVALID_CONFIG`` if this provider cannot serve *config*."""
        if config.provider is not self.kind:
            raise ProviderError(
                ErrorKind.INVALID_CONFIG,
                f"{self.provider_name} cannot serve a {config.provider.value} config",
            )
        try:
            url = httpx.URL(config.base_url)
        except httpx.InvalidURL as exc:
            raise ProviderError(ErrorKind.INVALID_CONFIG, f"Invalid base URL: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ProviderError(ErrorKind.INVALID_CONFIG, "Base URL must be an absolute http(s) URL")

    async def _check_response(self, response: httpx.Response, config: ProviderConfig) -> None:
        if response.is_success:
            return
        body = (await response.aread()).decode("utf-8", errors="replace").strip()
        raise ProviderError.from_status(response.status_code, config.model, body)

    # -- streaming -----------------------------------------------------------

    async def complete(
        self,
        prompt: str,
        config: ProviderConfig,
        system: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as ``Delta`` events plus one terminal event."""
        parts: list[str] = []
        try:
            self.validate_config(config)
            async with self._client() as client:
                async for text in self._stream(client, prompt, config, system):
                    parts.append(text)
                    yield Delta(text)
        except ProviderError as exc:
            logger.warning("%s stream failed: %s", self.provider_name, exc)
            yield exc.to_event()
            return
        except httpx.HTTPError as exc:
            error = ProviderError.from_httpx(exc)
            logger.warning("%s stream failed: %s", self.provider_name, error)
            yield error.to_event()
            return

        yield Done("".join(parts))

    @abstractmethod
    def _stream(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        config: ProviderConfig,
        system: str | None,
    ) -> AsyncIterator[str]:
        """Yield text deltas; return only after the transport's end marker."""
        ...

    # -- discovery -----------------------------------------------------------

    @abstractmethod
    async def list_models(self, config: ProviderConfig) -> list[ModelInfo]:
        """List the models the endpoint in *config* can serve."""
        ...

    @abstractmethod
    async def health_check(self, config: ProviderConfig) -> bool:
        """Check if the endpoint in *config* is reachable."""
        ...


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------

class OllamaProvider(LLMProvider):
    """Ollama running locally — no data leaves the machine."""

    provider_name = "ollama"
    kind = ProviderKind.LOCAL

    async def _stream(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        config: ProviderConfig,
        system: str | None,
    ) -> AsyncIterator[str]:
        payload: dict[str, Any] = {
            "model": config.model,
            "prompt": prompt,
            "stream": True,
            "options": {
                "temperature": config.temperature,
                "num_predict": config.max_tokens,
            },
        }
        if system:
            payload["system"] = system

        async with client.stream(
            "POST",
            f"{self._base_url(config)}/api/generate",
            json=payload,
        ) as response:
            await self._check_response(response, config)
            async for data in iter_ndjson(response.aiter_lines()):
                if data.get("error"):
                    raise ProviderError(ErrorKind.API_ERROR, str(data["error"]))
                text = data.get("response", "")
                if not isinstance(text, str):
                    raise ProviderError(ErrorKind.DECODE_ERROR, "Non-text 'response' field")
                if text:
                    yield text
                if data.get("done", False):
                    return

        raise ProviderError(ErrorKind.DECODE_ERROR, "Stream ended before completion")

    async def list_models(self, config: ProviderConfig) -> list[ModelInfo]:
        """List all models available in the local Ollama instance."""
        try:
            async with self._client(self._health_timeout) as client:
                response = await client.get(f"{self._base_url(config)}/api/tags")
        except httpx.HTTPError as exc:
            raise ProviderError.from_httpx(exc) from exc

        if not response.is_success:
            raise ProviderError(ErrorKind.CONNECTION_FAILED, "Failed to list models")
        try:
            models = response.json().get("models", [])
        except (ValueError, AttributeError) as exc:
            raise ProviderError(ErrorKind.DECODE_ERROR, "Failed to parse models response") from exc

        result: list[ModelInfo] = []
        for m in models:
            name = m.get("name", "") if isinstance(m, dict) else ""
            if name:
                result.append(ModelInfo(id=name, name=name, provider=self.kind))
        return result

    async def health_check(self, config: ProviderConfig) -> bool:
        try:
            async with self._client(self._health_timeout) as client:
                response = await client.get(f"{self._base_url(config)}/api/tags")
            return response.is_success
        except (httpx.HTTPError, httpx.InvalidURL):
            return False


# ---------------------------------------------------------------------------
# OpenAI-compatible (cloud)
# ---------------------------------------------------------------------------

class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions API, bearer-authenticated."""

    provider_name = "openai"
    kind = ProviderKind.CLOUD

    def validate_config(self, config: ProviderConfig) -> None:
        super().validate_config(config)
        if httpx.URL(config.base_url).scheme != "https":
            raise ProviderError(
                ErrorKind.INVALID_CONFIG, "Cloud provider requires an HTTPS base URL"
            )
        if not config.credential():
            raise ProviderError(ErrorKind.INVALID_CONFIG, "Cloud provider requires an API key")

    @staticmethod
    def _headers(config: ProviderConfig) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {config.credential()}",
            "Content-Type": "application/json",
        }

    async def _stream(
        self,
        client: httpx.AsyncClient,
        prompt: str,
        config: ProviderConfig,
        system: str | None,
    ) -> AsyncIterator[str]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": config.model,
            "messages": messages,
            "stream": True,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
        }

        finished = False
        async with client.stream(
            "POST",
            f"{self._base_url(config)}/chat/completions",
            headers=self._headers(config),
            json=payload,
        ) as response:
            await self._check_response(response, config)
            async for event in iter_sse_data(response.aiter_lines()):
                if event.strip() == "[DONE]":
                    return
                data = parse_json_object(event)
                if data.get("error"):
                    raise ProviderError(ErrorKind.API_ERROR, _error_message(data["error"]))
                for choice in _choices(data):
                    delta = choice.get("delta") or {}
                    if not isinstance(delta, dict):
                        raise ProviderError(ErrorKind.DECODE_ERROR, "Malformed 'delta' field")
                    content = delta.get("content") or ""
                    if content:
                        yield content
                    if choice.get("finish_reason"):
                        finished = True

        # Some compatible servers close after finish_reason without [DONE].
        if not finished:
            raise ProviderError(ErrorKind.DECODE_ERROR, "Stream ended before completion")

    async def list_models(self, config: ProviderConfig) -> list[ModelInfo]:
        self.validate_config(config)
        try:
            async with self._client(self._health_timeout) as client:
                response = await client.get(
                    f"{self._base_url(config)}/models",
                    headers=self._headers(config),
                )
        except httpx.HTTPError as exc:
            raise ProviderError.from_httpx(exc) from exc

        if response.status_code in (401, 403):
            raise ProviderError(ErrorKind.AUTHENTICATION_FAILED, "Authentication failed: invalid API key")
        if not response.is_success:
            raise ProviderError(ErrorKind.API_ERROR, "Failed to list models")
        try:
            models = response.json().get("data", [])
        except (ValueError, AttributeError) as exc:
            raise ProviderError(ErrorKind.DECODE_ERROR, "Failed to parse models response") from exc

        return [
            ModelInfo(id=m["id"], name=m["id"], provider=self.kind)
            for m in models
            if isinstance(m, dict) and m.get("id")
        ]

    async def health_check(self, config: ProviderConfig) -> bool:
        if not config.credential():
            return False
        try:
            await self.list_models(config)
            return True
        except ProviderError:
            return False


def _choices(data: dict[str, Any]) -> list[dict[str, Any]]:
    choices = data.get("choices") or []
    if not isinstance(choices, list) or not all(isinstance(c, dict) for c in choices):
        raise ProviderError(ErrorKind.DECODE_ERROR, "Malformed 'choices' field")
    return choices


def _error_message(error: object) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_provider(
    kind: ProviderKind,
    *,
    timeout: float = 120.0,
    health_timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMProvider:
    """Create an LLM provider instance for *kind*."""
    if kind is ProviderKind.LOCAL:
        return OllamaProvider(timeout=timeout, health_timeout=health_timeout, transport=transport)
    elif kind is ProviderKind.CLOUD:
        return OpenAIProvider(timeout=timeout, health_timeout=health_timeout, transport=transport)
    else:
        raise ValueError(f"Unknown provider: {kind}")
