"""Single-flight streaming request orchestrator.

State machine::

    IDLE -> MASKING -> STREAMING -> COMPLETED | CANCELLED | FAILED

Terminal states count as idle for the next ``start``.  Exactly one
:class:`RequestHandle` is current at a time.  Only this class writes the
current-handle slot; the streaming task carries its own handle and every
event it forwards is compared against the slot, so output from a superseded
or cancelled request is dropped instead of reaching subscribers.

Events go out through per-subscriber ``asyncio.Queue`` channels as
:class:`AIChunkPayload` / :class:`AIErrorPayload` objects tagged with the
originating request id.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import aclosing
from enum import Enum
from typing import Mapping, Union

from config import get_settings
from llm.errors import ProviderError
from llm.prompts import get_system_prompt
from llm.providers import LLMProvider, create_provider
from schemas.api import (
    AIChunkPayload,
    AIErrorPayload,
    ModelInfo,
    ProviderConfig,
    ProviderKind,
)
from schemas.entities import (
    Delta,
    Done,
    ErrorKind,
    RequestHandle,
    StreamError,
    StreamEvent,
)
from shield.pipeline import ShieldPipeline
from shield.scanner import PIIScanner

logger = logging.getLogger(__name__)

OutboundEvent = Union[AIChunkPayload, AIErrorPayload]

_TERMINAL_MESSAGES = {
    ErrorKind.CANCELLED: "Request cancelled",
    ErrorKind.TIMEOUT: "Request timeout",
}


class RequestState(str, Enum):
    IDLE = "idle"
    MASKING = "masking"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RequestOrchestrator:
    """Owns the lifecycle of the single active completion request."""

    def __init__(
        self,
        providers: Mapping[ProviderKind, LLMProvider] | None = None,
        scanner: PIIScanner | None = None,
    ) -> None:
        if providers is None:
            settings = get_settings()
            providers = {
                kind: create_provider(
                    kind,
                    timeout=settings.http_timeout,
                    health_timeout=settings.health_timeout,
                )
                for kind in ProviderKind
            }
        self._providers = dict(providers)
        self._scanner = scanner
        self._generations = itertools.count(1)
        self._subscribers: list[asyncio.Queue[OutboundEvent]] = []

        # The current-request slot.  Written only by this class.
        self._current: RequestHandle | None = None
        self._shield: ShieldPipeline | None = None
        self._task: asyncio.Task[None] | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._state = RequestState.IDLE

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def current(self) -> RequestHandle | None:
        return self._current

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[OutboundEvent]:
        """Open a channel that receives every event emitted from now on."""
        queue: asyncio.Queue[OutboundEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[OutboundEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: OutboundEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        prompt: str,
        config: ProviderConfig,
        request_id: str,
        use_privacy_shield: bool = False,
        timeout: float | None = None,
    ) -> RequestHandle:
        """Start a request, superseding whatever request is current.

        Must be called from a running event loop; masking and the provider
        stream run as a background task and this returns immediately.  With
        *timeout*, the request is cancelled with ``TIMEOUT`` if it is still
        current after that many seconds.
        """
        self._supersede()

        handle = RequestHandle(request_id=request_id, generation=next(self._generations))
        self._current = handle
        self._state = RequestState.MASKING if use_privacy_shield else RequestState.STREAMING

        provider = self._providers[config.provider]
        self._task = asyncio.create_task(
            self._run(handle, provider, prompt, config, use_privacy_shield),
            name=f"ai-request-{request_id}",
        )
        if timeout is not None:
            self._deadline = asyncio.get_running_loop().call_later(
                timeout, self._expire, handle
            )
        logger.info(
            "Request %s started (provider=%s model=%s shield=%s)",
            request_id, provider.provider_name, config.model, use_privacy_shield,
        )
        return handle

    def send_ai_request(
        self,
        prompt: str,
        config: ProviderConfig,
        request_id: str,
        use_privacy_shield: bool = False,
    ) -> None:
        """Fire-and-forget form of :meth:`start`; results arrive as events."""
        self.start(prompt, config, request_id, use_privacy_shield)

    def cancel(self, request_id: str, kind: ErrorKind = ErrorKind.CANCELLED) -> None:
        """Cancel *request_id* if it is current; otherwise do nothing.

        Emits one terminal ``AIErrorPayload`` (``CANCELLED``, or ``TIMEOUT``
        when a caller deadline fired).  Calling it again, or for an unknown
        id, is a harmless no-op.
        """
        handle = self._current
        if handle is None or handle.cancelled or handle.request_id != request_id:
            logger.debug("Ignoring cancel for non-current request %s", request_id)
            return

        handle.cancelled = True
        task = self._task
        self._release(RequestState.CANCELLED if kind is ErrorKind.CANCELLED else RequestState.FAILED)
        if task is not None and not task.done():
            task.cancel()

        logger.info("Request %s cancelled (%s)", request_id, kind.value)
        self._emit(AIErrorPayload(
            code=kind.value,
            message=_TERMINAL_MESSAGES.get(kind, kind.value),
            request_id=request_id,
        ))

    def cancel_ai_request(self, request_id: str) -> None:
        self.cancel(request_id)

    async def aclose(self) -> None:
        """Stop the current request without emitting anything (shutdown)."""
        task = self._task
        self._supersede()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _expire(self, handle: RequestHandle) -> None:
        # A later request re-using the id has a different handle.
        if self.is_current(handle):
            logger.info("Request %s hit its deadline", handle.request_id)
            self.cancel(handle.request_id, kind=ErrorKind.TIMEOUT)

    def _supersede(self) -> None:
        handle = self._current
        if handle is None:
            return
        handle.cancelled = True
        task = self._task
        self._release(RequestState.IDLE)
        if task is not None and not task.done():
            task.cancel()
        logger.info("Request %s superseded", handle.request_id)

    def _release(self, state: RequestState) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
        self._current = None
        self._shield = None
        self._task = None
        self._deadline = None
        self._state = state

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def is_current(self, handle: RequestHandle) -> bool:
        current = self._current
        return current is not None and not current.cancelled and current.same_request(handle)

    def handle_event(self, handle: RequestHandle, event: StreamEvent) -> bool:
        """Forward *event* produced for *handle* to subscribers.

        Stale events (handle superseded, cancelled or already finished) are
        dropped silently.  Returns True while the stream should keep going.
        """
        if not self.is_current(handle):
            logger.debug(
                "Discarding stale %s for request %s", type(event).__name__, handle.request_id
            )
            return False

        if isinstance(event, Delta):
            self._emit(AIChunkPayload(content=event.text, done=False, request_id=handle.request_id))
            return True

        if isinstance(event, Done):
            content = event.final_text
            if self._shield is not None:
                content = self._shield.restore_response(content)
            self._release(RequestState.COMPLETED)
            logger.info("Request %s completed (%d chars)", handle.request_id, len(content))
            self._emit(AIChunkPayload(content=content, done=True, request_id=handle.request_id))
            return False

        if isinstance(event, StreamError):
            self._release(RequestState.FAILED)
            logger.warning(
                "Request %s failed: %s %s", handle.request_id, event.kind.value, event.message
            )
            self._emit(AIErrorPayload(
                code=event.kind.value, message=event.message, request_id=handle.request_id
            ))
            return False

        raise TypeError(f"Unknown stream event: {event!r}")

    async def _mask(self, handle: RequestHandle, prompt: str) -> tuple[str, str | None]:
        """Mask *prompt* off the event loop; returns (outbound prompt, system prompt)."""
        shield = ShieldPipeline(self._scanner)
        loop = asyncio.get_running_loop()
        masked = await loop.run_in_executor(None, shield.process_prompt, prompt)
        if self.is_current(handle):
            self._shield = shield
            self._state = RequestState.STREAMING
        return masked, get_system_prompt(masked=shield.applied)

    async def _run(
        self,
        handle: RequestHandle,
        provider: LLMProvider,
        prompt: str,
        config: ProviderConfig,
        use_privacy_shield: bool,
    ) -> None:
        try:
            system = None
            if use_privacy_shield:
                prompt, system = await self._mask(handle, prompt)
                if not self.is_current(handle):
                    return
            async with aclosing(provider.complete(prompt, config, system)) as events:
                async for event in events:
                    if not self.handle_event(handle, event):
                        return
        except Exception:
            logger.exception("Unexpected failure streaming request %s", handle.request_id)
            self.handle_event(
                handle, StreamError(ErrorKind.API_ERROR, "Unexpected provider failure")
            )
            return

        # The provider broke its contract by ending without a terminal event.
        self.handle_event(
            handle,
            StreamError(ErrorKind.DECODE_ERROR, "Provider stream ended without a terminal event"),
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_local_models(self, base_url: str | None = None) -> list[ModelInfo]:
        """List models served by the local provider.

        Raises :class:`ProviderError` when the endpoint is unreachable.
        """
        config = get_settings().provider_config(ProviderKind.LOCAL, base_url)
        return await self._providers[ProviderKind.LOCAL].list_models(config)

    async def check_provider_health(self, base_url: str | None = None) -> bool:
        config = get_settings().provider_config(ProviderKind.LOCAL, base_url)
        try:
            return await self._providers[ProviderKind.LOCAL].health_check(config)
        except ProviderError:
            return False
