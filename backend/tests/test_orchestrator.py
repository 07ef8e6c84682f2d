"""Tests for services.orchestrator — single-flight lifecycle and staleness."""

from __future__ import annotations

import asyncio

import pytest

from llm.prompts import PRESERVE_PLACEHOLDERS_PROMPT
from schemas.api import AIChunkPayload, AIErrorPayload, ProviderConfig, ProviderKind
from schemas.entities import Delta, Done, ErrorKind, RequestHandle, StreamError
from services.orchestrator import RequestOrchestrator, RequestState


async def _drain(queue: asyncio.Queue) -> list:
    """Collect events up to and including the first terminal one."""
    events = []
    while True:
        event = await asyncio.wait_for(queue.get(), timeout=1.0)
        events.append(event)
        if isinstance(event, AIErrorPayload) or event.done:
            return events


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _orchestrator(local, cloud=None) -> RequestOrchestrator:
    return RequestOrchestrator(providers={
        ProviderKind.LOCAL: local,
        ProviderKind.CLOUD: cloud if cloud is not None else local,
    })


class _ExplodingProvider:
    provider_name = "exploding"

    async def complete(self, prompt, config, system=None):
        raise RuntimeError("bug")
        yield  # pragma: no cover


# -----------------------------------------------------------------------
# Happy path
# -----------------------------------------------------------------------


class TestCompletion:
    @pytest.mark.asyncio
    async def test_chunks_then_final(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Delta("Hel"), Delta("lo"), Done("Hello")])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.send_ai_request("hi", local_config, "r1")
        assert orchestrator.state is RequestState.STREAMING
        events = await _drain(queue)

        assert events == [
            AIChunkPayload(content="Hel", done=False, request_id="r1"),
            AIChunkPayload(content="lo", done=False, request_id="r1"),
            AIChunkPayload(content="Hello", done=True, request_id="r1"),
        ]
        assert orchestrator.state is RequestState.COMPLETED
        assert orchestrator.current is None
        assert provider.prompts == ["hi"]
        assert provider.systems == [None]

    @pytest.mark.asyncio
    async def test_routes_by_provider_kind(
        self, make_provider, local_config: ProviderConfig, cloud_config: ProviderConfig
    ):
        local = make_provider([Done("local")])
        cloud = make_provider([Done("cloud")])
        orchestrator = _orchestrator(local, cloud)
        queue = orchestrator.subscribe()

        orchestrator.start("hi", cloud_config, "r1")
        events = await _drain(queue)
        assert events[-1].content == "cloud"
        assert local.prompts == []

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_events(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("ok")]))
        first, second = orchestrator.subscribe(), orchestrator.subscribe()

        orchestrator.start("hi", local_config, "r1")
        assert await _drain(first) == await _drain(second)

    @pytest.mark.asyncio
    async def test_unsubscribed_queue_receives_nothing(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("ok")]))
        kept, dropped = orchestrator.subscribe(), orchestrator.subscribe()
        orchestrator.unsubscribe(dropped)

        orchestrator.start("hi", local_config, "r1")
        await _drain(kept)
        assert dropped.empty()


# -----------------------------------------------------------------------
# Privacy shield
# -----------------------------------------------------------------------


class TestPrivacyShield:
    @pytest.mark.asyncio
    async def test_prompt_masked_and_final_restored(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([
            Delta("Sent to {{FP_EMAIL_01}}"),
            Done("Sent to {{FP_EMAIL_01}}"),
        ])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("mail a@b.com", local_config, "r1", use_privacy_shield=True)
        events = await _drain(queue)

        assert provider.prompts == ["mail {{FP_EMAIL_01}}"]
        assert provider.systems == [PRESERVE_PLACEHOLDERS_PROMPT]
        # Deltas go out as produced; only the final text is restored.
        assert events[0].content == "Sent to {{FP_EMAIL_01}}"
        assert events[-1] == AIChunkPayload(content="Sent to a@b.com", done=True, request_id="r1")

    @pytest.mark.asyncio
    async def test_clean_prompt_gets_no_system_prompt(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Done("ok")])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("nothing private", local_config, "r1", use_privacy_shield=True)
        await _drain(queue)
        assert provider.prompts == ["nothing private"]
        assert provider.systems == [None]

    @pytest.mark.asyncio
    async def test_masks_inside_request_task(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Done("ok")])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("mail a@b.com", local_config, "r1", use_privacy_shield=True)
        assert orchestrator.state is RequestState.MASKING
        assert provider.prompts == []

        await _drain(queue)
        assert orchestrator.state is RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_while_masking_never_reaches_provider(
        self, make_provider, local_config: ProviderConfig
    ):
        provider = make_provider([Done("ok")])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("mail a@b.com", local_config, "r1", use_privacy_shield=True)
        orchestrator.cancel("r1")

        (event,) = await _drain(queue)
        assert event.code == "CANCELLED"
        await asyncio.sleep(0.05)
        assert provider.prompts == []
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_superseded_while_masking(
        self, make_provider, local_config: ProviderConfig, cloud_config: ProviderConfig
    ):
        old = make_provider([Done("old")])
        new = make_provider([Done("new")])
        orchestrator = _orchestrator(old, new)
        queue = orchestrator.subscribe()

        orchestrator.start("mail a@b.com", local_config, "r1", use_privacy_shield=True)
        await asyncio.sleep(0)
        orchestrator.start("b", cloud_config, "r2")

        assert await _drain(queue) == [AIChunkPayload(content="new", done=True, request_id="r2")]
        await asyncio.sleep(0.05)
        assert old.prompts == []
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_shield_off_sends_raw_prompt(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Done("ok")])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("mail a@b.com", local_config, "r1")
        await _drain(queue)
        assert provider.prompts == ["mail a@b.com"]


# -----------------------------------------------------------------------
# Supersede / staleness
# -----------------------------------------------------------------------


class TestSupersede:
    @pytest.mark.asyncio
    async def test_new_request_silences_old_one(
        self, make_provider, local_config: ProviderConfig, cloud_config: ProviderConfig
    ):
        gate = asyncio.Event()
        slow = make_provider([Delta("old"), Done("old")], gate=gate)
        fast = make_provider([Delta("new"), Done("new")])
        orchestrator = _orchestrator(slow, fast)
        queue = orchestrator.subscribe()

        old = orchestrator.start("a", local_config, "r1")
        await _settle()
        new = orchestrator.start("b", cloud_config, "r2")

        assert old.cancelled
        assert orchestrator.current is new
        events = await _drain(queue)
        assert {e.request_id for e in events} == {"r2"}

        await _settle()
        assert slow.closed
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_stale_event_is_discarded(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        old = orchestrator.start("a", local_config, "r1")
        orchestrator.start("b", local_config, "r2")

        assert orchestrator.handle_event(old, Delta("late")) is False
        assert orchestrator.handle_event(old, Done("late")) is False
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_reused_request_id_gets_new_generation(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        first = orchestrator.start("a", local_config, "same")
        second = orchestrator.start("b", local_config, "same")

        assert first.generation != second.generation
        assert not orchestrator.is_current(first)
        assert orchestrator.is_current(second)
        assert orchestrator.handle_event(first, Delta("late")) is False
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_events_after_completion_are_discarded(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("ok")]))
        queue = orchestrator.subscribe()

        handle = orchestrator.start("a", local_config, "r1")
        await _drain(queue)
        assert orchestrator.handle_event(handle, Delta("late")) is False
        assert queue.empty()

    def test_unknown_handle_is_not_current(self):
        orchestrator = _orchestrator(object())
        assert not orchestrator.is_current(RequestHandle("r1", 1))


# -----------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_emits_single_terminal(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Delta("x"), Done("x")], gate=asyncio.Event())
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        await _settle()
        orchestrator.cancel_ai_request("r1")

        assert await _drain(queue) == [
            AIErrorPayload(code="CANCELLED", message="Request cancelled", request_id="r1")
        ]
        assert orchestrator.state is RequestState.CANCELLED

        orchestrator.cancel_ai_request("r1")
        await _settle()
        assert queue.empty()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_cancel_unknown_id_is_noop(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        handle = orchestrator.start("a", local_config, "r1")
        orchestrator.cancel("other")

        assert queue.empty()
        assert orchestrator.is_current(handle)
        assert orchestrator.state is RequestState.STREAMING

    def test_cancel_when_idle_is_noop(self):
        orchestrator = _orchestrator(object())
        queue = orchestrator.subscribe()
        orchestrator.cancel("r1")
        assert queue.empty()
        assert orchestrator.state is RequestState.IDLE

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("ok")]))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        await _drain(queue)
        orchestrator.cancel("r1")
        assert queue.empty()
        assert orchestrator.state is RequestState.COMPLETED

    @pytest.mark.asyncio
    async def test_timeout_kind(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        orchestrator.cancel("r1", kind=ErrorKind.TIMEOUT)

        (event,) = await _drain(queue)
        assert event.code == "TIMEOUT"
        assert event.message == "Request timeout"
        assert orchestrator.state is RequestState.FAILED

    @pytest.mark.asyncio
    async def test_aclose_emits_nothing(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Done("x")], gate=asyncio.Event())
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        await _settle()
        await orchestrator.aclose()

        assert queue.empty()
        assert orchestrator.current is None
        assert provider.closed


# -----------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_provider_error_is_forwarded(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([
            Delta("x"),
            StreamError(ErrorKind.AUTHENTICATION_FAILED, "Authentication failed: invalid API key"),
        ])
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        events = await _drain(queue)

        assert events[0] == AIChunkPayload(content="x", done=False, request_id="r1")
        assert events[1] == AIErrorPayload(
            code="AUTHENTICATION_FAILED",
            message="Authentication failed: invalid API key",
            request_id="r1",
        )
        assert orchestrator.state is RequestState.FAILED

    @pytest.mark.asyncio
    async def test_stream_without_terminal_is_decode_error(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Delta("x")]))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        events = await _drain(queue)
        assert events[-1].code == "DECODE_ERROR"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_api_error(self, local_config: ProviderConfig):
        orchestrator = _orchestrator(_ExplodingProvider())
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        (event,) = await _drain(queue)
        assert event.code == "API_ERROR"
        assert "bug" not in event.message
        assert orchestrator.state is RequestState.FAILED

    @pytest.mark.asyncio
    async def test_new_request_after_failure(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([StreamError(ErrorKind.TIMEOUT, "Request timeout")]))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1")
        await _drain(queue)
        orchestrator.start("b", local_config, "r2")
        events = await _drain(queue)
        assert events[-1].request_id == "r2"


# -----------------------------------------------------------------------
# Deadlines
# -----------------------------------------------------------------------


class TestDeadline:
    @pytest.mark.asyncio
    async def test_deadline_cancels_with_timeout(self, make_provider, local_config: ProviderConfig):
        provider = make_provider([Done("x")], gate=asyncio.Event())
        orchestrator = _orchestrator(provider)
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1", timeout=0.01)

        assert await _drain(queue) == [
            AIErrorPayload(code="TIMEOUT", message="Request timeout", request_id="r1")
        ]
        assert orchestrator.state is RequestState.FAILED
        assert orchestrator.current is None
        await _settle()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_deadline_does_not_touch_request_reusing_id(
        self, make_provider, local_config: ProviderConfig
    ):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "same", timeout=0.01)
        second = orchestrator.start("b", local_config, "same")
        await asyncio.sleep(0.05)

        assert queue.empty()
        assert orchestrator.is_current(second)
        assert orchestrator.state is RequestState.STREAMING

    @pytest.mark.asyncio
    async def test_expire_ignores_superseded_handle(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        queue = orchestrator.subscribe()

        first = orchestrator.start("a", local_config, "same")
        second = orchestrator.start("b", local_config, "same")
        orchestrator._expire(first)

        assert queue.empty()
        assert orchestrator.is_current(second)

    @pytest.mark.asyncio
    async def test_deadline_cleared_on_completion(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("ok")]))
        queue = orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1", timeout=60)
        timer = orchestrator._deadline
        assert timer is not None

        await _drain(queue)
        assert timer.cancelled()
        assert orchestrator._deadline is None

    @pytest.mark.asyncio
    async def test_deadline_cleared_on_cancel(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        orchestrator.subscribe()

        orchestrator.start("a", local_config, "r1", timeout=60)
        timer = orchestrator._deadline
        orchestrator.cancel("r1")

        assert timer.cancelled()
        assert orchestrator._deadline is None

    @pytest.mark.asyncio
    async def test_no_timeout_arms_no_deadline(self, make_provider, local_config: ProviderConfig):
        orchestrator = _orchestrator(make_provider([Done("x")], gate=asyncio.Event()))
        orchestrator.start("a", local_config, "r1")
        assert orchestrator._deadline is None
