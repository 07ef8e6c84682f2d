from __future__ import annotations

import os
from typing import AsyncIterator

import pytest

from schemas.api import ProviderConfig, ProviderKind
from schemas.entities import StreamEvent

# Keep a developer's .env / shell from leaking a real key into tests.
os.environ["OPENAI_API_KEY"] = ""


class ScriptedProvider:
    """Stands in for an LLMProvider, replaying a fixed event script.

    ``gate`` (when set) is awaited before each event so a test can interleave
    its own actions with the stream.  ``prompts`` records what was sent.
    """

    provider_name = "scripted"

    def __init__(self, events: list[StreamEvent], gate=None) -> None:
        self.events = list(events)
        self.gate = gate
        self.prompts: list[str] = []
        self.systems: list[str | None] = []
        self.closed = False

    async def complete(
        self, prompt: str, config: ProviderConfig, system: str | None = None
    ) -> AsyncIterator[StreamEvent]:
        self.prompts.append(prompt)
        self.systems.append(system)
        try:
            for event in self.events:
                if self.gate is not None:
                    await self.gate.wait()
                yield event
        finally:
            self.closed = True


@pytest.fixture
def local_config() -> ProviderConfig:
    return ProviderConfig(
        provider=ProviderKind.LOCAL,
        base_url="http://localhost:11434",
        model="llama3.2",
    )


@pytest.fixture
def cloud_config() -> ProviderConfig:
    return ProviderConfig(
        provider=ProviderKind.CLOUD,
        base_url="https://api.example.com/v1",
        model="gpt-4o-mini",
        api_key="sk-test-not-a-real-key-000000",
    )


@pytest.fixture
def sample_pii_text() -> str:
    """A clipboard snippet carrying one value of most categories."""
    return (
        "Hi, reach me at jane.doe@example.com or 13800138000.\n"
        "Server 192.168.1.20 uses key sk-ABCDEFG1234567890abc.\n"
        "Card 4111 1111 1111 1111 on file."
    )


@pytest.fixture
def make_provider():
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider
