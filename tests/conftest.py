"""Shared pytest fixtures."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from config.config_loader import GateConfig
from conference.gate.backends import InMemoryGateBackend
from conference.gate.resilience import ResilienceGate
from conference.gateway import GenerationClient
from conference.models import AgentProfile, ChatMessage, Completion, GenerationRequest
from conference.providers.base import AIProvider, DeltaCallback
from conference.replies import InMemoryReplyStore
from conference.runner import HumanReplyQueue, RoundRunner


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because stream is defined in the class body below.
        self.stream = AsyncMock(  # type: ignore[assignment]
            return_value=Completion(
                content=response_content,
                prompt_tokens=12,
                completion_tokens=8,
                latency_sec=0.1,
            )
        )

    def name(self) -> str:
        return self._name

    def timeout_sec(self) -> int:
        return 5

    async def stream(self, model: str, messages: list[ChatMessage], on_delta: DeltaCallback) -> Completion:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        on_delta(self._response_content)
        return Completion(content=self._response_content)


class FakeGenerator(GenerationClient):
    """Scripted generation client keyed by agent id.

    A script entry is a string (streamed then returned), an exception (raised),
    or a callable taking (request, on_delta, cancel) that may await.
    """

    def __init__(self, scripts: dict | None = None) -> None:
        self.scripts = dict(scripts or {})
        self.requests: list[GenerationRequest] = []

    async def stream_generate(self, request, on_delta, cancel=None) -> Completion:
        self.requests.append(request)
        default = f"Point from {request.agent_id} in round {request.round_id}."
        script = self.scripts.get(request.agent_id, default)
        if isinstance(script, BaseException):
            raise script
        if callable(script):
            return await script(request, on_delta, cancel)
        on_delta(script)
        return Completion(content=script)


def hang_until_cancelled(started: asyncio.Event):
    """Script that streams a fragment, signals ``started`` and never finishes."""

    async def script(request, on_delta, cancel):
        on_delta("partial thought")
        started.set()
        await asyncio.Event().wait()

    return script


@pytest.fixture
def panel() -> list[AgentProfile]:
    return [
        AgentProfile(id="a1", name="Alpha", provider="mock", model="model-a"),
        AgentProfile(id="a2", name="Beta", provider="mock", model="model-b"),
        AgentProfile(id="a3", name="Gamma", provider="mock", model="model-c"),
    ]


@pytest.fixture
def store() -> InMemoryReplyStore:
    return InMemoryReplyStore()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def make_runner(panel, store, generator):
    def _make(**overrides) -> RoundRunner:
        kwargs = dict(
            conversation_id="conv-1",
            panel=panel,
            generator=generator,
            replies=store,
            queue=HumanReplyQueue(),
        )
        kwargs.update(overrides)
        return RoundRunner(**kwargs)

    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(fake_clock) -> InMemoryGateBackend:
    return InMemoryGateBackend(clock=fake_clock)


@pytest.fixture
def gate_config() -> GateConfig:
    return GateConfig()


@pytest.fixture
def memory_gate(memory_backend, gate_config) -> ResilienceGate:
    return ResilienceGate.over(memory_backend, gate_config)
