"""Generation collaborator: resilience gate + provider stream + usage metering.

This is the server boundary in front of the shared inference endpoint. Every
call passes the rate limiter, the provider circuit, the idempotency claim and
the per-user concurrency slot before any tokens are requested. Denials are
raised as ``GateDenied`` with a machine-readable code and retry hint and are
never retried here.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod

from conference.gate.primitives import build_request_key
from conference.gate.resilience import ResilienceGate
from conference.models import Completion, GenerationRequest
from conference.providers.base import AIProvider, DeltaCallback, ProviderError
from conference.usage import UsageEvent, UsageRecorder

logger = logging.getLogger(__name__)

# Provider statuses that mark the upstream as unhealthy rather than the request as bad.
_CIRCUIT_STATUSES = {503, 504}


class GateDenied(Exception):
    """A gate check refused the call. ``retry_after_sec`` is None when retrying cannot help."""

    def __init__(self, code: str, message: str, retry_after_sec: int | None = None) -> None:
        self.code = code
        self.retry_after_sec = retry_after_sec
        suffix = f" (retry after {retry_after_sec}s)" if retry_after_sec else ""
        super().__init__(f"{code}: {message}{suffix}")


class GenerationCancelled(Exception):
    """The round's cancellation signal stopped this generation."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Generation cancelled for {agent_id}.")


class GenerationClient(ABC):
    @abstractmethod
    async def stream_generate(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: asyncio.Event | None = None,
    ) -> Completion:
        """Stream one agent turn. ``on_delta`` gets fragments; the returned content is authoritative."""
        ...


class GenerationGateway(GenerationClient):
    def __init__(
        self,
        providers: dict[str, AIProvider],
        gate: ResilienceGate,
        usage: UsageRecorder,
        user_id: str,
    ) -> None:
        self._providers = providers
        self._gate = gate
        self._usage = usage
        self._user_id = user_id

    async def _admit(self, request: GenerationRequest, provider: AIProvider) -> str:
        """Run the gate checks in order and return the claimed request id."""
        limits = self._gate.limits

        rate = await self._gate.rate_limiter.enforce(
            "user", f"{self._user_id}:generate-stream", limits.rate_limit, limits.rate_window_sec
        )
        if not rate.allowed:
            raise GateDenied("RATE_LIMITED", "Rate limited. Try again in a few seconds.", rate.retry_after_sec)

        cooldown = await self._gate.circuit.cooldown_seconds(provider.name())
        if cooldown > 0:
            raise GateDenied("UPSTREAM_COOLDOWN", f"{provider.name()} is busy. Please retry shortly.", cooldown)

        request_id = request.idempotency_key or build_request_key(
            "ai:generate-stream",
            {
                "conversationId": request.conversation_id,
                "roundId": request.round_id,
                "agentId": request.agent_id,
                "modelId": request.model_id,
                "messages": [m.to_api() for m in request.messages],
            },
        )
        if not await self._gate.idempotency.claim(self._user_id, request_id, limits.idempotency_ttl_sec):
            raise GateDenied("DUPLICATE_REQUEST", "Duplicate generation request blocked.")
        return request_id

    async def stream_generate(
        self,
        request: GenerationRequest,
        on_delta: DeltaCallback,
        cancel: asyncio.Event | None = None,
    ) -> Completion:
        provider = self._providers.get(request.provider)
        if provider is None:
            raise ProviderError(request.provider, "Provider is not configured or has no API key")
        if cancel is not None and cancel.is_set():
            raise GenerationCancelled(request.agent_id)

        request_id = await self._admit(request, provider)

        limits = self._gate.limits
        lease = await self._gate.concurrency.acquire(
            self._user_id, limits.max_concurrent, limits.concurrency_ttl_sec
        )
        if not lease.acquired:
            # a held slot frees once its call finishes or times out
            raise GateDenied(
                "CONCURRENCY_LIMIT",
                "Too many concurrent generations. Please wait for current requests to finish.",
                min(provider.timeout_sec(), limits.concurrency_ttl_sec),
            )

        start = time.monotonic()
        completion: Completion | None = None
        status_code = 500
        try:
            completion = await asyncio.wait_for(
                provider.stream(request.model_id, request.messages, on_delta),
                timeout=provider.timeout_sec(),
            )
            status_code = 200
            return completion
        except asyncio.CancelledError:
            status_code = 499
            raise
        except TimeoutError as exc:
            status_code = 504
            await self._gate.circuit.open(provider.name(), limits.circuit_cooldown_sec)
            raise ProviderError(
                provider.name(), f"Request timed out after {provider.timeout_sec()}s", 504
            ) from exc
        except ProviderError as exc:
            status_code = exc.status_code or 503
            if exc.status_code is None or exc.status_code in _CIRCUIT_STATUSES:
                await self._gate.circuit.open(provider.name(), limits.circuit_cooldown_sec)
            raise
        finally:
            await self._record_usage(request, request_id, completion, status_code, start)
            await lease.release()

    async def _record_usage(
        self,
        request: GenerationRequest,
        request_id: str,
        completion: Completion | None,
        status_code: int,
        start: float,
    ) -> None:
        event = UsageEvent(
            user_id=self._user_id,
            conversation_id=request.conversation_id,
            round_id=request.round_id,
            model_id=request.model_id,
            prompt_tokens=completion.prompt_tokens if completion else 0,
            completion_tokens=completion.completion_tokens if completion else 0,
            latency_ms=int((time.monotonic() - start) * 1000),
            status="success" if status_code == 200 else "error",
            status_code=status_code,
            request_id=request_id,
        )
        try:
            await self._usage.record(event)
        except Exception as exc:
            logger.warning("Usage metering failed for %s: %s", request_id, exc)
