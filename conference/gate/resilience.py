"""Bundle the four gate checks over one shared store and one fallback."""

import logging
from dataclasses import dataclass

from config.config_loader import GateConfig
from conference.gate.backends import GateBackend, InMemoryGateBackend, RedisGateBackend
from conference.gate.primitives import CircuitBreaker, ConcurrencySlot, IdempotencyClaim, RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ResilienceGate:
    rate_limiter: RateLimiter
    idempotency: IdempotencyClaim
    concurrency: ConcurrencySlot
    circuit: CircuitBreaker
    limits: GateConfig
    backend: GateBackend | None = None

    @classmethod
    def over(
        cls,
        backend: GateBackend | None,
        limits: GateConfig,
        fallback: GateBackend | None = None,
    ) -> "ResilienceGate":
        """Build all four checks on ``backend``; ``fallback`` is ignored when strict."""
        strict = limits.strict
        return cls(
            rate_limiter=RateLimiter(backend, fallback, strict),
            idempotency=IdempotencyClaim(backend, fallback, strict),
            concurrency=ConcurrencySlot(backend, fallback, strict),
            circuit=CircuitBreaker(backend, fallback, strict, limits.unavailable_cooldown_sec),
            limits=limits,
            backend=backend,
        )

    async def close(self) -> None:
        if isinstance(self.backend, RedisGateBackend):
            await self.backend.close()


def build_gate(limits: GateConfig) -> ResilienceGate:
    """Redis when a URL is configured, in-process fallback unless strict."""
    backend: GateBackend | None = None
    if limits.redis_url:
        backend = RedisGateBackend.from_url(limits.redis_url, timeout_sec=limits.store_timeout_sec)
        logger.info("Resilience gate using Redis store")
    elif limits.strict:
        logger.warning("Strict gate without a Redis URL: every generation will be denied")
    else:
        logger.info("Resilience gate using in-process store (single instance only)")

    fallback = None if limits.strict else InMemoryGateBackend()
    return ResilienceGate.over(backend, limits, fallback)
