"""The four resilience-gate checks guarding the shared inference endpoint.

Each check runs against the primary (shared) backend first. When that store
is unreachable it degrades to the process-local fallback, unless the gate is
strict, in which case it fails closed and denies.

Key namespaces are shared with external dashboards and must not change:
``ratelimit:{scope}:{id}``, ``idem:{user}:{key}``, ``concurrency:{user}``,
``circuit:{provider}:cooldown``.
"""

import hashlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from conference.gate.backends import GateBackend, GateUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    retry_after_sec: int


class SlotLease:
    """A held (or refused) concurrency slot. ``release()`` is safe to call twice."""

    def __init__(
        self,
        acquired: bool,
        active: int,
        key: str = "",
        ttl_sec: int = 0,
        backend: GateBackend | None = None,
    ) -> None:
        self.acquired = acquired
        self.active = active
        self._key = key
        self._ttl_sec = ttl_sec
        self._backend = backend
        self._released = False

    async def release(self) -> None:
        if not self.acquired or self._released or self._backend is None:
            return
        self._released = True
        try:
            await self._backend.release_slot(self._key, self._ttl_sec)
        except GateUnavailable as exc:
            # The slot key carries a TTL, so the store reclaims it on its own.
            logger.warning("Could not release %s, leaving it to expire: %s", self._key, exc)


class _GateCheck:
    def __init__(
        self,
        backend: GateBackend | None,
        fallback: GateBackend | None = None,
        strict: bool = False,
    ) -> None:
        self._backend = backend
        self._fallback = None if strict else fallback
        self._strict = strict

    async def _run(self, label: str, operation: Callable[[GateBackend], Awaitable[T]], denied: T) -> T:
        if self._backend is not None:
            try:
                return await operation(self._backend)
            except GateUnavailable as exc:
                logger.warning("Gate store unavailable for %s: %s", label, exc)
        if self._fallback is None:
            logger.warning("Gate %s failing closed (strict=%s)", label, self._strict)
            return denied
        return await operation(self._fallback)


class RateLimiter(_GateCheck):
    """Fixed-window request counter."""

    async def enforce(self, scope: str, identifier: str, limit: int, window_sec: int) -> RateLimitResult:
        key = f"ratelimit:{scope}:{identifier}"

        async def consume(backend: GateBackend) -> RateLimitResult:
            window = await backend.incr_window(key, window_sec)
            return RateLimitResult(
                allowed=window.count <= limit,
                count=window.count,
                limit=limit,
                retry_after_sec=window.ttl_sec if window.ttl_sec > 0 else window_sec,
            )

        denied = RateLimitResult(allowed=False, count=limit + 1, limit=limit, retry_after_sec=window_sec)
        result = await self._run(key, consume, denied)
        if not result.allowed:
            logger.info("Rate limit hit on %s (%d/%d), retry in %ds", key, result.count, limit, result.retry_after_sec)
        return result


class IdempotencyClaim(_GateCheck):
    """Single-owner claim on a logical operation, released only by TTL."""

    async def claim(self, user_id: str, key: str, ttl_sec: int = 120) -> bool:
        scoped_key = f"idem:{user_id}:{key}"

        async def set_once(backend: GateBackend) -> bool:
            return await backend.set_if_absent(scoped_key, ttl_sec)

        claimed = await self._run(scoped_key, set_once, False)
        if not claimed:
            logger.info("Idempotency key already claimed: %s", scoped_key)
        return claimed


class ConcurrencySlot(_GateCheck):
    """Per-user counting semaphore whose slots expire if a release is lost."""

    async def acquire(self, user_id: str, max_concurrent: int = 2, ttl_sec: int = 90) -> SlotLease:
        key = f"concurrency:{user_id}"

        async def take(backend: GateBackend) -> SlotLease:
            slot = await backend.acquire_slot(key, max_concurrent, ttl_sec)
            if not slot.acquired:
                return SlotLease(acquired=False, active=slot.active)
            return SlotLease(acquired=True, active=slot.active, key=key, ttl_sec=ttl_sec, backend=backend)

        lease = await self._run(key, take, SlotLease(acquired=False, active=max_concurrent + 1))
        if not lease.acquired:
            logger.info("Concurrency limit reached for %s (max %d)", user_id, max_concurrent)
        return lease


class CircuitBreaker(_GateCheck):
    """Time-boxed "unhealthy" flag per provider."""

    def __init__(
        self,
        backend: GateBackend | None,
        fallback: GateBackend | None = None,
        strict: bool = False,
        unavailable_cooldown_sec: int = 15,
    ) -> None:
        super().__init__(backend, fallback, strict)
        self._unavailable_cooldown_sec = unavailable_cooldown_sec

    async def cooldown_seconds(self, provider: str) -> int:
        key = f"circuit:{provider}:cooldown"

        async def remaining(backend: GateBackend) -> int:
            return await backend.ttl(key)

        return await self._run(key, remaining, self._unavailable_cooldown_sec)

    async def open(self, provider: str, ttl_sec: int) -> None:
        key = f"circuit:{provider}:cooldown"

        async def trip(backend: GateBackend) -> None:
            await backend.set_flag(key, ttl_sec)

        logger.warning("Opening circuit for %s for %ds", provider, ttl_sec)
        await self._run(key, trip, None)


def build_request_key(prefix: str, payload: dict[str, Any]) -> str:
    """Deterministic idempotency key for requests that arrive without one."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest[:40]}"
