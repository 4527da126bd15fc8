"""Atomic counter/key-value stores behind the resilience gate.

``RedisGateBackend`` is the shared store used across processes. Every
multi-step operation runs as a single Lua script or ``SET NX EX`` so no
read-then-write ever spans two round trips. ``InMemoryGateBackend`` is the
best-effort, single-process fallback with the same interface.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class GateUnavailable(Exception):
    """Raised when the gate store cannot be reached or answers garbage."""

    def __init__(self, backend_name: str, message: str) -> None:
        self.backend_name = backend_name
        super().__init__(f"[{backend_name}] {message}")


@dataclass(frozen=True)
class WindowCount:
    count: int
    ttl_sec: int


@dataclass(frozen=True)
class SlotCount:
    acquired: bool
    active: int


class GateBackend(ABC):
    """Atomic primitives the four gate checks are built from."""

    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def incr_window(self, key: str, window_sec: int) -> WindowCount:
        """Increment a fixed-window counter, starting the window on the first hit."""
        ...

    @abstractmethod
    async def set_if_absent(self, key: str, ttl_sec: int) -> bool:
        """Create ``key`` with a TTL only if it does not exist. True for the single winner."""
        ...

    @abstractmethod
    async def acquire_slot(self, key: str, limit: int, ttl_sec: int) -> SlotCount:
        """Increment-then-check; roll back the increment when over ``limit``."""
        ...

    @abstractmethod
    async def release_slot(self, key: str, ttl_sec: int) -> int:
        """Decrement with a floor of zero; refresh the TTL or drop the key."""
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining seconds on ``key``, 0 when absent or expired."""
        ...

    @abstractmethod
    async def set_flag(self, key: str, ttl_sec: int) -> None:
        """Set ``key`` unconditionally with a TTL."""
        ...


class InMemoryGateBackend(GateBackend):
    """Process-local fallback. Not safe across multiple instances.

    All operations complete without awaiting, so they are atomic with respect
    to other coroutines on the same event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._flags: dict[str, float] = {}

    def name(self) -> str:
        return "memory"

    def _remaining(self, expires_at: float) -> int:
        return max(0, math.ceil(expires_at - self._clock()))

    def _live_counter(self, key: str) -> tuple[int, float] | None:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._counters[key]
            return None
        return entry

    async def incr_window(self, key: str, window_sec: int) -> WindowCount:
        entry = self._live_counter(key)
        if entry is None:
            self._counters[key] = (1, self._clock() + window_sec)
            return WindowCount(count=1, ttl_sec=window_sec)
        count, expires_at = entry[0] + 1, entry[1]
        self._counters[key] = (count, expires_at)
        return WindowCount(count=count, ttl_sec=max(1, self._remaining(expires_at)))

    async def set_if_absent(self, key: str, ttl_sec: int) -> bool:
        expires_at = self._flags.get(key)
        if expires_at is not None and expires_at > self._clock():
            return False
        self._flags[key] = self._clock() + ttl_sec
        return True

    async def acquire_slot(self, key: str, limit: int, ttl_sec: int) -> SlotCount:
        entry = self._live_counter(key)
        current = entry[0] if entry else 0
        if current + 1 > limit:
            return SlotCount(acquired=False, active=current)
        self._counters[key] = (current + 1, self._clock() + ttl_sec)
        return SlotCount(acquired=True, active=current + 1)

    async def release_slot(self, key: str, ttl_sec: int) -> int:
        entry = self._live_counter(key)
        if entry is None:
            return 0
        remaining = max(0, entry[0] - 1)
        if remaining == 0:
            del self._counters[key]
        else:
            self._counters[key] = (remaining, self._clock() + ttl_sec)
        return remaining

    async def ttl(self, key: str) -> int:
        expires_at = self._flags.get(key)
        if expires_at is None:
            return 0
        remaining = self._remaining(expires_at)
        if remaining == 0:
            del self._flags[key]
        return remaining

    async def set_flag(self, key: str, ttl_sec: int) -> None:
        self._flags[key] = self._clock() + ttl_sec


_INCR_WINDOW_SCRIPT = """
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call("TTL", KEYS[1])
if ttl < 0 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

_ACQUIRE_SLOT_SCRIPT = """
local current = redis.call("INCR", KEYS[1])
redis.call("EXPIRE", KEYS[1], tonumber(ARGV[2]))
if current > tonumber(ARGV[1]) then
  local next = redis.call("DECR", KEYS[1])
  if next <= 0 then
    redis.call("DEL", KEYS[1])
    next = 0
  end
  return {0, next}
end
return {1, current}
"""

_RELEASE_SLOT_SCRIPT = """
local next = redis.call("DECR", KEYS[1])
if next <= 0 then
  redis.call("DEL", KEYS[1])
  return 0
end
redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
return next
"""


class RedisGateBackend(GateBackend):
    """Shared gate store on Redis via ``redis.asyncio``."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_sec: float = 2.5) -> "RedisGateBackend":
        client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_sec,
            socket_connect_timeout=timeout_sec,
        )
        return cls(client)

    def name(self) -> str:
        return "redis"

    async def _eval(self, script: str, key: str, *args: int) -> object:
        try:
            return await self._client.eval(script, 1, key, *args)
        except (RedisError, OSError, TimeoutError) as exc:
            raise GateUnavailable(self.name(), f"EVAL on {key} failed: {exc}") from exc

    def _pair(self, key: str, result: object) -> tuple[int, int]:
        if not isinstance(result, (list, tuple)) or len(result) != 2:
            raise GateUnavailable(self.name(), f"Unexpected script reply for {key}: {result!r}")
        try:
            return int(result[0]), int(result[1])
        except (TypeError, ValueError) as exc:
            raise GateUnavailable(self.name(), f"Non-numeric script reply for {key}: {result!r}") from exc

    async def incr_window(self, key: str, window_sec: int) -> WindowCount:
        count, ttl = self._pair(key, await self._eval(_INCR_WINDOW_SCRIPT, key, window_sec))
        return WindowCount(count=count, ttl_sec=ttl if ttl > 0 else window_sec)

    async def set_if_absent(self, key: str, ttl_sec: int) -> bool:
        try:
            result = await self._client.set(key, "1", nx=True, ex=ttl_sec)
        except (RedisError, OSError, TimeoutError) as exc:
            raise GateUnavailable(self.name(), f"SET NX on {key} failed: {exc}") from exc
        return bool(result)

    async def acquire_slot(self, key: str, limit: int, ttl_sec: int) -> SlotCount:
        acquired, active = self._pair(key, await self._eval(_ACQUIRE_SLOT_SCRIPT, key, limit, ttl_sec))
        return SlotCount(acquired=acquired == 1, active=active)

    async def release_slot(self, key: str, ttl_sec: int) -> int:
        result = await self._eval(_RELEASE_SLOT_SCRIPT, key, ttl_sec)
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise GateUnavailable(self.name(), f"Non-numeric release reply for {key}: {result!r}") from exc

    async def ttl(self, key: str) -> int:
        try:
            result = await self._client.ttl(key)
        except (RedisError, OSError, TimeoutError) as exc:
            raise GateUnavailable(self.name(), f"TTL on {key} failed: {exc}") from exc
        try:
            remaining = int(result)
        except (TypeError, ValueError) as exc:
            raise GateUnavailable(self.name(), f"Non-numeric TTL reply for {key}: {result!r}") from exc
        return remaining if remaining > 0 else 0

    async def set_flag(self, key: str, ttl_sec: int) -> None:
        try:
            await self._client.set(key, "1", ex=ttl_sec)
        except (RedisError, OSError, TimeoutError) as exc:
            raise GateUnavailable(self.name(), f"SET on {key} failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
