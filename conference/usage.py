"""Per-call usage events. Cost is derived downstream from a price table, never here."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class UsageEvent:
    user_id: str
    conversation_id: str | None
    round_id: str | None
    model_id: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    status: str                  # "success" or "error"
    status_code: int
    request_id: str | None
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def total_tokens(self) -> int:
        return max(0, self.prompt_tokens) + max(0, self.completion_tokens)


class UsageRecorder(ABC):
    @abstractmethod
    async def record(self, event: UsageEvent) -> None:
        ...


class NullUsageRecorder(UsageRecorder):
    async def record(self, event: UsageEvent) -> None:
        logger.debug(
            "Usage %s %s: %d tokens, %dms, %s",
            event.model_id, event.status, event.total_tokens, event.latency_ms, event.status_code,
        )


class JsonlUsageRecorder(UsageRecorder):
    """Append one JSON line per call to ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def record(self, event: UsageEvent) -> None:
        payload = asdict(event)
        payload["total_tokens"] = event.total_tokens
        await asyncio.to_thread(self._append, json.dumps(payload, ensure_ascii=False))
        logger.debug("Usage recorded for %s (%s)", event.model_id, event.request_id)

    def read_events(self) -> list[UsageEvent]:
        if not self.path.exists():
            return []
        events: list[UsageEvent] = []
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                payload = json.loads(line)
                payload.pop("total_tokens", None)
                events.append(UsageEvent(**payload))
        return events
