"""Pure dataclasses and enums for the conference pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


class Phase(str, Enum):
    DIVERGE = "diverge"
    CHALLENGE = "challenge"
    SYNTHESIZE = "synthesize"


class AgentRole(str, Enum):
    DEFAULT = "default"
    CONTRARIAN = "contrarian"
    SYNTHESIZER = "synthesizer"


class AgentStatus(str, Enum):
    QUEUED = "queued"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RoundStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PARTIALLY_FAILED = "partially_failed"


@dataclass
class AgentProfile:
    id: str
    name: str
    provider: str          # key into settings.yaml providers
    model: str | None      # None means no model bound; the agent fails its turn


@dataclass
class ChatMessage:
    role: str              # "system", "user" or "assistant"
    content: str
    name: str | None = None  # speaker tag for agent turns

    def to_api(self) -> dict[str, str]:
        if self.name:
            return {"role": self.role, "content": f"[{self.name}] {self.content}"}
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class AgentRunState:
    status: AgentStatus = AgentStatus.QUEUED
    model_id: str | None = None
    preview: str = ""
    error: str | None = None
    retry_after_sec: int | None = None


@dataclass(frozen=True)
class QueuedHumanReply:
    parent_message_id: str | None
    content: str


@dataclass
class RoundContext:
    conversation_id: str
    round_id: str          # id of the user message that opened the round
    round_number: int
    phase: Phase
    citation_pool: list[str] = field(default_factory=list)

    @property
    def fallback_reference_id(self) -> str:
        return self.round_id


@dataclass
class RoundResult:
    round_id: str
    round_number: int
    failed_agent_ids: list[str] = field(default_factory=list)
    cancelled: bool = False
    dropped_replies: list[QueuedHumanReply] = field(default_factory=list)

    @property
    def status(self) -> RoundStatus:
        if self.cancelled:
            return RoundStatus.CANCELLED
        if self.failed_agent_ids:
            return RoundStatus.PARTIALLY_FAILED
        return RoundStatus.COMPLETED


@dataclass
class GenerationRequest:
    conversation_id: str
    round_id: str
    agent_id: str
    provider: str
    model_id: str
    messages: list[ChatMessage]
    idempotency_key: str | None = None


@dataclass
class Completion:
    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_sec: float = 0.0
