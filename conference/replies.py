"""Reply persistence: the interface the runner writes through, plus an in-memory store."""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass
class ReplyRequest:
    conversation_id: str
    parent_message_id: str | None
    content: str
    mode: str                      # "human" or "agent"
    round_id: str | None = None
    avatar_id: str | None = None
    idempotency_key: str | None = None


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: str                      # "user" or "assistant"
    content: str
    mode: str
    parent_message_id: str | None = None
    round_id: str | None = None
    avatar_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReplyService(ABC):
    """Reply creation and thread read. Must be idempotent per idempotency key."""

    @abstractmethod
    async def create_reply(self, request: ReplyRequest) -> StoredMessage:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        """All messages of a conversation, oldest first."""
        ...


class InMemoryReplyStore(ReplyService):
    """Process-local reply store for the CLI and tests."""

    def __init__(self) -> None:
        self._messages: dict[str, list[StoredMessage]] = {}
        self._by_key: dict[tuple[str, str], StoredMessage] = {}

    async def create_reply(self, request: ReplyRequest) -> StoredMessage:
        if request.mode not in ("human", "agent"):
            raise ValueError(f"Unknown reply mode: {request.mode}")

        if request.idempotency_key:
            existing = self._by_key.get((request.conversation_id, request.idempotency_key))
            if existing is not None:
                logger.debug("Reply replayed for key %s", request.idempotency_key)
                return existing

        message = StoredMessage(
            id=str(uuid.uuid4()),
            conversation_id=request.conversation_id,
            role="user" if request.mode == "human" else "assistant",
            content=request.content,
            mode=request.mode,
            parent_message_id=request.parent_message_id,
            round_id=request.round_id,
            avatar_id=request.avatar_id,
        )
        self._messages.setdefault(request.conversation_id, []).append(message)
        if request.idempotency_key:
            self._by_key[(request.conversation_id, request.idempotency_key)] = message
        return message

    async def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        return list(self._messages.get(conversation_id, []))
