"""Caller-side facade: one active round per conversation, queueing, cancel, retry."""

import asyncio
import logging

from conference.models import ChatMessage, RoundResult
from conference.replies import ReplyService, StoredMessage
from conference.runner import RoundRunner

logger = logging.getLogger(__name__)


class ConferenceError(Exception):
    """Raised when the conference is asked to do something it cannot do right now."""


class Conference:
    def __init__(self, runner: RoundRunner, replies: ReplyService) -> None:
        self.runner = runner
        self._replies = replies
        self._cancel: asyncio.Event | None = None
        self._running = False
        self.failed_agent_ids: list[str] = []

    @property
    def conversation_id(self) -> str:
        return self.runner.conversation_id

    @property
    def is_running(self) -> bool:
        return self._running

    def _to_chat(self, message: StoredMessage) -> ChatMessage:
        if message.role == "assistant":
            profile = next((a for a in self.runner.panel if a.id == message.avatar_id), None)
            return ChatMessage("assistant", message.content, name=profile.name if profile else message.avatar_id)
        return ChatMessage("user", message.content)

    async def submit(self, content: str, parent_message_id: str | None = None) -> RoundResult | None:
        """Open and run the next round, or queue the message if a round is running.

        Returns None when the message was queued; it will open its own round
        at the next agent-turn boundary.
        """
        text = content.strip()
        if not text:
            raise ConferenceError("Cannot submit an empty message.")
        if self._running:
            self.runner.queue.submit(text, parent_message_id)
            logger.info("Round in progress, queued reply (%d pending)", len(self.runner.queue))
            return None

        self._running = True
        try:
            prior = await self._replies.list_messages(self.conversation_id)
            round_number = 1 + sum(1 for m in prior if m.mode == "human")
            context, message = await self.runner.open_round(text, parent_message_id, round_number)
            transcript = [self._to_chat(m) for m in prior]
            transcript.append(ChatMessage("user", message.content))
            self.runner.board.reset(self.runner.panel)
            result = await self._execute(context, self.runner.panel_ids, transcript)
        finally:
            self._running = False

        self.failed_agent_ids = list(result.failed_agent_ids)
        return result

    def cancel(self) -> bool:
        """Raise the active round's cancel signal. Returns False when nothing is running."""
        if self._cancel is None:
            return False
        logger.info("Cancelling active round")
        self._cancel.set()
        return True

    async def retry_failed_agent(self, agent_id: str) -> RoundResult:
        if agent_id not in self.failed_agent_ids:
            raise ConferenceError(f"Agent {agent_id} has no failed turn to retry.")
        result = await self._retry([agent_id])
        return result

    async def retry_all_failed(self) -> RoundResult:
        if not self.failed_agent_ids:
            raise ConferenceError("No failed agents to retry.")
        return await self._retry(list(self.failed_agent_ids))

    async def _retry(self, agent_ids: list[str]) -> RoundResult:
        if self._running:
            raise ConferenceError("A round is already running.")
        context = self.runner.last_context
        if context is None:
            raise ConferenceError("No partial round found to recover.")

        self._running = True
        try:
            result = await self._execute(context, agent_ids, self.runner.last_transcript)
        finally:
            self._running = False

        if result.round_id != context.round_id:
            # A queued reply opened a newer round; only its failures are recoverable.
            self.failed_agent_ids = list(result.failed_agent_ids)
        else:
            still_failed = set(result.failed_agent_ids)
            kept = [a for a in self.failed_agent_ids if a not in agent_ids or a in still_failed]
            self.failed_agent_ids = kept
        return result

    async def _execute(self, context, agent_ids: list[str], transcript: list[ChatMessage]) -> RoundResult:
        self._cancel = asyncio.Event()
        try:
            return await self.runner.run(context, agent_ids, transcript, self._cancel)
        finally:
            self._cancel = None
