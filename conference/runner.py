"""Round orchestration: one agent at a time, cancellable, with queued human replies."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace

from conference.gateway import GateDenied, GenerationCancelled, GenerationClient
from conference.models import (
    AgentProfile,
    AgentRole,
    AgentRunState,
    AgentStatus,
    ChatMessage,
    Completion,
    GenerationRequest,
    QueuedHumanReply,
    RoundContext,
    RoundResult,
)
from conference.phases import assign_roles, build_system_prompt, phase_for_round
from conference.quality import RepetitionPolicy, is_pure_repetition, normalize_agent_output
from conference.replies import ReplyRequest, ReplyService, StoredMessage

logger = logging.getLogger(__name__)

NO_MODEL_ERROR = "No model selected for this agent."
EMPTY_RESPONSE_ERROR = "Model returned an empty response."
REPETITION_ERROR = "Response repeated prior points without additive value."
CANCELLED_ERROR = "Generation cancelled."
TURN_CUE = "Your turn, {name}. Add your contribution to round {round_number}."

StateListener = Callable[[str, AgentRunState], None]


class AgentStateBoard:
    """Per-agent run state. Only the runner writes; listeners are told of every change."""

    def __init__(self, listener: StateListener | None = None) -> None:
        self._states: dict[str, AgentRunState] = {}
        self._listeners: list[StateListener] = [listener] if listener else []

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def reset(self, agents: list[AgentProfile]) -> None:
        self._states = {}
        for agent in agents:
            self.update(agent.id, status=AgentStatus.QUEUED, model_id=agent.model,
                        preview="", error=None, retry_after_sec=None)

    def get(self, agent_id: str) -> AgentRunState:
        return self._states.get(agent_id, AgentRunState())

    def snapshot(self) -> dict[str, AgentRunState]:
        return dict(self._states)

    def update(self, agent_id: str, **changes) -> AgentRunState:
        state = replace(self.get(agent_id), **changes)
        self._states[agent_id] = state
        for listener in self._listeners:
            listener(agent_id, state)
        return state


class HumanReplyQueue:
    """FIFO of human replies posted while a round is running."""

    def __init__(self) -> None:
        self._entries: deque[QueuedHumanReply] = deque()

    def submit(self, content: str, parent_message_id: str | None = None) -> QueuedHumanReply:
        entry = QueuedHumanReply(parent_message_id=parent_message_id, content=content)
        self._entries.append(entry)
        return entry

    def pop(self) -> QueuedHumanReply | None:
        return self._entries.popleft() if self._entries else None

    def pending(self) -> list[QueuedHumanReply]:
        return list(self._entries)

    def drain(self) -> list[QueuedHumanReply]:
        entries = list(self._entries)
        self._entries.clear()
        return entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class _Pass:
    context: RoundContext
    agent_ids: list[str]


class RoundRunner:
    """Drive a panel through one round, turn by turn.

    Agents run strictly in order because each one's prompt carries the
    normalized output of the agents before it. Every per-agent failure ends
    in a board update; ``run`` only raises if its own task is cancelled.
    """

    def __init__(
        self,
        conversation_id: str,
        panel: list[AgentProfile],
        generator: GenerationClient,
        replies: ReplyService,
        board: AgentStateBoard | None = None,
        queue: HumanReplyQueue | None = None,
        repetition_policy: RepetitionPolicy | None = None,
        preview_chars: int = 1000,
        citation_window: int = 6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.conversation_id = conversation_id
        self.panel = list(panel)
        self.board = board or AgentStateBoard()
        self.queue = queue or HumanReplyQueue()
        self._generator = generator
        self._replies = replies
        self._policy = repetition_policy or RepetitionPolicy()
        self._preview_chars = preview_chars
        self._citation_window = citation_window
        self._clock = clock
        self._profiles = {agent.id: agent for agent in self.panel}
        self.last_context: RoundContext | None = None
        self.last_transcript: list[ChatMessage] = []

    @property
    def panel_ids(self) -> list[str]:
        return [agent.id for agent in self.panel]

    async def open_round(
        self,
        content: str,
        parent_message_id: str | None,
        round_number: int,
    ) -> tuple[RoundContext, StoredMessage]:
        """Persist a human message and build the round it opens."""
        prior = await self._replies.list_messages(self.conversation_id)
        message = await self._replies.create_reply(ReplyRequest(
            conversation_id=self.conversation_id,
            parent_message_id=parent_message_id,
            content=content,
            mode="human",
        ))
        recent = [m.id for m in reversed(prior)][: self._citation_window]
        context = RoundContext(
            conversation_id=self.conversation_id,
            round_id=message.id,
            round_number=round_number,
            phase=phase_for_round(round_number),
            citation_pool=[message.id, *recent],
        )
        logger.info("Opened round %d (%s) on message %s", round_number, context.phase.value, message.id)
        return context, message

    async def run(
        self,
        context: RoundContext,
        agent_ids: list[str],
        transcript: list[ChatMessage],
        cancel: asyncio.Event | None = None,
    ) -> RoundResult:
        """Run ``agent_ids`` in order against ``context``.

        Queued human replies are drained one per turn boundary; each opens the
        next round and the rest of the pass continues under it.
        """
        cancel = cancel or asyncio.Event()
        transcript = list(transcript)
        roles = assign_roles(self.panel_ids)
        work: deque[_Pass] = deque([_Pass(context, list(agent_ids))])
        failed: list[str] = []
        dropped: list[QueuedHumanReply] = []
        cancelled = False
        current = context

        try:
            while work and not cancelled:
                step = work.popleft()
                current = step.context
                logger.info(
                    "Round %d (%s): running %d agent(s)",
                    current.round_number, current.phase.value, len(step.agent_ids),
                )
                for index, agent_id in enumerate(step.agent_ids):
                    if cancel.is_set():
                        self._cancel_remaining(step.agent_ids[index:])
                        cancelled = True
                        break

                    outcome = await self._run_turn(
                        agent_id, current, roles.get(agent_id, AgentRole.DEFAULT), transcript, cancel
                    )
                    if outcome is AgentStatus.CANCELLED:
                        self._cancel_remaining(step.agent_ids[index + 1:])
                        cancelled = True
                        break
                    if outcome is AgentStatus.FAILED:
                        failed.append(agent_id)

                    reply = self.queue.pop()
                    if reply is None:
                        continue
                    try:
                        next_context = await self._open_from_queue(reply, current, transcript)
                    except Exception as exc:
                        logger.error("Could not persist queued reply, dropping it: %s", exc)
                        dropped.append(reply)
                        continue

                    remaining = step.agent_ids[index + 1:] or self.panel_ids
                    self._requeue(remaining)
                    failed = []
                    work.append(_Pass(next_context, remaining))
                    break
        except asyncio.CancelledError:
            self._cancel_remaining(self.panel_ids)
            raise
        finally:
            self.last_context = current
            self.last_transcript = list(transcript)
            leftover = self.queue.drain()
            if leftover:
                logger.warning("Round ended with %d queued reply(ies) not run", len(leftover))
                dropped.extend(leftover)

        result = RoundResult(
            round_id=current.round_id,
            round_number=current.round_number,
            failed_agent_ids=failed,
            cancelled=cancelled,
            dropped_replies=dropped,
        )
        logger.info(
            "Round %d finished: %s (%d failed)",
            result.round_number, result.status.value, len(result.failed_agent_ids),
        )
        return result

    async def _open_from_queue(
        self,
        reply: QueuedHumanReply,
        context: RoundContext,
        transcript: list[ChatMessage],
    ) -> RoundContext:
        next_context, message = await self.open_round(
            reply.content, reply.parent_message_id, context.round_number + 1
        )
        transcript.append(ChatMessage(role="user", content=message.content))
        return next_context

    def _requeue(self, agent_ids: list[str]) -> None:
        for agent_id in agent_ids:
            profile = self._profiles.get(agent_id)
            self.board.update(
                agent_id,
                status=AgentStatus.QUEUED,
                model_id=profile.model if profile else None,
                preview="",
                error=None,
                retry_after_sec=None,
            )

    def _cancel_remaining(self, agent_ids: list[str]) -> None:
        for agent_id in agent_ids:
            if self.board.get(agent_id).status in (AgentStatus.QUEUED, AgentStatus.GENERATING):
                self.board.update(agent_id, status=AgentStatus.CANCELLED, error=CANCELLED_ERROR)

    def _fail(self, agent_id: str, error: str, retry_after_sec: int | None = None) -> AgentStatus:
        logger.warning("Agent %s failed: %s", agent_id, error)
        self.board.update(agent_id, status=AgentStatus.FAILED, error=error, retry_after_sec=retry_after_sec)
        return AgentStatus.FAILED

    async def _run_turn(
        self,
        agent_id: str,
        context: RoundContext,
        role: AgentRole,
        transcript: list[ChatMessage],
        cancel: asyncio.Event,
    ) -> AgentStatus:
        agent = self._profiles.get(agent_id)
        if agent is None or not agent.model:
            return self._fail(agent_id, NO_MODEL_ERROR)

        self.board.update(agent_id, status=AgentStatus.GENERATING, model_id=agent.model,
                          preview="", error=None, retry_after_sec=None)
        buffered: list[str] = []
        tail = ""

        def on_delta(chunk: str) -> None:
            nonlocal tail
            buffered.append(chunk)
            tail = (tail + chunk)[-self._preview_chars:]
            self.board.update(agent_id, preview=tail)

        dispatched_ms = int(self._clock() * 1000)
        idempotency_key = f"{context.conversation_id}:{context.round_id}:{agent.id}:{agent.model}:{dispatched_ms}"
        system_prompt = build_system_prompt(
            context.phase,
            context.round_number,
            agent.name,
            role,
            context.citation_pool,
            context.fallback_reference_id,
        )
        request = GenerationRequest(
            conversation_id=context.conversation_id,
            round_id=context.round_id,
            agent_id=agent.id,
            provider=agent.provider,
            model_id=agent.model,
            messages=_request_messages(system_prompt, transcript, agent.name, context.round_number),
            idempotency_key=idempotency_key,
        )

        try:
            completion = await self._generate(request, on_delta, cancel)
            raw = (completion.content or "".join(buffered)).strip()
            if not raw:
                return self._fail(agent_id, EMPTY_RESPONSE_ERROR)

            normalized = normalize_agent_output(
                raw, context.phase, role, context.citation_pool, context.fallback_reference_id
            )
            prior = [m.content for m in transcript if m.role == "assistant"]
            if is_pure_repetition(normalized.content, prior, self._policy):
                return self._fail(agent_id, REPETITION_ERROR)

            await self._replies.create_reply(ReplyRequest(
                conversation_id=context.conversation_id,
                parent_message_id=context.round_id,
                content=normalized.content,
                mode="agent",
                round_id=context.round_id,
                avatar_id=agent.id,
                idempotency_key=idempotency_key,
            ))
        except asyncio.CancelledError:
            self.board.update(agent_id, status=AgentStatus.CANCELLED, error=CANCELLED_ERROR)
            raise
        except Exception as exc:
            if _is_cancellation(exc, cancel):
                logger.info("Agent %s cancelled", agent_id)
                self.board.update(agent_id, status=AgentStatus.CANCELLED, error=CANCELLED_ERROR)
                return AgentStatus.CANCELLED
            if isinstance(exc, GateDenied):
                return self._fail(agent_id, str(exc), exc.retry_after_sec)
            return self._fail(agent_id, str(exc) or "Generation failed.")

        transcript.append(ChatMessage(role="assistant", content=normalized.content, name=agent.name))
        self.board.update(agent_id, status=AgentStatus.COMPLETED,
                          preview=normalized.content[: self._preview_chars], error=None)
        logger.info("Agent %s completed round %d", agent_id, context.round_number)
        return AgentStatus.COMPLETED

    async def _generate(
        self,
        request: GenerationRequest,
        on_delta: Callable[[str], None],
        cancel: asyncio.Event,
    ) -> Completion:
        """Race the streaming call against the round's cancel signal."""
        generation = asyncio.ensure_future(self._generator.stream_generate(request, on_delta, cancel))
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({generation, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            generation.cancel()
            raise
        finally:
            watcher.cancel()

        if generation in done:
            return generation.result()

        generation.cancel()
        try:
            await generation
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("Generation for %s ended after cancel: %s", request.agent_id, exc)
        raise GenerationCancelled(request.agent_id)


def _request_messages(
    system_prompt: str,
    transcript: list[ChatMessage],
    agent_name: str,
    round_number: int,
) -> list[ChatMessage]:
    """System prompt, then the thread, always ending on a user turn."""
    messages = [ChatMessage(role="system", content=system_prompt), *transcript]
    if messages[-1].role != "user":
        messages.append(ChatMessage(role="user", content=TURN_CUE.format(name=agent_name, round_number=round_number)))
    return messages


def _is_cancellation(exc: Exception, cancel: asyncio.Event) -> bool:
    if cancel.is_set() or isinstance(exc, GenerationCancelled):
        return True
    return "cancelled" in str(exc).lower()
