"""Tests for conference/session.py."""

import asyncio

import pytest

from conference.models import AgentStatus, Completion, RoundStatus
from conference.session import Conference, ConferenceError
from tests.conftest import hang_until_cancelled


@pytest.fixture
def conference(make_runner, store) -> Conference:
    return Conference(make_runner(), store)


async def test_submit_runs_a_full_round(conference, store, generator):
    result = await conference.submit("  Should we rewrite the billing service?  ")
    assert result.status is RoundStatus.COMPLETED
    assert result.round_number == 1
    assert conference.failed_agent_ids == []
    assert not conference.is_running

    messages = await store.list_messages(conference.conversation_id)
    assert messages[0].content == "Should we rewrite the billing service?"
    assert messages[0].mode == "human"
    assert [m.avatar_id for m in messages[1:]] == ["a1", "a2", "a3"]


async def test_empty_submit_rejected(conference):
    with pytest.raises(ConferenceError):
        await conference.submit("   ")


async def test_second_submit_opens_next_round_with_thread_history(conference, generator):
    await conference.submit("First question")
    result = await conference.submit("Second question")
    assert result.round_number == 2

    request = generator.requests[3]
    assert request.agent_id == "a1"
    history = request.messages[1:]
    assert [m.role for m in history] == ["user", "assistant", "assistant", "assistant", "user"]
    assert [m.name for m in history if m.role == "assistant"] == ["Alpha", "Beta", "Gamma"]
    assert history[-1].content == "Second question"


async def test_board_reset_for_new_round(conference, generator):
    generator.scripts["a2"] = RuntimeError("down")
    await conference.submit("First")
    assert conference.runner.board.get("a2").status is AgentStatus.FAILED
    del generator.scripts["a2"]
    await conference.submit("Second")
    assert conference.runner.board.get("a2").status is AgentStatus.COMPLETED
    assert conference.runner.board.get("a2").error is None


async def test_submit_while_running_is_queued(conference, generator, store):
    started = asyncio.Event()
    gate = asyncio.Event()

    async def slow_first(request, on_delta, cancel):
        started.set()
        await gate.wait()
        return Completion(content="Slow answer.")

    generator.scripts["a1"] = slow_first
    task = asyncio.ensure_future(conference.submit("Opening"))
    await started.wait()
    assert conference.is_running

    queued = await conference.submit("Interjection")
    assert queued is None
    gate.set()
    result = await task

    assert result.round_number == 2
    human = [m.content for m in await store.list_messages(conference.conversation_id) if m.mode == "human"]
    assert human == ["Opening", "Interjection"]


async def test_cancel_active_round(conference, generator):
    started = asyncio.Event()
    generator.scripts["a2"] = hang_until_cancelled(started)
    assert conference.cancel() is False

    task = asyncio.ensure_future(conference.submit("Long one"))
    await started.wait()
    assert conference.cancel() is True
    result = await task

    assert result.cancelled
    assert conference.cancel() is False
    assert not conference.is_running


async def test_retry_failed_agent(conference, generator):
    generator.scripts["a2"] = RuntimeError("flaky")
    first = await conference.submit("Question")
    assert conference.failed_agent_ids == ["a2"]

    del generator.scripts["a2"]
    result = await conference.retry_failed_agent("a2")
    assert result.round_id == first.round_id
    assert conference.failed_agent_ids == []
    assert conference.runner.board.get("a2").status is AgentStatus.COMPLETED


async def test_retry_failed_agent_that_fails_again_stays_listed(conference, generator):
    generator.scripts["a1"] = RuntimeError("still down")
    generator.scripts["a3"] = RuntimeError("also down")
    await conference.submit("Question")
    assert conference.failed_agent_ids == ["a1", "a3"]

    await conference.retry_failed_agent("a1")
    assert conference.failed_agent_ids == ["a1", "a3"]


async def test_retry_all_failed(conference, generator):
    generator.scripts["a1"] = RuntimeError("down")
    generator.scripts["a3"] = RuntimeError("down")
    await conference.submit("Question")
    generator.scripts.clear()

    result = await conference.retry_all_failed()
    assert result.failed_agent_ids == []
    assert conference.failed_agent_ids == []
    assert [r.agent_id for r in generator.requests[-2:]] == ["a1", "a3"]


async def test_retry_errors(conference):
    with pytest.raises(ConferenceError, match="No failed agents"):
        await conference.retry_all_failed()
    with pytest.raises(ConferenceError, match="no failed turn"):
        await conference.retry_failed_agent("a1")


async def test_retry_while_running_rejected(conference, generator):
    generator.scripts["a1"] = RuntimeError("down")
    await conference.submit("Question")

    started = asyncio.Event()
    generator.scripts["a2"] = hang_until_cancelled(started)
    task = asyncio.ensure_future(conference.submit("Next"))
    await started.wait()
    with pytest.raises(ConferenceError, match="already running"):
        await conference.retry_all_failed()
    conference.cancel()
    await task


async def test_reply_queued_before_cancel_never_leaks_into_next_round(conference, generator, store):
    started = asyncio.Event()
    generator.scripts["a2"] = hang_until_cancelled(started)
    task = asyncio.ensure_future(conference.submit("First question"))
    await started.wait()
    assert await conference.submit("Queued follow-up") is None
    assert conference.cancel() is True
    cancelled = await task
    assert [r.content for r in cancelled.dropped_replies] == ["Queued follow-up"]

    del generator.scripts["a2"]
    result = await conference.submit("Brand new question")

    assert result.round_number == 2
    assert result.status is RoundStatus.COMPLETED
    human = [m.content for m in await store.list_messages(conference.conversation_id) if m.mode == "human"]
    assert human == ["First question", "Brand new question"]
