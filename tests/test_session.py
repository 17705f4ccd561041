import asyncio
import os
import time

import pytest
import pytest_asyncio

from agent_client.core import HandshakeError, SessionBusyError, SessionStateError, StalePermissionError
from agent_client.events import (
    ErrorOccurred,
    PermissionAutoApproved,
    PermissionRequested,
    PlanUpdated,
    TextDelta,
    ThoughtDelta,
    ToolCallEnded,
    ToolCallStarted,
    ToolCallUpdated,
    TurnEnded,
    TurnEndReason,
)
from agent_client.schema import resource_block
from agent_client.session import AcpSession, SessionState, TurnStream
from agent_client.settings import SessionOptions

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


# --------------------- Test Utilities ---------------------

@pytest_asyncio.fixture
async def open_session(agent_config, fast_options):
    """Factory returning initialized sessions that are closed after the test."""
    sessions = []

    async def make(scenario: str = "echo", **option_overrides) -> AcpSession:
        options = fast_options.model_copy(update=option_overrides) if option_overrides else fast_options
        session = AcpSession(options)
        sessions.append(session)
        await session.initialize(agent_config(scenario))
        return session

    yield make
    for session in sessions:
        await session.close()


async def _next(stream: TurnStream, timeout: float = 5.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


async def _collect(stream: TurnStream, timeout: float = 5.0):
    return await asyncio.wait_for(stream.collect(), timeout)


# --------------------- Handshake --------------------------

@pytest.mark.asyncio
async def test_hello_turn(open_session):
    session = await open_session("echo")
    assert session.state is SessionState.READY
    assert session.session_id == "sess-1"
    assert session.agent_info.protocolVersion == 1

    events = await _collect(await session.send_turn("hi"))
    assert events == [TextDelta("hi"), TurnEnded(TurnEndReason.COMPLETED)]
    assert session.state is SessionState.READY


@pytest.mark.asyncio
async def test_context_blocks_follow_prompt(open_session):
    session = await open_session("echo")
    stream = await session.send_turn("$blocks", [resource_block("file:///notes/a.md", "# A")])
    assert (await _collect(stream))[0] == TextDelta("text,resource")


@pytest.mark.asyncio
async def test_initialize_twice_is_rejected(open_session, agent_config):
    session = await open_session("echo")
    with pytest.raises(SessionStateError):
        await session.initialize(agent_config("echo"))


@pytest.mark.asyncio
@pytest.mark.parametrize("scenario", ["reject-init", "bad-version", "exit-now"])
async def test_handshake_failures(agent_config, fast_options, scenario):
    session = AcpSession(fast_options)
    with pytest.raises(HandshakeError):
        await session.initialize(agent_config(scenario))
    assert session.state is SessionState.ERRORED
    assert not session.transport.is_running
    with pytest.raises(SessionStateError):
        await session.send_turn("hi")
    await session.close()


@pytest.mark.asyncio
async def test_handshake_timeout(agent_config):
    session = AcpSession(SessionOptions(handshake_timeout=0.3, stop_grace_period=0.5))
    started = time.monotonic()
    with pytest.raises(HandshakeError) as info:
        await session.initialize(agent_config("silent-init"))
    assert time.monotonic() - started < 3
    assert isinstance(info.value.__cause__, asyncio.TimeoutError)
    assert session.state is SessionState.ERRORED


@pytest.mark.asyncio
async def test_spawn_failure_is_a_handshake_error(agent_config, fast_options):
    session = AcpSession(fast_options)
    with pytest.raises(HandshakeError):
        await session.initialize(agent_config(command="no-such-agent-binary"))
    assert session.state is SessionState.ERRORED


# --------------------- Turns ------------------------------

@pytest.mark.asyncio
async def test_send_turn_while_busy_raises(open_session):
    session = await open_session("honor-cancel")
    stream = await session.send_turn("first")
    with pytest.raises(SessionBusyError):
        await session.send_turn("second")
    await session.cancel()
    with pytest.raises(SessionBusyError):
        # concurrent callers: the first flips to BUSY before awaiting
        await asyncio.gather(session.send_turn("a"), session.send_turn("b"))
    await session.close()
    assert (await _collect(stream))[-1] == TurnEnded(TurnEndReason.CANCELLED)


@pytest.mark.asyncio
async def test_tool_events_are_translated_in_order(open_session):
    session = await open_session("tools")
    events = await _collect(await session.send_turn("go"))
    assert events == [
        ThoughtDelta("planning"),
        PlanUpdated(("read the file", "summarize")),
        ToolCallStarted("t1", "Read notes.md", "read", "pending"),
        ToolCallUpdated("t1", "in_progress"),
        ToolCallEnded("t1", "completed", {"lines": 3}),
        TextDelta("done"),
        TurnEnded(TurnEndReason.COMPLETED),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stop_reason, expected",
    [
        ("max_tokens", TurnEndReason.MAX_TOKENS),
        ("max_turn_requests", TurnEndReason.MAX_TURN_REQUESTS),
        ("refusal", TurnEndReason.REFUSED),
        ("end_turn", TurnEndReason.COMPLETED),
    ],
)
async def test_stop_reasons(open_session, stop_reason, expected):
    session = await open_session("stop-reason")
    assert await _collect(await session.send_turn(stop_reason)) == [TurnEnded(expected)]


@pytest.mark.asyncio
async def test_prompt_error_response_ends_turn_and_recovers(open_session):
    session = await open_session("error")
    events = await _collect(await session.send_turn("hi"))
    assert len(events) == 1 and isinstance(events[0], ErrorOccurred)
    assert "Internal error" in events[0].detail
    assert session.state is SessionState.READY


@pytest.mark.asyncio
async def test_unsupported_agent_request_gets_method_not_found(open_session):
    session = await open_session("fs-request")
    events = await _collect(await session.send_turn("read"))
    assert events[0] == TextDelta("fs:-32601")


@pytest.mark.asyncio
async def test_crash_mid_turn_yields_one_error(open_session):
    session = await open_session("crash")
    stream = await session.send_turn("hi")
    events = await _collect(stream)
    assert events[0] == TextDelta("partial")
    errors = [e for e in events if isinstance(e, ErrorOccurred)]
    assert len(errors) == 1 and events[-1] is errors[0]
    assert "3" in errors[0].detail
    assert session.state is SessionState.ERRORED
    assert session._correlator.closed
    assert len(session._correlator) == 0


@pytest.mark.asyncio
async def test_garbage_frame_is_fatal(open_session):
    session = await open_session("garbage")
    events = await _collect(await session.send_turn("hi"))
    assert isinstance(events[-1], ErrorOccurred)
    assert "protocol error" in events[-1].detail
    assert session.state is SessionState.ERRORED


@pytest.mark.asyncio
async def test_close_ends_active_turn(open_session):
    session = await open_session("ignore-cancel")
    stream = await session.send_turn("hi")
    assert await _next(stream) == TextDelta("working")
    await session.close()
    await session.close()
    assert await _next(stream) == ErrorOccurred("session closed")
    assert session.state is SessionState.CLOSED
    with pytest.raises(SessionStateError):
        await session.send_turn("again")


@pytest.mark.asyncio
async def test_session_context_manager(agent_config, fast_options):
    async with AcpSession(fast_options) as session:
        await session.initialize(agent_config("echo"))
        transport = session.transport
    assert session.state is SessionState.CLOSED
    assert not transport.is_running


# --------------------- Cancellation -----------------------

@pytest.mark.asyncio
async def test_cancel_acknowledged(open_session):
    session = await open_session("honor-cancel")
    stream = await session.send_turn("hi")
    assert await _next(stream) == TextDelta("working")
    await session.cancel()
    assert session.state is SessionState.READY
    assert await _next(stream) == TurnEnded(TurnEndReason.CANCELLED)


@pytest.mark.asyncio
async def test_cancel_error_response_counts_as_cancelled(open_session):
    session = await open_session("cancel-error")
    stream = await session.send_turn("hi")
    await _next(stream)
    await session.cancel()
    assert await _next(stream) == TurnEnded(TurnEndReason.CANCELLED)


@pytest.mark.asyncio
async def test_cancel_times_out_and_recovers(open_session):
    session = await open_session("ignore-cancel")
    stream = await session.send_turn("hi")
    await _next(stream)
    started = time.monotonic()
    await session.cancel()
    assert time.monotonic() - started < session.options.cancel_grace_period + 1.0
    assert session.state is SessionState.READY
    assert await _next(stream) == TurnEnded(TurnEndReason.TIMED_OUT)


@pytest.mark.asyncio
async def test_cancel_returns_when_agent_stops_reading(open_session):
    session = await open_session("deaf")
    # far larger than the pipe buffer, so the prompt write never completes
    big = resource_block("file:///notes/big.md", "x" * (2 * 1024 * 1024))
    stream = await asyncio.wait_for(session.send_turn("hi", [big]), 1.0)
    assert session.state is SessionState.BUSY
    await asyncio.wait_for(session.cancel(), session.options.cancel_grace_period + 1.0)
    assert session.state is SessionState.READY
    assert await _next(stream) == TurnEnded(TurnEndReason.TIMED_OUT)


@pytest.mark.asyncio
async def test_late_response_after_timeout_is_dropped(open_session):
    session = await open_session("late-response")
    stream = await session.send_turn("hi")
    await _next(stream)
    await session.cancel()
    assert await _next(stream) == TurnEnded(TurnEndReason.TIMED_OUT)
    await asyncio.sleep(0.8)
    # the stale stopReason neither errors nor ends a new turn
    assert session.state is SessionState.READY


@pytest.mark.asyncio
async def test_cancel_when_idle_is_a_noop(open_session):
    session = await open_session("echo")
    await session.cancel()
    assert session.state is SessionState.READY


# --------------------- Permissions ------------------------

@pytest.mark.asyncio
async def test_manual_permission_approve(open_session):
    session = await open_session("permission")
    stream = await session.send_turn("edit")
    event = await _next(stream)
    assert isinstance(event, PermissionRequested)
    assert session.pending_permission is event.request
    assert [c.id for c in event.request.options] == ["allow", "always", "reject"]

    with pytest.raises(ValueError):
        await session.resolve_permission(event.request.request_id, "nope")
    await session.resolve_permission(event.request.request_id, "always")
    with pytest.raises(StalePermissionError):
        await session.resolve_permission(event.request.request_id, "allow")

    assert await _collect(stream) == [TextDelta("selected:always"), TurnEnded(TurnEndReason.COMPLETED)]
    assert session.pending_permission is None


@pytest.mark.asyncio
async def test_reject_active_permission(open_session):
    session = await open_session("permission")
    stream = await session.send_turn("edit")
    assert isinstance(await _next(stream), PermissionRequested)
    assert await session.reject_active_permission() is True
    assert await session.reject_active_permission() is False
    assert await _collect(stream) == [TextDelta("selected:reject"), TurnEnded(TurnEndReason.COMPLETED)]


@pytest.mark.asyncio
async def test_auto_allow_emits_no_permission_requested(open_session):
    session = await open_session("permission", auto_allow_permissions=True)
    events = await _collect(await session.send_turn("edit"))
    assert not any(isinstance(e, PermissionRequested) for e in events)
    auto = events[0]
    assert isinstance(auto, PermissionAutoApproved)
    assert auto.option_id == "allow"
    assert auto.request.resolved
    assert events[1:] == [TextDelta("selected:allow"), TurnEnded(TurnEndReason.COMPLETED)]


@pytest.mark.asyncio
async def test_queued_permissions_surface_one_at_a_time(open_session):
    session = await open_session("two-permissions")
    stream = await session.send_turn("go")
    first = await _next(stream)
    assert isinstance(first, PermissionRequested) and first.request.tool_call_id == "t1"
    # the second request is queued, not yet surfaced
    await asyncio.sleep(0.1)
    assert session.pending_permission is first.request

    assert await session.approve_active_permission() is True
    second = await _next(stream)
    assert isinstance(second, PermissionRequested) and second.request.tool_call_id == "t2"
    await session.resolve_permission(second.request.request_id, "reject")
    assert await _collect(stream) == [TextDelta("allow,reject"), TurnEnded(TurnEndReason.COMPLETED)]


@pytest.mark.asyncio
async def test_permission_for_another_session_is_refused(open_session):
    session = await open_session("foreign-permission")
    events = await _collect(await session.send_turn("edit"))
    assert events == [TextDelta("permission:-32602"), TurnEnded(TurnEndReason.COMPLETED)]
    assert session.pending_permission is None


@pytest.mark.asyncio
async def test_cancel_resolves_pending_permission(open_session):
    session = await open_session("permission-then-cancel")
    stream = await session.send_turn("edit")
    event = await _next(stream)
    assert isinstance(event, PermissionRequested)
    await session.cancel()
    assert event.request.resolved
    assert session.pending_permission is None
    assert await _collect(stream) == [TextDelta("permission:cancelled"), TurnEnded(TurnEndReason.CANCELLED)]
    assert session.state is SessionState.READY


# --------------------- Example agent ----------------------

@pytest.mark.asyncio
async def test_example_agent_streams_and_honors_cancel(agent_config, fast_options):
    config = agent_config(
        args=(os.path.join(ROOT, "examples", "agent.py"),),
        env={"PYTHONPATH": os.path.join(ROOT, "src")},
    )
    async with AcpSession(fast_options) as session:
        await session.initialize(config)
        stream = await session.send_turn("one two three four five six seven eight")
        assert await _next(stream) == TextDelta("one ")
        await session.cancel()
        events = await _collect(stream)
    assert events[-1] == TurnEnded(TurnEndReason.CANCELLED)
    assert session.state is SessionState.CLOSED
