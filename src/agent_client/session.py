from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Coroutine, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError

from .codec import FrameDecoder, Message, Notification, Request, Response, encode
from .core import (
    AgentClientError,
    ConnectionClosedError,
    Correlator,
    HandshakeError,
    ProtocolError,
    RequestError,
    RequestId,
    SessionBusyError,
    SessionStateError,
    UnknownRequestId,
    WriteError,
)
from .events import (
    ErrorOccurred,
    PermissionAutoApproved,
    PermissionRequest,
    PermissionRequested,
    PlanUpdated,
    StreamEvent,
    TextDelta,
    ThoughtDelta,
    ToolCallEnded,
    ToolCallStarted,
    ToolCallUpdated,
    TurnEnded,
    TurnEndReason,
    is_terminal,
)
from .log import log_context
from .meta import (
    AGENT_METHODS,
    CLIENT_METHODS,
    CLIENT_NAME,
    CLIENT_TITLE,
    CLIENT_VERSION,
    PROTOCOL_VERSION,
    TERMINAL_TOOL_STATUSES,
)
from .permissions import Outcome, PermissionGate, cancelled_outcome, selected_outcome
from .schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    ClientCapabilities,
    Implementation,
    InitializeRequest,
    InitializeResponse,
    NewSessionRequest,
    NewSessionResponse,
    SessionNotification,
    TextContentBlock,
    ToolCallProgress,
    ToolCallStart,
    text_block,
)
from .settings import AgentConfig, SessionOptions
from .transport import ProcessTransport

logger = logging.getLogger(__name__)

WIRE_LOG_LIMIT = 500


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    CANCELLING = "cancelling"
    CLOSED = "closed"
    ERRORED = "errored"


class TurnStream:
    """
    Events of one prompt turn, consumed with ``async for``.

    Iteration stops after the first terminal event (``TurnEnded`` or
    ``ErrorOccurred``); anything pushed after it is dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._delivered_terminal = False
        self.finished = asyncio.Event()
        self.request_id: Optional[int] = None

    @property
    def ended(self) -> bool:
        return self.finished.is_set()

    def push(self, event: StreamEvent) -> bool:
        if self.finished.is_set():
            logger.debug("dropping %s after the turn ended", type(event).__name__)
            return False
        self._queue.put_nowait(event)
        if is_terminal(event):
            self.finished.set()
        return True

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._delivered_terminal:
            raise StopAsyncIteration
        event = await self._queue.get()
        if is_terminal(event):
            self._delivered_terminal = True
        return event

    async def collect(self) -> List[StreamEvent]:
        return [event async for event in self]


def update_to_event(update: Any) -> Optional[StreamEvent]:
    """Translate one validated ``session/update`` payload; ``None`` for kinds the stream does not carry."""
    if isinstance(update, AgentMessageChunk):
        if isinstance(update.content, TextContentBlock):
            return TextDelta(update.content.text)
        return None
    if isinstance(update, AgentThoughtChunk):
        if isinstance(update.content, TextContentBlock):
            return ThoughtDelta(update.content.text)
        return None
    if isinstance(update, ToolCallStart):
        return ToolCallStarted(update.toolCallId, update.title, update.kind, update.status)
    if isinstance(update, ToolCallProgress):
        if update.status in TERMINAL_TOOL_STATUSES:
            result = update.rawOutput if update.rawOutput is not None else update.content
            return ToolCallEnded(update.toolCallId, update.status, result)
        return ToolCallUpdated(update.toolCallId, update.status, update.title)
    if isinstance(update, AgentPlanUpdate):
        return PlanUpdated(tuple(entry.content for entry in update.entries))
    return None


def _retrieve_exception(fut: "asyncio.Future[Any]") -> None:
    # prompt outcomes are read from the response frame, not from the future
    if not fut.cancelled():
        fut.exception()


class AcpSession:
    """
    Client side of one ACP conversation with one agent process.

    The session owns the process (through its transport) and the table of
    outstanding requests. Inbound frames are handled one at a time on the
    transport's read loop, so events reach the active ``TurnStream`` in the
    order the agent wrote them.
    """

    def __init__(
        self,
        options: Optional[SessionOptions] = None,
        transport_factory: Callable[[float], ProcessTransport] = ProcessTransport,
    ) -> None:
        self.options = options or SessionOptions()
        self._transport_factory = transport_factory
        self._transport: Optional[ProcessTransport] = None
        self._correlator = Correlator()
        self._decoder = FrameDecoder()
        self._gate = PermissionGate(self.options.auto_allow_permissions)
        self._lock = asyncio.Lock()
        self._state = SessionState.UNINITIALIZED
        self._turn: Optional[TurnStream] = None
        self._writes: Set[asyncio.Task[None]] = set()
        self.session_id: Optional[str] = None
        self.agent_config: Optional[AgentConfig] = None
        self.agent_info: Optional[InitializeResponse] = None

    async def __aenter__(self) -> "AcpSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<AcpSession {self.session_id or '-'} {self._state.value}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_permission(self) -> Optional[PermissionRequest]:
        return self._gate.pending

    @property
    def active_turn(self) -> Optional[TurnStream]:
        return self._turn

    @property
    def transport(self) -> Optional[ProcessTransport]:
        return self._transport

    # --- Handshake ---------------------------------------------------------------

    async def initialize(self, config: AgentConfig) -> None:
        async with self._lock:
            if self._state is not SessionState.UNINITIALIZED:
                raise SessionStateError(f"initialize() called in state {self._state.value}")
            self._state = SessionState.INITIALIZING
            self.agent_config = config
            transport = self._transport_factory(self.options.stop_grace_period)
            transport.subscribe(self._on_line, self._on_exit)
            self._transport = transport
            timeout = self.options.handshake_timeout
            try:
                # the read task is created inside; it keeps the agent field for its lifetime
                with log_context(agent=config.id):
                    await asyncio.wait_for(self._handshake(config), timeout)
            except asyncio.TimeoutError as err:
                await self._abort_handshake(f"agent did not complete the handshake within {timeout:g}s", err)
            except (AgentClientError, ValidationError) as err:
                await self._abort_handshake(f"handshake with {config.display_name} failed: {err}", err)
            if self._state is not SessionState.INITIALIZING:
                # the agent died right after answering
                await self._abort_handshake("agent exited during the handshake", None)
            self._state = SessionState.READY
            logger.info("session %s ready with %s", self.session_id, config.display_name)

    async def _handshake(self, config: AgentConfig) -> None:
        await self._transport.start(config)
        init = InitializeRequest(
            protocolVersion=PROTOCOL_VERSION,
            clientCapabilities=ClientCapabilities(),
            clientInfo=Implementation(name=CLIENT_NAME, title=CLIENT_TITLE, version=CLIENT_VERSION),
        )
        raw = await self._call(AGENT_METHODS["initialize"], init.model_dump(exclude_none=True))
        self.agent_info = InitializeResponse.model_validate(raw)
        if self.agent_info.protocolVersion != PROTOCOL_VERSION:
            raise HandshakeError(
                f"agent speaks protocol version {self.agent_info.protocolVersion}, expected {PROTOCOL_VERSION}"
            )
        new_session = NewSessionRequest(cwd=config.working_directory, mcpServers=[])
        raw = await self._call(AGENT_METHODS["session_new"], new_session.model_dump())
        self.session_id = NewSessionResponse.model_validate(raw).sessionId

    async def _abort_handshake(self, detail: str, cause: Optional[BaseException]) -> None:
        logger.error("%s", detail)
        if self._state is not SessionState.CLOSED:
            self._state = SessionState.ERRORED
        self._correlator.fail_all(ConnectionClosedError(detail))
        if self._transport is not None:
            await self._transport.stop()
        raise HandshakeError(detail) from cause

    # --- Turns -------------------------------------------------------------------

    async def send_turn(self, prompt: str, context: Iterable[Mapping[str, Any]] = ()) -> TurnStream:
        """Start a prompt turn and return its event stream.

        ``context`` holds extra ACP content blocks appended after the prompt text.
        """
        if self._state in (SessionState.BUSY, SessionState.CANCELLING):
            raise SessionBusyError("a turn is already in progress")
        if self._state is not SessionState.READY:
            raise SessionStateError(f"cannot send a prompt in state {self._state.value}")
        self._state = SessionState.BUSY
        turn = TurnStream()
        self._turn = turn

        params = {"sessionId": self.session_id, "prompt": [text_block(prompt), *(dict(b) for b in context)]}
        request_id, fut = self._correlator.issue(AGENT_METHODS["session_prompt"], params)
        fut.add_done_callback(_retrieve_exception)
        turn.request_id = request_id
        # written in the background: an agent that stops reading must not hold up the caller
        self._spawn(self._send_prompt(turn, Request(request_id, AGENT_METHODS["session_prompt"], params)))
        return turn

    async def _send_prompt(self, turn: TurnStream, request: Request) -> None:
        try:
            await self._send(request)
        except WriteError as err:
            self._correlator.forget(request.id)
            if self._turn is turn:
                await self._fail(f"could not send the prompt: {err}")

    async def cancel(self) -> None:
        """Ask the agent to stop the active turn; returns within ``cancel_grace_period``."""
        async with self._lock:
            turn = self._turn
            if self._state is not SessionState.BUSY or turn is None:
                return
            self._state = SessionState.CANCELLING
            self._cancel_permissions()
            self._post(Notification(AGENT_METHODS["session_cancel"], {"sessionId": self.session_id}))

            grace = self.options.cancel_grace_period
            try:
                await asyncio.wait_for(asyncio.shield(turn.finished.wait()), grace)
            except asyncio.TimeoutError:
                logger.warning("agent did not end the turn within %gs of cancel", grace)
                if turn.request_id is not None:
                    self._correlator.forget(turn.request_id)
                if self._turn is turn:
                    self._turn = None
                turn.push(TurnEnded(TurnEndReason.TIMED_OUT))
                if self._state is SessionState.CANCELLING:
                    self._state = SessionState.READY

    # --- Permissions -------------------------------------------------------------

    async def resolve_permission(self, request_id: RequestId, option_id: str) -> None:
        outcome = self._gate.settle(request_id, option_id)
        await self._answer_permission(request_id, outcome)

    async def approve_active_permission(self) -> bool:
        chosen = self._gate.choose_allow()
        if chosen is None:
            return False
        request, outcome = chosen
        await self._answer_permission(request.request_id, outcome)
        return True

    async def reject_active_permission(self) -> bool:
        chosen = self._gate.choose_reject()
        if chosen is None:
            return False
        request, outcome = chosen
        await self._answer_permission(request.request_id, outcome)
        return True

    async def _answer_permission(self, request_id: RequestId, outcome: Outcome) -> None:
        await self._reply(Response(request_id, result=outcome))
        nxt = self._gate.pending
        if nxt is not None and self._turn is not None:
            self._turn.push(PermissionRequested(nxt))

    def _cancel_permissions(self) -> None:
        for request, outcome in self._gate.cancel_all():
            self._post(Response(request.request_id, result=outcome))

    # --- Teardown ----------------------------------------------------------------

    async def close(self) -> None:
        if self._state is SessionState.CLOSED:
            return
        logger.debug("closing session %s", self.session_id)
        self._state = SessionState.CLOSED
        turn, self._turn = self._turn, None
        if turn is not None:
            turn.push(ErrorOccurred("session closed"))
        self._gate.clear()
        self._correlator.fail_all(ConnectionClosedError("session closed"))
        if self._transport is not None:
            await self._transport.stop()
        await self._drain_writes()

    async def _drain_writes(self) -> None:
        # with the process gone, pending writes fail fast; anything still stuck is cancelled
        writes = [task for task in self._writes if task is not asyncio.current_task()]
        if not writes:
            return
        _, stuck = await asyncio.wait(writes, timeout=self.options.stop_grace_period)
        for task in stuck:
            task.cancel()

    async def _fail(self, detail: str) -> None:
        """Fatal path: one ``ErrorOccurred`` to the active turn, ERRORED, process stopped."""
        if self._state is SessionState.CLOSED:
            return
        first = self._state is not SessionState.ERRORED
        self._state = SessionState.ERRORED
        self._correlator.fail_all(ConnectionClosedError(detail))
        self._gate.clear()
        turn, self._turn = self._turn, None
        if turn is not None:
            turn.push(ErrorOccurred(detail))
        if first:
            logger.error("session %s failed: %s", self.session_id, detail)
        if self._transport is not None:
            await self._transport.stop()

    # --- Outbound ----------------------------------------------------------------

    async def _call(self, method: str, params: Any) -> Any:
        request_id, fut = self._correlator.issue(method, params)
        try:
            await self._send(Request(request_id, method, params))
        except WriteError:
            self._correlator.forget(request_id)
            raise
        return await fut

    async def _send(self, message: Message) -> None:
        if self._transport is None:
            raise WriteError("session has no agent process")
        data = encode(message)
        self._log_frame("->", data)
        await self._transport.send(data)

    async def _reply(self, message: Message) -> None:
        try:
            await self._send(message)
        except WriteError as err:
            logger.debug("could not send %s: %s", type(message).__name__, err)

    def _post(self, message: Message) -> None:
        self._spawn(self._reply(message))

    def _spawn(self, write: Coroutine[Any, Any, None]) -> None:
        # writes queue on the transport's lock in the order they are spawned
        task = asyncio.create_task(write)
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    @staticmethod
    def _log_frame(direction: str, data: bytes) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        text = data.decode("utf-8", errors="replace").rstrip()
        if len(text) > WIRE_LOG_LIMIT:
            text = f"{text[:WIRE_LOG_LIMIT]}... ({len(text)} chars)"
        logger.debug("%s %s", direction, text)

    # --- Inbound -----------------------------------------------------------------

    async def _on_line(self, line: bytes) -> None:
        self._log_frame("<-", line)
        messages = self._decoder.feed(line)
        while True:
            try:
                message = next(messages)
            except StopIteration:
                return
            except ProtocolError as err:
                logger.error("undecodable frame from agent: %s", err)
                await self._fail(f"protocol error: {err}")
                return
            if isinstance(message, Response):
                await self._handle_response(message)
            elif isinstance(message, Request):
                await self._handle_request(message)
            else:
                self._handle_notification(message)

    async def _on_exit(self, returncode: Optional[int]) -> None:
        if self._state in (SessionState.CLOSED, SessionState.ERRORED):
            logger.debug("agent exited rc=%s after the session ended", returncode)
            return
        if returncode is None:
            await self._fail("agent closed its output but did not exit")
        else:
            await self._fail(f"agent process exited with code {returncode}")

    async def _handle_response(self, response: Response) -> None:
        try:
            pending = self._correlator.resolve(response.id, response.result, response.error)
        except UnknownRequestId:
            logger.debug("dropping response for unknown request id %r", response.id)
            return
        turn = self._turn
        if turn is not None and pending.id == turn.request_id:
            await self._finish_turn(turn, response)

    async def _finish_turn(self, turn: TurnStream, response: Response) -> None:
        if response.is_error:
            if self._state is SessionState.CANCELLING:
                event: StreamEvent = TurnEnded(TurnEndReason.CANCELLED)
            else:
                event = ErrorOccurred(f"agent rejected the prompt: {RequestError.from_error_obj(response.error)}")
        else:
            result = response.result if isinstance(response.result, dict) else {}
            stop_reason = result.get("stopReason")
            if not isinstance(stop_reason, str):
                logger.debug("prompt response without stopReason: %r", response.result)
                stop_reason = "end_turn"
            event = TurnEnded(TurnEndReason.from_stop_reason(stop_reason))
        self._turn = None
        turn.push(event)
        if self._state in (SessionState.BUSY, SessionState.CANCELLING):
            self._state = SessionState.READY
        # requests the agent left open belong to the finished turn
        self._cancel_permissions()

    def _handle_notification(self, message: Notification) -> None:
        if message.method != CLIENT_METHODS["session_update"]:
            logger.debug("ignoring notification %s", message.method)
            return
        try:
            notification = SessionNotification.model_validate(message.params)
        except ValidationError as err:
            logger.debug("dropping session/update that failed validation (%d errors)", err.error_count())
            return
        if notification.sessionId != self.session_id:
            logger.debug("dropping update for session %s", notification.sessionId)
            return
        turn = self._turn
        if turn is None:
            logger.debug("dropping %s outside a turn", notification.update.sessionUpdate)
            return
        event = update_to_event(notification.update)
        if event is None:
            logger.debug("no event for %s", notification.update.sessionUpdate)
            return
        turn.push(event)

    async def _handle_request(self, request: Request) -> None:
        if request.method != CLIENT_METHODS["session_request_permission"]:
            logger.debug("agent called unsupported method %s", request.method)
            await self._reply(Response.failure(request.id, RequestError.method_not_found(request.method)))
            return

        session_id = request.params.get("sessionId") if isinstance(request.params, dict) else None
        if session_id != self.session_id:
            logger.debug("permission request %r names session %s", request.id, session_id)
            await self._reply(Response.failure(request.id, RequestError.invalid_params({"sessionId": session_id})))
            return

        turn = self._turn
        if turn is None or self._state is not SessionState.BUSY:
            logger.debug("permission request %r outside an active turn, cancelling", request.id)
            await self._reply(Response(request.id, result=cancelled_outcome()))
            return
        try:
            permission, auto_option = self._gate.open(request.id, request.params)
        except ValidationError as err:
            errors = err.errors(include_url=False, include_context=False)
            await self._reply(Response.failure(request.id, RequestError.invalid_params({"errors": errors})))
            return

        if auto_option is not None:
            turn.push(PermissionAutoApproved(permission, auto_option))
            await self._reply(Response(request.id, result=selected_outcome(auto_option)))
        elif self._gate.pending is permission:
            turn.push(PermissionRequested(permission))
