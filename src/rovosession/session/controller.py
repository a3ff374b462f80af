"""Session controller: the composition root for one agent session.

All input, agent events and user commands alike, goes through one
asyncio.Queue and is handled by a single dispatch task, strictly in arrival
order. Streams from the backend (chat, replay) run as separate tasks that
only decode and enqueue; they never touch session state themselves.

Observers receive SessionUpdate notifications through subscribe() callbacks
or the updates() async iterator.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from rovosession.config.schema import Config
from rovosession.events.models import (
    AgentExceptionEvent,
    Event,
    ParsingErrorEvent,
    ReplayEndEvent,
    RetryPromptEvent,
    ToolCallEvent,
    ToolCallsStartEvent,
    ToolReturnEvent,
    WarningEvent,
    event_to_dict,
)
from rovosession.events.parser import EventFrameParser, EventStream
from rovosession.git.links import GitOutputLinkResolver
from rovosession.logging import TRACE, get_logger
from rovosession.session.protocols import (
    AgentBackend,
    AgentMode,
    ChatRequest,
    ContextEntry,
    ProtocolAnomaly,
    SessionUpdate,
    UpdateKind,
)
from rovosession.session.state import (
    Disabled,
    Initializing,
    ProcessTerminated,
    Ready,
    SessionState,
    SessionStateMachine,
    Transition,
    state_to_dict,
)
from rovosession.session.tools import (
    BatchDecision,
    PermissionChoice,
    ToolCallCoordinator,
    ToolCallRecord,
    ToolCallStatus,
    ToolStep,
)
from rovosession.session.usage import UsageAndStatusTracker

log = get_logger("session")

NO_CHAT_IN_PROGRESS = "No chat in progress"

UpdateListener = Callable[[SessionUpdate], None]


class CancellationInProgressError(Exception):
    """Raised when cancel() is called while another cancel is still running."""

    def __init__(self) -> None:
        super().__init__("Cancellation already in progress")


class BackendUnavailableError(RuntimeError):
    """Raised when a command needs the agent backend and none is attached."""


@dataclass
class Session:
    """Everything the controller knows about the current agent session."""

    session_id: str
    state_machine: SessionStateMachine
    tools: ToolCallCoordinator
    tracker: UsageAndStatusTracker
    anomalies: list[ProtocolAnomaly] = field(default_factory=list)
    exceptions: list[AgentExceptionEvent] = field(default_factory=list)
    warnings: list[WarningEvent] = field(default_factory=list)
    pr_links: list[str] = field(default_factory=list)
    held_prompt: ChatRequest | None = None  # Sent once the session is Ready
    agent_mode: AgentMode | None = None
    replay_in_progress: bool = False

    @property
    def state(self) -> SessionState:
        return self.state_machine.state


# -----------------------------------------------------------------------------
# Queue items
# -----------------------------------------------------------------------------


@dataclass
class _Command:
    run: Callable[[], Any]
    future: asyncio.Future[Any]
    name: str = ""


@dataclass
class _StreamEnded:
    """A backend stream reached EOF or failed."""

    replay: bool = False
    error: BaseException | None = None


_STOP = object()


class SessionController:
    """Drives one agent session.

    Example:
        async with SessionController(backend, config) as controller:
            unsubscribe = controller.subscribe(print)
            await controller.mark_ready()
            await controller.send_prompt("Fix the failing test")
            await controller.drain()
    """

    def __init__(
        self,
        backend: AgentBackend | None = None,
        config: Config | None = None,
        *,
        session_id: str | None = None,
        parser: EventFrameParser | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or Config()
        self.parser = parser or EventFrameParser()
        self.links = GitOutputLinkResolver.from_config(self.config.links)
        self.session = self._new_session(session_id or _new_session_id())

        self._queue: asyncio.Queue[Any] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._stream_tasks: set[asyncio.Task[None]] = set()
        self._listeners: list[UpdateListener] = []
        self._update_queues: list[asyncio.Queue[SessionUpdate | None]] = []
        self._cancelling = False
        self._closed = False

    def _new_session(self, session_id: str) -> Session:
        return Session(
            session_id=session_id,
            state_machine=SessionStateMachine(self.config.session),
            tools=ToolCallCoordinator(yolo_mode=self.config.session.yolo_mode),
            tracker=UsageAndStatusTracker(),
        )

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch task. Must run inside an event loop."""
        if self._dispatch_task is not None:
            return
        if self._closed:
            raise RuntimeError("SessionController is closed")
        self._queue = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(
            self._dispatch_loop(self._queue), name=f"rovosession-dispatch-{self.session_id}"
        )
        log.info("Session %s started", self.session_id)

    async def aclose(self) -> None:
        """Stop streams, finish queued work and release observers."""
        if self._closed:
            return
        self._closed = True

        for task in list(self._stream_tasks):
            task.cancel()
        if self._stream_tasks:
            await asyncio.gather(*self._stream_tasks, return_exceptions=True)

        if self._queue is not None and self._dispatch_task is not None:
            await self._queue.put(_STOP)
            await self._dispatch_task

        for queue in self._update_queues:
            queue.put_nowait(None)
        self._update_queues.clear()
        self._listeners.clear()
        log.info("Session %s closed", self.session_id)

    async def __aenter__(self) -> SessionController:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def drain(self) -> None:
        """Wait until running streams have ended and the queue is empty."""
        queue = self._require_queue()
        while True:
            await queue.join()
            if not self._stream_tasks:
                return
            await asyncio.gather(*list(self._stream_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        """Register a callback for every update. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def updates(self) -> AsyncIterator[SessionUpdate]:
        """Iterate over updates until the controller is closed.

        Updates are buffered from the moment this is called, not from the
        first iteration.
        """
        queue: asyncio.Queue[SessionUpdate | None] = asyncio.Queue()
        self._update_queues.append(queue)
        return self._iter_updates(queue)

    async def _iter_updates(
        self, queue: asyncio.Queue[SessionUpdate | None]
    ) -> AsyncIterator[SessionUpdate]:
        try:
            while True:
                update = await queue.get()
                if update is None:
                    return
                yield update
        finally:
            if queue in self._update_queues:
                self._update_queues.remove(queue)

    def _emit(self, kind: UpdateKind, payload: dict[str, Any] | None = None) -> None:
        update = SessionUpdate(
            kind=kind,
            session_id=self.session_id,
            payload=payload or {},
            timestamp=time.time(),
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                log.exception("Update listener failed for %s", kind.value)
        for queue in self._update_queues:
            queue.put_nowait(update)

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    async def submit_event(self, event: Event) -> None:
        """Enqueue one typed event for processing."""
        await self._require_queue().put(event)

    async def consume(self, chunks: AsyncIterable[bytes | str]) -> int:
        """Decode a raw agent stream and enqueue its events.

        Returns once the stream hits EOF or a close event; the events may
        still be queued. Use drain() to wait for them to be handled.
        """
        stream = EventStream(self.parser, self.config.agent.framing)
        count = 0
        async for event in stream.events(chunks):
            await self.submit_event(event)
            count += 1
        log.debug("Stream ended after %d event(s)", count)
        return count

    def _spawn_stream(self, chunks: AsyncIterable[bytes], replay: bool = False) -> None:
        task = asyncio.create_task(self._run_stream(chunks, replay))
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)

    async def _run_stream(self, chunks: AsyncIterable[bytes], replay: bool) -> None:
        error: BaseException | None = None
        try:
            await self.consume(chunks)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Agent stream failed: %s", e)
            error = e
        if self._queue is not None and not self._closed:
            await self._queue.put(_StreamEnded(replay=replay, error=error))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def _submit(self, name: str, func: Callable[..., Any], *args: Any) -> Any:
        queue = self._require_queue()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await queue.put(_Command(run=lambda: func(*args), future=future, name=name))
        return await future

    async def send_prompt(
        self,
        message: str,
        context: Iterable[ContextEntry] = (),
        enable_deep_plan: bool = False,
    ) -> None:
        """Send a prompt, or hold it until the session is Ready.

        Raises:
            SessionUnavailableError: The session is Disabled or terminated.
        """
        request = ChatRequest(message=message, context=tuple(context), enable_deep_plan=enable_deep_plan)
        await self._submit("send_prompt", self._do_send_prompt, request)

    async def cancel(self) -> bool:
        """Stop the running prompt.

        Returns:
            True when nothing is left running.

        Raises:
            CancellationInProgressError: Another cancel has not finished yet.
        """
        if self._cancelling:
            raise CancellationInProgressError()
        self._cancelling = True
        try:
            return await self._submit("cancel", self._do_cancel)
        finally:
            self._cancelling = False

    async def grant_permission(self, call_id: str | None = None) -> list[BatchDecision]:
        """Allow one pending tool call, or the whole pending batch when call_id is None."""
        return await self._submit("grant_permission", self._do_decide, call_id, PermissionChoice.ALLOW)

    async def deny_permission(self, call_id: str | None = None) -> list[BatchDecision]:
        """Deny one pending tool call, or the whole pending batch when call_id is None."""
        return await self._submit("deny_permission", self._do_decide, call_id, PermissionChoice.DENY)

    async def set_yolo_mode(self, enabled: bool) -> list[BatchDecision]:
        """Toggle auto-allow. Enabling it also allows every call already pending."""
        return await self._submit("set_yolo_mode", self._do_set_yolo_mode, enabled)

    async def new_session(self) -> str:
        """Start over with a fresh agent session. Returns the new session id."""
        return await self._submit("new_session", self._do_new_session)

    async def replay(self) -> None:
        """Ask the agent to stream the session history again."""
        await self._submit("replay", self._do_replay)

    async def get_agent_mode(self) -> AgentMode:
        return await self._submit("get_agent_mode", self._do_get_agent_mode)

    async def set_agent_mode(self, mode: AgentMode | str) -> AgentMode:
        """Switch between ask, default and plan modes.

        Raises:
            ValueError: Unknown mode name.
        """
        return await self._submit("set_agent_mode", self._do_set_agent_mode, AgentMode(mode))

    async def resolve_pr_link(self, output: str, branch: str | None = None) -> str | None:
        """Find or build a pull request link in push output and announce it."""
        return await self._submit("resolve_pr_link", self._resolve_pr_link, output, branch, True)

    # Process manager signals

    async def mark_ready(self) -> None:
        await self._submit("mark_ready", self._do_transition, "mark_ready")

    async def mark_disabled(self, sub_state: str = "Other") -> None:
        await self._submit("mark_disabled", self._do_transition, "mark_disabled", sub_state)

    async def mark_initializing(self, sub_state: str = "Other") -> None:
        await self._submit("mark_initializing", self._do_transition, "mark_initializing", sub_state)

    async def process_exited(self, exit_code: int | None = None, reason: str = "") -> None:
        await self._submit(
            "process_exited",
            self._do_transition,
            "process_exited",
            exit_code,
            reason,
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def _dispatch_loop(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, _Command):
                    await self._run_command(item)
                elif isinstance(item, _StreamEnded):
                    await self._handle_stream_end(item)
                else:
                    await self._handle_event(item)
            except Exception:
                log.exception("Error while dispatching %r", item)
            finally:
                queue.task_done()

    async def _run_command(self, command: _Command) -> None:
        log.debug("Command %s", command.name)
        try:
            result = command.run()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            if not command.future.done():
                command.future.set_exception(e)
            return
        if not command.future.done():
            command.future.set_result(result)

    async def _handle_event(self, event: Event) -> None:
        session = self.session
        if log.isEnabledFor(TRACE):
            log.log(TRACE, "event: %r", event)
        self._emit(UpdateKind.EVENT, {"event": event_to_dict(event)})

        if isinstance(event, ParsingErrorEvent):
            self._emit(UpdateKind.PARSING_ERROR, {"frame": event.frame, "reason": event.reason})
            return

        # Tool records only move while the session can run tools
        accepts_tools = isinstance(session.state, (Initializing, Ready))

        step = session.state_machine.handle_event(event)
        self._record_anomalies(step.anomalies)

        if session.tracker.update(event):
            self._emit_snapshot(event.event_kind)

        if accepts_tools:
            await self._handle_tool_event(event)

        if isinstance(event, AgentExceptionEvent):
            session.exceptions.append(event)
            self._emit(
                UpdateKind.AGENT_EXCEPTION,
                {
                    "type": event.type,
                    "title": event.title,
                    "message": event.message,
                    "severity": event.severity,
                },
            )
        elif isinstance(event, WarningEvent):
            session.warnings.append(event)
            self._emit(UpdateKind.AGENT_WARNING, {"title": event.title, "message": event.message})
        elif isinstance(event, ReplayEndEvent):
            session.replay_in_progress = False

        if step.transition is not None:
            await self._apply_transition(step.transition)

    async def _handle_tool_event(self, event: Event) -> None:
        tools = self.session.tools
        if isinstance(event, ToolCallEvent):
            self._apply_tool_step(tools.on_tool_call(event))
        elif isinstance(event, ToolCallsStartEvent):
            outcome = tools.on_tools_start(event)
            self._apply_tool_step(outcome)
            if outcome.decision is not None:
                await self._send_decision(outcome.decision)
        elif isinstance(event, ToolReturnEvent):
            step = tools.on_tool_return(event)
            self._apply_tool_step(step)
            for record in step.changed:
                if record.status == ToolCallStatus.COMPLETED and _is_git_push(record):
                    self._resolve_pr_link(record.result.content or "", None)
            await self._complete_settled_batch(step.changed)
        elif isinstance(event, RetryPromptEvent):
            step = tools.on_retry_prompt(event)
            self._apply_tool_step(step)
            await self._complete_settled_batch(step.changed)

    async def _complete_settled_batch(self, changed: list[ToolCallRecord]) -> None:
        # A finished batch with nothing else open ends the prompt
        tools = self.session.tools
        if tools.has_open_calls:
            return
        if any(tools.batch_settled(record.batch_id) for record in changed):
            await self._apply_transition(self.session.state_machine.prompt_completed())

    async def _handle_stream_end(self, item: _StreamEnded) -> None:
        session = self.session
        if item.error is not None:
            self._emit(
                UpdateKind.AGENT_EXCEPTION,
                {
                    "type": type(item.error).__name__,
                    "title": "Agent stream failed",
                    "message": str(item.error),
                    "severity": None,
                },
            )
        if item.replay:
            session.replay_in_progress = False
            return
        transition = session.state_machine.prompt_completed()
        if transition is not None:
            await self._apply_transition(transition)

    # -------------------------------------------------------------------------
    # Command handlers (run on the dispatch task)
    # -------------------------------------------------------------------------

    async def _do_send_prompt(self, request: ChatRequest) -> None:
        session = self.session
        self._require_backend()
        transition = session.state_machine.prompt_sent()
        if isinstance(session.state, Initializing):
            if session.held_prompt is not None:
                log.info("Replacing held prompt")
            session.held_prompt = request
            log.info("Agent not ready, holding prompt")
        else:
            self._start_chat(request)
        if transition is not None:
            self._emit(UpdateKind.STATE_CHANGED, _transition_payload(transition))

    def _start_chat(self, request: ChatRequest) -> None:
        backend = self._require_backend()
        log.info("Sending prompt (%d chars, %d context item(s))", len(request.message), len(request.context))
        self._spawn_stream(backend.chat(request))

    async def _do_cancel(self) -> bool:
        session = self.session
        state = session.state

        if isinstance(state, Initializing):
            # Nothing reached the agent yet
            session.held_prompt = None
            await self._apply_transition(session.state_machine.prompt_completed())
            self._apply_tool_step(ToolStep(changed=session.tools.abandon_open()))
            return True

        success = True
        if isinstance(state, Ready) and self.backend is not None:
            result = await self.backend.cancel()
            success = result.cancelled or result.message == NO_CHAT_IN_PROGRESS
            if not success:
                log.warning("Agent refused to cancel: %s", result.message)
                return False

        await self._apply_transition(session.state_machine.prompt_completed())
        self._apply_tool_step(ToolStep(changed=session.tools.abandon_open()))
        return success

    async def _do_decide(self, call_id: str | None, choice: PermissionChoice) -> list[BatchDecision]:
        tools = self.session.tools
        if call_id is None:
            targets = tools.pending_permission()
            decisions = tools.decide_all(choice)
        else:
            targets = []
            decision = tools.decide(call_id, choice)
            record = tools.get(call_id)
            if record is not None:
                targets.append(record)
            decisions = [decision] if decision is not None else []

        # Completing a batch also moves its earlier allowed calls to awaiting-result
        changed = list(targets)
        for decision in decisions:
            changed.extend(
                r
                for r in tools.records
                if r.batch_id == decision.batch_id and r.call_id in decision.choices and r not in changed
            )
        self._apply_tool_step(ToolStep(changed=changed))
        for decision in decisions:
            await self._send_decision(decision)
        await self._complete_settled_batch(changed)
        return decisions

    async def _do_set_yolo_mode(self, enabled: bool) -> list[BatchDecision]:
        self.session.tools.yolo_mode = enabled
        log.info("Yolo mode %s", "enabled" if enabled else "disabled")
        if not enabled:
            return []
        return await self._do_decide(None, PermissionChoice.ALLOW)

    async def _do_new_session(self) -> str:
        for task in list(self._stream_tasks):
            task.cancel()

        session_id: str | None = None
        if self.backend is not None:
            session_id = await self.backend.create_session()

        # Released under the old session id, before the swap
        old_tools = self.session.tools
        self._apply_tool_step(ToolStep(changed=old_tools.abandon_open()))
        old_tools.reset()

        previous = self.session.state
        yolo_mode = old_tools.yolo_mode
        self.session = self._new_session(session_id or _new_session_id())
        self.session.tools.yolo_mode = yolo_mode
        log.info("New session %s", self.session_id)
        self._emit(
            UpdateKind.STATE_CHANGED,
            _transition_payload(Transition(previous, self.session.state, "new session")),
        )
        return self.session_id

    async def _do_replay(self) -> None:
        backend = self._require_backend()
        self.session.replay_in_progress = True
        self._spawn_stream(backend.replay(), replay=True)

    async def _do_get_agent_mode(self) -> AgentMode:
        mode = await self._require_backend().get_agent_mode()
        self.session.agent_mode = mode
        return mode

    async def _do_set_agent_mode(self, mode: AgentMode) -> AgentMode:
        mode = await self._require_backend().set_agent_mode(mode)
        self.session.agent_mode = mode
        return mode

    async def _do_transition(self, command: str, *args: Any) -> None:
        # Looked up at run time; new_session() replaces the state machine
        method = getattr(self.session.state_machine, command)
        await self._apply_transition(method(*args))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _apply_transition(self, transition: Transition | None) -> None:
        if transition is None:
            return
        session = self.session
        self._emit(UpdateKind.STATE_CHANGED, _transition_payload(transition))

        current = transition.current
        if isinstance(current, (ProcessTerminated, Disabled)):
            if session.held_prompt is not None:
                log.info("Dropping held prompt, session is %s", current.lifecycle.value)
                session.held_prompt = None
        if isinstance(current, ProcessTerminated):
            self._apply_tool_step(ToolStep(changed=session.tools.abandon_open()))
        elif isinstance(current, Ready) and session.held_prompt is not None:
            request, session.held_prompt = session.held_prompt, None
            self._start_chat(request)

    def _apply_tool_step(self, step: ToolStep) -> None:
        for record in step.changed:
            self._emit(UpdateKind.TOOL_CALL_CHANGED, record.to_dict())
        self._record_anomalies(step.anomalies)

    def _record_anomalies(self, anomalies: list[ProtocolAnomaly]) -> None:
        for anomaly in anomalies:
            self.session.anomalies.append(anomaly)
            self._emit(UpdateKind.ANOMALY, anomaly.to_dict())

    def _emit_snapshot(self, event_kind: str) -> None:
        tracker = self.session.tracker
        if event_kind == "status" and tracker.status is not None:
            self._emit(UpdateKind.STATUS_UPDATED, tracker.status.model_dump(by_alias=True))
        elif event_kind == "usage" and tracker.usage is not None:
            self._emit(UpdateKind.USAGE_UPDATED, tracker.usage.model_dump(by_alias=True))
        elif event_kind == "prompts":
            self._emit(
                UpdateKind.PROMPTS_UPDATED,
                {"prompts": [p.model_dump() for p in tracker.prompts]},
            )

    async def _send_decision(self, decision: BatchDecision) -> None:
        if self.backend is None:
            log.debug("No backend attached, not sending decisions for batch %d", decision.batch_id)
            return
        await self.backend.resume_tool_calls(decision.to_tool_decisions(self.config.agent.deny_message))

    def _resolve_pr_link(self, output: str, branch: str | None, announce_miss: bool = False) -> str | None:
        url = self.links.find_link(output)
        candidate = None
        if url is None:
            branch = branch or self.links.pushed_branch(output)
            if branch:
                candidate = self.links.resolve_push_output(output, branch)
                url = candidate.url if candidate else None
        if url is None:
            if announce_miss:
                self._emit(UpdateKind.PR_LINK, {"url": None})
            return None

        self.session.pr_links.append(url)
        payload: dict[str, Any] = {"url": url}
        if candidate is not None:
            payload.update(host=candidate.host, owner=candidate.owner, repo=candidate.repo, branch=candidate.branch)
        self._emit(UpdateKind.PR_LINK, payload)
        return url

    def _require_queue(self) -> asyncio.Queue[Any]:
        if self._queue is None or self._closed:
            raise RuntimeError("SessionController is not running; call start() first")
        return self._queue

    def _require_backend(self) -> AgentBackend:
        if self.backend is None:
            raise BackendUnavailableError("No agent backend attached to this session")
        return self.backend


def _new_session_id() -> str:
    return uuid.uuid4().hex


def _transition_payload(transition: Transition) -> dict[str, Any]:
    return {
        **state_to_dict(transition.current),
        "previous": state_to_dict(transition.previous),
        "reason": transition.reason,
    }


def _is_git_push(record: ToolCallRecord) -> bool:
    if record.tool_name != "bash" or record.result is None:
        return False
    command = record.parsed_args().get("command", record.args)
    return isinstance(command, str) and "git push" in command
