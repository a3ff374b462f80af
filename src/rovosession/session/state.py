"""Session lifecycle state machine.

States::

    Initializing(sub_state, is_prompt_pending)   (initial)
    Disabled(sub_state)
    Ready(is_prompt_pending)
    ProcessTerminated(exit_code, reason)         (left only by reset)

Events from the agent stream and commands from the session controller or
the process manager drive transitions. Events that are well formed but do
not fit the current state are reported as anomalies, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar, Union

from rovosession.config.schema import SessionConfig
from rovosession.events.models import (
    AgentExceptionEvent,
    CloseEvent,
    Event,
    RetryPromptEvent,
    StatusEvent,
    TextEvent,
    ToolCallEvent,
    ToolCallsStartEvent,
    ToolReturnEvent,
)
from rovosession.logging import get_logger
from rovosession.session.protocols import AnomalyKind, ProtocolAnomaly

log = get_logger("session.state")

DEFAULT_DISABLED_SUBSTATES = (
    "NeedAuth",
    "UnauthorizedAuth",
    "NoWorkspaceOpen",
    "EntitlementCheckFailed",
    "UnsupportedArch",
    "Other",
)
DEFAULT_INITIALIZING_SUBSTATES = ("Other", "MCPAcceptance")

FATAL_SEVERITIES = frozenset({"fatal", "critical"})

_TOOL_EVENTS = (ToolCallEvent, ToolReturnEvent, RetryPromptEvent, ToolCallsStartEvent)


class LifecycleState(Enum):
    DISABLED = "Disabled"
    INITIALIZING = "Initializing"
    READY = "Ready"
    PROCESS_TERMINATED = "ProcessTerminated"


@dataclass(frozen=True, slots=True)
class Disabled:
    sub_state: str = "Other"

    lifecycle: ClassVar[LifecycleState] = LifecycleState.DISABLED

    @property
    def is_prompt_pending(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Initializing:
    sub_state: str = "Other"
    is_prompt_pending: bool = False

    lifecycle: ClassVar[LifecycleState] = LifecycleState.INITIALIZING


@dataclass(frozen=True, slots=True)
class Ready:
    is_prompt_pending: bool = False

    lifecycle: ClassVar[LifecycleState] = LifecycleState.READY


@dataclass(frozen=True, slots=True)
class ProcessTerminated:
    exit_code: int | None = None
    reason: str = ""

    lifecycle: ClassVar[LifecycleState] = LifecycleState.PROCESS_TERMINATED

    @property
    def is_prompt_pending(self) -> bool:
        return False


SessionState = Union[Disabled, Initializing, Ready, ProcessTerminated]

INITIAL_STATE: SessionState = Initializing(sub_state="Other", is_prompt_pending=False)


def state_to_dict(state: SessionState) -> dict[str, Any]:
    """Flatten a state for SessionUpdate payloads."""
    data: dict[str, Any] = {
        "state": state.lifecycle.value,
        "is_prompt_pending": state.is_prompt_pending,
    }
    if isinstance(state, (Disabled, Initializing)):
        data["sub_state"] = state.sub_state
    if isinstance(state, ProcessTerminated):
        data["exit_code"] = state.exit_code
        data["reason"] = state.reason
    return data


@dataclass
class SessionUnavailableError(Exception):
    """Raised when a prompt is sent while the session cannot accept one."""

    state: SessionState

    def __str__(self) -> str:
        return f"Session cannot accept a prompt while {self.state.lifecycle.value}"


@dataclass(frozen=True, slots=True)
class Transition:
    previous: SessionState
    current: SessionState
    reason: str = ""


@dataclass
class StepResult:
    """Outcome of feeding one event to the state machine."""

    transition: Transition | None = None
    anomalies: list[ProtocolAnomaly] = field(default_factory=list)


class SessionStateMachine:
    """Tracks the lifecycle of one agent session.

    Sub-state names are validated against the built-in lists extended by
    ``SessionConfig.disabled_substates`` / ``initializing_substates``.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        config = config or SessionConfig()
        self.disabled_substates = _extend(DEFAULT_DISABLED_SUBSTATES, config.disabled_substates)
        self.initializing_substates = _extend(
            DEFAULT_INITIALIZING_SUBSTATES, config.initializing_substates
        )
        self.fatal_exception_types = frozenset(config.fatal_exception_types)
        self._state: SessionState = INITIAL_STATE

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminated(self) -> bool:
        return isinstance(self._state, ProcessTerminated)

    def is_fatal(self, event: AgentExceptionEvent) -> bool:
        severity = (event.severity or "").lower()
        return severity in FATAL_SEVERITIES or event.type in self.fatal_exception_types

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, event: Event) -> StepResult:
        state = self._state

        if isinstance(state, ProcessTerminated):
            if self._implies_activity(event):
                return StepResult(
                    anomalies=[
                        _anomaly(
                            AnomalyKind.EVENT_AFTER_TERMINATION,
                            f"{event.event_kind} event after the agent process terminated",
                            event,
                        )
                    ]
                )
            return StepResult()

        if isinstance(event, CloseEvent):
            return StepResult(self._set(ProcessTerminated(reason="Agent closed the stream"), "close"))

        if isinstance(event, AgentExceptionEvent):
            if self.is_fatal(event):
                return StepResult(self._set(ProcessTerminated(reason=event.message), "fatal exception"))
            return StepResult()

        if isinstance(event, StatusEvent):
            if isinstance(state, (Disabled, Initializing)) and event.data.is_available:
                return StepResult(self._set(Ready(is_prompt_pending=state.is_prompt_pending), "status"))
            return StepResult()

        if isinstance(state, Disabled) and isinstance(event, (TextEvent, *_TOOL_EVENTS)):
            return StepResult(
                anomalies=[
                    _anomaly(
                        AnomalyKind.EVENT_WHILE_DISABLED,
                        f"{event.event_kind} event while Disabled({state.sub_state})",
                        event,
                    )
                ]
            )

        if isinstance(event, TextEvent) and event.is_summary and state.is_prompt_pending:
            return StepResult(self._set(replace(state, is_prompt_pending=False), "summary"))

        return StepResult()

    def _implies_activity(self, event: Event) -> bool:
        if isinstance(event, StatusEvent):
            return event.data.is_available
        return isinstance(event, (TextEvent, *_TOOL_EVENTS))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def prompt_sent(self) -> Transition | None:
        """Mark a prompt in flight.

        Raises:
            SessionUnavailableError: While Disabled or ProcessTerminated.
        """
        state = self._state
        if isinstance(state, (Disabled, ProcessTerminated)):
            raise SessionUnavailableError(state)
        return self._set(replace(state, is_prompt_pending=True), "prompt sent")

    def prompt_completed(self) -> Transition | None:
        state = self._state
        if isinstance(state, (Initializing, Ready)) and state.is_prompt_pending:
            return self._set(replace(state, is_prompt_pending=False), "prompt completed")
        return None

    def mark_disabled(self, sub_state: str = "Other") -> Transition | None:
        self._check_substate(sub_state, self.disabled_substates, "Disabled")
        if self._refuse_after_termination("mark_disabled"):
            return None
        return self._set(Disabled(sub_state=sub_state), "disabled")

    def mark_initializing(self, sub_state: str = "Other") -> Transition | None:
        self._check_substate(sub_state, self.initializing_substates, "Initializing")
        if self._refuse_after_termination("mark_initializing"):
            return None
        pending = self._state.is_prompt_pending
        return self._set(Initializing(sub_state=sub_state, is_prompt_pending=pending), "initializing")

    def mark_ready(self) -> Transition | None:
        if self._refuse_after_termination("mark_ready"):
            return None
        return self._set(Ready(is_prompt_pending=self._state.is_prompt_pending), "ready")

    def process_exited(self, exit_code: int | None = None, reason: str = "") -> Transition | None:
        if self.is_terminated:
            return None
        return self._set(ProcessTerminated(exit_code=exit_code, reason=reason), "process exited")

    def reset(self) -> Transition | None:
        """Start over for a new session."""
        return self._set(INITIAL_STATE, "new session")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _set(self, new_state: SessionState, reason: str) -> Transition | None:
        previous = self._state
        if new_state == previous:
            return None
        self._state = new_state
        log.debug("State %s -> %s (%s)", previous, new_state, reason)
        return Transition(previous=previous, current=new_state, reason=reason)

    def _refuse_after_termination(self, command: str) -> bool:
        if self.is_terminated:
            log.warning("Ignoring %s: process terminated, start a new session first", command)
            return True
        return False

    @staticmethod
    def _check_substate(sub_state: str, allowed: tuple[str, ...], state_name: str) -> None:
        if sub_state not in allowed:
            raise ValueError(
                f"Unknown {state_name} sub-state {sub_state!r}, expected one of {', '.join(allowed)}"
            )


def _extend(defaults: tuple[str, ...], extra: list[str]) -> tuple[str, ...]:
    return defaults + tuple(name for name in extra if name not in defaults)


def _anomaly(kind: AnomalyKind, message: str, event: Event) -> ProtocolAnomaly:
    log.warning("Protocol anomaly: %s", message)
    return ProtocolAnomaly(kind=kind, message=message, event_kind=event.event_kind)
