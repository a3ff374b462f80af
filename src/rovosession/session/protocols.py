"""Core protocols for the session layer.

These protocols define the contract between:
- The agent backend (HTTP client, fakes in tests) and the session controller
- The session controller and its UI collaborator (SessionUpdate notifications)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class UpdateKind(Enum):
    """Types of session updates emitted to observers."""

    STATE_CHANGED = "state_changed"
    EVENT = "event"  # Every typed event, in arrival order
    TOOL_CALL_CHANGED = "tool_call_changed"
    STATUS_UPDATED = "status_updated"
    USAGE_UPDATED = "usage_updated"
    PROMPTS_UPDATED = "prompts_updated"
    PR_LINK = "pr_link"
    AGENT_EXCEPTION = "agent_exception"
    AGENT_WARNING = "agent_warning"
    ANOMALY = "anomaly"
    PARSING_ERROR = "parsing_error"


class AgentMode(str, Enum):
    """Agent operating mode understood by the RovoDev backend."""

    ASK = "ask"
    DEFAULT = "default"
    PLAN = "plan"


class AnomalyKind(Enum):
    """Structurally valid input that does not fit the session's current state."""

    UNKNOWN_TOOL_CALL = "unknown_tool_call"
    DUPLICATE_TOOL_CALL = "duplicate_tool_call"
    UNEXPECTED_TOOL_RETURN = "unexpected_tool_return"
    EVENT_WHILE_DISABLED = "event_while_disabled"
    EVENT_AFTER_TERMINATION = "event_after_termination"


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SessionUpdate:
    """Update emitted by a SessionController.

    ``payload`` is a plain dict so observers can forward it without knowing
    the session's internal types.
    """

    kind: UpdateKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0


@dataclass(frozen=True, slots=True)
class ProtocolAnomaly:
    """A protocol inconsistency, recorded instead of raised."""

    kind: AnomalyKind
    message: str
    event_kind: str = ""
    call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "event_kind": self.event_kind,
            "call_id": self.call_id,
        }


@dataclass(frozen=True, slots=True)
class ContextEntry:
    """A piece of context attached to a chat message.

    File entries carry ``file_path`` and an optional line ``selection``;
    any other ``type`` carries free-form ``content``.
    """

    type: str = "file"
    file_path: str | None = None
    selection: tuple[int, int] | None = None
    note: str | None = None
    content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "file":
            entry: dict[str, Any] = {"type": "file", "file_path": self.file_path or ""}
            if self.selection is not None:
                entry["selection"] = {"start": self.selection[0], "end": self.selection[1]}
            if self.note:
                entry["note"] = self.note
            return entry
        return {"type": self.type, "content": self.content or ""}


@dataclass(frozen=True, slots=True)
class ChatRequest:
    """A user prompt bound for the agent."""

    message: str
    context: tuple[ContextEntry, ...] = ()
    enable_deep_plan: bool = False

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.enable_deep_plan:
            body["enable_deep_plan"] = True
        body["context"] = [entry.to_dict() for entry in self.context]
        return body


@dataclass(frozen=True, slots=True)
class CancelResult:
    """Outcome of a cancel request."""

    cancelled: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class ToolDecision:
    """Decision sent back to the agent for one tool call.

    ``deny_message`` is None for allowed calls.
    """

    call_id: str
    deny_message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.deny_message is None

    def to_dict(self) -> dict[str, Any]:
        if self.deny_message is None:
            return {"tool_call_id": self.call_id}
        return {"tool_call_id": self.call_id, "deny_message": self.deny_message}


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class AgentBackend(Protocol):
    """Protocol for the agent process a session talks to.

    Streaming methods return raw chunks; decoding happens in the session.
    """

    def chat(self, request: ChatRequest) -> AsyncIterator[bytes]:
        """Send a prompt and stream the agent's response."""
        ...

    def replay(self) -> AsyncIterator[bytes]:
        """Stream the current session's history again."""
        ...

    async def cancel(self) -> CancelResult:
        """Ask the agent to stop the running prompt."""
        ...

    async def resume_tool_calls(self, decisions: list[ToolDecision]) -> None:
        """Send permission decisions so a paused batch can continue."""
        ...

    async def create_session(self) -> str | None:
        """Start a new agent session, returning its id when the agent reports one."""
        ...

    async def get_agent_mode(self) -> AgentMode:
        ...

    async def set_agent_mode(self, mode: AgentMode) -> AgentMode:
        ...
