"""Session layer: lifecycle, tool calls, snapshots and the SessionController."""

from rovosession.session.controller import (
    BackendUnavailableError,
    CancellationInProgressError,
    Session,
    SessionController,
)
from rovosession.session.protocols import (
    AgentBackend,
    AgentMode,
    AnomalyKind,
    CancelResult,
    ChatRequest,
    ContextEntry,
    ProtocolAnomaly,
    SessionUpdate,
    ToolDecision,
    UpdateKind,
)
from rovosession.session.state import (
    Disabled,
    Initializing,
    LifecycleState,
    ProcessTerminated,
    Ready,
    SessionState,
    SessionStateMachine,
    SessionUnavailableError,
)
from rovosession.session.tools import (
    BatchDecision,
    BatchOutcome,
    PermissionChoice,
    ToolCallAlreadyDecidedError,
    ToolCallCoordinator,
    ToolCallRecord,
    ToolCallStatus,
    UnknownToolCallError,
)
from rovosession.session.usage import UsageAndStatusTracker

__all__ = [
    "AgentBackend",
    "AgentMode",
    "AnomalyKind",
    "BackendUnavailableError",
    "BatchDecision",
    "BatchOutcome",
    "CancelResult",
    "CancellationInProgressError",
    "ChatRequest",
    "ContextEntry",
    "Disabled",
    "Initializing",
    "LifecycleState",
    "PermissionChoice",
    "ProcessTerminated",
    "ProtocolAnomaly",
    "Ready",
    "Session",
    "SessionController",
    "SessionState",
    "SessionStateMachine",
    "SessionUnavailableError",
    "SessionUpdate",
    "ToolCallAlreadyDecidedError",
    "ToolCallCoordinator",
    "ToolCallRecord",
    "ToolCallStatus",
    "ToolDecision",
    "UnknownToolCallError",
    "UpdateKind",
    "UsageAndStatusTracker",
]
