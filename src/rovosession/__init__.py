"""rovosession: client-side protocol engine for RovoDev agent sessions."""

__version__ = "0.1.0"

# Public API
from rovosession.client import RovoDevApiClient, RovoDevApiError
from rovosession.config import Config, get_config, load_config
from rovosession.events import Event, EventFrameParser, EventStream, FrameBuffer
from rovosession.git import GitOutputLinkResolver, build_link_from_push_output, find_link
from rovosession.session import (
    AgentBackend,
    AgentMode,
    SessionController,
    SessionStateMachine,
    SessionUpdate,
    ToolCallCoordinator,
    UpdateKind,
    UsageAndStatusTracker,
)

__all__ = [
    # Main entry points
    "SessionController",
    "RovoDevApiClient",
    "RovoDevApiError",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Events
    "Event",
    "EventFrameParser",
    "EventStream",
    "FrameBuffer",
    # Session
    "AgentBackend",
    "AgentMode",
    "SessionStateMachine",
    "SessionUpdate",
    "ToolCallCoordinator",
    "UpdateKind",
    "UsageAndStatusTracker",
    # Links
    "GitOutputLinkResolver",
    "build_link_from_push_output",
    "find_link",
]
