"""Agent event stream: framing, typed events and decoding."""

from rovosession.events.frames import JSONL, SSE, FrameBuffer, FramingError, iter_frames
from rovosession.events.models import (
    AgentExceptionEvent,
    ClearEvent,
    CloseEvent,
    Event,
    ParsingErrorEvent,
    PermissionScenario,
    PromptsEvent,
    PruneEvent,
    ReplayEndEvent,
    RetryPromptEvent,
    SavedPrompt,
    StatusEvent,
    StatusSnapshot,
    TextEvent,
    ToolCallEvent,
    ToolCallsStartEvent,
    ToolReturnEvent,
    UsageEvent,
    UsageSnapshot,
    UserPromptEvent,
    WarningEvent,
    event_to_dict,
)
from rovosession.events.parser import EventFrameParser, EventStream, PartAssembler

__all__ = [
    # Framing
    "FrameBuffer",
    "FramingError",
    "iter_frames",
    "SSE",
    "JSONL",
    # Decoding
    "EventFrameParser",
    "EventStream",
    "PartAssembler",
    # Events
    "Event",
    "AgentExceptionEvent",
    "ClearEvent",
    "CloseEvent",
    "ParsingErrorEvent",
    "PermissionScenario",
    "PromptsEvent",
    "PruneEvent",
    "ReplayEndEvent",
    "RetryPromptEvent",
    "SavedPrompt",
    "StatusEvent",
    "StatusSnapshot",
    "TextEvent",
    "ToolCallEvent",
    "ToolCallsStartEvent",
    "ToolReturnEvent",
    "UsageEvent",
    "UsageSnapshot",
    "UserPromptEvent",
    "WarningEvent",
    "event_to_dict",
]
