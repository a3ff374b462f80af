"""Typed events emitted by the RovoDev agent stream.

Every wire record carries an ``event_kind`` discriminator. Each kind maps to
one frozen pydantic model and the closed union of them is ``Event``.
``ParsingErrorEvent`` never comes off the wire; it is synthesised locally when
a frame cannot be decoded.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class EventModel(BaseModel):
    """Base model for stream events: immutable, populated by name or alias."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())


class PermissionScenario(str, Enum):
    """Policy the agent declares for a pending tool call."""

    ASK = "ASK"
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


# -----------------------------------------------------------------------------
# Conversation events
# -----------------------------------------------------------------------------


class UserPromptEvent(EventModel):
    """Echo of the prompt the agent is working on."""

    event_kind: Literal["user-prompt"] = "user-prompt"
    content: str = ""
    timestamp: str = ""


class TextEvent(EventModel):
    """A chunk of assistant text; ``index`` orders chunks of the same reply."""

    event_kind: Literal["text"] = "text"
    index: int = 0
    content: str = ""
    is_summary: bool = Field(default=False, alias="isSummary")


class ToolCallEvent(EventModel):
    """The agent asks to run a tool."""

    event_kind: Literal["tool-call"] = "tool-call"
    tool_name: str = ""
    args: str = ""
    tool_call_id: str = Field(min_length=1)
    mcp_server: str | None = None  # Set when the tool is proxied by an MCP server

    @field_validator("args", mode="before")
    @classmethod
    def _stringify_args(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value


class ToolReturnEvent(EventModel):
    """Result of a tool call, correlated by ``tool_call_id``."""

    event_kind: Literal["tool-return"] = "tool-return"
    tool_name: str = ""
    content: str | None = None
    tool_call_id: str = Field(min_length=1)
    timestamp: str = ""
    parsed_content: dict[str, Any] | None = Field(default=None, alias="parsedContent")

    @model_validator(mode="before")
    @classmethod
    def _parse_content(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("parsed_content") is not None or data.get("parsedContent") is not None:
            return data
        content = data.get("content")
        if isinstance(content, str):
            try:
                parsed = json.loads(content)
            except ValueError:
                return data
            if isinstance(parsed, dict):
                return {**data, "parsed_content": parsed}
        return data


class RetryPromptEvent(EventModel):
    """The agent rejected a tool call's outcome and will retry it."""

    event_kind: Literal["retry-prompt"] = "retry-prompt"
    content: str = ""
    tool_name: str = ""
    tool_call_id: str = Field(min_length=1)
    timestamp: str = ""


class ToolCallsStartEvent(EventModel):
    """A batch of tool calls is about to run.

    ``permissions`` maps a tool identifier (call id or tool name) to the
    scenario the agent requires for it.
    """

    event_kind: Literal["on_call_tools_start"] = "on_call_tools_start"
    tools: list[ToolCallEvent] = Field(default_factory=list)
    permission_required: bool = False
    permissions: dict[str, PermissionScenario] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Diagnostics and history events
# -----------------------------------------------------------------------------


class AgentExceptionEvent(EventModel):
    """An error reported by the agent process. Surfaced verbatim."""

    event_kind: Literal["exception"] = "exception"
    message: str
    title: str | None = None
    type: str = ""
    severity: str | None = None


class WarningEvent(EventModel):
    """A warning reported by the agent process. Surfaced verbatim."""

    event_kind: Literal["warning"] = "warning"
    message: str
    title: str | None = None


class ClearEvent(EventModel):
    """The agent cleared its conversation history."""

    event_kind: Literal["clear"] = "clear"
    message: str = ""


class PruneEvent(EventModel):
    """The agent pruned part of its conversation history."""

    event_kind: Literal["prune"] = "prune"
    message: str = ""


# -----------------------------------------------------------------------------
# Snapshot events
# -----------------------------------------------------------------------------


class CliVersion(EventModel):
    version: str = ""
    session_id: str = Field(default="", alias="sessionId")


class AccountInfo(EventModel):
    email: str = ""
    account_id: str = Field(default="", alias="accountId")
    org_id: str = Field(default="", alias="orgId")
    is_server_available: bool = Field(default=False, alias="isServerAvailable")


class MemoryInfo(EventModel):
    memory_paths: list[str] = Field(default_factory=list, alias="memoryPaths")
    has_memory_files: bool = Field(default=False, alias="hasMemoryFiles")
    error_message: str | None = Field(default=None, alias="errorMessage")


class ModelInfo(EventModel):
    model_name: str = Field(default="", alias="modelName")
    human_readable_name: str = Field(default="", alias="humanReadableName")
    error_message: str | None = Field(default=None, alias="errorMessage")


class StatusSnapshot(EventModel):
    """Agent process status, replaced wholesale on every ``status`` event."""

    cli_version: CliVersion = Field(default_factory=CliVersion, alias="cliVersion")
    working_directory: str = Field(default="", alias="workingDirectory")
    account: AccountInfo = Field(default_factory=AccountInfo)
    memory: MemoryInfo = Field(default_factory=MemoryInfo)
    model: ModelInfo = Field(default_factory=ModelInfo)

    @property
    def is_available(self) -> bool:
        """True when the account reaches the server and the model loaded."""
        return self.account.is_server_available and not self.model.error_message


class StatusEvent(EventModel):
    event_kind: Literal["status"] = "status"
    data: StatusSnapshot


class MessageWithCtaLink(EventModel):
    message: str = ""
    cta_link: dict[str, str] | None = Field(default=None, alias="ctaLink")


class ModelUsageData(EventModel):
    title: str = ""
    data: dict[str, float] = Field(default_factory=dict)


class UsageSnapshot(EventModel):
    """Credit usage, replaced wholesale on every ``usage`` event."""

    is_beta_site: bool = Field(default=False, alias="isBetaSite")
    title: str = ""
    status: str = ""
    credit_type: str = ""
    credit_used: float = 0
    credit_remaining: float = 0
    credit_total: float = 0
    retry_after_seconds: float = 0
    upgrade_message: str | None = None
    model_usage_data: ModelUsageData | None = None
    view_usage_message: MessageWithCtaLink | None = None
    exceeded_message: MessageWithCtaLink | None = None


class UsageData(EventModel):
    content: UsageSnapshot


class UsageEvent(EventModel):
    event_kind: Literal["usage"] = "usage"
    data: UsageData


class SavedPrompt(EventModel):
    name: str
    description: str = ""
    content_file: str = ""


class PromptsData(EventModel):
    prompts: list[SavedPrompt] = Field(default_factory=list)


class PromptsEvent(EventModel):
    """Catalog of saved prompts available to the user."""

    event_kind: Literal["prompts"] = "prompts"
    data: PromptsData = Field(default_factory=PromptsData)


# -----------------------------------------------------------------------------
# Stream control events
# -----------------------------------------------------------------------------


class CloseEvent(EventModel):
    event_kind: Literal["close"] = "close"


class ReplayEndEvent(EventModel):
    event_kind: Literal["replay_end"] = "replay_end"


class ParsingErrorEvent(EventModel):
    """A frame that could not be decoded. Carries the raw frame."""

    event_kind: Literal["_parsing_error"] = "_parsing_error"
    frame: str
    reason: str


Event = Annotated[
    Union[
        UserPromptEvent,
        TextEvent,
        ToolCallEvent,
        ToolReturnEvent,
        RetryPromptEvent,
        ToolCallsStartEvent,
        AgentExceptionEvent,
        WarningEvent,
        ClearEvent,
        PruneEvent,
        StatusEvent,
        UsageEvent,
        PromptsEvent,
        CloseEvent,
        ReplayEndEvent,
        ParsingErrorEvent,
    ],
    Field(discriminator="event_kind"),
]

EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)

# Wire kinds accepted from the agent (the parsing-error kind is local only)
WIRE_EVENT_KINDS = frozenset(
    {
        "user-prompt",
        "text",
        "tool-call",
        "tool-return",
        "retry-prompt",
        "on_call_tools_start",
        "exception",
        "warning",
        "clear",
        "prune",
        "status",
        "usage",
        "prompts",
        "close",
        "replay_end",
    }
)

# Older agents use underscores for the part kinds
EVENT_KIND_ALIASES = {
    "user_prompt": "user-prompt",
    "tool_call": "tool-call",
    "tool_return": "tool-return",
    "retry_prompt": "retry-prompt",
}


def event_to_dict(event: Event) -> dict[str, Any]:
    """Serialise an event back to its wire shape."""
    return event.model_dump(by_alias=True, exclude_none=True)
