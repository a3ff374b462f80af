"""Typed config sections, one dataclass per top-level key of config.yaml.

Every field has a default, so a file only names what it changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_DENY_MESSAGE = "I denied the execution of this tool call"


@dataclass
class LoggingConfig:
    """The ``logging`` section; see rovosession.logging."""

    level: str | None = None  # TRACE, DEBUG, VERBOSE, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None  # Opened for append


@dataclass
class AgentConfig:
    """Connection settings for the RovoDev serve process.

    Example config.yaml:
        agent:
          host: 127.0.0.1
          port: 8080
          pause_on_call_tools_start: true
    """

    host: str = "127.0.0.1"
    port: int = 8080
    timeout: float = 30.0  # Seconds, for non-streaming requests
    pause_on_call_tools_start: bool = True  # Ask the agent to wait for permission decisions
    deny_message: str = DEFAULT_DENY_MESSAGE  # Sent back for denied tool calls
    framing: str = "sse"  # "sse" or "jsonl"


@dataclass
class SessionConfig:
    """Session behavior configuration.

    Sub-state lists extend the built-in names; they never replace them.

    Example config.yaml:
        session:
          yolo_mode: false
          fatal_exception_types: ["ProcessCrashed"]
          initializing_substates: ["DownloadingBinary"]
    """

    yolo_mode: bool = False  # Auto-allow tool calls that would ask
    fatal_exception_types: list[str] = field(default_factory=list)
    disabled_substates: list[str] = field(default_factory=list)
    initializing_substates: list[str] = field(default_factory=list)


@dataclass
class LinkHostConfig:
    """An extra pull-request link template for a git host.

    ``pattern`` is a glob matched against the remote host name, ``template``
    is rendered with {host}, {owner}, {repo} and {branch}.
    """

    pattern: str
    template: str
    name: str = ""


@dataclass
class LinksConfig:
    """Pull-request link resolution configuration."""

    hosts: list[LinkHostConfig] = field(default_factory=list)


@dataclass
class Config:
    """Everything load_config() produces. Unrecognised top-level keys land in ``extra``."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    links: LinksConfig = field(default_factory=LinksConfig)
    extra: dict[str, Any] = field(default_factory=dict)  # Unknown sections
