"""Build a ``Config`` from config.yaml files and the environment.

``load_config`` merges the system, user and project files found by
``config_locations`` and then the environment variables below, and
converts the result into typed dataclasses. Unreadable or malformed files
are logged and skipped, so a broken user file never stops a session.

Environment variables:
    ROVOSESSION_LOG   log file path (logging.file)
    ROVODEV_HOST      agent host (agent.host)
    ROVODEV_PORT      agent port (agent.port)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from rovosession.config.merge import ConfigLayer, merge_layers
from rovosession.config.paths import config_locations
from rovosession.config.schema import (
    AgentConfig,
    Config,
    LinkHostConfig,
    LinksConfig,
    LoggingConfig,
    SessionConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("rovosession.config")

_cached_config: Config | None = None

# variable -> (section, key, converter)
_ENV_VARS: dict[str, tuple[str, str, Any]] = {
    "ROVOSESSION_LOG": ("logging", "file", str),
    "ROVODEV_HOST": ("agent", "host", str),
    "ROVODEV_PORT": ("agent", "port", int),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Read one config file. Missing, unreadable or non-mapping files give {}."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as e:
        _log.warning("Cannot read %s: %s", path, e)
        return {}

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        _log.warning("Ignoring %s, invalid YAML: %s", path, e)
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        _log.warning("Ignoring %s, top level is %s, not a mapping", path, type(data).__name__)
        return {}
    return data


def env_overrides() -> dict[str, Any]:
    """Config dict built from environment variables.

    The session token is not part of Config; use fetch_session_token().
    """
    overrides: dict[str, Any] = {}
    for var, (section, key, convert) in _ENV_VARS.items():
        raw = os.environ.get(var)
        if not raw:
            continue
        try:
            value = convert(raw)
        except ValueError:
            _log.warning("Ignoring %s=%r, expected %s", var, raw, convert.__name__)
            continue
        overrides.setdefault(section, {})[key] = value
    return overrides


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    log_data = data.get("logging") or {}
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    agent_defaults = AgentConfig()
    agent_data = data.get("agent") or {}
    agent = AgentConfig(
        host=agent_data.get("host", agent_defaults.host),
        port=int(agent_data.get("port", agent_defaults.port)),
        timeout=float(agent_data.get("timeout", agent_defaults.timeout)),
        pause_on_call_tools_start=agent_data.get(
            "pause_on_call_tools_start", agent_defaults.pause_on_call_tools_start
        ),
        deny_message=agent_data.get("deny_message", agent_defaults.deny_message),
        framing=agent_data.get("framing", agent_defaults.framing),
    )
    if agent.framing not in ("sse", "jsonl"):
        _log.warning("Unknown agent.framing %r, using 'sse'", agent.framing)
        agent.framing = "sse"

    session_data = data.get("session") or {}
    session = SessionConfig(
        yolo_mode=bool(session_data.get("yolo_mode", False)),
        fatal_exception_types=_str_list(session_data.get("fatal_exception_types")),
        disabled_substates=_str_list(session_data.get("disabled_substates")),
        initializing_substates=_str_list(session_data.get("initializing_substates")),
    )

    links_data = data.get("links") or {}
    hosts = [
        LinkHostConfig(
            pattern=h["pattern"],
            template=h["template"],
            name=h.get("name", ""),
        )
        for h in links_data.get("hosts", [])
        if isinstance(h, dict) and h.get("pattern") and h.get("template")
    ]
    links = LinksConfig(hosts=hosts)

    known_keys = {"logging", "agent", "session", "links"}
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        logging=logging_config,
        agent=agent,
        session=session,
        links=links,
        extra=extra,
    )


def load_config(workspace_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from every scope.

    Priority, highest first: environment, project
    (``<workspace_root>/.rovodev/config.yaml``), user, system.

    Only the global config (no ``workspace_root``) is cached; pass
    ``reload=True`` to re-read it.
    """
    global _cached_config

    if workspace_root is None and _cached_config is not None and not reload:
        return _cached_config

    layers = []
    for location in config_locations(workspace_root):
        data = load_yaml_file(location.path)
        if data:
            _log.debug("Loaded %s config from %s", location.scope, location.path)
            layers.append(ConfigLayer(location.scope, data))
    layers.append(ConfigLayer("env", env_overrides()))

    merged, winners = merge_layers(layers)
    for key, scope in winners.items():
        _log.debug("%s set by %s config", key, scope)

    config = dict_to_config(merged)
    if workspace_root is None:
        _cached_config = config
    return config


def get_config() -> Config:
    """Get the cached global config, loading it if needed."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached global config."""
    global _cached_config
    _cached_config = None
