"""Configuration management for rovosession.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/rovosession/ or %PROGRAMDATA%)
- User-level config (~/.config/rovosession/, ~/.rovodev/ or %APPDATA%)
- Project-level config ($workspace_root/.rovodev/)
- Environment variable overrides (highest priority)

Example usage:
    from rovosession.config import load_config

    config = load_config(workspace_root="/path/to/project")
    print(config.agent.port)
"""

from rovosession.config.loader import (
    dict_to_config,
    get_config,
    load_config,
    reset_config,
)
from rovosession.config.merge import ConfigLayer, merge_layers
from rovosession.config.paths import (
    ConfigLocation,
    config_locations,
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from rovosession.config.schema import (
    AgentConfig,
    Config,
    LinkHostConfig,
    LinksConfig,
    LoggingConfig,
    SessionConfig,
)
from rovosession.config.secrets import (
    clear_secret_cache,
    fetch_secret,
    fetch_session_token,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "dict_to_config",
    # Schema types
    "AgentConfig",
    "LinkHostConfig",
    "LinksConfig",
    "LoggingConfig",
    "SessionConfig",
    # Secrets
    "fetch_secret",
    "fetch_session_token",
    "clear_secret_cache",
    # Layers and paths
    "ConfigLayer",
    "merge_layers",
    "ConfigLocation",
    "config_locations",
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
