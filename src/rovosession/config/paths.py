"""Where rovosession looks for config.yaml.

Three scopes, lowest priority first:

- system:  /etc/rovosession/ or %PROGRAMDATA%\\rovosession\\
- user:    $XDG_CONFIG_HOME/rovosession/, ~/.config/rovosession/ or ~/.rovodev/
           (%APPDATA%\\rovosession\\ on Windows)
- project: <workspace>/.rovodev/, next to the RovoDev CLI's own settings
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
APP_NAME = "rovosession"
SHORT_NAME = ".rovodev"

SYSTEM = "system"
USER = "user"
PROJECT = "project"


@dataclass(frozen=True, slots=True)
class ConfigLocation:
    scope: str
    path: Path

    def exists(self) -> bool:
        return self.path.is_file()


def _windows_dir(env_var: str) -> Path | None:
    base = os.environ.get(env_var)
    return Path(base) / APP_NAME if base else None


def get_system_config_path() -> Path | None:
    if sys.platform == "win32":
        directory = _windows_dir("PROGRAMDATA")
        return directory / CONFIG_FILENAME if directory else None
    return Path("/etc", APP_NAME, CONFIG_FILENAME)


def get_user_config_path() -> Path | None:
    """User config file. ~/.rovodev is used only on machines without ~/.config."""
    if sys.platform == "win32":
        directory = _windows_dir("APPDATA")
        return directory / CONFIG_FILENAME if directory else None

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config, APP_NAME, CONFIG_FILENAME)

    dot_config = Path.home() / ".config"
    if dot_config.exists():
        return dot_config / APP_NAME / CONFIG_FILENAME
    return Path.home() / SHORT_NAME / CONFIG_FILENAME


def get_project_config_path(workspace_root: str) -> Path:
    return Path(workspace_root, SHORT_NAME, CONFIG_FILENAME)


def config_locations(workspace_root: str | None = None) -> list[ConfigLocation]:
    """Candidate config files in merge order. The files may not exist."""
    candidates = [
        (SYSTEM, get_system_config_path()),
        (USER, get_user_config_path()),
        (PROJECT, get_project_config_path(workspace_root) if workspace_root else None),
    ]
    return [ConfigLocation(scope, path) for scope, path in candidates if path is not None]


def get_config_paths(workspace_root: str | None = None) -> list[Path]:
    """Paths of config_locations(), lowest priority first."""
    return [location.path for location in config_locations(workspace_root)]
