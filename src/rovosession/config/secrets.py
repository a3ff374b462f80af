"""The RovoDev session token.

``acli rovodev serve`` can require a bearer token on every request. It is
never stored in config.yaml. The lookup order is:

1. ``$ROVODEV_SESSION_TOKEN`` (or any other key, for fetch_secret)
2. ``.env.secrets`` in the current directory, or the file passed in
3. ``<workspace>/.rovodev/.env.secrets`` when a workspace is given
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values

from rovosession.config.paths import SHORT_NAME

SECRETS_FILE = ".env.secrets"
SESSION_TOKEN_KEY = "ROVODEV_SESSION_TOKEN"


@lru_cache(maxsize=8)
def _read_secrets_file(path: Path) -> dict[str, str | None]:
    if not path.is_file():
        return {}
    return dotenv_values(path)


def _secrets_files(secrets_path: Path | None, workspace_root: str | None) -> list[Path]:
    files = [secrets_path or Path(SECRETS_FILE)]
    if workspace_root:
        files.append(Path(workspace_root, SHORT_NAME, SECRETS_FILE))
    return files


def fetch_secret(
    key: str,
    default: str | None = None,
    secrets_path: Path | None = None,
    workspace_root: str | None = None,
) -> str | None:
    """Look ``key`` up in the environment, then in the secrets files.

    Secrets files are read once and cached; call clear_secret_cache()
    after editing one.
    """
    value = os.environ.get(key)
    if value is not None:
        return value
    for path in _secrets_files(secrets_path, workspace_root):
        value = _read_secrets_file(path).get(key)
        if value is not None:
            return value
    return default


def fetch_session_token(
    secrets_path: Path | None = None,
    workspace_root: str | None = None,
) -> str | None:
    """Bearer token for the serve process, or None when it runs without one."""
    return fetch_secret(SESSION_TOKEN_KEY, secrets_path=secrets_path, workspace_root=workspace_root) or None


def clear_secret_cache() -> None:
    _read_secrets_file.cache_clear()
