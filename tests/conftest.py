"""Shared fixtures for the rovosession test suite."""

from __future__ import annotations

import pytest

from rovosession.config import clear_secret_cache, reset_config
from rovosession.logging import reset_logging

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch: pytest.MonkeyPatch):
    """Keep cached config, secrets and log handlers from leaking between tests."""
    for var in ("ROVOSESSION_LOG", "ROVODEV_HOST", "ROVODEV_PORT", "ROVODEV_SESSION_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    clear_secret_cache()
    yield
    reset_config()
    clear_secret_cache()
    reset_logging()
