"""Config files, layering, environment overrides and secrets."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from rovosession.config import (
    Config,
    dict_to_config,
    fetch_secret,
    fetch_session_token,
    get_config,
    load_config,
    reset_config,
)
from rovosession.config.merge import ConfigLayer, deep_merge, merge_configs, merge_layers
from rovosession.config.paths import (
    config_locations,
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from rovosession.config.schema import DEFAULT_DENY_MESSAGE


class TestMerge:
    """Layered dict merging."""

    def test_sections_merge_key_by_key(self) -> None:
        merged = deep_merge({"agent": {"host": "127.0.0.1", "port": 8080}}, {"agent": {"port": 9000}})
        assert merged == {"agent": {"host": "127.0.0.1", "port": 9000}}

    def test_none_keeps_lower_value(self) -> None:
        assert deep_merge({"agent": {"port": 1}}, {"agent": {"port": None}}) == {"agent": {"port": 1}}

    def test_lists_replaced_whole(self) -> None:
        merged = deep_merge(
            {"session": {"fatal_exception_types": ["A", "B"]}},
            {"session": {"fatal_exception_types": ["C"]}},
        )
        assert merged["session"]["fatal_exception_types"] == ["C"]

    def test_merge_configs_later_wins(self) -> None:
        assert merge_configs({"a": 1, "b": 2}, {}, {"b": 3}, {"c": 4}) == {"a": 1, "b": 3, "c": 4}

    def test_inputs_not_modified(self) -> None:
        base = {"agent": {"port": 1}}
        deep_merge(base, {"agent": {"port": 2}})
        assert base == {"agent": {"port": 1}}

    def test_merge_layers_reports_winners(self) -> None:
        """Only keys that replaced a lower layer's value are reported."""
        merged, winners = merge_layers(
            [
                ConfigLayer("user", {"agent": {"host": "a", "port": 1}}),
                ConfigLayer("project", {"agent": {"port": 2}, "session": {"yolo_mode": True}}),
                ConfigLayer("env", {"agent": {"port": 3, "host": "a"}}),
            ]
        )
        assert merged == {"agent": {"host": "a", "port": 3}, "session": {"yolo_mode": True}}
        assert winners == {"agent.port": "env"}


class TestLocations:
    """Where config.yaml is looked for on each platform."""

    def test_windows(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.setenv("PROGRAMDATA", r"D:\Shared")
        monkeypatch.setenv("APPDATA", r"D:\Users\dev\Roaming")

        assert str(get_system_config_path()).startswith("D:\\Shared")
        user = str(get_user_config_path())
        assert "Roaming" in user
        assert "rovosession" in user

    def test_windows_without_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.delenv("PROGRAMDATA", raising=False)
        monkeypatch.delenv("APPDATA", raising=False)
        assert get_system_config_path() is None
        assert get_user_config_path() is None

    def test_etc_on_unix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "darwin")
        assert get_system_config_path() == Path("/etc/rovosession/config.yaml")

    def test_xdg_config_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/srv/cfg")
        assert get_user_config_path() == Path("/srv/cfg/rovosession/config.yaml")

    def test_project_file_in_rovodev_dir(self) -> None:
        assert get_project_config_path("/work/repo") == Path("/work/repo/.rovodev/config.yaml")

    def test_paths_lowest_priority_first(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/xdg")

        system, user, project = get_config_paths(workspace_root="/work/repo")
        assert system.parts[1] == "etc"
        assert user.parts[:2] == ("/", "xdg")
        assert project.parent.name == ".rovodev"

    def test_location_scopes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert [loc.scope for loc in config_locations()] == ["system", "user"]
        assert [loc.scope for loc in config_locations("/work/repo")] == ["system", "user", "project"]


class TestConfigLoading:
    """load_config() against real files in a temporary workspace."""

    @pytest.fixture(autouse=True)
    def isolated_user_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Point user config at an empty directory."""
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

    @pytest.fixture
    def workspace(self, tmp_path: Path) -> Path:
        root = tmp_path / "project"
        (root / ".rovodev").mkdir(parents=True)
        return root

    def write(self, workspace: Path, text: str) -> None:
        (workspace / ".rovodev" / "config.yaml").write_text(text, encoding="utf-8")

    def test_defaults(self, workspace: Path) -> None:
        config = load_config(workspace_root=str(workspace))
        assert isinstance(config, Config)
        assert config.agent.port == 8080
        assert config.agent.framing == "sse"
        assert config.agent.deny_message == DEFAULT_DENY_MESSAGE
        assert config.session.yolo_mode is False

    def test_project_config(self, workspace: Path) -> None:
        self.write(
            workspace,
            """
agent:
  port: 9100
  pause_on_call_tools_start: false
  deny_message: "Nope"
session:
  yolo_mode: true
  fatal_exception_types: [ProcessCrashed]
  initializing_substates: [DownloadingBinary]
links:
  hosts:
    - pattern: git.example.com
      template: "https://{host}/{owner}/{repo}/compare/{branch}"
    - pattern: incomplete.example.com
custom:
  key: value
""",
        )
        config = load_config(workspace_root=str(workspace))

        assert config.agent.port == 9100
        assert config.agent.pause_on_call_tools_start is False
        assert config.agent.deny_message == "Nope"
        assert config.session.yolo_mode is True
        assert config.session.fatal_exception_types == ["ProcessCrashed"]
        assert config.session.initializing_substates == ["DownloadingBinary"]
        assert [h.pattern for h in config.links.hosts] == ["git.example.com"]
        assert config.extra == {"custom": {"key": "value"}}

    def test_env_overrides_project(self, workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.write(workspace, "agent:\n  host: 10.0.0.1\n  port: 9100\n")
        monkeypatch.setenv("ROVODEV_PORT", "7000")
        monkeypatch.setenv("ROVOSESSION_LOG", "/tmp/rovo.log")

        config = load_config(workspace_root=str(workspace))
        assert config.agent.host == "10.0.0.1"
        assert config.agent.port == 7000
        assert config.logging.file == "/tmp/rovo.log"

    def test_bad_port_env_ignored(self, workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROVODEV_PORT", "not-a-port")
        assert load_config(workspace_root=str(workspace)).agent.port == 8080

    def test_invalid_yaml_uses_defaults(self, workspace: Path) -> None:
        self.write(workspace, "invalid: yaml: :")
        assert load_config(workspace_root=str(workspace)).agent.port == 8080

    def test_unknown_framing_falls_back(self) -> None:
        assert dict_to_config({"agent": {"framing": "xml"}}).agent.framing == "sse"

    def test_global_config_cached(self) -> None:
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first


class TestSecrets:
    """Tests for the session token lookup."""

    def test_env_wins(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        secrets = tmp_path / ".env.secrets"
        secrets.write_text("ROVODEV_SESSION_TOKEN=from-file\n", encoding="utf-8")
        monkeypatch.setenv("ROVODEV_SESSION_TOKEN", "from-env")
        assert fetch_session_token(secrets) == "from-env"

    def test_secrets_file(self, tmp_path: Path) -> None:
        secrets = tmp_path / ".env.secrets"
        secrets.write_text("ROVODEV_SESSION_TOKEN=from-file\nOTHER=1\n", encoding="utf-8")
        assert fetch_session_token(secrets) == "from-file"
        assert fetch_secret("OTHER", secrets_path=secrets) == "1"

    def test_missing_secret_default(self, tmp_path: Path) -> None:
        assert fetch_secret("NOPE", default="fallback", secrets_path=tmp_path / "missing") == "fallback"
        assert fetch_session_token(tmp_path / "missing") is None

    def test_workspace_secrets_file(self, tmp_path: Path) -> None:
        workspace = tmp_path / "project"
        (workspace / ".rovodev").mkdir(parents=True)
        (workspace / ".rovodev" / ".env.secrets").write_text(
            "ROVODEV_SESSION_TOKEN=workspace-token\n", encoding="utf-8"
        )
        token = fetch_session_token(tmp_path / "missing", workspace_root=str(workspace))
        assert token == "workspace-token"
