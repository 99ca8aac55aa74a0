"""Unit tests for config loading - YAML sections, defaults and env overrides."""

import os
import subprocess
import sys
from pathlib import Path

import pytest
import yaml

import dispatchhub.config as config_module
from dispatchhub.config import load_config
from dispatchhub.constants import AGENT_INPUT_MODE_PROMPT, API_DEFAULT_PORT, DEFAULT_SHELL

_ENV_VARS = ("DISPATCH_KEY", "DISPATCH_DATA_DIR", "DISPATCH_HOST", "DISPATCH_PORT", "DISPATCH_LOG_LEVEL", "DISPATCH_DB_PATH")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.unit
class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test that an absent config file yields the built-in defaults."""
        cfg = load_config(tmp_path / "absent.yml")

        assert cfg.server.port == API_DEFAULT_PORT
        assert cfg.terminal.shell == DEFAULT_SHELL
        assert cfg.auth.key == ""
        assert cfg.log_level == "INFO"

    def test_sections_override_defaults(self, tmp_path):
        """Test that YAML sections populate the matching dataclasses."""
        path = _write(
            tmp_path,
            """
server:
  port: 9000
storage:
  data_dir: /var/lib/dispatch
agent:
  binary: /opt/agent
  input_mode: prompt
  flags: ["--dangerously-skip-permissions"]
history:
  default_lines: 10
""",
        )

        cfg = load_config(path)

        assert cfg.server.port == 9000
        assert cfg.agent.binary == "/opt/agent"
        assert cfg.agent.input_mode == AGENT_INPUT_MODE_PROMPT
        assert cfg.agent.flags == ["--dangerously-skip-permissions"]
        assert cfg.history.default_lines == 10
        assert cfg.storage.history_dir == Path("/var/lib/dispatch/history")
        assert cfg.storage.db_path == "/var/lib/dispatch/dispatch.db"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        """Test that DISPATCH_* environment variables win over the file."""
        path = _write(tmp_path, "auth:\n  key: from-file\nserver:\n  port: 9000\n")
        monkeypatch.setenv("DISPATCH_KEY", "from-env")
        monkeypatch.setenv("DISPATCH_PORT", "9100")

        cfg = load_config(path)

        assert cfg.auth.key == "from-env"
        assert cfg.server.port == 9100

    def test_db_path_env_override(self, tmp_path, monkeypatch):
        """Test that DISPATCH_DB_PATH replaces the derived database path."""
        monkeypatch.setenv("DISPATCH_DB_PATH", ":memory:")
        cfg = load_config(tmp_path / "absent.yml")
        assert cfg.storage.db_path == ":memory:"

    def test_invalid_input_mode_rejected(self, tmp_path):
        """Test that an unknown agent input mode fails fast."""
        path = _write(tmp_path, "agent:\n  input_mode: telepathy\n")
        with pytest.raises(ValueError, match="input_mode"):
            load_config(path)

    def test_non_mapping_section_rejected(self, tmp_path):
        """Test that a scalar where a section belongs is rejected."""
        path = _write(tmp_path, "server: 8080\n")
        with pytest.raises(ValueError, match="server"):
            load_config(path)

    def test_unknown_key_rejected(self, tmp_path):
        """Test that typos in a section surface as errors."""
        path = _write(tmp_path, "terminal:\n  shel: /bin/zsh\n")
        with pytest.raises(TypeError):
            load_config(path)


@pytest.mark.unit
def test_import_does_not_load_a_config():
    assert not hasattr(config_module, "config")


@pytest.mark.integration
def test_malformed_config_file_does_not_break_imports(tmp_path):
    path = _write(tmp_path, "server: [unclosed\n")
    env = {**os.environ, "DISPATCH_CONFIG_PATH": str(path)}
    project_root = Path(__file__).resolve().parents[2]

    result = subprocess.run(
        [sys.executable, "-c", "import dispatchhub.adapters.terminal_adapter, dispatchhub.daemon"],
        cwd=project_root,
        env=env,
        capture_output=True,
        text=True,
        timeout=8,
    )

    assert result.returncode == 0, result.stderr
    with pytest.raises(yaml.YAMLError):
        load_config(path)
