import os

import pytest
from pydantic import ValidationError

from agent_client.settings import (
    API_KEY_ENV,
    AgentConfig,
    AgentSettings,
    EnvVar,
    PluginSettings,
    normalize_env_vars,
    sanitize_args,
    to_agent_config,
    wrap_for_wsl,
)


def test_normalize_env_vars_first_key_wins_and_trims():
    result = normalize_env_vars(
        [{"key": "A", "value": "1"}, {"key": "A", "value": "2"}, {"key": " B ", "value": "x"}]
    )
    assert result == [EnvVar(key="A", value="1"), EnvVar(key="B", value="x")]


def test_normalize_env_vars_accepts_mapping_and_drops_junk():
    assert normalize_env_vars({"X": "1", "  ": "2", "Y": 3}) == [EnvVar(key="X", value="1"), EnvVar(key="Y", value="")]
    assert normalize_env_vars([{"value": "no key"}, "nonsense", {"key": 5}]) == []
    assert normalize_env_vars(None) == []


def test_sanitize_args():
    assert sanitize_args(["--acp", "  ", " -v "]) == ["--acp", "-v"]
    assert sanitize_args("--acp\r\n\n--verbose\n") == ["--acp", "--verbose"]
    assert sanitize_args(42) == []


def test_agent_config_requires_command():
    with pytest.raises(ValidationError):
        AgentConfig(id="a", display_name="A", command="   ", working_directory="/tmp")
    config = AgentConfig(id="a", display_name="A", command=" node ", working_directory="/tmp")
    assert config.command == "node"


def test_agent_config_is_frozen():
    config = AgentConfig(id="a", display_name="A", command="node", working_directory="/tmp")
    with pytest.raises(ValidationError):
        config.command = "other"


def test_process_env_overlays_base():
    config = AgentConfig(id="a", display_name="A", command="x", env={"FOO": "1"}, working_directory="/")
    assert config.process_env({"PATH": "/bin", "FOO": "0"}) == {"PATH": "/bin", "FOO": "1"}


def test_to_agent_config_later_env_wins_and_injects_api_key():
    settings = AgentSettings(
        command="claude-code-acp",
        args=["--verbose"],
        api_key="sk-test",
        env=[EnvVar(key="A", value="1"), EnvVar(key="A", value="2")],
    )
    config = to_agent_config(settings, "/work")
    assert config.env["A"] == "2"
    assert config.env[API_KEY_ENV] == "sk-test"
    assert config.args == ("--verbose",)
    assert config.working_directory == "/work"


def test_to_agent_config_keeps_explicit_api_key_env():
    settings = AgentSettings(command="x", api_key="from-settings", env=[EnvVar(key=API_KEY_ENV, value="from-env")])
    assert to_agent_config(settings, "/").env[API_KEY_ENV] == "from-env"


def test_to_agent_config_prepends_node_directory():
    settings = AgentSettings(command="claude-code-acp", env=[EnvVar(key="PATH", value="/usr/bin")])
    config = to_agent_config(settings, "/", node_path="/opt/node/bin/node")
    assert config.env["PATH"].split(os.pathsep)[:2] == ["/opt/node/bin", "/usr/bin"]


def test_wsl_wrapping():
    command, args = wrap_for_wsl("claude-code-acp", ["--x"], "/mnt/c/vault", "Ubuntu")
    assert command == "wsl.exe"
    assert args == ("-d", "Ubuntu", "--cd", "/mnt/c/vault", "--", "claude-code-acp", "--x")
    config = to_agent_config(AgentSettings(command="a"), "/v", wsl_mode=True)
    assert config.command == "wsl.exe"
    assert config.args == ("--cd", "/v", "--", "a")


def test_plugin_settings_from_raw_falls_back_per_field():
    settings = PluginSettings.from_raw(
        {
            "claude": {"command": 12, "args": "--acp\n", "env": [{"key": "K", "value": "v"}], "displayName": ""},
            "claudeCodeAcpCommandPath": "/usr/local/bin/claude-code-acp",
            "autoAllowPermissions": "yes",
            "debugMode": True,
            "cancelGracePeriod": -1,
            "stopGracePeriod": 1,
        }
    )
    assert settings.claude.command == "/usr/local/bin/claude-code-acp"
    assert settings.claude.args == ["--acp"]
    assert settings.claude.env == [EnvVar(key="K", value="v")]
    assert settings.claude.display_name == "Claude Code"
    assert settings.auto_allow_permissions is False
    assert settings.debug_mode is True
    assert settings.cancel_grace_period == 5.0
    assert settings.stop_grace_period == 1.0


def test_plugin_settings_from_garbage():
    assert PluginSettings.from_raw(None) == PluginSettings()
    assert PluginSettings.from_raw({"claude": "nope"}).claude.command == ""


def test_session_options_from_settings():
    options = PluginSettings(auto_allow_permissions=True, handshake_timeout=3).session_options()
    assert options.auto_allow_permissions is True
    assert options.handshake_timeout == 3
