"""Agent settings and the conversion into a spawnable ``AgentConfig``.

Persisted settings come from the host as loosely-typed JSON. ``PluginSettings.from_raw``
keeps every well-typed value and falls back to the default for the rest, so a
hand-edited or outdated settings file never prevents a chat from starting.
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

API_KEY_ENV = "ANTHROPIC_API_KEY"


class _SettingsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnvVar(_SettingsModel):
    key: str = Field(min_length=1)
    value: str = ""


def sanitize_args(value: Any) -> List[str]:
    """Accept a list of strings or newline-separated text; drop blank entries."""
    if isinstance(value, (list, tuple)):
        items = [item.strip() if isinstance(item, str) else "" for item in value]
    elif isinstance(value, str):
        items = [item.strip() for item in re.split(r"\r?\n", value)]
    else:
        return []
    return [item for item in items if item]


def normalize_env_vars(value: Any) -> List[EnvVar]:
    """Convert stored env structures into a deduplicated list.

    Accepts a sequence of ``{"key", "value"}`` mappings or a plain mapping.
    Keys are trimmed, empty keys dropped, the first occurrence of a key wins.
    """
    pairs: List[Tuple[str, Any]] = []
    if not value:
        return []
    if isinstance(value, Mapping):
        pairs = list(value.items())
    elif isinstance(value, (list, tuple)):
        for entry in value:
            if isinstance(entry, EnvVar):
                pairs.append((entry.key, entry.value))
            elif isinstance(entry, Mapping):
                pairs.append((entry.get("key"), entry.get("value")))

    seen = set()
    result: List[EnvVar] = []
    for key, val in pairs:
        if not isinstance(key, str) or not key.strip():
            continue
        key = key.strip()
        if key in seen:
            continue
        seen.add(key)
        result.append(EnvVar(key=key, value=val if isinstance(val, str) else ""))
    return result


class AgentConfig(BaseModel):
    """Everything the transport needs to launch one agent process."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    command: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)
    working_directory: str

    @field_validator("command")
    @classmethod
    def _command_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command must not be empty")
        return value

    def process_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """The child's environment: ``base`` (default ``os.environ``) overlaid with ``env``."""
        merged = dict(os.environ if base is None else base)
        merged.update(self.env)
        return merged


class AgentSettings(_SettingsModel):
    id: str = "claude-code-acp"
    display_name: str = "Claude Code"
    api_key: str = ""
    command: str = ""
    args: List[str] = Field(default_factory=list)
    env: List[EnvVar] = Field(default_factory=list)


class SessionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    auto_allow_permissions: bool = False
    cancel_grace_period: float = Field(default=5.0, gt=0)
    stop_grace_period: float = Field(default=2.0, gt=0)
    handshake_timeout: float = Field(default=30.0, gt=0)


class PluginSettings(_SettingsModel):
    claude: AgentSettings = Field(default_factory=AgentSettings)
    auto_allow_permissions: bool = False
    auto_mention_active_note: bool = True
    debug_mode: bool = False
    node_path: str = ""
    windows_wsl_mode: bool = False
    windows_wsl_distribution: Optional[str] = None
    cancel_grace_period: float = 5.0
    stop_grace_period: float = 2.0
    handshake_timeout: float = 30.0

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "PluginSettings":
        raw = raw if isinstance(raw, Mapping) else {}
        defaults = cls()
        claude_raw = raw.get("claude")
        claude_raw = claude_raw if isinstance(claude_raw, Mapping) else {}

        def _text(source: Mapping[str, Any], key: str, default: str, *, strip: bool = True) -> str:
            value = source.get(key)
            if not isinstance(value, str):
                return default
            value = value.strip() if strip else value
            return value if value or not strip else default

        def _flag(key: str, default: bool) -> bool:
            value = raw.get(key)
            return value if isinstance(value, bool) else default

        def _seconds(key: str, default: float) -> float:
            value = raw.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                return default
            return float(value)

        # older versions stored the command path at the top level
        command = _text(claude_raw, "command", "")
        if not command:
            command = _text(raw, "claudeCodeAcpCommandPath", defaults.claude.command)

        claude = AgentSettings(
            id=defaults.claude.id,
            display_name=_text(claude_raw, "displayName", defaults.claude.display_name),
            api_key=_text(claude_raw, "apiKey", defaults.claude.api_key, strip=False),
            command=command,
            args=sanitize_args(claude_raw.get("args")),
            env=normalize_env_vars(claude_raw.get("env")),
        )
        distribution = raw.get("windowsWslDistribution")
        return cls(
            claude=claude,
            auto_allow_permissions=_flag("autoAllowPermissions", defaults.auto_allow_permissions),
            auto_mention_active_note=_flag("autoMentionActiveNote", defaults.auto_mention_active_note),
            debug_mode=_flag("debugMode", defaults.debug_mode),
            node_path=_text(raw, "nodePath", defaults.node_path),
            windows_wsl_mode=_flag("windowsWslMode", defaults.windows_wsl_mode),
            windows_wsl_distribution=distribution if isinstance(distribution, str) and distribution else None,
            cancel_grace_period=_seconds("cancelGracePeriod", defaults.cancel_grace_period),
            stop_grace_period=_seconds("stopGracePeriod", defaults.stop_grace_period),
            handshake_timeout=_seconds("handshakeTimeout", defaults.handshake_timeout),
        )

    def session_options(self) -> SessionOptions:
        return SessionOptions(
            auto_allow_permissions=self.auto_allow_permissions,
            cancel_grace_period=self.cancel_grace_period,
            stop_grace_period=self.stop_grace_period,
            handshake_timeout=self.handshake_timeout,
        )


def _prepend_path(env: Dict[str, str], directory: str) -> None:
    current = env.get("PATH") or os.environ.get("PATH", "")
    parts = [p for p in current.split(os.pathsep) if p]
    if directory not in parts:
        env["PATH"] = os.pathsep.join([directory, *parts])


def wrap_for_wsl(
    command: str,
    args: Sequence[str],
    working_directory: str,
    distribution: Optional[str] = None,
) -> Tuple[str, Tuple[str, ...]]:
    """Run ``command`` inside WSL from a Windows host."""
    wsl_args: List[str] = []
    if distribution:
        wsl_args += ["-d", distribution]
    wsl_args += ["--cd", working_directory, "--", command, *args]
    return "wsl.exe", tuple(wsl_args)


def to_agent_config(
    settings: AgentSettings,
    working_directory: str,
    *,
    node_path: str = "",
    wsl_mode: bool = False,
    wsl_distribution: Optional[str] = None,
) -> AgentConfig:
    """Build the runtime config for one chat from stored agent settings.

    ``settings.env`` is folded into a mapping where a later duplicate key wins.
    A non-empty API key is exported unless the env already sets it, and
    ``node_path`` (a node binary or its directory) is put in front of ``PATH``
    so npm-installed agents resolve their interpreter.
    """
    env: Dict[str, str] = {}
    for var in settings.env:
        env[var.key] = var.value
    if settings.api_key and API_KEY_ENV not in env:
        env[API_KEY_ENV] = settings.api_key
    if node_path:
        node_dir = os.path.dirname(node_path) if os.path.basename(node_path).startswith("node") else node_path
        _prepend_path(env, node_dir)

    command, args = settings.command, tuple(settings.args)
    if wsl_mode:
        command, args = wrap_for_wsl(command, args, working_directory, wsl_distribution)

    return AgentConfig(
        id=settings.id,
        display_name=settings.display_name,
        command=command,
        args=args,
        env=env,
        working_directory=working_directory,
    )


def agent_config_from_settings(settings: PluginSettings, working_directory: str) -> AgentConfig:
    return to_agent_config(
        settings.claude,
        working_directory,
        node_path=settings.node_path,
        wsl_mode=settings.windows_wsl_mode,
        wsl_distribution=settings.windows_wsl_distribution,
    )

