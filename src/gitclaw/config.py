from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from gitclaw.models import PermissionLevel, ThinkingDepth


PERMISSION_LEVELS: tuple[PermissionLevel, ...] = (
    "none",
    "read",
    "triage",
    "write",
    "maintain",
    "admin",
)
THINKING_DEPTHS: tuple[ThinkingDepth, ...] = ("low", "medium", "high")
SENTINEL_NAME = "GITCLAW-ENABLED.md"


@dataclass(frozen=True)
class RuntimeConfig:
    install_root: Path
    default_branch: str = "main"
    commit_max_attempts: int = 3
    commit_backoff_seconds: float = 1.0
    commit_backoff_max_seconds: float = 8.0
    max_comment_length: int = 60000
    stage_all_changes: bool = True
    bot_name: str = "gitclaw[bot]"
    bot_email: str = "gitclaw[bot]@users.noreply.github.com"

    @property
    def state_dir(self) -> Path:
        return self.install_root / "state"

    @property
    def issues_dir(self) -> Path:
        return self.state_dir / "issues"

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"


@dataclass(frozen=True)
class AgentConfig:
    binary: str
    provider: str
    model: str
    thinking_depth: ThinkingDepth = "high"
    tool_allowlist: tuple[str, ...] = ()
    timeout_seconds: int = 300
    exit_grace_seconds: int = 10
    extra_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthConfig:
    min_permission: PermissionLevel = "write"
    trusted_users: frozenset[str] = frozenset()

    def trusts(self, login: str) -> bool:
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.trusted_users


@dataclass(frozen=True)
class AppConfig:
    repo_root: Path
    runtime: RuntimeConfig
    agent: AgentConfig
    auth: AuthConfig


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, repo_root: Path | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    root = (repo_root or Path.cwd()).resolve()
    runtime_data = _optional_table(data, "runtime") or {}
    agent_data = _require_table(data, "agent")
    auth_data = _optional_table(data, "auth") or {}

    runtime = _parse_runtime_config(runtime_data, repo_root=root)
    agent = _parse_agent_config(agent_data)
    auth = AuthConfig(
        min_permission=_permission_with_default(auth_data, "min_permission", "write"),
        trusted_users=_logins_with_default(auth_data, "trusted_users"),
    )
    return AppConfig(repo_root=root, runtime=runtime, agent=agent, auth=auth)


def _parse_runtime_config(data: dict[str, object], *, repo_root: Path) -> RuntimeConfig:
    install_root = Path(_str_with_default(data, "install_root", ".gitclaw")).expanduser()
    if not install_root.is_absolute():
        install_root = repo_root / install_root

    runtime = RuntimeConfig(
        install_root=install_root,
        default_branch=_str_with_default(data, "default_branch", "main"),
        commit_max_attempts=_int_with_default(data, "commit_max_attempts", 3),
        commit_backoff_seconds=_float_with_default(data, "commit_backoff_seconds", 1.0),
        commit_backoff_max_seconds=_float_with_default(data, "commit_backoff_max_seconds", 8.0),
        max_comment_length=_int_with_default(data, "max_comment_length", 60000),
        stage_all_changes=_bool_with_default(data, "stage_all_changes", True),
        bot_name=_str_with_default(data, "bot_name", "gitclaw[bot]"),
        bot_email=_str_with_default(data, "bot_email", "gitclaw[bot]@users.noreply.github.com"),
    )
    if runtime.commit_max_attempts < 1:
        raise ConfigError("runtime.commit_max_attempts must be >= 1")
    if runtime.commit_backoff_seconds < 0:
        raise ConfigError("runtime.commit_backoff_seconds must be >= 0")
    if runtime.commit_backoff_max_seconds < runtime.commit_backoff_seconds:
        raise ConfigError(
            "runtime.commit_backoff_max_seconds must be >= runtime.commit_backoff_seconds"
        )
    if runtime.max_comment_length < 1:
        raise ConfigError("runtime.max_comment_length must be >= 1")
    return runtime


def _parse_agent_config(data: dict[str, object]) -> AgentConfig:
    agent = AgentConfig(
        binary=_str_with_default(data, "binary", ".gitclaw/node_modules/.bin/pi"),
        provider=_require_str(data, "provider"),
        model=_require_str(data, "model"),
        thinking_depth=_thinking_depth_with_default(data, "thinking_depth", "high"),
        tool_allowlist=_tuple_of_str(data, "tool_allowlist"),
        timeout_seconds=_int_with_default(data, "timeout_seconds", 300),
        exit_grace_seconds=_int_with_default(data, "exit_grace_seconds", 10),
        extra_args=_tuple_of_str(data, "extra_args"),
    )
    if agent.timeout_seconds < 1:
        raise ConfigError("agent.timeout_seconds must be >= 1")
    if agent.exit_grace_seconds < 0:
        raise ConfigError("agent.exit_grace_seconds must be >= 0")
    return agent


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _logins_with_default(data: dict[str, object], key: str) -> frozenset[str]:
    out: set[str] = set()
    for item in _tuple_of_str(data, key):
        normalized = item.strip().lower()
        if not normalized:
            raise ConfigError(f"{key} entries must be non-empty strings")
        out.add(normalized)
    return frozenset(out)


def _thinking_depth_with_default(
    data: dict[str, object], key: str, default: ThinkingDepth
) -> ThinkingDepth:
    value = data.get(key, default)
    if not isinstance(value, str) or value.strip().lower() not in THINKING_DEPTHS:
        raise ConfigError(f"{key} must be one of: {', '.join(THINKING_DEPTHS)}")
    return cast(ThinkingDepth, value.strip().lower())


def _permission_with_default(
    data: dict[str, object], key: str, default: PermissionLevel
) -> PermissionLevel:
    value = data.get(key, default)
    return parse_permission(value, key=key)


def parse_permission(value: object, *, key: str = "permission") -> PermissionLevel:
    if not isinstance(value, str) or value.strip().lower() not in PERMISSION_LEVELS:
        raise ConfigError(f"{key} must be one of: {', '.join(PERMISSION_LEVELS)}")
    return cast(PermissionLevel, value.strip().lower())
