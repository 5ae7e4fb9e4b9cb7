from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import re
import tomllib
from typing import Literal, cast

from issuepilot.prompts import DEFAULT_PROMPT_NAME, REVIEW_FEEDBACK_PROMPT_NAME, default_prompts


RunMode = Literal["polling", "webhook"]
_ENV_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_FILE_PREFIXES = ("./", "../", "/")


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    max_concurrent: int = 5
    mode: RunMode = "polling"
    poll_interval_seconds: int = 60
    health_interval_seconds: int = 30
    cleanup_interval_seconds: int = 300
    heartbeat_timeout_seconds: int = 300
    heartbeat_grace_seconds: int = 600
    issue_lookback_seconds: int = 86400
    rate_limit_floor_ratio: float = 0.1
    persist_watermarks: bool = True


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    owner: str
    name: str
    trigger_comment: str
    enabled: bool = True
    prompt_template: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def matches(self, owner: str, name: str) -> bool:
        return (
            self.owner.lower() == owner.strip().lower()
            and self.name.lower() == name.strip().lower()
        )

    def is_trigger(self, text: str) -> bool:
        return self.trigger_comment.lower() in text.lower()


@dataclass(frozen=True)
class ContainerConfig:
    base_image: str = "ghcr-agent:latest"
    network: str = "bridge"
    memory_limit: str = "4g"
    cpu_limit: str = "2"
    env: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    public_url: str = "http://localhost:3000"
    webhook_secret: str | None = None


@dataclass(frozen=True)
class GitHubConfig:
    token: str | None = None


@dataclass(frozen=True)
class AgentConfig:
    api_key: str | None = None


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repos: tuple[RepoConfig, ...]
    containers: ContainerConfig = ContainerConfig()
    server: ServerConfig = ServerConfig()
    prompts: tuple[tuple[str, str], ...] = ()
    github: GitHubConfig = GitHubConfig()
    agent: AgentConfig = AgentConfig()

    @property
    def enabled_repos(self) -> tuple[RepoConfig, ...]:
        return tuple(repo for repo in self.repos if repo.enabled)

    def repo_for(self, owner: str, name: str) -> RepoConfig | None:
        for repo in self.repos:
            if repo.enabled and repo.matches(owner, name):
                return repo
        return None

    def prompt(self, name: str) -> str | None:
        for prompt_name, template in self.prompts:
            if prompt_name == name:
                return template
        return None

    def prompt_for_repo(self, repo: RepoConfig | None) -> str:
        if repo is not None and repo.prompt_template:
            named = self.prompt(repo.prompt_template)
            if named is not None:
                return named
        return self.prompt(DEFAULT_PROMPT_NAME) or ""

    @property
    def review_feedback_prompt(self) -> str:
        return self.prompt(REVIEW_FEEDBACK_PROMPT_NAME) or ""


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    try:
        with path.open("rb") as fh:
            raw = tomllib.load(fh)
    except OSError as exc:
        raise ConfigError(f"Failed to read configuration from {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    data = cast(dict[str, object], _substitute_env(raw, os.environ if environ is None else environ))

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    containers_data = _optional_table(data, "containers") or {}
    server_data = _optional_table(data, "server") or {}
    prompts_data = _optional_table(data, "prompts") or {}
    github_data = _optional_table(data, "github")
    agent_data = _optional_table(data, "agent")

    runtime = _parse_runtime_config(runtime_data)
    repos = _load_repo_configs(repo_data)
    containers = _parse_container_config(containers_data)
    server = _parse_server_config(server_data)
    prompts = _load_prompts(prompts_data, config_dir=path.parent)
    github = GitHubConfig() if github_data is None else _parse_github_config(github_data)
    agent = AgentConfig() if agent_data is None else _parse_agent_config(agent_data)

    if runtime.mode == "webhook" and server.webhook_secret is None:
        raise ConfigError("server.webhook_secret is required when runtime.mode = 'webhook'")
    for repo in repos:
        if repo.prompt_template is not None and repo.prompt_template not in dict(prompts):
            raise ConfigError(
                f"repo.{repo.repo_id}.prompt_template references unknown prompt "
                f"{repo.prompt_template!r}"
            )

    return AppConfig(
        runtime=runtime,
        repos=repos,
        containers=containers,
        server=server,
        prompts=prompts,
        github=github,
        agent=agent,
    )


def _parse_runtime_config(runtime_data: dict[str, object]) -> RuntimeConfig:
    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        max_concurrent=_int_with_default(runtime_data, "max_concurrent", 5),
        mode=_mode_with_default(runtime_data, "mode", "polling"),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        health_interval_seconds=_int_with_default(runtime_data, "health_interval_seconds", 30),
        cleanup_interval_seconds=_int_with_default(runtime_data, "cleanup_interval_seconds", 300),
        heartbeat_timeout_seconds=_int_with_default(
            runtime_data, "heartbeat_timeout_seconds", 300
        ),
        heartbeat_grace_seconds=_int_with_default(runtime_data, "heartbeat_grace_seconds", 600),
        issue_lookback_seconds=_int_with_default(runtime_data, "issue_lookback_seconds", 86400),
        rate_limit_floor_ratio=_float_with_default(runtime_data, "rate_limit_floor_ratio", 0.1),
        persist_watermarks=_bool_with_default(runtime_data, "persist_watermarks", True),
    )

    if runtime.max_concurrent < 1:
        raise ConfigError("runtime.max_concurrent must be >= 1")
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    for key in (
        "health_interval_seconds",
        "cleanup_interval_seconds",
        "heartbeat_timeout_seconds",
        "heartbeat_grace_seconds",
        "issue_lookback_seconds",
    ):
        if getattr(runtime, key) < 1:
            raise ConfigError(f"runtime.{key} must be >= 1")
    if not 0.0 <= runtime.rate_limit_floor_ratio < 1.0:
        raise ConfigError("runtime.rate_limit_floor_ratio must be in [0, 1)")
    return runtime


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    repos: list[RepoConfig] = []
    for repo_id, raw_value in sorted(repo_data.items()):
        repo_table = _require_sub_table(raw_value, table_name=f"[repo.{repo_id}]")
        repos.append(
            RepoConfig(
                repo_id=repo_id,
                owner=_require_str(repo_table, "owner"),
                name=_str_with_default(repo_table, "name", repo_id),
                trigger_comment=_require_str(repo_table, "trigger_comment"),
                enabled=_bool_with_default(repo_table, "enabled", True),
                prompt_template=_optional_str(repo_table, "prompt_template"),
            )
        )
    _ensure_unique_full_names(repos)
    return tuple(repos)


def _parse_container_config(data: dict[str, object]) -> ContainerConfig:
    env_table = _optional_table(data, "env") or {}
    env: list[tuple[str, str]] = []
    for key, value in sorted(env_table.items()):
        if not isinstance(value, str):
            raise ConfigError(f"containers.env.{key} must be a string")
        env.append((key, value))
    return ContainerConfig(
        base_image=_str_with_default(data, "base_image", "ghcr-agent:latest"),
        network=_str_with_default(data, "network", "bridge"),
        memory_limit=_str_with_default(data, "memory_limit", "4g"),
        cpu_limit=_str_with_default(data, "cpu_limit", "2"),
        env=tuple(env),
    )


def _parse_server_config(data: dict[str, object]) -> ServerConfig:
    port = _int_with_default(data, "port", 3000)
    if not 1 <= port <= 65535:
        raise ConfigError("server.port must be between 1 and 65535")
    return ServerConfig(
        host=_str_with_default(data, "host", "0.0.0.0"),
        port=port,
        public_url=_str_with_default(data, "public_url", "http://localhost:3000").rstrip("/"),
        webhook_secret=_optional_str(data, "webhook_secret"),
    )


def _parse_github_config(data: dict[str, object]) -> GitHubConfig:
    # A present [github] table must carry a token for the workloads.
    return GitHubConfig(token=_require_str(data, "token"))


def _parse_agent_config(data: dict[str, object]) -> AgentConfig:
    return AgentConfig(api_key=_require_str(data, "api_key"))


def _load_prompts(data: dict[str, object], *, config_dir: Path) -> tuple[tuple[str, str], ...]:
    templates = dict(default_prompts())
    for name, value in sorted(data.items()):
        if not isinstance(value, str):
            raise ConfigError(f"prompts.{name} must be a string")
        if value.startswith(_FILE_PREFIXES):
            template_path = (config_dir / value).resolve()
            try:
                templates[name] = template_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(
                    f"Failed to load prompt template {name!r} from {template_path}: {exc}"
                ) from exc
        else:
            templates[name] = value
    return tuple(sorted(templates.items()))


def _substitute_env(value: object, environ: Mapping[str, str]) -> object:
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            var_name = match.group(1)
            if var_name not in environ:
                raise ConfigError(
                    f"Environment variable {var_name} is not set but referenced in config"
                )
            return environ[var_name]

        return _ENV_REFERENCE.sub(replace, value)
    if isinstance(value, list):
        return [_substitute_env(item, environ) for item in value]
    if isinstance(value, dict):
        return {key: _substitute_env(item, environ) for key, item in value.items()}
    return value


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_sub_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
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


def _mode_with_default(data: dict[str, object], key: str, default: RunMode) -> RunMode:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be one of: polling, webhook")
    normalized = value.strip().lower()
    if normalized not in {"polling", "webhook"}:
        raise ConfigError(f"{key} must be one of: polling, webhook")
    return cast(RunMode, normalized)


def _ensure_unique_full_names(repos: list[RepoConfig]) -> None:
    seen: dict[str, str] = {}
    for repo in repos:
        full_name = repo.full_name.lower()
        existing_id = seen.get(full_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repo full_name {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[full_name] = repo.repo_id
