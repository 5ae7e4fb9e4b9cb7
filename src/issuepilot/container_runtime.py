from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re

from issuepilot.config import ContainerConfig
from issuepilot.models import RuntimeStatus, WorkKey
from issuepilot.observability import log_event
from issuepilot.shell import CommandError, run


LOGGER = logging.getLogger("issuepilot.container_runtime")

MANAGED_LABEL = "issuepilot.managed"
_MEMORY_LIMIT = re.compile(r"^(\d+(?:\.\d+)?)([bkmg]?)$")
_MEMORY_UNITS = {"b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
_DEFAULT_MEMORY_BYTES = 4 * 1024**3
_DEFAULT_CPUS = 2.0
_STOP_GRACE_SECONDS = 10
_NO_SUCH_OBJECT_MARKERS = ("no such container", "no such object")
_DOCKER_STATE_MAP: dict[str, RuntimeStatus] = {
    "created": "running",
    "running": "running",
    "restarting": "running",
    "paused": "running",
    "exited": "exited",
    "removing": "dead",
    "dead": "dead",
}


class RuntimeStartError(RuntimeError):
    """The workload could not be started; nothing was registered."""


class RuntimeUnavailableError(RuntimeError):
    """The container runtime could not be reached or answered unexpectedly."""


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    network: str
    memory_bytes: int
    nano_cpus: int
    env: tuple[tuple[str, str], ...]
    labels: tuple[tuple[str, str], ...]


class ContainerRuntime(ABC):
    @abstractmethod
    def start(self, spec: ContainerSpec) -> str:
        """Start a workload and return its runtime id. Raises RuntimeStartError."""

    @abstractmethod
    def status(self, runtime_id: str) -> RuntimeStatus:
        """Raises RuntimeUnavailableError when the runtime cannot answer."""

    @abstractmethod
    def logs(self, runtime_id: str, tail_lines: int) -> str:
        """Return the last ``tail_lines`` lines of workload output."""

    @abstractmethod
    def remove(self, runtime_id: str) -> None:
        """Stop and delete the workload. Removing an unknown id is not an error."""

    @abstractmethod
    def list_managed(self, *, states: tuple[RuntimeStatus, ...] = ()) -> list[str]:
        """Runtime ids of every workload this orchestrator created."""


def build_container_spec(
    *,
    key: WorkKey,
    issue_title: str,
    issue_body: str,
    branch_name: str,
    started_at: datetime,
    containers: ContainerConfig,
    orchestrator_url: str,
    prompt_template: str,
    review_feedback_template: str,
    github_token: str | None = None,
    agent_api_key: str | None = None,
) -> ContainerSpec:
    name = container_name(key, started_at)
    env: list[tuple[str, str]] = [
        ("GITHUB_REPO_OWNER", key.owner),
        ("GITHUB_REPO_NAME", key.name),
        ("GITHUB_ISSUE_NUMBER", str(key.issue_number)),
        ("GITHUB_ISSUE_TITLE", issue_title),
        ("GITHUB_ISSUE_BODY", issue_body),
        ("BRANCH_NAME", branch_name),
        ("ORCHESTRATOR_URL", orchestrator_url),
        ("CONTAINER_ID", name),
        ("PROMPT_TEMPLATE", prompt_template),
        ("REVIEW_FEEDBACK_TEMPLATE", review_feedback_template),
        ("CI", "true"),
        ("DEBIAN_FRONTEND", "noninteractive"),
    ]
    if github_token is not None:
        env.append(("GITHUB_TOKEN", github_token))
    if agent_api_key is not None:
        env.append(("ANTHROPIC_API_KEY", agent_api_key))
    # Explicit [containers.env] entries come last and win.
    env.extend(containers.env)
    labels = (
        (MANAGED_LABEL, "true"),
        ("issuepilot.type", "agent"),
        ("issuepilot.repo", key.repo_full_name),
        ("issuepilot.issue", str(key.issue_number)),
        ("issuepilot.started", started_at.astimezone(timezone.utc).isoformat()),
    )
    return ContainerSpec(
        name=name,
        image=containers.base_image,
        network=containers.network,
        memory_bytes=parse_memory_limit(containers.memory_limit),
        nano_cpus=parse_cpu_limit(containers.cpu_limit),
        env=tuple(env),
        labels=labels,
    )


def container_name(key: WorkKey, started_at: datetime) -> str:
    safe_owner = re.sub(r"[^a-z0-9-]", "-", key.owner.lower())
    safe_repo = re.sub(r"[^a-z0-9-]", "-", key.name.lower())
    stamp = int(started_at.timestamp() * 1000)
    return f"agent-{safe_owner}-{safe_repo}-issue-{key.issue_number}-{stamp}"


def parse_memory_limit(limit: str) -> int:
    match = _MEMORY_LIMIT.match(limit.strip().lower())
    if match is None:
        return _DEFAULT_MEMORY_BYTES
    value = float(match.group(1))
    unit = match.group(2) or "b"
    return int(value * _MEMORY_UNITS[unit])


def parse_cpu_limit(limit: str) -> int:
    try:
        cpus = float(limit)
    except ValueError:
        cpus = _DEFAULT_CPUS
    if cpus <= 0:
        cpus = _DEFAULT_CPUS
    return int(cpus * 1e9)


class DockerRuntime(ContainerRuntime):
    def __init__(self, *, docker_bin: str = "docker", command_timeout_seconds: float = 120) -> None:
        self._docker = docker_bin
        self._timeout = command_timeout_seconds

    def start(self, spec: ContainerSpec) -> str:
        try:
            self._ensure_image(spec.image)
            argv = [
                self._docker,
                "run",
                "--detach",
                "--name",
                spec.name,
                "--network",
                spec.network,
                "--memory",
                str(spec.memory_bytes),
                "--cpus",
                f"{spec.nano_cpus / 1e9:g}",
            ]
            for label_key, label_value in spec.labels:
                argv.extend(["--label", f"{label_key}={label_value}"])
            for env_key, env_value in spec.env:
                argv.extend(["--env", f"{env_key}={env_value}"])
            argv.append(spec.image)
            runtime_id = run(argv, timeout_seconds=self._timeout).strip()
        except CommandError as exc:
            log_event(
                LOGGER,
                "runtime_start_failed",
                container_name=spec.name,
                image=spec.image,
                error=str(exc).splitlines()[0],
            )
            self._discard(spec.name)
            raise RuntimeStartError(f"Failed to start container {spec.name}: {exc}") from exc
        if not runtime_id:
            self._discard(spec.name)
            raise RuntimeStartError(f"docker run returned no container id for {spec.name}")
        log_event(LOGGER, "runtime_started", container_name=spec.name, runtime_id=runtime_id[:12])
        return runtime_id

    def status(self, runtime_id: str) -> RuntimeStatus:
        try:
            raw = run(
                [self._docker, "inspect", "--format", "{{.State.Status}}", runtime_id],
                timeout_seconds=self._timeout,
            )
        except CommandError as exc:
            if _is_missing(exc):
                # A vanished container is indistinguishable from a dead one.
                return "dead"
            raise RuntimeUnavailableError(
                f"Failed to inspect container {runtime_id}: {exc}"
            ) from exc
        return _DOCKER_STATE_MAP.get(raw.strip().lower(), "unknown")

    def logs(self, runtime_id: str, tail_lines: int) -> str:
        try:
            return run(
                [self._docker, "logs", "--timestamps", "--tail", str(tail_lines), runtime_id],
                timeout_seconds=self._timeout,
                merge_stderr=True,
            )
        except CommandError as exc:
            return f"Error reading logs: {str(exc).splitlines()[0]}"

    def remove(self, runtime_id: str) -> None:
        run(
            [self._docker, "stop", "--time", str(_STOP_GRACE_SECONDS), runtime_id],
            check=False,
            timeout_seconds=self._timeout,
        )
        try:
            run([self._docker, "rm", "--force", runtime_id], timeout_seconds=self._timeout)
        except CommandError as exc:
            if _is_missing(exc):
                return
            raise RuntimeUnavailableError(
                f"Failed to remove container {runtime_id}: {exc}"
            ) from exc
        log_event(LOGGER, "runtime_removed", runtime_id=runtime_id[:12])

    def list_managed(self, *, states: tuple[RuntimeStatus, ...] = ()) -> list[str]:
        argv = [
            self._docker,
            "ps",
            "--all",
            "--no-trunc",
            "--filter",
            f"label={MANAGED_LABEL}=true",
        ]
        for docker_state, runtime_status in sorted(_DOCKER_STATE_MAP.items()):
            if runtime_status in states:
                argv.extend(["--filter", f"status={docker_state}"])
        argv.extend(["--format", "{{.ID}}"])
        try:
            raw = run(argv, timeout_seconds=self._timeout)
        except CommandError as exc:
            raise RuntimeUnavailableError(f"Failed to list managed containers: {exc}") from exc
        return [line.strip() for line in raw.splitlines() if line.strip()]

    def _discard(self, name: str) -> None:
        # docker run may have created the container before failing to start it.
        try:
            run(
                [self._docker, "rm", "--force", name],
                check=False,
                timeout_seconds=self._timeout,
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "runtime_discard_failed",
                container_name=name,
                error=str(exc).splitlines()[0],
            )

    def _ensure_image(self, image: str) -> None:
        try:
            run([self._docker, "image", "inspect", image], timeout_seconds=self._timeout)
        except CommandError:
            log_event(LOGGER, "runtime_image_pull", image=image)
            run([self._docker, "pull", image])


def _is_missing(exc: CommandError) -> bool:
    text = f"{exc.stderr}\n{exc}".lower()
    return any(marker in text for marker in _NO_SUCH_OBJECT_MARKERS)
