from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
import logging

from issuepilot.container_runtime import ContainerRuntime
from issuepilot.lifecycle import is_terminal
from issuepilot.models import ActiveIssue, RuntimeStatus, WorkKey
from issuepilot.observability import log_event, log_warning, logging_work_context
from issuepilot.registry import ActiveWorkRegistry
from issuepilot.scheduler import Clock


LOGGER = logging.getLogger("issuepilot.health")

CrashNotifier = Callable[[ActiveIssue, RuntimeStatus], None]
_CRASHED_STATES: frozenset[RuntimeStatus] = frozenset({"exited", "dead"})


@dataclass(frozen=True)
class CleanupSummary:
    containers_removed: int
    container_failures: int
    released: tuple[WorkKey, ...]


class HealthMonitor:
    def __init__(
        self,
        *,
        registry: ActiveWorkRegistry,
        runtime: ContainerRuntime,
        clock: Clock,
        notify_crash: CrashNotifier,
        heartbeat_timeout_seconds: int = 300,
        heartbeat_grace_seconds: int = 600,
        log_tail_lines: int = 50,
    ) -> None:
        self._registry = registry
        self._runtime = runtime
        self._clock = clock
        self._notify_crash = notify_crash
        self._heartbeat_timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self._grace_period = timedelta(seconds=heartbeat_grace_seconds)
        self._log_tail_lines = log_tail_lines

    def check_once(self) -> list[WorkKey]:
        crashed: list[WorkKey] = []
        stale_units = self._registry.stale(
            self._clock.now(), self._heartbeat_timeout, self._grace_period
        )
        for unit in stale_units:
            with logging_work_context(work=unit.key):
                if self._check_unit(unit):
                    crashed.append(unit.key)
        stats = self._registry.stats()
        log_event(
            LOGGER,
            "health_check_completed",
            active=stats.active,
            stale=len(stale_units),
            crashed=len(crashed),
        )
        return crashed

    def _check_unit(self, unit: ActiveIssue) -> bool:
        log_warning(
            LOGGER,
            "stale_work_detected",
            runtime_id=unit.runtime_id[:12],
            status=unit.status,
            last_heartbeat=unit.last_heartbeat,
            started_at=unit.started_at,
        )
        try:
            runtime_status = self._runtime.status(unit.runtime_id)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "runtime_status_failed",
                runtime_id=unit.runtime_id[:12],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        if runtime_status not in _CRASHED_STATES:
            log_event(
                LOGGER,
                "runtime_heartbeat_mismatch",
                runtime_id=unit.runtime_id[:12],
                runtime_status=runtime_status,
                status=unit.status,
            )
            return False

        try:
            log_tail = self._runtime.logs(unit.runtime_id, self._log_tail_lines)
        except Exception as exc:  # noqa: BLE001
            log_tail = f"Error reading logs: {exc}"
        cause = f"Container terminated unexpectedly (status: {runtime_status})"
        outcome = self._registry.update_status(unit.key, "error", error=cause)
        if outcome != "applied":
            return False
        log_warning(
            LOGGER,
            "runtime_crash_detected",
            runtime_id=unit.runtime_id[:12],
            runtime_status=runtime_status,
            previous_status=unit.status,
        )
        LOGGER.error("Container logs for %s:\n%s", unit.key, log_tail)
        crashed = self._registry.get(unit.key) or unit
        try:
            self._notify_crash(crashed, runtime_status)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "crash_notification_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return True

    def cleanup_once(self) -> CleanupSummary:
        removed = 0
        failures = 0
        try:
            stopped = self._runtime.list_managed(states=tuple(sorted(_CRASHED_STATES)))
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "cleanup_list_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            stopped = []
        for runtime_id in stopped:
            try:
                self._runtime.remove(runtime_id)
            except Exception as exc:  # noqa: BLE001
                failures += 1
                log_warning(
                    LOGGER,
                    "cleanup_remove_failed",
                    runtime_id=runtime_id[:12],
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            removed += 1

        released: list[WorkKey] = []
        for unit in self._registry.all():
            if not is_terminal(unit.status) or unit.pr_number is not None:
                continue
            # No pull request means no closure event will ever release this slot.
            try:
                self._runtime.remove(unit.runtime_id)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "cleanup_remove_failed",
                    work=unit.key,
                    runtime_id=unit.runtime_id[:12],
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            if self._registry.remove(unit.key) is not None:
                released.append(unit.key)

        if removed or failures or released:
            log_event(
                LOGGER,
                "cleanup_completed",
                containers_removed=removed,
                container_failures=failures,
                released=len(released),
            )
        return CleanupSummary(
            containers_removed=removed,
            container_failures=failures,
            released=tuple(released),
        )
