from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
import threading
from typing import Literal

from issuepilot.lifecycle import Lifecycle, TransitionOutcome, is_terminal
from issuepilot.models import ActiveIssue, WorkKey, WorkStatus
from issuepilot.observability import log_event, log_warning
from issuepilot.scheduler import Clock, SystemClock


LOGGER = logging.getLogger("issuepilot.registry")

RejectionReason = Literal["duplicate", "capacity"]
UpdateOutcome = TransitionOutcome | Literal["missing"]
PullRequestRef = tuple[str, str, int]


class AdmissionRejected(Exception):
    """A trigger could not be admitted; the caller reports this on the issue."""

    def __init__(self, key: WorkKey, reason: RejectionReason, *, queue_position: int = 0) -> None:
        if reason == "capacity":
            message = f"{key}: all slots are full (queue position {queue_position})"
        else:
            message = f"{key}: already active"
        super().__init__(message)
        self.key = key
        self.reason = reason
        self.queue_position = queue_position


@dataclass(frozen=True)
class RegistryStats:
    active: int
    max_concurrent: int
    available: int
    by_status: tuple[tuple[str, int], ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self.active,
            "max_concurrent": self.max_concurrent,
            "available": self.available,
            "by_status": dict(self.by_status),
        }


class ActiveWorkRegistry:
    def __init__(
        self,
        *,
        max_concurrent: int,
        lifecycle: Lifecycle | None = None,
        clock: Clock | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._max_concurrent = max_concurrent
        self._lifecycle = lifecycle or Lifecycle()
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._units: dict[WorkKey, ActiveIssue] = {}
        self._by_runtime_id: dict[str, WorkKey] = {}
        self._by_pull_request: dict[PullRequestRef, WorkKey] = {}

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def __len__(self) -> int:
        with self._lock:
            return len(self._units)

    def can_admit(self) -> bool:
        with self._lock:
            return len(self._units) < self._max_concurrent

    def queue_position(self) -> int:
        with self._lock:
            return len(self._units) - self._max_concurrent + 1

    def check_admission(self, key: WorkKey) -> None:
        with self._lock:
            if key in self._units:
                raise AdmissionRejected(key, "duplicate")
            if len(self._units) >= self._max_concurrent:
                raise AdmissionRejected(
                    key,
                    "capacity",
                    queue_position=len(self._units) - self._max_concurrent + 1,
                )

    def is_active(self, key: WorkKey) -> bool:
        with self._lock:
            return key in self._units

    def register(self, unit: ActiveIssue) -> None:
        with self._lock:
            if unit.key in self._units:
                raise ValueError(f"{unit.key} is already registered")
            self.check_admission(unit.key)
            stored = replace(unit)
            self._units[unit.key] = stored
            if stored.runtime_id:
                self._by_runtime_id[stored.runtime_id] = stored.key
            if stored.pr_number is not None:
                self._by_pull_request[_pr_ref(stored.key, stored.pr_number)] = stored.key
            active = len(self._units)
        log_event(
            LOGGER,
            "work_admitted",
            work=unit.key,
            runtime_id=unit.runtime_id[:12],
            branch=unit.branch_name,
            active=active,
            max_concurrent=self._max_concurrent,
        )

    def remove(self, key: WorkKey) -> ActiveIssue | None:
        with self._lock:
            unit = self._units.pop(key, None)
            if unit is None:
                return None
            self._by_runtime_id.pop(unit.runtime_id, None)
            stale_refs = [ref for ref, owner_key in self._by_pull_request.items() if owner_key == key]
            for ref in stale_refs:
                del self._by_pull_request[ref]
            active = len(self._units)
        log_event(
            LOGGER,
            "work_released",
            work=key,
            status=unit.status,
            pr_number=unit.pr_number,
            active=active,
        )
        return unit

    def get(self, key: WorkKey) -> ActiveIssue | None:
        with self._lock:
            unit = self._units.get(key)
            return replace(unit) if unit is not None else None

    def get_by_runtime_id(self, runtime_id: str) -> ActiveIssue | None:
        with self._lock:
            key = self._by_runtime_id.get(runtime_id)
            if key is None:
                # Workloads may report with the container name instead of the id.
                for unit in self._units.values():
                    if unit.runtime_name == runtime_id or (
                        len(runtime_id) >= 12 and unit.runtime_id.startswith(runtime_id)
                    ):
                        return replace(unit)
                return None
            return replace(self._units[key])

    def all(self) -> list[ActiveIssue]:
        with self._lock:
            return [replace(self._units[key]) for key in sorted(self._units)]

    def by_status(self, status: WorkStatus) -> list[ActiveIssue]:
        return [unit for unit in self.all() if unit.status == status]

    def stats(self) -> RegistryStats:
        with self._lock:
            counts = Counter(unit.status for unit in self._units.values())
            active = len(self._units)
        return RegistryStats(
            active=active,
            max_concurrent=self._max_concurrent,
            available=max(0, self._max_concurrent - active),
            by_status=tuple(sorted(counts.items())),
        )

    def update_status(
        self,
        key: WorkKey,
        status: WorkStatus,
        *,
        error: str | None = None,
        message: str | None = None,
    ) -> UpdateOutcome:
        with self._lock:
            unit = self._units.get(key)
            if unit is None:
                return "missing"
            current = unit.status
            outcome = self._lifecycle.validate(current, status, error=error)
            if outcome == "rejected":
                log_warning(
                    LOGGER,
                    "transition_rejected",
                    work=key,
                    current=current,
                    target=status,
                )
                return outcome
            unit.status = status
            unit.last_heartbeat = self._clock.now()
            if message:
                unit.last_message = message
            if error:
                unit.error = error
        if outcome == "applied":
            log_event(
                LOGGER,
                "work_status_changed",
                work=key,
                previous=current,
                status=status,
                error=error,
            )
        return outcome

    def record_heartbeat(self, key: WorkKey) -> bool:
        with self._lock:
            unit = self._units.get(key)
            if unit is None:
                return False
            unit.last_heartbeat = self._clock.now()
            return True

    def correlate(self, key: WorkKey, pr_number: int) -> bool:
        with self._lock:
            unit = self._units.get(key)
            if unit is None:
                return False
            if unit.pr_number is not None and unit.pr_number != pr_number:
                self._by_pull_request.pop(_pr_ref(key, unit.pr_number), None)
            unit.pr_number = pr_number
            self._by_pull_request[_pr_ref(key, pr_number)] = key
            return True

    def lookup_pull_request(self, owner: str, name: str, pr_number: int) -> ActiveIssue | None:
        ref = (owner.strip().lower(), name.strip().lower(), pr_number)
        with self._lock:
            key = self._by_pull_request.get(ref)
            if key is None:
                return None
            return replace(self._units[key])

    def stale(
        self,
        now: datetime,
        heartbeat_timeout: timedelta,
        grace_period: timedelta,
    ) -> list[ActiveIssue]:
        stale_units: list[ActiveIssue] = []
        with self._lock:
            for key in sorted(self._units):
                unit = self._units[key]
                if is_terminal(unit.status):
                    continue
                if unit.last_heartbeat is None:
                    if now - unit.started_at > grace_period:
                        stale_units.append(replace(unit))
                elif now - unit.last_heartbeat > heartbeat_timeout:
                    stale_units.append(replace(unit))
        return stale_units


def _pr_ref(key: WorkKey, pr_number: int) -> PullRequestRef:
    return (key.owner, key.name, pr_number)
