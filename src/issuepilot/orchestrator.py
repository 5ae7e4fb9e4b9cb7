from __future__ import annotations

from collections.abc import Mapping
import logging
import queue
import threading

from issuepilot.config import AppConfig
from issuepilot.container_runtime import (
    ContainerRuntime,
    RuntimeStartError,
    build_container_spec,
)
from issuepilot.correlator import Correlator, agent_branch_name
from issuepilot.github_gateway import GitHubGateway
from issuepilot.health import CleanupSummary, HealthMonitor
from issuepilot.lifecycle import coerce_status, is_terminal
from issuepilot.models import (
    AbortEvent,
    ActiveIssue,
    ClosureEvent,
    OrchestratorEvent,
    PullRequestOpenedEvent,
    ReviewEvent,
    RuntimeStatus,
    StatusUpdate,
    TriggerEvent,
    WorkKey,
)
from issuepilot.observability import log_event, log_warning, logging_work_context
from issuepilot.poller import IssuePoller, PollSummary
from issuepilot.prompts import (
    aborted_comment,
    already_active_comment,
    capacity_full_comment,
    completion_comment,
    feedback_comment,
    runtime_crash_comment,
    start_failed_comment,
    starting_comment,
    work_failed_comment,
)
from issuepilot.registry import ActiveWorkRegistry, AdmissionRejected
from issuepilot.scheduler import Clock, Scheduler, SystemClock
from issuepilot.watermarks import WatermarkStore


LOGGER = logging.getLogger("issuepilot.orchestrator")
_ISSUE_SOURCES = frozenset({"issue_body", "webhook_issue"})


class Orchestrator:
    """Owns the registry and reacts to events on a single control thread.

    Other threads only call ``submit``; every registry, watermark and correlation
    mutation happens while draining the event channel or inside a periodic task.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        runtime: ContainerRuntime,
        github_by_repo: Mapping[str, GitHubGateway] | None = None,
        watermarks: WatermarkStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._clock = clock or SystemClock()
        if github_by_repo is None:
            github_by_repo = {
                repo.full_name.lower(): GitHubGateway(repo.owner, repo.name)
                for repo in config.enabled_repos
            }
        self._github_by_repo = {name.lower(): github for name, github in github_by_repo.items()}
        self._watermarks = watermarks or WatermarkStore()
        self._events: queue.SimpleQueue[OrchestratorEvent] = queue.SimpleQueue()
        self._registry = ActiveWorkRegistry(
            max_concurrent=config.runtime.max_concurrent, clock=self._clock
        )
        self._correlator = Correlator(self._registry)
        self._health = HealthMonitor(
            registry=self._registry,
            runtime=runtime,
            clock=self._clock,
            notify_crash=self._notify_crash,
            heartbeat_timeout_seconds=config.runtime.heartbeat_timeout_seconds,
            heartbeat_grace_seconds=config.runtime.heartbeat_grace_seconds,
        )
        self._poller = IssuePoller(
            repos=config.enabled_repos,
            github_by_repo=self._github_by_repo,
            watermarks=self._watermarks,
            emit=self.submit,
            clock=self._clock,
            issue_lookback_seconds=config.runtime.issue_lookback_seconds,
            rate_limit_floor_ratio=config.runtime.rate_limit_floor_ratio,
        )
        self._scheduler = self._build_scheduler()
        self._thread: threading.Thread | None = None

    @property
    def registry(self) -> ActiveWorkRegistry:
        return self._registry

    @property
    def correlator(self) -> Correlator:
        return self._correlator

    @property
    def watermarks(self) -> WatermarkStore:
        return self._watermarks

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def submit(self, event: OrchestratorEvent) -> None:
        self._events.put(event)

    def process_pending(self) -> int:
        handled = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return handled
            try:
                self.handle(event)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "event_handling_failed",
                    event_type=type(event).__name__,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            handled += 1

    def handle(self, event: OrchestratorEvent) -> None:
        if isinstance(event, TriggerEvent):
            self.handle_trigger(event)
        elif isinstance(event, ClosureEvent):
            self.handle_closure(event)
        elif isinstance(event, ReviewEvent):
            self.handle_review(event)
        elif isinstance(event, PullRequestOpenedEvent):
            self.handle_pull_request_opened(event)
        elif isinstance(event, AbortEvent):
            self.handle_abort(event)
        elif isinstance(event, StatusUpdate):
            self.handle_status_update(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def poll_once(self) -> PollSummary:
        summary = self._poller.poll_once()
        self.process_pending()
        return summary

    def check_health(self) -> list[WorkKey]:
        return self._health.check_once()

    def cleanup(self) -> CleanupSummary:
        return self._health.cleanup_once()

    def run_once(self) -> None:
        if self._config.runtime.mode == "polling":
            self.poll_once()
        self.process_pending()
        self.check_health()

    def run_forever(self) -> None:
        log_event(
            LOGGER,
            "orchestrator_started",
            mode=self._config.runtime.mode,
            max_concurrent=self._config.runtime.max_concurrent,
            repo_count=len(self._config.enabled_repos),
        )
        self._scheduler.run_forever()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Orchestrator is already running")
        # A previous stop() leaves the stop event set.
        self._scheduler.reset()
        self._thread = threading.Thread(
            target=self.run_forever, name="issuepilot-control", daemon=True
        )
        self._thread.start()

    def stop(self, *, timeout_seconds: float = 30.0) -> None:
        self._scheduler.cancel()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_seconds)
        self._thread = None
        removed = 0
        for unit in self._registry.all():
            try:
                self._runtime.remove(unit.runtime_id)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "runtime_remove_failed",
                    work=unit.key,
                    runtime_id=unit.runtime_id[:12],
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            removed += 1
        log_event(LOGGER, "orchestrator_stopped", runtimes_removed=removed)

    def handle_trigger(self, event: TriggerEvent) -> None:
        repo = self._config.repo_for(event.owner, event.repo)
        key = event.key
        with logging_work_context(work=key):
            if repo is None:
                log_event(LOGGER, "trigger_ignored", reason="repo_not_configured")
                return
            try:
                self._registry.check_admission(key)
            except AdmissionRejected as rejected:
                log_event(
                    LOGGER,
                    "admission_rejected",
                    reason=rejected.reason,
                    queue_position=rejected.queue_position,
                    source=event.source,
                )
                self._report_rejection(event, rejected)
                return

            started_at = self._clock.now()
            branch_name = agent_branch_name(key.issue_number, str(int(started_at.timestamp() * 1000)))
            self._acknowledge(event)
            self._notify(key, starting_comment(branch_name=branch_name))

            spec = build_container_spec(
                key=key,
                issue_title=event.title,
                issue_body=event.body,
                branch_name=branch_name,
                started_at=started_at,
                containers=self._config.containers,
                orchestrator_url=self._config.server.public_url,
                prompt_template=self._config.prompt_for_repo(repo),
                review_feedback_template=self._config.review_feedback_prompt,
                github_token=self._config.github.token,
                agent_api_key=self._config.agent.api_key,
            )
            try:
                runtime_id = self._runtime.start(spec)
            except RuntimeStartError as exc:
                log_warning(LOGGER, "runtime_start_failed", error=str(exc))
                self._notify(key, start_failed_comment(error=str(exc).splitlines()[0]))
                return

            self._registry.register(
                ActiveIssue(
                    key=key,
                    issue_title=event.title,
                    issue_body=event.body,
                    branch_name=branch_name,
                    runtime_id=runtime_id,
                    runtime_name=spec.name,
                    status="starting",
                    started_at=started_at,
                )
            )

    def handle_closure(self, event: ClosureEvent) -> None:
        unit = self._correlator.lookup(event.owner, event.repo, event.pr_number)
        if unit is None:
            log_event(
                LOGGER,
                "closure_ignored",
                repo=f"{event.owner}/{event.repo}",
                pr_number=event.pr_number,
            )
            return
        with logging_work_context(work=unit.key):
            if not is_terminal(unit.status):
                self._registry.update_status(
                    unit.key, "done", message=f"PR #{event.pr_number} closed"
                )
            self._release(unit)
            self._notify(unit.key, completion_comment(pr_number=event.pr_number))

    def handle_review(self, event: ReviewEvent) -> None:
        routing = self._correlator.route_review(event)
        if routing.outcome != "iterating" or routing.unit is None:
            log_event(
                LOGGER,
                "review_ignored",
                repo=f"{event.owner}/{event.repo}",
                pr_number=event.pr_number,
                review_id=event.review_id,
                review_state=event.state,
                outcome=routing.outcome,
            )
            return
        body = event.body.strip() or "(no summary provided; see the review comments)"
        self._notify(routing.unit.key, feedback_comment(body=body))

    def handle_pull_request_opened(self, event: PullRequestOpenedEvent) -> None:
        key = event.key
        unit = self._registry.get(key)
        with logging_work_context(work=key):
            if unit is None:
                log_event(LOGGER, "pr_opened_untracked", pr_number=event.pr_number)
                return
            if unit.pr_number is not None:
                log_event(
                    LOGGER,
                    "pr_opened_ignored",
                    pr_number=event.pr_number,
                    existing_pr_number=unit.pr_number,
                )
                return
            if unit.branch_name != event.branch:
                log_event(
                    LOGGER,
                    "pr_branch_mismatch",
                    pr_number=event.pr_number,
                    expected=unit.branch_name,
                    branch=event.branch,
                )
            self._correlator.attach(key, event.pr_number)

    def handle_abort(self, event: AbortEvent) -> None:
        key = event.key
        unit = self._registry.get(key)
        if unit is None:
            return
        with logging_work_context(work=key):
            if not is_terminal(unit.status):
                self._registry.update_status(key, "aborted", message=event.reason)
            self._release(unit)
            self._notify(key, aborted_comment(reason=event.reason))

    def handle_status_update(self, event: StatusUpdate) -> None:
        unit = self._registry.get_by_runtime_id(event.runtime_id)
        if unit is None:
            log_event(
                LOGGER,
                "status_update_discarded",
                runtime_id=event.runtime_id[:12],
                status=event.status,
            )
            return
        with logging_work_context(work=unit.key):
            status = coerce_status(event.status)
            if status is None:
                self._registry.record_heartbeat(unit.key)
                log_warning(LOGGER, "status_update_unknown_status", status=event.status)
            else:
                error = None
                if status == "error":
                    error = event.message.strip() or "workload reported error"
                outcome = self._registry.update_status(
                    unit.key, status, error=error, message=event.message or None
                )
                if outcome == "applied" and error is not None:
                    self._notify(unit.key, work_failed_comment(error=error))
            if event.pr_number is not None and event.pr_number != unit.pr_number:
                self._correlator.attach(unit.key, event.pr_number)

    def _build_scheduler(self) -> Scheduler:
        scheduler = Scheduler(clock=self._clock)
        scheduler.on_tick(self.process_pending)
        if self._config.runtime.mode == "polling":
            scheduler.add("poll", self._config.runtime.poll_interval_seconds, self.poll_once)
        scheduler.add("health", self._config.runtime.health_interval_seconds, self.check_health)
        scheduler.add("cleanup", self._config.runtime.cleanup_interval_seconds, self.cleanup)
        return scheduler

    def _release(self, unit: ActiveIssue) -> None:
        try:
            self._runtime.remove(unit.runtime_id)
        except Exception as exc:  # noqa: BLE001
            # The cleanup sweep reclaims it once it stops.
            log_warning(
                LOGGER,
                "runtime_remove_failed",
                runtime_id=unit.runtime_id[:12],
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self._registry.remove(unit.key)

    def _report_rejection(self, event: TriggerEvent, rejected: AdmissionRejected) -> None:
        if rejected.reason == "duplicate":
            # Issue edits re-deliver the same trigger; only answer explicit comments.
            if event.source in _ISSUE_SOURCES:
                return
            self._notify(event.key, already_active_comment())
            return
        self._notify(event.key, capacity_full_comment(queue_position=rejected.queue_position))

    def _acknowledge(self, event: TriggerEvent) -> None:
        github = self._github_for(event.key)
        if github is None:
            return
        try:
            if event.source in _ISSUE_SOURCES:
                github.add_issue_reaction(event.issue_number, "rocket")
            else:
                github.add_comment_reaction(event.source_id, "rocket")
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "notification_failed",
                kind="reaction",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _notify_crash(self, unit: ActiveIssue, runtime_status: RuntimeStatus) -> None:
        self._notify(unit.key, runtime_crash_comment(runtime_status=runtime_status))

    def _notify(self, key: WorkKey, body: str) -> None:
        github = self._github_for(key)
        if github is None:
            log_warning(LOGGER, "notification_skipped", reason="no_gateway", work=key)
            return
        try:
            github.post_issue_comment(key.issue_number, body)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "notification_failed",
                kind="comment",
                work=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _github_for(self, key: WorkKey) -> GitHubGateway | None:
        return self._github_by_repo.get(key.repo_full_name)
