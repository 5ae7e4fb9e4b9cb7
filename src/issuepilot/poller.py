from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from issuepilot.config import RepoConfig
from issuepilot.correlator import (
    ITERATE_REVIEW_STATES,
    is_agent_branch,
    is_bot_login,
    issue_number_from_branch,
)
from issuepilot.github_gateway import GitHubGateway
from issuepilot.models import (
    AbortEvent,
    ClosureEvent,
    OrchestratorEvent,
    PullRequestOpenedEvent,
    RateBudget,
    ReviewEvent,
    TriggerEvent,
)
from issuepilot.observability import log_event, log_warning, logging_work_context
from issuepilot.scheduler import Clock
from issuepilot.watermarks import WatermarkStore


LOGGER = logging.getLogger("issuepilot.poller")

EventSink = Callable[[OrchestratorEvent], None]


@dataclass
class PollSummary:
    started_at: datetime
    skipped: bool = False
    triggers: int = 0
    pull_requests_opened: int = 0
    reviews: int = 0
    closures: int = 0
    aborts: int = 0
    failures: int = 0


class IssuePoller:
    def __init__(
        self,
        *,
        repos: tuple[RepoConfig, ...],
        github_by_repo: Mapping[str, GitHubGateway],
        watermarks: WatermarkStore,
        emit: EventSink,
        clock: Clock,
        issue_lookback_seconds: int = 86400,
        rate_limit_floor_ratio: float = 0.1,
    ) -> None:
        self._repos = tuple(repo for repo in repos if repo.enabled)
        self._github_by_repo = github_by_repo
        self._watermarks = watermarks
        self._emit = emit
        self._clock = clock
        self._lookback = timedelta(seconds=issue_lookback_seconds)
        self._floor_ratio = rate_limit_floor_ratio
        self.last_budget: RateBudget | None = None

    def poll_once(self) -> PollSummary:
        summary = PollSummary(started_at=self._clock.now())
        budget = self._refresh_budget()
        if budget is not None and budget.below_floor(self._floor_ratio):
            summary.skipped = True
            log_event(
                LOGGER,
                "poll_cycle_skipped",
                reason="rate_limit",
                remaining=budget.remaining,
                limit=budget.limit,
                reset_at=budget.reset_at,
            )
            return summary

        for repo in self._repos:
            with logging_work_context(repo=repo.full_name):
                try:
                    self._poll_repo(repo, summary)
                except Exception as exc:  # noqa: BLE001
                    summary.failures += 1
                    log_warning(
                        LOGGER,
                        "repo_poll_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )

        log_event(
            LOGGER,
            "poll_cycle_completed",
            repo_count=len(self._repos),
            triggers=summary.triggers,
            pull_requests_opened=summary.pull_requests_opened,
            reviews=summary.reviews,
            closures=summary.closures,
            aborts=summary.aborts,
            failures=summary.failures,
        )
        return summary

    def _refresh_budget(self) -> RateBudget | None:
        if not self._repos:
            return None
        try:
            budget = self._github(self._repos[0]).get_rate_limit()
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "rate_limit_check_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        self.last_budget = budget
        return budget

    def _poll_repo(self, repo: RepoConfig, summary: PollSummary) -> None:
        github = self._github(repo)
        closed_issues = self._scan_new_issues(repo, github, summary)
        self._scan_issue_comments(repo, github, summary)
        self._scan_pull_requests(repo, github, summary)
        self._emit_aborts(repo, closed_issues, summary)

    def _scan_new_issues(
        self, repo: RepoConfig, github: GitHubGateway, summary: PollSummary
    ) -> list[int]:
        since = self._watermarks.issues_polled_at(repo.full_name)
        if since is None:
            since = summary.started_at - self._lookback
        try:
            issues = github.list_issues_since(since)
        except Exception as exc:  # noqa: BLE001
            summary.failures += 1
            log_warning(
                LOGGER,
                "issue_scan_failed",
                since=since,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return []

        closed: list[int] = []
        for issue in issues:
            if issue.is_pull_request:
                continue
            if issue.state != "open":
                closed.append(issue.number)
                continue
            if not repo.is_trigger(issue.body):
                continue
            self._emit(
                TriggerEvent(
                    owner=repo.owner,
                    repo=repo.name,
                    issue_number=issue.number,
                    title=issue.title,
                    body=issue.body,
                    source_id=issue.number,
                    source="issue_body",
                )
            )
            summary.triggers += 1
        self._watermarks.advance_issues_polled_at(repo.full_name, summary.started_at)
        return closed

    def _emit_aborts(
        self, repo: RepoConfig, issue_numbers: list[int], summary: PollSummary
    ) -> None:
        # Emitted after the PR scan so a merged PR's closure is handled first.
        for issue_number in issue_numbers:
            try:
                self._emit(
                    AbortEvent(
                        owner=repo.owner,
                        repo=repo.name,
                        issue_number=issue_number,
                        reason="Issue was closed",
                    )
                )
            except Exception as exc:  # noqa: BLE001
                summary.failures += 1
                log_warning(
                    LOGGER,
                    "abort_emit_failed",
                    issue_number=issue_number,
                    error_type=type(exc).__name__,
                )
                continue
            summary.aborts += 1

    def _scan_issue_comments(
        self, repo: RepoConfig, github: GitHubGateway, summary: PollSummary
    ) -> None:
        try:
            open_issues = github.list_open_issues()
        except Exception as exc:  # noqa: BLE001
            summary.failures += 1
            log_warning(
                LOGGER,
                "open_issue_scan_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        for issue in open_issues:
            if issue.is_pull_request or is_bot_login(issue.author_login):
                continue
            try:
                comments = github.list_issue_comments(issue.number)
            except Exception as exc:  # noqa: BLE001
                summary.failures += 1
                log_warning(
                    LOGGER,
                    "comment_fetch_failed",
                    issue_number=issue.number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue

            watermark = self._watermarks.comment_watermark(repo.full_name, issue.number)
            processed_through = watermark
            for comment in sorted(comments, key=lambda item: item.comment_id):
                if comment.comment_id <= watermark:
                    continue
                if not is_bot_login(comment.user_login) and repo.is_trigger(comment.body):
                    try:
                        self._emit(
                            TriggerEvent(
                                owner=repo.owner,
                                repo=repo.name,
                                issue_number=issue.number,
                                title=issue.title,
                                body=issue.body,
                                source_id=comment.comment_id,
                                source="comment",
                            )
                        )
                    except Exception as exc:  # noqa: BLE001
                        summary.failures += 1
                        log_warning(
                            LOGGER,
                            "trigger_emit_failed",
                            issue_number=issue.number,
                            comment_id=comment.comment_id,
                            error_type=type(exc).__name__,
                        )
                        break
                    summary.triggers += 1
                processed_through = comment.comment_id
            if processed_through > watermark:
                self._watermarks.advance_comment_watermark(
                    repo.full_name, issue.number, processed_through
                )

    def _scan_pull_requests(
        self, repo: RepoConfig, github: GitHubGateway, summary: PollSummary
    ) -> None:
        try:
            open_pulls = github.list_open_pull_requests()
        except Exception as exc:  # noqa: BLE001
            summary.failures += 1
            log_warning(
                LOGGER,
                "pull_request_scan_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        agent_pulls = [pull for pull in open_pulls if is_agent_branch(pull.head_ref)]
        known = self._watermarks.known_pull_requests(repo.full_name)
        for pull in agent_pulls:
            if pull.number not in known:
                issue_number = issue_number_from_branch(pull.head_ref)
                if issue_number is not None:
                    try:
                        self._emit(
                            PullRequestOpenedEvent(
                                owner=repo.owner,
                                repo=repo.name,
                                pr_number=pull.number,
                                issue_number=issue_number,
                                branch=pull.head_ref,
                            )
                        )
                    except Exception as exc:  # noqa: BLE001
                        summary.failures += 1
                        log_warning(
                            LOGGER,
                            "pr_opened_emit_failed",
                            pr_number=pull.number,
                            error_type=type(exc).__name__,
                        )
                        continue
                    summary.pull_requests_opened += 1
                self._watermarks.remember_pull_request(repo.full_name, pull.number)
            self._scan_reviews(repo, github, pull.number, summary)

        open_numbers = {pull.number for pull in agent_pulls}
        for pr_number in sorted(self._watermarks.known_pull_requests(repo.full_name) - open_numbers):
            try:
                pull = github.get_pull_request(pr_number)
            except Exception as exc:  # noqa: BLE001
                summary.failures += 1
                log_warning(
                    LOGGER,
                    "pull_request_fetch_failed",
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if pull.state == "open":
                continue
            try:
                self._emit(ClosureEvent(owner=repo.owner, repo=repo.name, pr_number=pr_number))
            except Exception as exc:  # noqa: BLE001
                summary.failures += 1
                log_warning(
                    LOGGER,
                    "closure_emit_failed",
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                )
                continue
            summary.closures += 1
            self._watermarks.forget_pull_request(repo.full_name, pr_number)

    def _scan_reviews(
        self,
        repo: RepoConfig,
        github: GitHubGateway,
        pr_number: int,
        summary: PollSummary,
    ) -> None:
        try:
            reviews = github.list_pull_request_reviews(pr_number)
        except Exception as exc:  # noqa: BLE001
            summary.failures += 1
            log_warning(
                LOGGER,
                "review_fetch_failed",
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        watermark = self._watermarks.review_watermark(repo.full_name, pr_number)
        processed_through = watermark
        for review in sorted(reviews, key=lambda item: item.review_id):
            if review.review_id <= watermark:
                continue
            if not is_bot_login(review.user_login) and review.state in ITERATE_REVIEW_STATES:
                try:
                    self._emit(
                        ReviewEvent(
                            owner=repo.owner,
                            repo=repo.name,
                            pr_number=pr_number,
                            review_id=review.review_id,
                            state=review.state,
                            body=review.body,
                            author=review.user_login,
                        )
                    )
                except Exception as exc:  # noqa: BLE001
                    summary.failures += 1
                    log_warning(
                        LOGGER,
                        "review_emit_failed",
                        pr_number=pr_number,
                        review_id=review.review_id,
                        error_type=type(exc).__name__,
                    )
                    break
                summary.reviews += 1
            processed_through = review.review_id
        if processed_through > watermark:
            self._watermarks.advance_review_watermark(repo.full_name, pr_number, processed_through)

    def _github(self, repo: RepoConfig) -> GitHubGateway:
        github = self._github_by_repo.get(repo.full_name.lower())
        if github is None:
            raise KeyError(f"No GitHub gateway configured for {repo.full_name}")
        return github
