from __future__ import annotations

from datetime import datetime, timedelta, timezone

from issuepilot.config import RepoConfig
from issuepilot.github_gateway import GitHubPollingError
from issuepilot.models import (
    AbortEvent,
    ClosureEvent,
    Issue,
    IssueComment,
    OrchestratorEvent,
    PullRequestOpenedEvent,
    PullRequestReview,
    PullRequestSummary,
    RateBudget,
    ReviewEvent,
    TriggerEvent,
)
from issuepilot.poller import IssuePoller
from issuepilot.scheduler import ManualClock
from issuepilot.watermarks import WatermarkStore


_NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
_REPO = RepoConfig(repo_id="widgets", owner="acme", name="widgets", trigger_comment="@agent fix")


def _issue(
    number: int,
    *,
    body: str = "",
    author: str = "alice",
    created_at: datetime | None = None,
    is_pull_request: bool = False,
    state: str = "open",
) -> Issue:
    return Issue(
        number=number,
        title=f"Issue {number}",
        body=body,
        html_url=f"https://github.com/acme/widgets/issues/{number}",
        author_login=author,
        is_pull_request=is_pull_request,
        state=state,
        created_at=created_at,
    )


def _comment(comment_id: int, body: str, *, user: str = "alice") -> IssueComment:
    return IssueComment(comment_id=comment_id, body=body, user_login=user, created_at="")


def _pull(number: int, branch: str, *, state: str = "open") -> PullRequestSummary:
    return PullRequestSummary(
        number=number, head_ref=branch, state=state, merged=False, html_url=""
    )


def _review(review_id: int, state: str, *, user: str = "carol") -> PullRequestReview:
    return PullRequestReview(
        review_id=review_id, user_login=user, state=state, body="please fix", submitted_at=""
    )


class FakeGitHub:
    def __init__(self) -> None:
        self.budget: RateBudget | Exception = RateBudget(
            limit=5000, remaining=4000, reset_at=_NOW + timedelta(hours=1)
        )
        self.issues_since: list[Issue] | Exception = []
        self.open_issues: list[Issue] = []
        self.comments: dict[int, list[IssueComment] | Exception] = {}
        self.open_pulls: list[PullRequestSummary] = []
        self.pulls: dict[int, PullRequestSummary | Exception] = {}
        self.reviews: dict[int, list[PullRequestReview] | Exception] = {}
        self.since_calls: list[datetime] = []
        self.calls: list[str] = []

    def get_rate_limit(self) -> RateBudget:
        self.calls.append("rate_limit")
        if isinstance(self.budget, Exception):
            raise self.budget
        return self.budget

    def list_issues_since(self, since: datetime) -> list[Issue]:
        self.calls.append("issues_since")
        self.since_calls.append(since)
        if isinstance(self.issues_since, Exception):
            raise self.issues_since
        return list(self.issues_since)

    def list_open_issues(self) -> list[Issue]:
        self.calls.append("open_issues")
        return list(self.open_issues)

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        self.calls.append(f"comments:{issue_number}")
        comments = self.comments.get(issue_number, [])
        if isinstance(comments, Exception):
            raise comments
        return list(comments)

    def list_open_pull_requests(self) -> list[PullRequestSummary]:
        self.calls.append("open_pulls")
        return list(self.open_pulls)

    def get_pull_request(self, pr_number: int) -> PullRequestSummary:
        self.calls.append(f"pull:{pr_number}")
        pull = self.pulls[pr_number]
        if isinstance(pull, Exception):
            raise pull
        return pull

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        self.calls.append(f"reviews:{pr_number}")
        reviews = self.reviews.get(pr_number, [])
        if isinstance(reviews, Exception):
            raise reviews
        return list(reviews)


def _poller(
    github: FakeGitHub,
    events: list[OrchestratorEvent],
    *,
    watermarks: WatermarkStore | None = None,
    clock: ManualClock | None = None,
) -> tuple[IssuePoller, WatermarkStore]:
    store = watermarks or WatermarkStore()
    poller = IssuePoller(
        repos=(_REPO,),
        github_by_repo={"acme/widgets": github},
        watermarks=store,
        emit=events.append,
        clock=clock or ManualClock(_NOW),
    )
    return poller, store


def test_new_issue_with_trigger_in_body_emits_trigger() -> None:
    github = FakeGitHub()
    github.issues_since = [
        _issue(3, body="Broken. @agent fix", created_at=_NOW - timedelta(minutes=5)),
        _issue(4, body="no trigger here", created_at=_NOW - timedelta(minutes=5)),
        _issue(6, body="@agent fix", is_pull_request=True),
    ]
    events: list[OrchestratorEvent] = []
    poller, store = _poller(github, events)

    summary = poller.poll_once()

    assert events == [
        TriggerEvent(
            owner="acme",
            repo="widgets",
            issue_number=3,
            title="Issue 3",
            body="Broken. @agent fix",
            source_id=3,
            source="issue_body",
        )
    ]
    assert summary.triggers == 1
    assert github.since_calls == [_NOW - timedelta(seconds=86400)]
    assert store.issues_polled_at("acme/widgets") == _NOW


def test_older_issue_edited_to_add_trigger_emits_trigger() -> None:
    github = FakeGitHub()
    store = WatermarkStore()
    store.advance_issues_polled_at("acme/widgets", _NOW - timedelta(minutes=1))
    github.issues_since = [
        _issue(5, body="please @agent fix", created_at=_NOW - timedelta(days=1)),
    ]
    events: list[OrchestratorEvent] = []
    poller, _ = _poller(github, events, watermarks=store)

    poller.poll_once()

    assert github.since_calls == [_NOW - timedelta(minutes=1)]
    assert events == [
        TriggerEvent(
            owner="acme",
            repo="widgets",
            issue_number=5,
            title="Issue 5",
            body="please @agent fix",
            source_id=5,
            source="issue_body",
        )
    ]


def test_closed_issues_emit_abort_after_pull_request_closures() -> None:
    github = FakeGitHub()
    store = WatermarkStore()
    store.remember_pull_request("acme/widgets", 40)
    github.pulls = {40: _pull(40, "ai-agent-issue-8-1", state="closed")}
    github.issues_since = [
        _issue(8, body="@agent fix", state="closed"),
        _issue(9, state="closed", is_pull_request=True),
    ]
    events: list[OrchestratorEvent] = []
    poller, _ = _poller(github, events, watermarks=store)

    summary = poller.poll_once()

    assert events == [
        ClosureEvent(owner="acme", repo="widgets", pr_number=40),
        AbortEvent(owner="acme", repo="widgets", issue_number=8, reason="Issue was closed"),
    ]
    assert summary.aborts == 1
    assert summary.triggers == 0

def test_issue_scan_resumes_from_watermark() -> None:
    github = FakeGitHub()
    clock = ManualClock(_NOW)
    poller, store = _poller(github, [], clock=clock)
    poller.poll_once()
    clock.advance(60)

    poller.poll_once()

    assert github.since_calls == [_NOW - timedelta(seconds=86400), _NOW]
    assert store.issues_polled_at("acme/widgets") == _NOW + timedelta(seconds=60)


def test_issue_listing_failure_keeps_watermark() -> None:
    github = FakeGitHub()
    github.issues_since = GitHubPollingError("boom")
    poller, store = _poller(github, [])

    summary = poller.poll_once()

    assert summary.failures == 1
    assert store.issues_polled_at("acme/widgets") is None
    assert "open_pulls" in github.calls


def test_comment_watermarks_advance_per_issue_independently() -> None:
    github = FakeGitHub()
    github.open_issues = [_issue(7), _issue(9)]
    github.comments = {
        7: [
            _comment(103, "thanks"),
            _comment(101, "looks bad"),
            _comment(102, "@Agent Fix please"),
        ],
        9: GitHubPollingError("timeout"),
    }
    events: list[OrchestratorEvent] = []
    poller, store = _poller(github, events)

    summary = poller.poll_once()

    triggers = [event for event in events if isinstance(event, TriggerEvent)]
    assert [(event.issue_number, event.source_id, event.source) for event in triggers] == [
        (7, 102, "comment")
    ]
    assert store.comment_watermark("acme/widgets", 7) == 103
    assert store.comment_watermark("acme/widgets", 9) == 0
    assert summary.failures == 1

    github.comments[9] = [_comment(200, "@agent fix")]
    events.clear()
    poller.poll_once()

    triggers = [event for event in events if isinstance(event, TriggerEvent)]
    assert [(event.issue_number, event.source_id) for event in triggers] == [(9, 200)]
    assert store.comment_watermark("acme/widgets", 9) == 200


def test_bot_comments_and_bot_issues_are_skipped() -> None:
    github = FakeGitHub()
    github.open_issues = [_issue(7), _issue(8, author="renovate[bot]")]
    github.comments = {
        7: [_comment(10, "@agent fix", user="github-actions[bot]")],
        8: [_comment(11, "@agent fix")],
    }
    events: list[OrchestratorEvent] = []
    poller, store = _poller(github, events)

    poller.poll_once()

    assert events == []
    assert store.comment_watermark("acme/widgets", 7) == 10
    assert "comments:8" not in github.calls


def test_emit_failure_stops_comment_batch_before_failed_comment() -> None:
    github = FakeGitHub()
    github.open_issues = [_issue(7)]
    github.comments = {7: [_comment(1, "hi"), _comment(2, "@agent fix"), _comment(3, "bye")]}

    def failing_emit(event: OrchestratorEvent) -> None:
        _ = event
        raise RuntimeError("queue closed")

    store = WatermarkStore()
    poller = IssuePoller(
        repos=(_REPO,),
        github_by_repo={"acme/widgets": github},
        watermarks=store,
        emit=failing_emit,
        clock=ManualClock(_NOW),
    )

    summary = poller.poll_once()

    assert summary.failures == 1
    assert store.comment_watermark("acme/widgets", 7) == 1


def test_rate_limit_floor_skips_cycle() -> None:
    github = FakeGitHub()
    github.budget = RateBudget(limit=5000, remaining=100, reset_at=_NOW + timedelta(minutes=30))
    poller, _ = _poller(github, [])

    summary = poller.poll_once()

    assert summary.skipped is True
    assert github.calls == ["rate_limit"]
    assert poller.last_budget is github.budget


def test_rate_limit_check_failure_does_not_block_polling() -> None:
    github = FakeGitHub()
    github.budget = GitHubPollingError("rate endpoint down")
    poller, _ = _poller(github, [])

    summary = poller.poll_once()

    assert summary.skipped is False
    assert "issues_since" in github.calls


def test_agent_pull_requests_emit_open_and_reviews() -> None:
    github = FakeGitHub()
    github.open_pulls = [
        _pull(40, "ai-agent-issue-7-1709294400000"),
        _pull(41, "feature/login"),
    ]
    github.reviews = {
        40: [
            _review(900, "APPROVED"),
            _review(901, "CHANGES_REQUESTED"),
            _review(902, "COMMENTED", user="ci-bot"),
        ]
    }
    events: list[OrchestratorEvent] = []
    poller, store = _poller(github, events)

    summary = poller.poll_once()

    assert events == [
        PullRequestOpenedEvent(
            owner="acme",
            repo="widgets",
            pr_number=40,
            issue_number=7,
            branch="ai-agent-issue-7-1709294400000",
        ),
        ReviewEvent(
            owner="acme",
            repo="widgets",
            pr_number=40,
            review_id=901,
            state="CHANGES_REQUESTED",
            body="please fix",
            author="carol",
        ),
    ]
    assert summary.pull_requests_opened == 1
    assert summary.reviews == 1
    assert store.known_pull_requests("acme/widgets") == frozenset({40})
    assert store.review_watermark("acme/widgets", 40) == 902
    assert "reviews:41" not in github.calls

    events.clear()
    poller.poll_once()
    assert events == []


def test_closed_known_pull_request_emits_closure_and_is_forgotten() -> None:
    github = FakeGitHub()
    store = WatermarkStore()
    store.remember_pull_request("acme/widgets", 40)
    store.remember_pull_request("acme/widgets", 41)
    store.advance_review_watermark("acme/widgets", 40, 5)
    github.pulls = {
        40: _pull(40, "ai-agent-issue-7-1", state="closed"),
        41: _pull(41, "ai-agent-issue-8-1", state="open"),
    }
    events: list[OrchestratorEvent] = []
    poller, _ = _poller(github, events, watermarks=store)

    summary = poller.poll_once()

    assert events == [ClosureEvent(owner="acme", repo="widgets", pr_number=40)]
    assert summary.closures == 1
    assert store.known_pull_requests("acme/widgets") == frozenset({41})
    assert store.review_watermark("acme/widgets", 40) == 0


def test_pull_request_fetch_failures_are_contained_per_pull_request() -> None:
    github = FakeGitHub()
    store = WatermarkStore()
    for pr_number in (40, 41, 50, 51):
        store.remember_pull_request("acme/widgets", pr_number)
    store.advance_review_watermark("acme/widgets", 40, 5)
    github.open_pulls = [_pull(40, "ai-agent-issue-7-1"), _pull(41, "ai-agent-issue-8-1")]
    github.reviews = {
        40: GitHubPollingError("reviews unavailable"),
        41: [_review(700, "CHANGES_REQUESTED")],
    }
    github.pulls = {
        50: GitHubPollingError("pull unavailable"),
        51: _pull(51, "ai-agent-issue-9-1", state="closed"),
    }
    events: list[OrchestratorEvent] = []
    poller, _ = _poller(github, events, watermarks=store)

    summary = poller.poll_once()

    assert events == [
        ReviewEvent(
            owner="acme",
            repo="widgets",
            pr_number=41,
            review_id=700,
            state="CHANGES_REQUESTED",
            body="please fix",
            author="carol",
        ),
        ClosureEvent(owner="acme", repo="widgets", pr_number=51),
    ]
    assert summary.failures == 2
    assert summary.reviews == 1
    assert summary.closures == 1
    assert store.review_watermark("acme/widgets", 40) == 5
    assert store.review_watermark("acme/widgets", 41) == 700
    assert store.known_pull_requests("acme/widgets") == frozenset({40, 41, 50})


def test_missing_gateway_is_contained_per_repo() -> None:
    github = FakeGitHub()
    other = RepoConfig(repo_id="other", owner="acme", name="other", trigger_comment="@agent fix")
    poller = IssuePoller(
        repos=(other, _REPO),
        github_by_repo={"acme/widgets": github},
        watermarks=WatermarkStore(),
        emit=lambda event: None,
        clock=ManualClock(_NOW),
    )

    summary = poller.poll_once()

    assert summary.failures == 1
    assert "rate_limit" not in github.calls
    assert "issues_since" in github.calls


def test_disabled_repos_are_not_polled() -> None:
    github = FakeGitHub()
    disabled = RepoConfig(
        repo_id="widgets", owner="acme", name="widgets", trigger_comment="x", enabled=False
    )
    poller = IssuePoller(
        repos=(disabled,),
        github_by_repo={"acme/widgets": github},
        watermarks=WatermarkStore(),
        emit=lambda event: None,
        clock=ManualClock(_NOW),
    )

    summary = poller.poll_once()

    assert github.calls == []
    assert summary.failures == 0
