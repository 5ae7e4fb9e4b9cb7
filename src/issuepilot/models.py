from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


WorkStatus = Literal[
    "starting",
    "cloning",
    "analyzing",
    "developing",
    "testing",
    "pr_created",
    "awaiting_review",
    "iterating",
    "done",
    "error",
    "aborted",
]
RuntimeStatus = Literal["running", "exited", "dead", "unknown"]
ReviewState = Literal["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED", "PENDING"]
TriggerSource = Literal["issue_body", "comment", "webhook_issue", "webhook_comment"]


@dataclass(frozen=True, order=True)
class WorkKey:
    owner: str
    name: str
    issue_number: int

    @classmethod
    def of(cls, owner: str, name: str, issue_number: int) -> WorkKey:
        return cls(
            owner=owner.strip().lower(),
            name=name.strip().lower(),
            issue_number=int(issue_number),
        )

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}#{self.issue_number}"


@dataclass
class ActiveIssue:
    """One tracked issue currently being worked on by an agent workload.

    Mutable on purpose: the registry owns every instance and is the only writer.
    """

    key: WorkKey
    issue_title: str
    issue_body: str
    branch_name: str
    runtime_id: str
    runtime_name: str
    status: WorkStatus
    started_at: datetime
    pr_number: int | None = None
    last_heartbeat: datetime | None = None
    error: str | None = None
    last_message: str | None = None


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    html_url: str
    author_login: str
    is_pull_request: bool = False
    state: str = "open"
    created_at: datetime | None = None


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    created_at: str


@dataclass(frozen=True)
class PullRequestSummary:
    number: int
    head_ref: str
    state: str
    merged: bool
    html_url: str


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    user_login: str
    state: str
    body: str
    submitted_at: str


@dataclass(frozen=True)
class RateBudget:
    limit: int
    remaining: int
    reset_at: datetime

    def below_floor(self, ratio: float) -> bool:
        return self.remaining < self.limit * ratio


@dataclass(frozen=True)
class TriggerEvent:
    owner: str
    repo: str
    issue_number: int
    title: str
    body: str
    source_id: int
    source: TriggerSource

    @property
    def key(self) -> WorkKey:
        return WorkKey.of(self.owner, self.repo, self.issue_number)


@dataclass(frozen=True)
class ClosureEvent:
    owner: str
    repo: str
    pr_number: int


@dataclass(frozen=True)
class ReviewEvent:
    owner: str
    repo: str
    pr_number: int
    review_id: int
    state: str
    body: str
    author: str


@dataclass(frozen=True)
class PullRequestOpenedEvent:
    owner: str
    repo: str
    pr_number: int
    issue_number: int
    branch: str

    @property
    def key(self) -> WorkKey:
        return WorkKey.of(self.owner, self.repo, self.issue_number)


@dataclass(frozen=True)
class AbortEvent:
    owner: str
    repo: str
    issue_number: int
    reason: str

    @property
    def key(self) -> WorkKey:
        return WorkKey.of(self.owner, self.repo, self.issue_number)


@dataclass(frozen=True)
class StatusUpdate:
    runtime_id: str
    status: str
    message: str
    timestamp: str
    pr_number: int | None = None


OrchestratorEvent = (
    TriggerEvent | ClosureEvent | ReviewEvent | PullRequestOpenedEvent | AbortEvent | StatusUpdate
)
