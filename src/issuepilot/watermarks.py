from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import threading

from issuepilot.observability import log_event
from issuepilot.state import StateStore


LOGGER = logging.getLogger("issuepilot.watermarks")


@dataclass
class RepoWatermarks:
    issues_polled_at: datetime | None = None
    comment_ids: dict[int, int] = field(default_factory=dict)
    review_ids: dict[int, int] = field(default_factory=dict)
    known_pull_requests: set[int] = field(default_factory=set)


class WatermarkStore:
    """Per-repository high-water marks for incremental polling.

    Every value only ever moves forward. Callers advance a mark after the batch it
    covers has been fully handled, so a failed batch is simply re-read next cycle.
    """

    def __init__(self, *, persistence: StateStore | None = None) -> None:
        self._persistence = persistence
        self._lock = threading.Lock()
        self._repos: dict[str, RepoWatermarks] = {}
        if persistence is not None:
            self._load(persistence)

    def issues_polled_at(self, repo_full_name: str) -> datetime | None:
        with self._lock:
            return self._repo(repo_full_name).issues_polled_at

    def advance_issues_polled_at(self, repo_full_name: str, polled_at: datetime) -> bool:
        with self._lock:
            marks = self._repo(repo_full_name)
            if marks.issues_polled_at is not None and polled_at <= marks.issues_polled_at:
                return False
            marks.issues_polled_at = polled_at
        if self._persistence is not None:
            self._persistence.save_issue_watermark(repo_full_name, polled_at)
        return True

    def comment_watermark(self, repo_full_name: str, issue_number: int) -> int:
        with self._lock:
            return self._repo(repo_full_name).comment_ids.get(issue_number, 0)

    def advance_comment_watermark(
        self, repo_full_name: str, issue_number: int, comment_id: int
    ) -> bool:
        with self._lock:
            marks = self._repo(repo_full_name)
            if comment_id <= marks.comment_ids.get(issue_number, 0):
                return False
            marks.comment_ids[issue_number] = comment_id
        if self._persistence is not None:
            self._persistence.save_comment_watermark(repo_full_name, issue_number, comment_id)
        return True

    def review_watermark(self, repo_full_name: str, pr_number: int) -> int:
        with self._lock:
            return self._repo(repo_full_name).review_ids.get(pr_number, 0)

    def advance_review_watermark(self, repo_full_name: str, pr_number: int, review_id: int) -> bool:
        with self._lock:
            marks = self._repo(repo_full_name)
            if review_id <= marks.review_ids.get(pr_number, 0):
                return False
            marks.review_ids[pr_number] = review_id
        if self._persistence is not None:
            self._persistence.save_review_watermark(repo_full_name, pr_number, review_id)
        return True

    def known_pull_requests(self, repo_full_name: str) -> frozenset[int]:
        with self._lock:
            return frozenset(self._repo(repo_full_name).known_pull_requests)

    def remember_pull_request(self, repo_full_name: str, pr_number: int) -> bool:
        with self._lock:
            marks = self._repo(repo_full_name)
            if pr_number in marks.known_pull_requests:
                return False
            marks.known_pull_requests.add(pr_number)
        if self._persistence is not None:
            self._persistence.add_known_pull_request(repo_full_name, pr_number)
        return True

    def forget_pull_request(self, repo_full_name: str, pr_number: int) -> None:
        with self._lock:
            marks = self._repo(repo_full_name)
            marks.known_pull_requests.discard(pr_number)
            marks.review_ids.pop(pr_number, None)
        if self._persistence is not None:
            self._persistence.forget_pull_request(repo_full_name, pr_number)

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                repo: {
                    "issues_polled_at": marks.issues_polled_at.isoformat()
                    if marks.issues_polled_at is not None
                    else None,
                    "comment_ids": {str(k): v for k, v in sorted(marks.comment_ids.items())},
                    "review_ids": {str(k): v for k, v in sorted(marks.review_ids.items())},
                    "known_pull_requests": sorted(marks.known_pull_requests),
                }
                for repo, marks in sorted(self._repos.items())
            }

    def _repo(self, repo_full_name: str) -> RepoWatermarks:
        repo_key = repo_full_name.strip().lower()
        marks = self._repos.get(repo_key)
        if marks is None:
            marks = RepoWatermarks()
            self._repos[repo_key] = marks
        return marks

    def _load(self, persistence: StateStore) -> None:
        stored = persistence.load_watermarks()
        for entry in stored:
            marks = self._repo(entry.repo_full_name)
            marks.issues_polled_at = entry.issues_polled_at
            marks.comment_ids.update(dict(entry.comment_ids))
            marks.review_ids.update(dict(entry.review_ids))
            marks.known_pull_requests.update(entry.known_pull_requests)
        log_event(LOGGER, "watermarks_loaded", repo_count=len(stored))
