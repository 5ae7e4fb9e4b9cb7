from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import sqlite3
import threading


_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class StoredWatermarks:
    repo_full_name: str
    issues_polled_at: datetime | None
    comment_ids: tuple[tuple[int, int], ...]
    review_ids: tuple[tuple[int, int], ...]
    known_pull_requests: tuple[int, ...]


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_watermarks (
                    repo_full_name TEXT NOT NULL PRIMARY KEY,
                    polled_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS comment_watermarks (
                    repo_full_name TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    last_comment_id INTEGER NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, issue_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_watermarks (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    last_review_id INTEGER NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS known_pull_requests (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )

    def save_issue_watermark(self, repo_full_name: str, polled_at: datetime) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO issue_watermarks(repo_full_name, polled_at)
                VALUES(?, ?)
                ON CONFLICT(repo_full_name) DO UPDATE SET
                    polled_at=MAX(issue_watermarks.polled_at, excluded.polled_at),
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (_normalize_repo_full_name(repo_full_name), _format_timestamp(polled_at)),
            )

    def save_comment_watermark(
        self, repo_full_name: str, issue_number: int, last_comment_id: int
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO comment_watermarks(repo_full_name, issue_number, last_comment_id)
                VALUES(?, ?, ?)
                ON CONFLICT(repo_full_name, issue_number) DO UPDATE SET
                    last_comment_id=MAX(comment_watermarks.last_comment_id, excluded.last_comment_id),
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (_normalize_repo_full_name(repo_full_name), issue_number, last_comment_id),
            )

    def save_review_watermark(self, repo_full_name: str, pr_number: int, last_review_id: int) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO review_watermarks(repo_full_name, pr_number, last_review_id)
                VALUES(?, ?, ?)
                ON CONFLICT(repo_full_name, pr_number) DO UPDATE SET
                    last_review_id=MAX(review_watermarks.last_review_id, excluded.last_review_id),
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (_normalize_repo_full_name(repo_full_name), pr_number, last_review_id),
            )

    def add_known_pull_request(self, repo_full_name: str, pr_number: int) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO known_pull_requests(repo_full_name, pr_number)
                VALUES(?, ?)
                ON CONFLICT(repo_full_name, pr_number) DO NOTHING
                """,
                (_normalize_repo_full_name(repo_full_name), pr_number),
            )

    def forget_pull_request(self, repo_full_name: str, pr_number: int) -> None:
        repo_key = _normalize_repo_full_name(repo_full_name)
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM known_pull_requests WHERE repo_full_name = ? AND pr_number = ?",
                (repo_key, pr_number),
            )
            conn.execute(
                "DELETE FROM review_watermarks WHERE repo_full_name = ? AND pr_number = ?",
                (repo_key, pr_number),
            )

    def load_watermarks(self) -> tuple[StoredWatermarks, ...]:
        with self._lock, self._connect() as conn:
            issue_rows = conn.execute(
                "SELECT repo_full_name, polled_at FROM issue_watermarks"
            ).fetchall()
            comment_rows = conn.execute(
                """
                SELECT repo_full_name, issue_number, last_comment_id
                FROM comment_watermarks
                ORDER BY repo_full_name ASC, issue_number ASC
                """
            ).fetchall()
            review_rows = conn.execute(
                """
                SELECT repo_full_name, pr_number, last_review_id
                FROM review_watermarks
                ORDER BY repo_full_name ASC, pr_number ASC
                """
            ).fetchall()
            known_rows = conn.execute(
                """
                SELECT repo_full_name, pr_number
                FROM known_pull_requests
                ORDER BY repo_full_name ASC, pr_number ASC
                """
            ).fetchall()

        polled_at_by_repo = {str(repo): _parse_timestamp(str(value)) for repo, value in issue_rows}
        comments_by_repo: dict[str, list[tuple[int, int]]] = {}
        for repo, issue_number, comment_id in comment_rows:
            comments_by_repo.setdefault(str(repo), []).append((int(issue_number), int(comment_id)))
        reviews_by_repo: dict[str, list[tuple[int, int]]] = {}
        for repo, pr_number, review_id in review_rows:
            reviews_by_repo.setdefault(str(repo), []).append((int(pr_number), int(review_id)))
        known_by_repo: dict[str, list[int]] = {}
        for repo, pr_number in known_rows:
            known_by_repo.setdefault(str(repo), []).append(int(pr_number))

        repos = sorted(
            set(polled_at_by_repo) | set(comments_by_repo) | set(reviews_by_repo) | set(known_by_repo)
        )
        return tuple(
            StoredWatermarks(
                repo_full_name=repo,
                issues_polled_at=polled_at_by_repo.get(repo),
                comment_ids=tuple(comments_by_repo.get(repo, ())),
                review_ids=tuple(reviews_by_repo.get(repo, ())),
                known_pull_requests=tuple(known_by_repo.get(repo, ())),
            )
            for repo in repos
        )


def _normalize_repo_full_name(repo_full_name: str) -> str:
    normalized = repo_full_name.strip().lower()
    if not normalized:
        raise ValueError("repo_full_name must be non-empty")
    return normalized


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
