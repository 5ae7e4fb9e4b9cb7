from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Literal, cast
from urllib.parse import parse_qs, urlencode, urlsplit

from issuepilot.models import (
    Issue,
    IssueComment,
    PullRequestReview,
    PullRequestSummary,
    RateBudget,
)
from issuepilot.observability import log_event
from issuepilot.shell import run


LOGGER = logging.getLogger("issuepilot.github_gateway")
ReactionContent = Literal["+1", "-1", "laugh", "confused", "heart", "hooray", "rocket", "eyes"]
_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_issues_since(self, since: datetime) -> list[Issue]:
        items = self._list_paginated(
            f"/repos/{self.owner}/{self.name}/issues",
            {
                "state": "all",
                "since": _format_timestamp(since),
                "sort": "updated",
                "direction": "asc",
            },
            what="issues",
        )
        issues = [_parse_issue(item) for item in items]
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues_since",
            repo_full_name=self.full_name,
            since=since,
            count=len(issues),
        )
        return issues

    def list_open_issues(self) -> list[Issue]:
        items = self._list_paginated(
            f"/repos/{self.owner}/{self.name}/issues",
            {"state": "open", "sort": "updated", "direction": "desc"},
            what="issues",
        )
        issues = [_parse_issue(item) for item in items]
        log_event(
            LOGGER,
            "github_read",
            endpoint="open_issues",
            repo_full_name=self.full_name,
            count=len(issues),
        )
        return issues

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        items = self._list_paginated(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments",
            {},
            what="issue comments",
        )
        comments: list[IssueComment] = []
        for item_obj in items:
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                IssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    created_at=_as_string(item_obj.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            repo_full_name=self.full_name,
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def list_open_pull_requests(self) -> list[PullRequestSummary]:
        items = self._list_paginated(
            f"/repos/{self.owner}/{self.name}/pulls",
            {"state": "open"},
            what="pull requests",
        )
        pulls = [_parse_pull_request(item) for item in items]
        log_event(
            LOGGER,
            "github_read",
            endpoint="open_pull_requests",
            repo_full_name=self.full_name,
            count=len(pulls),
        )
        return pulls

    def get_pull_request(self, pr_number: int) -> PullRequestSummary:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")
        summary = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo_full_name=self.full_name,
            pr_number=summary.number,
            state=summary.state,
        )
        return summary

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        items = self._list_paginated(
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews",
            {},
            what="pull request reviews",
        )
        reviews: list[PullRequestReview] = []
        for item_obj in items:
            user_obj = _as_object_dict(item_obj.get("user"))
            reviews.append(
                PullRequestReview(
                    review_id=_as_int(item_obj.get("id"), field="id"),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    state=_as_string(item_obj.get("state")).upper(),
                    body=_as_string(item_obj.get("body")),
                    submitted_at=_as_string(item_obj.get("submitted_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            count=len(reviews),
        )
        return reviews

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_issue_comment_posted",
            repo_full_name=self.full_name,
            issue_number=issue_number,
        )

    def add_comment_reaction(self, comment_id: int, content: ReactionContent) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/comments/{comment_id}/reactions"
        self._post_reaction(path, content, target=f"comment:{comment_id}")

    def add_issue_reaction(self, issue_number: int, content: ReactionContent) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/reactions"
        self._post_reaction(path, content, target=f"issue:{issue_number}")

    def get_rate_limit(self) -> RateBudget:
        payload_obj = _as_object_dict(self._api_json("GET", "/rate_limit"))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for rate limit")
        resources = _as_object_dict(payload_obj.get("resources"))
        core = _as_object_dict(resources.get("core")) if resources else None
        if core is None:
            core = _as_object_dict(payload_obj.get("rate"))
        if core is None:
            raise GitHubPollingError("Unexpected GitHub response: missing core rate limit")
        budget = RateBudget(
            limit=_as_int(core.get("limit"), field="limit"),
            remaining=_as_int(core.get("remaining"), field="remaining"),
            reset_at=datetime.fromtimestamp(
                _as_int(core.get("reset"), field="reset"), tz=timezone.utc
            ),
        )
        log_event(
            LOGGER,
            "github_rate_limit",
            limit=budget.limit,
            remaining=budget.remaining,
            reset_at=budget.reset_at,
        )
        return budget

    def _post_reaction(self, path: str, content: ReactionContent, *, target: str) -> None:
        try:
            self._api_json("POST", path, payload={"content": content})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_reaction_failed",
                repo_full_name=self.full_name,
                target=target,
                content=content,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_reaction_added",
            repo_full_name=self.full_name,
            target=target,
            content=content,
        )

    def _list_paginated(
        self, base_path: str, query: dict[str, object], *, what: str
    ) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query_items: dict[str, object] = {**query, "per_page": _PAGE_SIZE, "page": page}
            payload = self._api_json("GET", f"{base_path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list of {what}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag and _is_cacheable(path):
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        return json.loads(raw) if raw.strip() else None


def _parse_issue(item_obj: dict[str, object]) -> Issue:
    user_obj = _as_object_dict(item_obj.get("user"))
    return Issue(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        author_login=_as_login(user_obj.get("login") if user_obj else None),
        # GitHub returns pull requests in the issues endpoint.
        is_pull_request="pull_request" in item_obj,
        state=_as_string(item_obj.get("state")) or "open",
        created_at=_parse_github_timestamp(item_obj.get("created_at")),
    )


def _parse_pull_request(item_obj: dict[str, object]) -> PullRequestSummary:
    head = _as_object_dict(item_obj.get("head"))
    merged_value = item_obj.get("merged")
    if isinstance(merged_value, bool):
        merged = merged_value
    else:
        # List endpoints omit "merged" but carry "merged_at".
        merged = item_obj.get("merged_at") is not None
    return PullRequestSummary(
        number=_as_int(item_obj.get("number"), field="number"),
        head_ref=_as_string(head.get("ref") if head else None),
        state=_as_string(item_obj.get("state")),
        merged=merged,
        html_url=_as_string(item_obj.get("html_url")),
    )


def _parse_github_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _is_cacheable(path: str) -> bool:
    # "since" queries differ every poll cycle and are never cached.
    return "since" not in parse_qs(urlsplit(path).query)


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
