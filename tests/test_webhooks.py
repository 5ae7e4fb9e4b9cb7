from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
from pathlib import Path

from fastapi.testclient import TestClient
import pytest

from issuepilot.config import AppConfig, RepoConfig, RuntimeConfig, ServerConfig
from issuepilot.models import (
    AbortEvent,
    ActiveIssue,
    ClosureEvent,
    OrchestratorEvent,
    PullRequestOpenedEvent,
    ReviewEvent,
    StatusUpdate,
    TriggerEvent,
    WorkKey,
)
from issuepilot.registry import ActiveWorkRegistry
from issuepilot.webhooks import (
    create_app,
    parse_github_event,
    parse_status_update,
    verify_signature,
)


_SECRET = "s3cret"


class FakeOrchestrator:
    def __init__(self) -> None:
        self.registry = ActiveWorkRegistry(max_concurrent=3)
        self.submitted: list[OrchestratorEvent] = []
        self.started = 0
        self.stopped = 0

    def submit(self, event: OrchestratorEvent) -> None:
        self.submitted.append(event)

    def start(self) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1


def _config(tmp_path: Path, *, secret: str | None = _SECRET) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path, mode="webhook"),
        repos=(
            RepoConfig(
                repo_id="widgets", owner="Acme", name="Widgets", trigger_comment="@agent fix"
            ),
            RepoConfig(
                repo_id="legacy",
                owner="Acme",
                name="Legacy",
                trigger_comment="@agent fix",
                enabled=False,
            ),
        ),
        server=ServerConfig(webhook_secret=secret),
    )


def _sign(body: bytes, secret: str = _SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()


def _repository(name: str = "widgets") -> dict[str, object]:
    return {"name": name, "owner": {"login": "acme"}}


def test_verify_signature() -> None:
    body = b'{"action":"opened"}'
    assert verify_signature(body, _sign(body), _SECRET)
    assert verify_signature(body, f"  {_sign(body)}\n", _SECRET)
    assert not verify_signature(body, _sign(body, "other"), _SECRET)
    assert not verify_signature(body, "sha256=deadbeef", _SECRET)
    assert not verify_signature(body, None, _SECRET)
    assert not verify_signature(body, _sign(body), None)
    assert not verify_signature(body, "", _SECRET)


def test_issue_events(tmp_path: Path) -> None:
    config = _config(tmp_path)
    issue = {
        "number": 7,
        "title": "Crash on start",
        "body": "Please @Agent Fix this",
        "user": {"login": "alice"},
    }

    assert parse_github_event(
        "issues", {"action": "opened", "issue": issue, "repository": _repository()}, config
    ) == [
        TriggerEvent(
            owner="Acme",
            repo="Widgets",
            issue_number=7,
            title="Crash on start",
            body="Please @Agent Fix this",
            source_id=7,
            source="webhook_issue",
        )
    ]
    assert parse_github_event(
        "issues", {"action": "closed", "issue": issue, "repository": _repository()}, config
    ) == [AbortEvent(owner="Acme", repo="Widgets", issue_number=7, reason="Issue was closed")]
    assert (
        parse_github_event(
            "issues", {"action": "labeled", "issue": issue, "repository": _repository()}, config
        )
        == []
    )


@pytest.mark.parametrize(
    "payload",
    [
        {"action": "opened", "issue": {"number": 7, "body": "no trigger", "user": {"login": "a"}}},
        {
            "action": "opened",
            "issue": {"number": 7, "body": "@agent fix", "user": {"login": "renovate[bot]"}},
        },
        {"action": "opened", "issue": {"body": "@agent fix", "user": {"login": "alice"}}},
    ],
)
def test_issue_events_without_trigger_are_ignored(
    tmp_path: Path, payload: dict[str, object]
) -> None:
    payload = {**payload, "repository": _repository()}
    assert parse_github_event("issues", payload, _config(tmp_path)) == []


def test_events_for_unknown_or_disabled_repos_are_ignored(tmp_path: Path) -> None:
    config = _config(tmp_path)
    issue = {"number": 7, "title": "t", "body": "@agent fix", "user": {"login": "alice"}}

    for repository in (_repository("legacy"), _repository("other"), {}):
        payload = {"action": "opened", "issue": issue, "repository": repository}
        assert parse_github_event("issues", payload, config) == []


def test_issue_comment_event(tmp_path: Path) -> None:
    config = _config(tmp_path)
    issue = {"number": 7, "title": "Crash", "body": "details"}
    comment = {"id": 555, "body": "@agent fix please", "user": {"login": "alice"}}

    events = parse_github_event(
        "issue_comment",
        {"action": "created", "issue": issue, "comment": comment, "repository": _repository()},
        config,
    )

    assert events == [
        TriggerEvent(
            owner="Acme",
            repo="Widgets",
            issue_number=7,
            title="Crash",
            body="details",
            source_id=555,
            source="webhook_comment",
        )
    ]


def test_issue_comment_event_filters(tmp_path: Path) -> None:
    config = _config(tmp_path)
    issue = {"number": 7, "title": "Crash", "body": "details"}
    comment = {"id": 555, "body": "@agent fix please", "user": {"login": "alice"}}

    def parse(
        action: str, issue: dict[str, object], comment: dict[str, object]
    ) -> list[OrchestratorEvent]:
        return parse_github_event(
            "issue_comment",
            {"action": action, "issue": issue, "comment": comment, "repository": _repository()},
            config,
        )

    assert parse("edited", issue, comment) == []
    assert parse("created", {**issue, "pull_request": {"url": "x"}}, comment) == []
    assert parse("created", issue, {**comment, "user": {"login": "helper-bot"}}) == []
    assert parse("created", issue, {**comment, "body": "thanks"}) == []
    assert parse("created", issue, {"body": "@agent fix", "user": {"login": "alice"}}) == []


def test_pull_request_events(tmp_path: Path) -> None:
    config = _config(tmp_path)

    def parse(action: str, ref: str) -> list[OrchestratorEvent]:
        pull = {"number": 42, "head": {"ref": ref}}
        return parse_github_event(
            "pull_request",
            {"action": action, "pull_request": pull, "repository": _repository()},
            config,
        )

    assert parse("opened", "ai-agent-issue-7-1700000000000") == [
        PullRequestOpenedEvent(
            owner="Acme",
            repo="Widgets",
            pr_number=42,
            issue_number=7,
            branch="ai-agent-issue-7-1700000000000",
        )
    ]
    assert parse("opened", "feature/login") == []
    assert parse("closed", "feature/login") == [
        ClosureEvent(owner="Acme", repo="Widgets", pr_number=42)
    ]
    assert parse("synchronize", "ai-agent-issue-7-1700000000000") == []


def test_pull_request_review_events(tmp_path: Path) -> None:
    config = _config(tmp_path)

    def parse(action: str, state: str, login: str = "alice") -> list[OrchestratorEvent]:
        review = {"id": 900, "state": state, "body": "rename it", "user": {"login": login}}
        return parse_github_event(
            "pull_request_review",
            {
                "action": action,
                "review": review,
                "pull_request": {"number": 42},
                "repository": _repository(),
            },
            config,
        )

    assert parse("submitted", "changes_requested") == [
        ReviewEvent(
            owner="Acme",
            repo="Widgets",
            pr_number=42,
            review_id=900,
            state="CHANGES_REQUESTED",
            body="rename it",
            author="alice",
        )
    ]
    assert len(parse("submitted", "commented")) == 1
    assert parse("submitted", "approved") == []
    assert parse("submitted", "changes_requested", login="lint-bot") == []
    assert parse("dismissed", "changes_requested") == []


def test_unhandled_event_names_produce_nothing(tmp_path: Path) -> None:
    payload = {"action": "created", "repository": _repository()}
    assert parse_github_event("push", payload, _config(tmp_path)) == []


def test_parse_status_update() -> None:
    update = parse_status_update(
        {
            "container_id": "abc123",
            "status": "pr_created",
            "message": "opened PR",
            "timestamp": "2024-03-01T12:00:00Z",
            "details": {"pr_number": "42"},
        }
    )
    assert update == StatusUpdate(
        runtime_id="abc123",
        status="pr_created",
        message="opened PR",
        timestamp="2024-03-01T12:00:00Z",
        pr_number=42,
    )

    update = parse_status_update(
        {"runtime_id": "abc", "status": "done", "details": {"pr_number": 9}}
    )
    assert update.runtime_id == "abc"
    assert update.pr_number == 9
    assert update.message == ""

    for details in (True, {"pr_number": "4x"}, {"pr_number": False}):
        update = parse_status_update({"container_id": "a", "status": "x", "details": details})
        assert update.pr_number is None


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"status": "done"}, "container_id is required"),
        ({"container_id": "", "status": "done"}, "container_id is required"),
        ({"container_id": "abc"}, "status is required"),
    ],
)
def test_parse_status_update_requires_fields(payload: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_status_update(payload)


def test_health_and_stats_endpoints(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator()
    key = WorkKey.of("acme", "widgets", 7)
    orchestrator.registry.register(
        ActiveIssue(
            key=key,
            issue_title="Crash",
            issue_body="",
            branch_name="ai-agent-issue-7-1",
            runtime_id="runtime-1",
            runtime_name="agent-acme-widgets-issue-7-1",
            status="starting",
            started_at=datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc),
        )
    )
    orchestrator.registry.correlate(key, 42)
    client = TestClient(create_app(_config(tmp_path), orchestrator))

    health = client.get("/health")
    assert health.status_code == 200
    body = health.json()
    assert body["status"] == "healthy"
    assert body["timestamp"].endswith("Z")
    assert body["uptime_seconds"] >= 0

    stats = client.get("/api/stats").json()
    assert stats["active"] == 1
    assert stats["max_concurrent"] == 3
    assert stats["available"] == 2
    assert stats["work"] == [
        {
            "key": "acme/widgets#7",
            "status": "starting",
            "pr_number": 42,
            "branch": "ai-agent-issue-7-1",
            "started_at": "2024-03-01T12:00:00+00:00",
        }
    ]
    assert orchestrator.started == 0


def test_status_endpoint_submits_updates(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator()
    client = TestClient(create_app(_config(tmp_path), orchestrator))

    response = client.post(
        "/api/status",
        json={"container_id": "abc", "status": "testing", "message": "running tests"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert orchestrator.submitted == [
        StatusUpdate(runtime_id="abc", status="testing", message="running tests", timestamp="")
    ]


@pytest.mark.parametrize(
    "content",
    [b"not json", b"[1, 2]", json.dumps({"status": "done"}).encode()],
)
def test_status_endpoint_rejects_bad_payloads(tmp_path: Path, content: bytes) -> None:
    orchestrator = FakeOrchestrator()
    client = TestClient(create_app(_config(tmp_path), orchestrator))

    response = client.post("/api/status", content=content)

    assert response.status_code == 400
    assert orchestrator.submitted == []


def test_webhook_endpoint_accepts_signed_delivery(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator()
    client = TestClient(create_app(_config(tmp_path), orchestrator))
    body = json.dumps(
        {
            "action": "closed",
            "pull_request": {"number": 42, "head": {"ref": "ai-agent-issue-7-1"}},
            "repository": _repository(),
        }
    ).encode()

    response = client.post(
        "/webhook/github",
        content=body,
        headers={
            "X-Hub-Signature-256": _sign(body),
            "X-GitHub-Event": "pull_request",
            "X-GitHub-Delivery": "delivery-1",
        },
    )

    assert response.status_code == 202
    assert response.json() == {"received": True, "events": 1}
    assert orchestrator.submitted == [ClosureEvent(owner="Acme", repo="Widgets", pr_number=42)]


def test_webhook_endpoint_rejections(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator()
    client = TestClient(create_app(_config(tmp_path), orchestrator))
    body = b'{"action": "opened"}'

    missing_signature = client.post(
        "/webhook/github", content=body, headers={"X-GitHub-Event": "issues"}
    )
    bad_signature = client.post(
        "/webhook/github",
        content=body,
        headers={"X-Hub-Signature-256": _sign(body, "wrong"), "X-GitHub-Event": "issues"},
    )
    missing_event = client.post(
        "/webhook/github", content=body, headers={"X-Hub-Signature-256": _sign(body)}
    )
    bad_json = client.post(
        "/webhook/github",
        content=b"{nope",
        headers={"X-Hub-Signature-256": _sign(b"{nope"), "X-GitHub-Event": "issues"},
    )

    assert missing_signature.status_code == 401
    assert bad_signature.status_code == 401
    assert missing_event.status_code == 400
    assert bad_json.status_code == 400
    assert orchestrator.submitted == []


def test_webhook_endpoint_requires_configured_secret(tmp_path: Path) -> None:
    client = TestClient(create_app(_config(tmp_path, secret=None), FakeOrchestrator()))
    body = b"{}"

    response = client.post(
        "/webhook/github",
        content=body,
        headers={"X-Hub-Signature-256": _sign(body), "X-GitHub-Event": "issues"},
    )

    assert response.status_code == 503


def test_managed_app_starts_and_stops_orchestrator(tmp_path: Path) -> None:
    orchestrator = FakeOrchestrator()
    app = create_app(_config(tmp_path), orchestrator, manage_orchestrator=True)

    with TestClient(app) as client:
        assert orchestrator.started == 1
        assert client.get("/health").status_code == 200

    assert orchestrator.stopped == 1
