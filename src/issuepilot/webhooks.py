from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import cast

from fastapi import FastAPI, Header, HTTPException, Request

from issuepilot.config import AppConfig, RepoConfig
from issuepilot.correlator import (
    ITERATE_REVIEW_STATES,
    is_agent_branch,
    is_bot_login,
    issue_number_from_branch,
)
from issuepilot.models import (
    AbortEvent,
    ClosureEvent,
    OrchestratorEvent,
    PullRequestOpenedEvent,
    ReviewEvent,
    StatusUpdate,
    TriggerEvent,
)
from issuepilot.observability import log_event, log_warning
from issuepilot.orchestrator import Orchestrator


LOGGER = logging.getLogger("issuepilot.webhooks")


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a GitHub ``X-Hub-Signature-256`` header. Never raises."""
    if not signature or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), msg=payload, digestmod=hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def parse_github_event(
    event_name: str, payload: Mapping[str, object], config: AppConfig
) -> list[OrchestratorEvent]:
    repository = _as_dict(payload.get("repository"))
    owner = _as_str(_as_dict(repository.get("owner")).get("login"))
    name = _as_str(repository.get("name"))
    repo = config.repo_for(owner, name) if owner and name else None
    if repo is None:
        return []

    action = _as_str(payload.get("action"))
    if event_name == "issues":
        return _parse_issues_event(action, payload, repo)
    if event_name == "issue_comment":
        return _parse_issue_comment_event(action, payload, repo)
    if event_name == "pull_request":
        return _parse_pull_request_event(action, payload, repo)
    if event_name == "pull_request_review":
        return _parse_review_event(action, payload, repo)
    return []


def parse_status_update(payload: Mapping[str, object]) -> StatusUpdate:
    runtime_id = _as_str(payload.get("container_id") or payload.get("runtime_id"))
    status = _as_str(payload.get("status"))
    if not runtime_id:
        raise ValueError("container_id is required")
    if not status:
        raise ValueError("status is required")
    details = _as_dict(payload.get("details"))
    pr_number_raw = details.get("pr_number")
    pr_number: int | None = None
    if isinstance(pr_number_raw, int) and not isinstance(pr_number_raw, bool):
        pr_number = pr_number_raw
    elif isinstance(pr_number_raw, str) and pr_number_raw.isdigit():
        pr_number = int(pr_number_raw)
    return StatusUpdate(
        runtime_id=runtime_id,
        status=status,
        message=_as_str(payload.get("message")),
        timestamp=_as_str(payload.get("timestamp")),
        pr_number=pr_number,
    )


def create_app(
    config: AppConfig,
    orchestrator: Orchestrator,
    *,
    manage_orchestrator: bool = False,
) -> FastAPI:
    started_monotonic = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _ = app
        if manage_orchestrator:
            orchestrator.start()
        try:
            yield
        finally:
            if manage_orchestrator:
                orchestrator.stop()

    app = FastAPI(title="issuepilot", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "uptime_seconds": round(time.monotonic() - started_monotonic, 3),
        }

    @app.get("/api/stats")
    def stats() -> dict[str, object]:
        body = orchestrator.registry.stats().to_dict()
        body["work"] = [
            {
                "key": str(unit.key),
                "status": unit.status,
                "pr_number": unit.pr_number,
                "branch": unit.branch_name,
                "started_at": unit.started_at.isoformat(),
            }
            for unit in orchestrator.registry.all()
        ]
        return body

    @app.post("/api/status")
    async def status_report(request: Request) -> dict[str, object]:
        try:
            payload = json.loads(await request.body())
            update = parse_status_update(_as_dict(payload))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        log_event(
            LOGGER,
            "status_update_received",
            runtime_id=update.runtime_id[:12],
            status=update.status,
            pr_number=update.pr_number,
        )
        orchestrator.submit(update)
        return {"received": True}

    @app.post("/webhook/github", status_code=202)
    async def github_webhook(
        request: Request,
        x_hub_signature_256: str | None = Header(None),
        x_github_event: str | None = Header(None),
        x_github_delivery: str | None = Header(None),
    ) -> dict[str, object]:
        body = await request.body()
        if config.server.webhook_secret is None:
            raise HTTPException(status_code=503, detail="Webhook secret is not configured")
        if not x_hub_signature_256:
            log_warning(LOGGER, "webhook_rejected", reason="missing_signature")
            raise HTTPException(status_code=401, detail="Missing signature header")
        if not verify_signature(body, x_hub_signature_256, config.server.webhook_secret):
            log_warning(LOGGER, "webhook_rejected", reason="invalid_signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
        if not x_github_event:
            raise HTTPException(status_code=400, detail="Missing GitHub event header")
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

        events = parse_github_event(x_github_event, _as_dict(payload), config)
        for event in events:
            orchestrator.submit(event)
        log_event(
            LOGGER,
            "webhook_received",
            github_event=x_github_event,
            delivery_id=x_github_delivery,
            event_count=len(events),
        )
        return {"received": True, "events": len(events)}

    return app


def _parse_issues_event(
    action: str, payload: Mapping[str, object], repo: RepoConfig
) -> list[OrchestratorEvent]:
    issue = _as_dict(payload.get("issue"))
    number = _as_int(issue.get("number"))
    if number is None:
        return []
    if action == "closed":
        return [
            AbortEvent(
                owner=repo.owner,
                repo=repo.name,
                issue_number=number,
                reason="Issue was closed",
            )
        ]
    if action not in {"opened", "edited"}:
        return []
    body = _as_str(issue.get("body"))
    author = _as_str(_as_dict(issue.get("user")).get("login"))
    if not repo.is_trigger(body) or is_bot_login(author):
        return []
    return [
        TriggerEvent(
            owner=repo.owner,
            repo=repo.name,
            issue_number=number,
            title=_as_str(issue.get("title")),
            body=body,
            source_id=number,
            source="webhook_issue",
        )
    ]


def _parse_issue_comment_event(
    action: str, payload: Mapping[str, object], repo: RepoConfig
) -> list[OrchestratorEvent]:
    if action != "created":
        return []
    issue = _as_dict(payload.get("issue"))
    comment = _as_dict(payload.get("comment"))
    number = _as_int(issue.get("number"))
    comment_id = _as_int(comment.get("id"))
    if number is None or comment_id is None or "pull_request" in issue:
        return []
    author = _as_str(_as_dict(comment.get("user")).get("login"))
    if is_bot_login(author) or not repo.is_trigger(_as_str(comment.get("body"))):
        return []
    return [
        TriggerEvent(
            owner=repo.owner,
            repo=repo.name,
            issue_number=number,
            title=_as_str(issue.get("title")),
            body=_as_str(issue.get("body")),
            source_id=comment_id,
            source="webhook_comment",
        )
    ]


def _parse_pull_request_event(
    action: str, payload: Mapping[str, object], repo: RepoConfig
) -> list[OrchestratorEvent]:
    pull = _as_dict(payload.get("pull_request"))
    number = _as_int(pull.get("number"))
    if number is None:
        return []
    if action == "closed":
        return [ClosureEvent(owner=repo.owner, repo=repo.name, pr_number=number)]
    if action != "opened":
        return []
    branch = _as_str(_as_dict(pull.get("head")).get("ref"))
    issue_number = issue_number_from_branch(branch) if is_agent_branch(branch) else None
    if issue_number is None:
        return []
    return [
        PullRequestOpenedEvent(
            owner=repo.owner,
            repo=repo.name,
            pr_number=number,
            issue_number=issue_number,
            branch=branch,
        )
    ]


def _parse_review_event(
    action: str, payload: Mapping[str, object], repo: RepoConfig
) -> list[OrchestratorEvent]:
    if action != "submitted":
        return []
    pull = _as_dict(payload.get("pull_request"))
    review = _as_dict(payload.get("review"))
    number = _as_int(pull.get("number"))
    review_id = _as_int(review.get("id"))
    if number is None or review_id is None:
        return []
    state = _as_str(review.get("state")).upper()
    author = _as_str(_as_dict(review.get("user")).get("login"))
    if state not in ITERATE_REVIEW_STATES or is_bot_login(author):
        return []
    return [
        ReviewEvent(
            owner=repo.owner,
            repo=repo.name,
            pr_number=number,
            review_id=review_id,
            state=state,
            body=_as_str(review.get("body")),
            author=author,
        )
    ]


def _as_dict(value: object) -> dict[str, object]:
    if not isinstance(value, dict):
        return {}
    return cast(dict[str, object], value)


def _as_str(value: object) -> str:
    if isinstance(value, str):
        return value
    return ""


def _as_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
