from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Final, Literal

from issuepilot.lifecycle import is_terminal
from issuepilot.models import ActiveIssue, ReviewEvent, WorkKey
from issuepilot.observability import log_event
from issuepilot.registry import ActiveWorkRegistry


LOGGER = logging.getLogger("issuepilot.correlator")

AGENT_BRANCH_PREFIX: Final[str] = "ai-agent-issue-"
ITERATE_REVIEW_STATES: Final[frozenset[str]] = frozenset({"CHANGES_REQUESTED", "COMMENTED"})
_BOT_SUFFIXES: Final[tuple[str, ...]] = ("[bot]", "-bot", "bot", "agent", "ai-agent")
_AGENT_BRANCH = re.compile(rf"^{re.escape(AGENT_BRANCH_PREFIX)}(\d+)(?:-.*)?$")

RouteOutcome = Literal["iterating", "ignored_state", "ignored_bot", "unknown_pr", "rejected"]


def is_bot_login(login: str | None) -> bool:
    if not login:
        return True
    normalized = login.strip().lower()
    if not normalized:
        return True
    return normalized.endswith(_BOT_SUFFIXES)


def is_agent_branch(branch: str) -> bool:
    return branch.startswith(AGENT_BRANCH_PREFIX)


def issue_number_from_branch(branch: str) -> int | None:
    match = _AGENT_BRANCH.match(branch.strip())
    if match is None:
        return None
    return int(match.group(1))


def agent_branch_name(issue_number: int, suffix: str) -> str:
    return f"{AGENT_BRANCH_PREFIX}{issue_number}-{suffix}"


@dataclass(frozen=True)
class ReviewRouting:
    outcome: RouteOutcome
    unit: ActiveIssue | None = None


class Correlator:
    """Maps agent pull requests back to the work unit that opened them."""

    def __init__(self, registry: ActiveWorkRegistry) -> None:
        self._registry = registry

    def attach(self, key: WorkKey, pr_number: int) -> bool:
        if not self._registry.correlate(key, pr_number):
            log_event(LOGGER, "pr_correlation_skipped", work=key, pr_number=pr_number)
            return False
        unit = self._registry.get(key)
        if unit is not None and not is_terminal(unit.status):
            outcome = self._registry.update_status(key, "pr_created")
            if outcome == "rejected":
                # Already past pr_created; the PR number is still recorded.
                self._registry.record_heartbeat(key)
        log_event(LOGGER, "pr_correlated", work=key, pr_number=pr_number)
        return True

    def lookup(self, owner: str, repo: str, pr_number: int) -> ActiveIssue | None:
        return self._registry.lookup_pull_request(owner, repo, pr_number)

    def route_review(self, event: ReviewEvent) -> ReviewRouting:
        unit = self.lookup(event.owner, event.repo, event.pr_number)
        if unit is None:
            return ReviewRouting(outcome="unknown_pr")
        if is_bot_login(event.author):
            return ReviewRouting(outcome="ignored_bot", unit=unit)
        if event.state.upper() not in ITERATE_REVIEW_STATES:
            log_event(
                LOGGER,
                "review_routed",
                work=unit.key,
                pr_number=event.pr_number,
                review_state=event.state,
                action="none",
            )
            return ReviewRouting(outcome="ignored_state", unit=unit)
        outcome = self._registry.update_status(unit.key, "iterating")
        if outcome == "rejected":
            return ReviewRouting(outcome="rejected", unit=unit)
        log_event(
            LOGGER,
            "review_routed",
            work=unit.key,
            pr_number=event.pr_number,
            review_state=event.state,
            action="iterate",
        )
        return ReviewRouting(outcome="iterating", unit=self._registry.get(unit.key) or unit)
