from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal, cast

from issuepilot.models import WorkStatus


TransitionOutcome = Literal["applied", "heartbeat", "rejected"]

MAIN_CHAIN: Final[tuple[WorkStatus, ...]] = (
    "starting",
    "cloning",
    "analyzing",
    "developing",
    "testing",
    "pr_created",
    "awaiting_review",
)
REVIEW_LOOP: Final[frozenset[WorkStatus]] = frozenset({"awaiting_review", "iterating"})
TERMINAL_STATUSES: Final[frozenset[WorkStatus]] = frozenset({"done", "error", "aborted"})
ALL_STATUSES: Final[frozenset[str]] = frozenset(
    (*MAIN_CHAIN, "iterating", *TERMINAL_STATUSES)
)


def is_terminal(status: WorkStatus) -> bool:
    return status in TERMINAL_STATUSES


def coerce_status(value: str) -> WorkStatus | None:
    normalized = value.strip().lower()
    if normalized not in ALL_STATUSES:
        return None
    return cast(WorkStatus, normalized)


@dataclass(frozen=True)
class Lifecycle:
    """Legal moves between work statuses.

    The main chain only moves forward but may skip states. ``iterating`` and
    ``awaiting_review`` alternate freely, any live status may end in a terminal
    one, and nothing leaves a terminal status.
    """

    def classify(self, current: WorkStatus, target: WorkStatus) -> TransitionOutcome:
        if current == target:
            return "heartbeat"
        if is_terminal(current):
            return "rejected"
        if is_terminal(target):
            return "applied"
        if current in REVIEW_LOOP and target in REVIEW_LOOP:
            return "applied"
        if _rank(target) > _rank(current):
            return "applied"
        return "rejected"

    def validate(
        self, current: WorkStatus, target: WorkStatus, *, error: str | None
    ) -> TransitionOutcome:
        if target == "error" and current != "error" and not (error and error.strip()):
            raise ValueError("A transition to error requires a non-empty cause")
        return self.classify(current, target)


def _rank(status: WorkStatus) -> int:
    if status == "iterating":
        return MAIN_CHAIN.index("awaiting_review")
    return MAIN_CHAIN.index(status)
