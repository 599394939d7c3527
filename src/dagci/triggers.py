"""
Trigger evaluation: decide whether a repository event starts a run.

Branch filters are an explicit enumeration (exact string match, no globbing).
Pull-request action names are taken as configured; names the hosting
platform does not know are reported, never corrected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .model import EventKind, TriggerEvent

logger = logging.getLogger(__name__)


KNOWN_PULL_REQUEST_ACTIONS = frozenset({
    "opened",
    "reopened",
    "synchronize",
    "closed",
    "edited",
    "assigned",
    "unassigned",
    "labeled",
    "unlabeled",
    "ready_for_review",
    "converted_to_draft",
    "review_requested",
    "review_request_removed",
    "auto_merge_enabled",
    "auto_merge_disabled",
    "locked",
    "unlocked",
})


class Verdict(str, Enum):
    ADMIT = "admit"
    REJECT = "reject"


@dataclass(frozen=True)
class TriggerDecision:
    verdict: Verdict
    reason: str

    @property
    def admitted(self) -> bool:
        return self.verdict == Verdict.ADMIT

    def __bool__(self) -> bool:
        return self.admitted


@dataclass(frozen=True)
class TriggerRule:
    """One event kind with optional branch and action filters (None = any)."""
    kind: str
    branches: Optional[List[str]] = None
    actions: Optional[List[str]] = None


@dataclass
class TriggerConfig:
    rules: Dict[str, TriggerRule] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.rules

    def add(self, rule: TriggerRule) -> TriggerConfig:
        self.rules[rule.kind] = rule
        return self

    def unknown_actions(self) -> List[str]:
        rule = self.rules.get(EventKind.PULL_REQUEST.value)
        if rule is None or rule.actions is None:
            return []
        return [a for a in rule.actions if a not in KNOWN_PULL_REQUEST_ACTIONS]


class TriggerEvaluator:
    def __init__(self, config: TriggerConfig):
        self.config = config
        for action in config.unknown_actions():
            logger.warning(
                "pull_request trigger lists unknown action %r; events with that "
                "action will never arrive and it is kept as configured",
                action,
            )

    def evaluate(self, event: TriggerEvent) -> TriggerDecision:
        decision = self._decide(event)
        if decision.admitted:
            logger.info("trigger admitted %s: %s", _describe(event), decision.reason)
        else:
            logger.warning("trigger rejected %s: %s", _describe(event), decision.reason)
        return decision

    def _decide(self, event: TriggerEvent) -> TriggerDecision:
        if self.config.empty:
            return TriggerDecision(Verdict.ADMIT, "no trigger rules configured (manual run)")

        rule = self.config.rules.get(event.kind)
        if rule is None:
            return TriggerDecision(
                Verdict.REJECT,
                f"event kind {event.kind!r} is not configured (configured: {sorted(self.config.rules)})",
            )

        if rule.branches is not None and event.branch not in rule.branches:
            return TriggerDecision(
                Verdict.REJECT,
                f"branch {event.branch!r} not in configured branches {rule.branches}",
            )

        if event.kind == EventKind.PULL_REQUEST.value and rule.actions is not None:
            if event.action is None:
                return TriggerDecision(Verdict.REJECT, "pull_request event carries no action")
            if event.action not in rule.actions:
                reason = f"action {event.action!r} not in configured actions {rule.actions}"
                unknown = self.config.unknown_actions()
                if unknown:
                    reason += f" (configured list contains unknown action(s) {unknown})"
                return TriggerDecision(Verdict.REJECT, reason)

        return TriggerDecision(Verdict.ADMIT, f"matched {event.kind} rule")


def _describe(event: TriggerEvent) -> str:
    if event.action:
        return f"{event.kind}[{event.action}]@{event.branch}"
    return f"{event.kind}@{event.branch}"
