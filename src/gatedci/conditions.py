# conditions.py
from __future__ import annotations

from enum import Enum
from fnmatch import fnmatchcase
from typing import List, Mapping, Optional, Sequence

from .model import Condition, JobKey, RunStatus, Trigger, TriggerContext


class Decision(str, Enum):
    RUN = "run"
    # own condition does not hold
    SKIP = "skip"
    # some predecessor job did not succeed
    SKIP_UPSTREAM = "skip_upstream"


def _branch_matches(branch: str, patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(branch, p) for p in patterns)


def matches(condition: Optional[Condition], trigger: TriggerContext) -> bool:
    """Event/branch predicate. No condition means always."""
    if condition is None or condition.is_empty:
        return True
    if condition.events and trigger.event not in condition.events:
        return False
    if condition.branches and not _branch_matches(trigger.branch, condition.branches):
        return False
    return True


def blocking_upstream(upstream: Mapping[JobKey, RunStatus]) -> List[JobKey]:
    return sorted(k for k, s in upstream.items() if s is not RunStatus.SUCCEEDED)


def evaluate(
    condition: Optional[Condition],
    trigger: TriggerContext,
    upstream: Mapping[JobKey, RunStatus],
) -> Decision:
    """
    Decide whether a job runs, once its dependencies resolved.

    `upstream` is the status snapshot of the job's dependency jobs; all of
    them must be terminal. A skipped, failed or cancelled predecessor never
    counts as satisfied.
    """
    unresolved = sorted(k for k, s in upstream.items() if not s.is_terminal)
    if unresolved:
        raise ValueError(f"Condition evaluated before dependencies resolved: {[str(k) for k in unresolved]}")

    if blocking_upstream(upstream):
        return Decision.SKIP_UPSTREAM
    return Decision.RUN if matches(condition, trigger) else Decision.SKIP


def trigger_matches(triggers: Sequence[Trigger], trigger: TriggerContext) -> bool:
    """Pipeline-level `on:` filter. No entries accepts every trigger."""
    if not triggers:
        return True
    for t in triggers:
        if t.event != trigger.event:
            continue
        if not t.branches or _branch_matches(trigger.branch, t.branches):
            return True
    return False
