from __future__ import annotations

import pytest

from gatedci.conditions import Decision, evaluate, matches, trigger_matches
from gatedci.model import Condition, JobKey, RunStatus, Trigger, TriggerContext

PUSH_MASTER = TriggerContext(event="push", branch="master")
PR_FEATURE = TriggerContext(event="pull_request", branch="feature/x")


@pytest.mark.parametrize(
    "condition, trigger, expected",
    [
        (None, PUSH_MASTER, True),
        (Condition(), PR_FEATURE, True),
        (Condition(events=("push",), branches=("master",)), PUSH_MASTER, True),
        (Condition(events=("push",), branches=("master",)), PR_FEATURE, False),
        (Condition(events=("push",)), TriggerContext(event="push", branch="dev"), True),
        (Condition(branches=("feature/*",)), PR_FEATURE, True),
        (Condition(branches=("release-*",)), PR_FEATURE, False),
        (Condition(events=("manual",)), TriggerContext(event="workflow_dispatch"), True),
    ],
)
def test_matches(condition, trigger, expected):
    assert matches(condition, trigger) is expected


def test_no_upstream_and_condition_holds_runs():
    assert evaluate(None, PUSH_MASTER, {}) is Decision.RUN


def test_condition_not_met_is_a_plain_skip():
    cond = Condition(events=("push",), branches=("master",))
    assert evaluate(cond, PR_FEATURE, {JobKey("test"): RunStatus.SUCCEEDED}) is Decision.SKIP


@pytest.mark.parametrize(
    "upstream",
    [RunStatus.FAILED, RunStatus.SKIPPED, RunStatus.SKIPPED_BY_DEPENDENCY, RunStatus.CANCELLED],
)
def test_unsuccessful_upstream_skips_by_dependency(upstream):
    deps = {JobKey("test", "os=linux"): RunStatus.SUCCEEDED, JobKey("test", "os=windows"): upstream}
    # upstream wins over the job's own condition
    assert evaluate(Condition(events=("push",)), PR_FEATURE, deps) is Decision.SKIP_UPSTREAM


def test_evaluating_before_upstream_is_terminal_is_an_error():
    with pytest.raises(ValueError, match="before dependencies resolved"):
        evaluate(None, PUSH_MASTER, {JobKey("test"): RunStatus.RUNNING})


def test_trigger_filter():
    triggers = (Trigger("push"), Trigger("pull_request", ("master",)))
    assert trigger_matches(triggers, PUSH_MASTER)
    assert trigger_matches(triggers, TriggerContext(event="pull_request", branch="master"))
    assert not trigger_matches(triggers, PR_FEATURE)
    assert not trigger_matches(triggers, TriggerContext(event="workflow_dispatch"))
    assert trigger_matches((), PR_FEATURE)


def test_trigger_context_is_read_only():
    ctx = TriggerContext(event="pr", branch="b", inputs={"level": "1"}, secrets={"TOKEN": "s3cret"})
    assert ctx.event == "pull_request"
    with pytest.raises(TypeError):
        ctx.inputs["level"] = "2"
    assert "s3cret" not in repr(ctx)
