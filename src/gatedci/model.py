# model.py
from __future__ import annotations

import itertools
import json
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


# ---------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # own condition did not hold
    SKIPPED = "skipped"
    # a required predecessor failed, was skipped or was cancelled
    SKIPPED_BY_DEPENDENCY = "skipped_by_dependency"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)

    @property
    def is_skipped(self) -> bool:
        return self in (RunStatus.SKIPPED, RunStatus.SKIPPED_BY_DEPENDENCY)


# ---------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------

EVENT_ALIASES = {
    "push": "push",
    "pull_request": "pull_request",
    "pull-request": "pull_request",
    "pr": "pull_request",
    "workflow_dispatch": "workflow_dispatch",
    "manual-dispatch": "workflow_dispatch",
    "manual_dispatch": "workflow_dispatch",
    "manual": "workflow_dispatch",
}


def normalize_event(kind: str) -> str:
    """Map an event kind (or one of its aliases) onto its canonical name."""
    try:
        return EVENT_ALIASES[str(kind).strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown event kind {kind!r}. Known: {sorted(set(EVENT_ALIASES.values()))}"
        ) from None


def _frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class TriggerContext:
    """
    What started this run: event kind, branch, commit and manual inputs.

    Secrets travel here too. The context is read-only and is handed
    explicitly to whoever needs it; there is no global context object.
    """
    event: str
    branch: str = ""
    sha: str = ""
    inputs: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event", normalize_event(self.event))
        object.__setattr__(self, "inputs", _frozen_mapping(self.inputs))
        object.__setattr__(self, "secrets", _frozen_mapping(self.secrets))

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}" if self.branch else ""

    def as_scope(self) -> Dict[str, Any]:
        """Values reachable from `${{ trigger.* }}` expressions."""
        return {
            "event": self.event,
            "branch": self.branch,
            "ref": self.ref,
            "sha": self.sha,
            "inputs": dict(self.inputs),
        }


@dataclass(frozen=True)
class Trigger:
    """One entry of the pipeline-level `on:` filter."""
    event: str
    branches: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "event", normalize_event(self.event))


# ---------------------------------------------------------------------
# Conditions / matrix
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    """
    Predicate over the trigger context. Both parts must hold; an empty part
    always holds. `branches` are glob patterns.
    """
    events: Tuple[str, ...] = ()
    branches: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "events", tuple(normalize_event(e) for e in self.events))
        object.__setattr__(self, "branches", tuple(self.branches))

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.branches

    def describe(self) -> str:
        parts = []
        if self.events:
            parts.append("event in " + "|".join(self.events))
        if self.branches:
            parts.append("branch matches " + "|".join(self.branches))
        return " and ".join(parts) or "always"


def format_axis_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(value)


@dataclass(frozen=True)
class Variant:
    """One point of a matrix: an ordered axis -> value assignment."""
    assignment: Tuple[Tuple[str, Any], ...] = ()

    @property
    def key(self) -> str:
        return ",".join(f"{axis}={format_axis_value(v)}" for axis, v in self.assignment)

    @property
    def axes(self) -> Tuple[str, ...]:
        return tuple(axis for axis, _ in self.assignment)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.assignment)

    def get(self, axis: str, default: Any = None) -> Any:
        for name, value in self.assignment:
            if name == axis:
                return value
        return default


@dataclass(frozen=True)
class Matrix:
    """
    axis -> ordered values. The cross product (minus `exclude` entries,
    each a partial assignment) gives the variants. No axes -> one variant.
    """
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    exclude: Tuple[Tuple[Tuple[str, Any], ...], ...] = ()

    def variants(self) -> list[Variant]:
        if not self.axes:
            return [Variant()]
        names = [name for name, _ in self.axes]
        out: list[Variant] = []
        for combo in itertools.product(*(values for _, values in self.axes)):
            assignment = tuple(zip(names, combo))
            if any(self._excluded(assignment, ex) for ex in self.exclude):
                continue
            out.append(Variant(assignment))
        return out

    @staticmethod
    def _excluded(assignment: Tuple[Tuple[str, Any], ...], partial: Tuple[Tuple[str, Any], ...]) -> bool:
        values = dict(assignment)
        return all(axis in values and values[axis] == v for axis, v in partial)


# ---------------------------------------------------------------------
# Steps / actions / stages
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single step inside a stage: either `uses` an action (with string
    inputs) or `run`s a command under a shell.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    shell: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    condition: Optional[Condition] = None
    # runs even after an earlier step failed
    always: bool = False

    @property
    def kind(self) -> str:
        return "uses" if self.uses is not None else "run"


@dataclass(frozen=True)
class ActionInput:
    required: bool = False
    default: str | None = None
    description: str = ""


@dataclass(frozen=True)
class ContainerAction:
    """
    A container-backed action declared in the pipeline itself.

    `image`, `env` (names and values), `args` and `build_args` are
    templates over `${{ inputs.* }}`. `version_input` names the input that
    pins the image's dependency version.
    """
    id: str
    image: str
    dockerfile: str | None = None
    context: str = "."
    inputs: Mapping[str, ActionInput] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    args: Tuple[str, ...] = ()
    build_args: Mapping[str, str] = field(default_factory=dict)
    entrypoint: str | None = None
    version_input: str | None = None
    description: str = ""


_DRIVE = re.compile(r"^[A-Za-z]:")


def check_relative_pattern(pattern: str) -> str:
    """Artifact paths and coverage globs stay inside the tree they are resolved against."""
    text = pattern.strip().replace("\\", "/")
    if text.startswith("/") or _DRIVE.match(text):
        raise ValueError(f"path pattern {pattern!r} must be relative, not absolute")
    if ".." in text.split("/"):
        raise ValueError(f"path pattern {pattern!r} must not contain '..'")
    return pattern


@dataclass(frozen=True)
class CoverageSpec:
    # globs under the job's own coverage dir (GATEDCI_COVERAGE_DIR)
    fragments: Tuple[str, ...] = ("**/*.lcov",)
    exclude: Tuple[str, ...] = ()
    ignore_not_existing: bool = True
    # workspace-relative; matrix jobs get the variant appended to the file name
    output: str = "lcov.info"
    upload: bool = True


PAIRING_POLICIES = ("stage", "variant")


@dataclass(frozen=True)
class Stage:
    id: str
    steps: Tuple[Step, ...]
    name: str | None = None
    needs: Tuple[str, ...] = ()
    condition: Optional[Condition] = None
    matrix: Matrix = field(default_factory=Matrix)
    runs_on: str = "ubuntu-latest"
    container: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    # artifact name (template) -> path glob relative to the workspace
    artifacts: Mapping[str, str] = field(default_factory=dict)
    coverage: Optional[CoverageSpec] = None
    fail_fast: bool = False
    pairing: str = "stage"

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class PipelineDefinition:
    """A whole pipeline. Built once at load time and never mutated."""
    name: str
    stages: Tuple[Stage, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    actions: Mapping[str, ContainerAction] = field(default_factory=dict)
    triggers: Tuple[Trigger, ...] = ()

    @property
    def stage_ids(self) -> list[str]:
        return [s.id for s in self.stages]

    def stage(self, stage_id: str) -> Stage:
        for s in self.stages:
            if s.id == stage_id:
                return s
        raise KeyError(stage_id)


# ---------------------------------------------------------------------
# Jobs / environments / artifacts
# ---------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class JobKey:
    stage: str
    variant: str = ""

    def __str__(self) -> str:
        return f"{self.stage} [{self.variant}]" if self.variant else self.stage


@dataclass(frozen=True)
class Job:
    """A stage instantiated for one matrix variant."""
    stage: Stage
    variant: Variant

    @property
    def key(self) -> JobKey:
        return JobKey(self.stage.id, self.variant.key)

    @property
    def name(self) -> str:
        return str(self.key)


@dataclass(frozen=True)
class ContainerSpec:
    image: str
    mounts: Tuple[str, ...] = ()
    workdir: str = "/workspace"
    env: Mapping[str, str] = field(default_factory=dict)
    args: Tuple[str, ...] = ()
    entrypoint: str | None = None


@dataclass
class Environment:
    """
    Execution context owned by exactly one job. `teardown()` runs when the
    job finishes, whatever its outcome.
    """
    job: JobKey
    platform: str
    variables: Mapping[str, str]
    workspace: Path
    trigger: TriggerContext
    matrix: Mapping[str, Any] = field(default_factory=dict)
    scratch: Path | None = None
    container: ContainerSpec | None = None

    @property
    def containerized(self) -> bool:
        return self.container is not None

    @property
    def coverage_dir(self) -> Path | None:
        """Where this job's test processes drop their lcov fragments."""
        return self.scratch / "coverage" if self.scratch is not None else None

    def template_context(
        self,
        *,
        inputs: Optional[Mapping[str, str]] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Mapping[str, Any]]:
        variables = dict(self.variables)
        variables.update(env or {})
        return {
            "matrix": self.matrix,
            "env": variables,
            "inputs": dict(inputs or {}),
            "secrets": self.trigger.secrets,
            "trigger": self.trigger.as_scope(),
        }

    def teardown(self) -> None:
        if self.scratch is not None:
            shutil.rmtree(self.scratch, ignore_errors=True)
            self.scratch = None


@dataclass(frozen=True)
class Artifact:
    """
    A named output of one job. Identified by (stage, variant key, name), so
    the same name from two variants never collides.
    """
    stage: str
    variant: str
    name: str
    paths: Tuple[Path, ...]
    reference: str | None = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.stage, self.variant, self.name)
