# src/gatedci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import DefinitionError
from .model import (
    ActionInput,
    Condition,
    ContainerAction,
    CoverageSpec,
    Matrix,
    PipelineDefinition,
    Stage,
    Step,
    Trigger,
    check_relative_pattern,
)


def _strs(values: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in (values or {}).items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = str(v)
    return out


def _tuple(value: Union[str, Iterable[str], None]) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def when(*, event: Union[str, Sequence[str], None] = None, branch: Union[str, Sequence[str], None] = None) -> Condition:
    """when(event="push", branch="master")"""
    return Condition(events=_tuple(event), branches=_tuple(branch))


def run(
    cmd: str,
    *,
    name: str | None = None,
    shell: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
    cwd: str | None = None,
    condition: Optional[Condition] = None,
    always: bool = False,
) -> Step:
    """Create a command step."""
    if name is None:
        first = cmd.strip().splitlines()
        name = f"Run {first[0][:60]}" if first else "Run"
    return Step(
        name=name,
        run=cmd,
        shell=shell,
        env=_strs(env),
        working_directory=cwd,
        condition=condition,
        always=always,
    )


def uses(
    action: str,
    *,
    name: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, Any]] = None,
    condition: Optional[Condition] = None,
    always: bool = False,
    **inputs: Any,
) -> Step:
    """
    Create an action step. Inputs go as keywords; names that are not valid
    identifiers (`llvm-sys-version`) go through `with_`.
    """
    merged = _strs(with_)
    merged.update(_strs(inputs))
    return Step(
        name=name or action,
        uses=action,
        inputs=merged,
        env=_strs(env),
        condition=condition,
        always=always,
    )


# ---------------------------------------------------------------------
# Matrix / actions
# ---------------------------------------------------------------------

def matrix(*, exclude: Optional[Sequence[Mapping[str, Any]]] = None, **axes: Iterable[Any]) -> Matrix:
    """
    matrix(os=["linux", "windows"], toolchain=["stable", "nightly"],
           exclude=[{"os": "windows", "toolchain": "nightly"}])
    """
    built = []
    for axis, values in axes.items():
        values = tuple(values)
        if not values:
            raise DefinitionError(f"matrix axis '{axis}' has no values")
        built.append((axis, values))
    return Matrix(
        axes=tuple(built),
        exclude=tuple(tuple(ex.items()) for ex in exclude or ()),
    )


def container_action(
    action_id: str,
    *,
    image: str | None = None,
    dockerfile: str | None = None,
    context: str = ".",
    inputs: Optional[Mapping[str, Union[ActionInput, str, None]]] = None,
    env: Optional[Mapping[str, Any]] = None,
    args: Sequence[str] = (),
    build_args: Optional[Mapping[str, Any]] = None,
    entrypoint: str | None = None,
    version_input: str | None = None,
) -> ContainerAction:
    """
    Declare a container-backed action. Plain strings in `inputs` are
    defaults; None marks an input as required.
    """
    if not image and not dockerfile:
        raise DefinitionError(f"action '{action_id}' needs an image or a dockerfile")

    declared: Dict[str, ActionInput] = {}
    for key, spec in (inputs or {}).items():
        if isinstance(spec, ActionInput):
            declared[key] = spec
        elif spec is None:
            declared[key] = ActionInput(required=True)
        else:
            declared[key] = ActionInput(default=str(spec))

    if version_input and version_input not in declared:
        raise DefinitionError(f"action '{action_id}': version_input '{version_input}' is not a declared input")

    if not image:
        tag = f"${{{{ inputs.{version_input} }}}}" if version_input else "latest"
        image = f"gatedci-{action_id.lower()}:{tag}"

    return ContainerAction(
        id=action_id,
        image=image,
        dockerfile=dockerfile,
        context=context,
        inputs=declared,
        env=_strs(env),
        args=tuple(args),
        build_args=_strs(build_args),
        entrypoint=entrypoint,
        version_input=version_input,
    )


# ---------------------------------------------------------------------
# Stage / pipeline
# ---------------------------------------------------------------------

def stage(
    stage_id: str,
    *steps: Step,
    name: str | None = None,
    needs: Union[str, Sequence[str], None] = None,
    condition: Optional[Condition] = None,
    matrix: Optional[Matrix] = None,
    runs_on: str = "ubuntu-latest",
    container: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
    artifacts: Optional[Mapping[str, str]] = None,
    coverage: Optional[CoverageSpec] = None,
    fail_fast: bool = False,
    pairing: str = "stage",
) -> Stage:
    if not steps:
        raise DefinitionError(f"stage({stage_id!r}) must have at least one step")
    if pairing not in ("stage", "variant"):
        raise DefinitionError(f"stage({stage_id!r}): unknown pairing {pairing!r}")
    patterns = list((artifacts or {}).values()) + list(coverage.fragments if coverage else ())
    for pattern in patterns:
        try:
            check_relative_pattern(pattern)
        except ValueError as e:
            raise DefinitionError(f"stage({stage_id!r}): {e}") from None
    return Stage(
        id=stage_id,
        steps=tuple(steps),
        name=name,
        needs=_tuple(needs),
        condition=condition,
        matrix=matrix or Matrix(),
        runs_on=runs_on,
        container=container,
        env=_strs(env),
        artifacts=dict(artifacts or {}),
        coverage=coverage,
        fail_fast=fail_fast,
        pairing=pairing,
    )


def pipeline(
    name: str,
    *stages: Stage,
    env: Optional[Mapping[str, Any]] = None,
    actions: Sequence[ContainerAction] = (),
    on: Union[str, Sequence[str], Mapping[str, Sequence[str]], None] = None,
) -> PipelineDefinition:
    """
    Pipeline definition helper.

    Users can write:
        from gatedci import dsl

        PIPELINE = dsl.pipeline(
            "build",
            dsl.stage("check", dsl.run("cargo check")),
            on={"push": [], "pull_request": ["master"]},
        )
    """
    if isinstance(on, Mapping):
        triggers = tuple(Trigger(event=e, branches=_tuple(b)) for e, b in on.items())
    else:
        triggers = tuple(Trigger(event=e) for e in _tuple(on))

    ids: List[str] = [s.id for s in stages]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise DefinitionError(f"duplicate stage ids {dupes}")

    return PipelineDefinition(
        name=name,
        stages=tuple(stages),
        env=_strs(env),
        actions={a.id: a for a in actions},
        triggers=triggers,
    )
