# schema.py
"""
Pydantic models for pipeline definition sources (YAML documents or plain
dicts). They validate the raw structure and convert it into the frozen
dataclasses of `gatedci.model`.

Example:

    name: build
    on:
      push:
      pull_request:
        branches: [master]
    env:
      llvm-version: "11.0.1"
    stages:
      check:
        steps:
          - uses: checkout
          - run: cargo check
      test:
        needs: check
        matrix:
          os: [ubuntu-latest, windows-latest]
        runs-on: ${{ matrix.os }}
        steps:
          - run: cargo test
        artifacts:
          ${{ matrix.os }}-debug: target/debug
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

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
    normalize_event,
)
from .steps import SHELLS

Scalar = Union[bool, int, float, str]

STAGE_ID = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


def _texts(mapping: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): _text(v) for k, v in mapping.items()}


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ---------------------------------------------------------------------
# Conditions / steps
# ---------------------------------------------------------------------

class ConditionModel(_Model):
    event: List[str] = Field(default_factory=list)
    branch: List[str] = Field(default_factory=list)

    @field_validator("event", "branch", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)

    @field_validator("event")
    @classmethod
    def _known_events(cls, v: List[str]) -> List[str]:
        return [normalize_event(e) for e in v]

    def to_condition(self) -> Optional[Condition]:
        if not self.event and not self.branch:
            return None
        return Condition(events=tuple(self.event), branches=tuple(self.branch))


class StepModel(_Model):
    name: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Optional[Scalar]] = Field(default_factory=dict, alias="with")
    run: Optional[str] = None
    shell: Optional[str] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    condition: Optional[ConditionModel] = Field(default=None, alias="if")
    always: bool = False

    @model_validator(mode="after")
    def _one_kind(self) -> StepModel:
        if (self.uses is None) == (self.run is None):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        if self.shell is not None:
            if self.run is None:
                raise ValueError("'shell' only applies to 'run' steps")
            if self.shell not in SHELLS:
                raise ValueError(f"unknown shell {self.shell!r}; known: {sorted(SHELLS)}")
        if self.with_ and self.uses is None:
            raise ValueError("'with' only applies to 'uses' steps")
        return self

    def to_step(self) -> Step:
        if self.name:
            name = self.name
        elif self.uses is not None:
            name = self.uses
        else:
            first = (self.run or "").strip().splitlines()
            name = f"Run {first[0][:60]}" if first else "Run"
        return Step(
            name=name,
            run=self.run,
            uses=self.uses,
            inputs=_texts(self.with_),
            shell=self.shell,
            env=_texts(self.env),
            working_directory=self.working_directory,
            condition=self.condition.to_condition() if self.condition else None,
            always=self.always,
        )


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

class ActionInputModel(_Model):
    description: str = ""
    required: bool = False
    default: Optional[Scalar] = None


class ContainerActionModel(_Model):
    description: str = ""
    image: Optional[str] = None
    dockerfile: Optional[str] = None
    context: str = "."
    inputs: Dict[str, ActionInputModel] = Field(default_factory=dict)
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    args: List[Scalar] = Field(default_factory=list)
    build_args: Dict[str, Optional[Scalar]] = Field(default_factory=dict, alias="build-args")
    entrypoint: Optional[str] = None
    version_input: Optional[str] = Field(default=None, alias="version-input")

    @model_validator(mode="after")
    def _check(self) -> ContainerActionModel:
        if not self.image and not self.dockerfile:
            raise ValueError("a container action needs an 'image' or a 'dockerfile'")
        if self.version_input and self.version_input not in self.inputs:
            raise ValueError(f"version-input '{self.version_input}' is not a declared input")
        return self

    def to_action(self, action_id: str) -> ContainerAction:
        image = self.image
        if not image:
            # locally built image, tagged by the pinned version when there is one
            tag = f"${{{{ inputs.{self.version_input} }}}}" if self.version_input else "latest"
            image = f"gatedci-{action_id.lower()}:{tag}"
        return ContainerAction(
            id=action_id,
            image=image,
            dockerfile=self.dockerfile,
            context=self.context,
            inputs={
                name: ActionInput(
                    required=spec.required,
                    default=None if spec.default is None else _text(spec.default),
                    description=spec.description,
                )
                for name, spec in self.inputs.items()
            },
            env=_texts(self.env),
            args=tuple(_text(a) for a in self.args),
            build_args=_texts(self.build_args),
            entrypoint=self.entrypoint,
            version_input=self.version_input,
            description=self.description,
        )


# ---------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------

class CoverageModel(_Model):
    fragments: List[str] = Field(default_factory=lambda: ["**/*.lcov"])
    exclude: List[str] = Field(default_factory=list)
    ignore_not_existing: bool = Field(default=True, alias="ignore-not-existing")
    output: str = "lcov.info"
    upload: bool = True

    @field_validator("fragments", "exclude", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)

    @field_validator("fragments")
    @classmethod
    def _relative(cls, v: List[str]) -> List[str]:
        return [check_relative_pattern(p) for p in v]

    def to_spec(self) -> CoverageSpec:
        return CoverageSpec(
            fragments=tuple(self.fragments),
            exclude=tuple(self.exclude),
            ignore_not_existing=self.ignore_not_existing,
            output=self.output,
            upload=self.upload,
        )


class StageModel(_Model):
    id: Optional[str] = None
    name: Optional[str] = None
    needs: List[str] = Field(default_factory=list)
    condition: Optional[ConditionModel] = Field(default=None, alias="if")
    matrix: Optional[Dict[str, Any]] = None
    runs_on: str = Field(default="ubuntu-latest", alias="runs-on")
    container: Optional[str] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    steps: List[StepModel] = Field(min_length=1)
    artifacts: Dict[str, str] = Field(default_factory=dict)
    coverage: Optional[CoverageModel] = None
    fail_fast: bool = Field(default=False, alias="fail-fast")
    pairing: Literal["stage", "variant"] = "stage"

    @field_validator("needs", mode="before")
    @classmethod
    def _listify(cls, v):
        return _as_list(v)

    @field_validator("artifacts")
    @classmethod
    def _relative(cls, v: Dict[str, str]) -> Dict[str, str]:
        for pattern in v.values():
            check_relative_pattern(pattern)
        return v

    @field_validator("matrix")
    @classmethod
    def _matrix(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v is None:
            return v
        for axis, values in v.items():
            if axis == "include":
                raise ValueError("matrix 'include' is not supported; add values to an axis instead")
            if axis == "exclude":
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError("matrix 'exclude' must be a list of mappings")
                continue
            if not isinstance(values, list) or not values:
                raise ValueError(f"matrix axis '{axis}' must be a non-empty list")
        unknown = {
            k for ex in v.get("exclude", []) for k in ex if k not in v or k == "exclude"
        }
        if unknown:
            raise ValueError(f"matrix 'exclude' names unknown axes {sorted(unknown)}")
        return v

    def to_matrix(self) -> Matrix:
        if not self.matrix:
            return Matrix()
        axes = tuple((axis, tuple(values)) for axis, values in self.matrix.items() if axis != "exclude")
        exclude = tuple(tuple(ex.items()) for ex in self.matrix.get("exclude", []))
        return Matrix(axes=axes, exclude=exclude)

    def to_stage(self, stage_id: str) -> Stage:
        return Stage(
            id=stage_id,
            name=self.name,
            steps=tuple(s.to_step() for s in self.steps),
            needs=tuple(self.needs),
            condition=self.condition.to_condition() if self.condition else None,
            matrix=self.to_matrix(),
            runs_on=self.runs_on,
            container=self.container,
            env=_texts(self.env),
            artifacts=dict(self.artifacts),
            coverage=self.coverage.to_spec() if self.coverage else None,
            fail_fast=self.fail_fast,
            pairing=self.pairing,
        )


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

OnSpec = Union[str, List[str], Dict[str, Optional[Dict[str, Any]]]]


def _triggers(on: Optional[OnSpec]) -> tuple:
    if on is None:
        return ()
    if isinstance(on, str):
        return (Trigger(event=on),)
    if isinstance(on, list):
        return tuple(Trigger(event=e) for e in on)

    out = []
    for event, body in on.items():
        body = body or {}
        unknown = set(body) - {"branches"}
        if unknown:
            raise ValueError(f"unknown keys under on.{event}: {sorted(unknown)}")
        out.append(Trigger(event=event, branches=tuple(_as_list(body.get("branches")))))
    return tuple(out)


class PipelineModel(_Model):
    name: str = "pipeline"
    on: Optional[OnSpec] = None
    env: Dict[str, Optional[Scalar]] = Field(default_factory=dict)
    actions: Dict[str, ContainerActionModel] = Field(default_factory=dict)
    stages: Union[Dict[str, StageModel], List[StageModel]]

    @model_validator(mode="after")
    def _stage_ids(self) -> PipelineModel:
        if isinstance(self.stages, dict):
            for key, stage in self.stages.items():
                if stage.id is not None and stage.id != key:
                    raise ValueError(f"stage '{key}' declares a different id '{stage.id}'")
            ids = list(self.stages)
        else:
            ids = []
            for i, stage in enumerate(self.stages):
                if not stage.id:
                    raise ValueError(f"stage #{i} has no 'id'")
                ids.append(stage.id)
        if not ids:
            raise ValueError("a pipeline needs at least one stage")
        bad = [i for i in ids if not STAGE_ID.match(i)]
        if bad:
            raise ValueError(f"invalid stage ids {bad}")
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ValueError(f"duplicate stage ids {dupes}")
        return self

    def to_definition(self) -> PipelineDefinition:
        if isinstance(self.stages, dict):
            pairs = list(self.stages.items())
        else:
            pairs = [(s.id, s) for s in self.stages]
        return PipelineDefinition(
            name=self.name,
            stages=tuple(model.to_stage(stage_id) for stage_id, model in pairs),
            env=_texts(self.env),
            actions={aid: a.to_action(aid) for aid, a in self.actions.items()},
            triggers=_triggers(self.on),
        )


def _format_errors(e: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()]


def definition_from_dict(data: Any, source: str = "dict") -> PipelineDefinition:
    """Validate a raw pipeline document and build its definition."""
    if not isinstance(data, dict):
        raise DefinitionError(f"Pipeline must be a mapping, got {type(data).__name__}", source=source)

    # YAML 1.1 reads a bare `on:` key as the boolean True
    if True in data and "on" not in data:
        data = dict(data)
        data["on"] = data.pop(True)

    try:
        return PipelineModel.model_validate(data).to_definition()
    except ValidationError as e:
        raise DefinitionError(
            "Invalid pipeline definition",
            source=source,
            details={"errors": "; ".join(_format_errors(e))},
        ) from e
    except ValueError as e:
        raise DefinitionError(str(e), source=source) from e
