from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from gatedci.dag import build_job_graph
from gatedci.errors import DefinitionError
from gatedci.loader import find_pipeline_files, load_pipeline, load_pipeline_from_dict
from gatedci.model import Condition, PipelineDefinition, Trigger


def write(tmp_path, text, name="gatedci.yml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


FULL = """
    name: build
    on:
      push:
      pull_request:
        branches: [master]
    env:
      toolchain-version: "1.70"
    actions:
      llvm-env:
        dockerfile: docker/Dockerfile
        version-input: llvm-sys-version
        inputs:
          llvm-sys-version:
            default: "11"
        env:
          "LLVM_SYS_${{ inputs.llvm-sys-version }}0_PREFIX": /usr/lib/llvm
        build-args:
          LLVM_VER: "${{ inputs.llvm-sys-version }}"
    stages:
      check:
        steps:
          - uses: checkout
          - run: cargo check
      test:
        needs: check
        fail-fast: false
        matrix:
          config:
            - {os: ubuntu-latest, dir: linux}
            - {os: windows-latest, dir: windows}
        runs-on: "${{ matrix.config.os }}"
        steps:
          - name: Test
            run: cargo test
            shell: bash
        artifacts:
          "${{ matrix.config.dir }}-debug": target/debug
      deploy:
        needs: [test]
        if:
          event: push
          branch: master
        steps:
          - uses: llvm-env
            with:
              llvm-sys-version: 11
"""


def test_yaml_pipeline_is_converted_into_definition(tmp_path):
    definition = load_pipeline(write(tmp_path, FULL))

    assert isinstance(definition, PipelineDefinition)
    assert definition.name == "build"
    assert definition.stage_ids == ["check", "test", "deploy"]
    assert definition.triggers == (Trigger("push"), Trigger("pull_request", ("master",)))
    assert definition.env == {"toolchain-version": "1.70"}

    test = definition.stage("test")
    assert test.needs == ("check",)
    assert test.runs_on == "${{ matrix.config.os }}"
    assert test.fail_fast is False
    assert [v.get("config")["dir"] for v in test.matrix.variants()] == ["linux", "windows"]
    assert test.artifacts == {"${{ matrix.config.dir }}-debug": "target/debug"}
    assert test.steps[0].shell == "bash"

    deploy = definition.stage("deploy")
    assert deploy.condition == Condition(events=("push",), branches=("master",))
    assert deploy.steps[0].uses == "llvm-env"
    assert deploy.steps[0].inputs == {"llvm-sys-version": "11"}


def test_container_action_defaults(tmp_path):
    action = load_pipeline(write(tmp_path, FULL)).actions["llvm-env"]

    assert action.image == "gatedci-llvm-env:${{ inputs.llvm-sys-version }}"
    assert action.inputs["llvm-sys-version"].default == "11"
    assert action.version_input == "llvm-sys-version"
    assert action.build_args == {"LLVM_VER": "${{ inputs.llvm-sys-version }}"}


def test_unnamed_steps_get_a_name():
    definition = load_pipeline_from_dict(
        {"stages": {"a": {"steps": [{"run": "make all\nmake check"}, {"uses": "checkout"}]}}}
    )
    names = [s.name for s in definition.stage("a").steps]
    assert names == ["Run make all", "checkout"]


def test_stage_list_form_and_snake_case_keys():
    definition = load_pipeline_from_dict(
        {
            "name": "list",
            "stages": [
                {"id": "a", "steps": [{"run": "true"}]},
                {"id": "b", "needs": "a", "runs_on": "windows-latest", "fail_fast": True,
                 "steps": [{"run": "true", "working_directory": "sub"}]},
            ],
        }
    )
    b = definition.stage("b")
    assert b.needs == ("a",)
    assert b.runs_on == "windows-latest"
    assert b.fail_fast is True
    assert b.steps[0].working_directory == "sub"


def test_env_values_are_strings():
    definition = load_pipeline_from_dict(
        {"env": {"RUST_BACKTRACE": 1, "CI_STRICT": True}, "stages": {"a": {"steps": [{"run": "true"}]}}}
    )
    assert definition.env == {"RUST_BACKTRACE": "1", "CI_STRICT": "true"}


@pytest.mark.parametrize(
    "stages, expected",
    [
        ({"a": {"steps": [{"run": "x", "uses": "checkout"}]}}, "exactly one of 'uses' or 'run'"),
        ({"a": {"steps": [{"name": "nothing"}]}}, "exactly one of 'uses' or 'run'"),
        ({"a": {"steps": [{"run": "x"}], "bogus": 1}}, "Extra inputs"),
        ({"a": {"steps": []}}, "at least 1 item"),
        ({"a": {"steps": [{"run": "x"}], "matrix": {"os": []}}}, "matrix axis 'os' must be a non-empty list"),
        ({"a": {"steps": [{"run": "x", "shell": "fish"}]}}, "unknown shell"),
        ({"a": {"steps": [{"run": "x"}], "if": {"event": "tag"}}}, "Unknown event kind"),
        ([{"id": "a", "steps": [{"run": "x"}]}, {"id": "a", "steps": [{"run": "y"}]}], "duplicate stage ids"),
        ({"a": {"steps": [{"run": "x"}], "artifacts": {"logs": "/tmp/x/*.log"}}}, "must be relative"),
        ({"a": {"steps": [{"run": "x"}], "artifacts": {"logs": "../outside"}}}, "must not contain '..'"),
        ({"a": {"steps": [{"run": "x"}], "coverage": {"fragments": "C:/cov/*.lcov"}}}, "must be relative"),
    ],
)
def test_malformed_definitions_are_rejected(stages, expected):
    with pytest.raises(DefinitionError) as exc:
        load_pipeline_from_dict({"stages": stages})
    assert expected in str(exc.value)


def test_dangling_need_is_rejected():
    with pytest.raises(DefinitionError) as exc:
        load_pipeline_from_dict(
            {"stages": {"a": {"steps": [{"run": "x"}]}, "b": {"needs": "zzz", "steps": [{"run": "x"}]}}},
            source="ci.yml",
        )
    assert "needs missing stage 'zzz'" in exc.value.message
    assert exc.value.source == "ci.yml"


def test_cycle_is_rejected_with_stuck_stages():
    with pytest.raises(DefinitionError) as exc:
        load_pipeline_from_dict(
            {
                "stages": {
                    "a": {"needs": "c", "steps": [{"run": "x"}]},
                    "b": {"needs": "a", "steps": [{"run": "x"}]},
                    "c": {"needs": "b", "steps": [{"run": "x"}]},
                    "d": {"steps": [{"run": "x"}]},
                }
            }
        )
    assert "cycle" in exc.value.message
    assert exc.value.details["stuck_stages"] == ["a", "b", "c"]


def test_unknown_trigger_event_is_rejected():
    with pytest.raises(DefinitionError, match="Unknown event kind"):
        load_pipeline_from_dict({"on": {"release": None}, "stages": {"a": {"steps": [{"run": "x"}]}}})


def test_invalid_yaml(tmp_path):
    with pytest.raises(DefinitionError, match="Invalid YAML"):
        load_pipeline(write(tmp_path, "stages: [unclosed\n"))


def test_empty_yaml(tmp_path):
    with pytest.raises(DefinitionError, match="empty"):
        load_pipeline(write(tmp_path, "\n"))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline(tmp_path / "nope.yml")


def test_python_pipeline_constant(tmp_path):
    path = write(
        tmp_path,
        """
        from gatedci import dsl

        PIPELINE = dsl.pipeline(
            "py",
            dsl.stage("a", dsl.run("echo hi")),
            dsl.stage("b", dsl.uses("checkout"), needs="a"),
            on="push",
        )
        """,
        name="build_pipeline.py",
    )
    definition = load_pipeline(path)
    assert definition.name == "py"
    assert definition.stage("b").needs == ("a",)
    assert definition.triggers == (Trigger("push"),)


def test_python_pipeline_function(tmp_path):
    path = write(
        tmp_path,
        """
        from gatedci import dsl

        def pipeline():
            return dsl.pipeline("fn", dsl.stage("only", dsl.run("true")))
        """,
        name="fn_pipeline.py",
    )
    assert load_pipeline(path).stage_ids == ["only"]


def test_python_pipeline_without_definition(tmp_path):
    path = write(tmp_path, "from gatedci.dsl import pipeline, stage, run\n", name="bad_pipeline.py")
    with pytest.raises(DefinitionError, match="name collision"):
        load_pipeline(path)


def test_find_pipeline_files(tmp_path):
    (tmp_path / "gatedci.yml").write_text("stages: {}\n")
    (tmp_path / "zz_pipeline.py").write_text("")
    (tmp_path / "aa_pipeline.py").write_text("")
    (tmp_path / "other.py").write_text("")

    assert [p.name for p in find_pipeline_files(tmp_path)] == ["gatedci.yml", "aa_pipeline.py", "zz_pipeline.py"]


def test_sample_rust_pipeline_loads():
    path = Path(__file__).resolve().parents[1] / "samples" / "rust" / "gatedci.yml"
    definition = load_pipeline(path)
    graph = build_job_graph(definition)

    assert definition.name == "Build"
    assert [list(level) for level in graph.levels] == [["check", "style"], ["coverage", "test"], ["docs"]]
    assert len(graph.jobs) == 6
    action = definition.actions["rust-llvm"]
    assert action.image == "gatedci-rust-llvm:${{ inputs.llvm-sys-version }}"
    assert action.inputs["llvm-sys-version"].default == "11"
    assert action.inputs["build-step"].required
    assert definition.stage("coverage").coverage.exclude == ("src/main.rs", "/*")
    assert definition.stage("docs").condition == Condition(events=("push",), branches=("master",))
