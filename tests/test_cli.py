from __future__ import annotations

import textwrap

import pytest
from click.testing import CliRunner

from gatedci.cli import cli

PIPELINE = """
name: cli
stages:
  build:
    steps:
      - shell: sh
        run: |
          echo "level=${{ trigger.inputs.level }} token=$TOKEN" > out.txt
        env:
          TOKEN: "${{ secrets.TOKEN }}"
    artifacts:
      out: out.txt
  test:
    needs: build
    matrix:
      n: [1, 2]
    steps:
      - shell: sh
        run: test -f out.txt
"""

BROKEN = """
name: broken
stages:
  build:
    steps:
      - shell: sh
        run: echo compiling; exit 7
  test:
    needs: build
    steps:
      - run: "true"
        shell: sh
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in (
        "GATEDCI_WORKSPACE",
        "GATEDCI_WORK_DIR",
        "GATEDCI_ARTIFACT_DIR",
        "GATEDCI_COVERAGE_URL",
        "GATEDCI_MAX_WORKERS",
    ):
        monkeypatch.delenv(var, raising=False)

    def _write(text, name="gatedci.yml"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return _write


def invoke(*args):
    return CliRunner().invoke(cli, list(args))


def test_validate_ok(project):
    project(PIPELINE)
    result = invoke("validate")
    assert result.exit_code == 0, result.output
    assert "OK: cli: 2 stage(s), 3 job(s), 2 level(s)" in result.output


def test_validate_rejects_bad_definition(project):
    project("stages:\n  a:\n    steps:\n      - run: x\n        uses: y\n")
    result = invoke("validate")
    assert result.exit_code == 1
    assert "Invalid pipeline definition" in result.output


def test_plan_prints_levels(project):
    project(PIPELINE)
    result = invoke("plan")
    assert result.exit_code == 0, result.output
    assert "Level 1:" in result.output
    assert "test [n=2] (needs 1 job(s))" in result.output


def test_run_success(project, tmp_path, monkeypatch):
    project(PIPELINE)
    monkeypatch.setenv("TOKEN", "s3cret")

    result = invoke("run", "--branch", "master", "--input", "level=3", "--secret", "TOKEN", "--no-print-plan")

    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCEEDED" in result.output
    assert (tmp_path / "out.txt").read_text().strip() == "level=3 token=s3cret"
    assert (tmp_path / ".gatedci/artifacts/build/default/out.tar.gz").exists()


def test_run_failure_exits_non_zero(project):
    project(BROKEN)
    result = invoke("run", "--branch", "master")
    assert result.exit_code == 1
    assert "build: FAILED" in result.output
    assert "test: SKIPPED_BY_DEPENDENCY" in result.output
    assert "STEP FAILED: build" in result.output
    assert "compiling" in result.output


def test_missing_input_fails_the_step(project, monkeypatch):
    project(PIPELINE)
    monkeypatch.setenv("TOKEN", "s3cret")
    result = invoke("run", "--branch", "master", "--secret", "TOKEN")
    assert result.exit_code == 1
    assert "Unknown reference 'trigger.inputs.level'" in result.output


@pytest.mark.parametrize(
    "args, message",
    [
        (["--input", "novalue"], "expected key=value"),
        (["--secret", "GATEDCI_TEST_UNSET_SECRET"], "is not set in the environment"),
        (["--event", "tag"], "Unknown event kind"),
    ],
)
def test_bad_options(project, args, message):
    project(PIPELINE)
    result = invoke("run", *args)
    assert result.exit_code == 2
    assert message in result.output


def test_zero_workers_from_the_environment_is_rejected(project, monkeypatch):
    project(PIPELINE)
    monkeypatch.setenv("GATEDCI_MAX_WORKERS", "0")
    result = invoke("run")
    assert result.exit_code == 2
    assert "max_workers must be >= 1" in result.output


def test_no_pipeline_file(project):
    result = invoke("run")
    assert result.exit_code == 1
    assert "No pipeline file found" in result.output


def test_multiple_pipeline_files(project):
    project(PIPELINE)
    project("from gatedci import dsl\n", name="other_pipeline.py")
    result = invoke("validate")
    assert result.exit_code == 1
    assert "Multiple pipeline files found" in result.output


def test_explicit_python_pipeline(project):
    project(
        """
        from gatedci import dsl

        PIPELINE = dsl.pipeline("py", dsl.stage("only", dsl.run("true", shell="sh")))
        """,
        name="ci_pipeline.py",
    )
    result = invoke("run", "--pipeline", "ci_pipeline.py", "--branch", "main")
    assert result.exit_code == 0, result.output
    assert "only: SUCCEEDED" in result.output
