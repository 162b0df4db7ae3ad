from __future__ import annotations

import pytest

from gatedci import dsl
from gatedci.dag import build_job_graph
from gatedci.environment import Provisioner, resolve_action_inputs, resolve_platform
from gatedci.errors import ProvisioningError
from gatedci.model import ActionInput, ContainerAction

from conftest import FakeContainers


def _jobs(definition):
    return {str(j.key): j for j in build_job_graph(definition).jobs}


LLVM = dsl.container_action(
    "llvm-env",
    dockerfile="docker/Dockerfile",
    inputs={"llvm-sys-version": "11"},
    env={"LLVM_SYS_${{ inputs.llvm-sys-version }}0_PREFIX": "/usr/lib/llvm-${{ inputs.llvm-sys-version }}"},
    build_args={"LLVM_VER": "${{ inputs.llvm-sys-version }}"},
    args=["cargo", "build"],
    version_input="llvm-sys-version",
)


def test_resolve_platform():
    assert resolve_platform("ubuntu-latest") == "linux"
    assert resolve_platform("windows-2022") == "windows"
    assert resolve_platform("macos-13") == "macos"
    with pytest.raises(ValueError, match="Unknown runner platform"):
        resolve_platform("solaris-11")


def test_provision_renders_env_and_platform(config, containers, push_master):
    definition = dsl.pipeline(
        "p",
        dsl.stage(
            "test",
            dsl.run("true"),
            matrix=dsl.matrix(config=[{"os": "windows-latest", "dir": "windows"}]),
            runs_on="${{ matrix.config.os }}",
            env={"OUT": "${{ matrix.config.dir }}-${{ env.toolchain-version }}"},
        ),
        env={"toolchain-version": "1.70", "BRANCH": "${{ trigger.branch }}"},
    )
    job = next(iter(_jobs(definition).values()))

    environment = Provisioner(config, containers).provision(job, definition, push_master)
    try:
        assert environment.platform == "windows"
        assert environment.variables["OUT"] == "windows-1.70"
        assert environment.variables["BRANCH"] == "master"
        assert environment.variables["RUNNER_OS"] == "Windows"
        assert environment.variables["GATEDCI_STAGE"] == "test"
        assert environment.scratch.is_dir()
        assert environment.scratch.parent == config.work_dir
        assert not environment.containerized
    finally:
        scratch = environment.scratch
        environment.teardown()
    assert not scratch.exists()


def test_unknown_runner_is_a_provisioning_error(config, containers, push_master):
    definition = dsl.pipeline("p", dsl.stage("a", dsl.run("true"), runs_on="plan9"))
    job = _jobs(definition)["a"]
    with pytest.raises(ProvisioningError) as exc:
        Provisioner(config, containers).provision(job, definition, push_master)
    assert exc.value.job == "a"
    assert not config.work_dir.exists() or list(config.work_dir.iterdir()) == []


def test_unresolved_template_is_a_provisioning_error(config, containers, push_master):
    definition = dsl.pipeline("p", dsl.stage("a", dsl.run("true"), env={"X": "${{ matrix.os }}"}))
    with pytest.raises(ProvisioningError, match="Unknown reference"):
        Provisioner(config, containers).provision(_jobs(definition)["a"], definition, push_master)


def test_container_stage(config, containers, push_master):
    definition = dsl.pipeline(
        "p",
        dsl.stage("a", dsl.run("true"), container="rust:${{ matrix.rust }}", matrix=dsl.matrix(rust=["1.70"])),
    )
    job = _jobs(definition)["a [rust=1.70]"]
    environment = Provisioner(config, containers).provision(job, definition, push_master)
    try:
        assert environment.container.image == "rust:1.70@fake"
        assert f"{config.workspace}:/workspace" in environment.container.mounts
        assert environment.variables["GATEDCI_WORKSPACE"] == "/workspace"
        assert environment.variables["GATEDCI_COVERAGE_DIR"] == "/__gatedci/coverage"
        assert environment.coverage_dir.is_dir()
        assert containers.requests[0].template == "rust:${{ matrix.rust }}"
    finally:
        environment.teardown()


def test_broken_image_fails_only_with_a_provisioning_error(config, push_master):
    containers = FakeContainers(broken=("rust:nope",))
    definition = dsl.pipeline("p", dsl.stage("a", dsl.run("true"), container="rust:nope"))
    with pytest.raises(ProvisioningError) as exc:
        Provisioner(config, containers).provision(_jobs(definition)["a"], definition, push_master)
    assert exc.value.job == "a"
    assert "cannot build rust:nope" in str(exc.value)


def test_container_action_dynamic_env_name(config, containers, push_master):
    definition = dsl.pipeline("p", dsl.stage("a", dsl.uses("llvm-env")), actions=[LLVM])
    provisioner = Provisioner(config, containers)
    environment = provisioner.provision(_jobs(definition)["a"], definition, push_master)
    try:
        spec = provisioner.provision_action(LLVM, {}, environment)
    finally:
        environment.teardown()

    assert spec.env == {"LLVM_SYS_110_PREFIX": "/usr/lib/llvm-11"}
    assert spec.image == "gatedci-llvm-env:11@fake"
    assert spec.args == ("cargo", "build")
    request = containers.requests[-1]
    assert request.version == "11"
    assert request.dockerfile == "docker/Dockerfile"
    assert request.build_args == {"LLVM_VER": "11"}


def test_container_action_malformed_env_name(config, containers, push_master):
    definition = dsl.pipeline("p", dsl.stage("a", dsl.uses("llvm-env")), actions=[LLVM])
    provisioner = Provisioner(config, containers)
    environment = provisioner.provision(_jobs(definition)["a"], definition, push_master)
    try:
        with pytest.raises(ProvisioningError) as exc:
            provisioner.provision_action(LLVM, {"llvm-sys-version": "11.0"}, environment)
    finally:
        environment.teardown()

    assert "LLVM_SYS_11.00_PREFIX" in exc.value.message
    assert exc.value.details["action"] == "llvm-env"
    # nothing was built for the bad name
    assert containers.requests == []


def test_resolve_action_inputs():
    action = ContainerAction(
        id="x",
        image="img",
        inputs={"version": ActionInput(default="11"), "target": ActionInput(required=True)},
    )
    assert resolve_action_inputs(action, {"target": "wasm"}) == {"version": "11", "target": "wasm"}
    with pytest.raises(ValueError, match="requires input 'target'"):
        resolve_action_inputs(action, {})
    with pytest.raises(ValueError, match="unknown inputs"):
        resolve_action_inputs(action, {"target": "wasm", "color": "red"})
