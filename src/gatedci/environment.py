# environment.py
from __future__ import annotations

import logging
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from .config import EngineConfig
from .errors import ProvisioningError, TemplateError
from .model import (
    ContainerAction,
    ContainerSpec,
    Environment,
    Job,
    PipelineDefinition,
    TriggerContext,
)
from .templating import build_context, render, render_all, render_env, render_mapping

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_SCRATCH = "/__gatedci"

# runner label (glob) -> platform
RUNNER_PLATFORMS = {
    "linux": "linux",
    "ubuntu-*": "linux",
    "windows": "windows",
    "windows-*": "windows",
    "macos": "macos",
    "macos-*": "macos",
}

RUNNER_OS = {"linux": "Linux", "windows": "Windows", "macos": "macOS"}


def resolve_platform(label: str) -> str:
    """Bind a runner label (`ubuntu-latest`, `windows-2022`, ...) to a platform."""
    for pattern, platform in RUNNER_PLATFORMS.items():
        if fnmatchcase(label, pattern):
            return platform
    raise ValueError(f"Unknown runner platform {label!r}. Known labels: {sorted(RUNNER_PLATFORMS)}")


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", text).strip("-")[:60] or "job"


# ---------------------------------------------------------------------
# Container provisioning collaborator
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ImageRequest:
    template: str
    reference: str
    version: Optional[str] = None
    dockerfile: Optional[str] = None
    context: Optional[str] = None
    build_args: Mapping[str, str] = field(default_factory=dict)


class ContainerProvisioner(Protocol):
    def ensure(self, request: ImageRequest) -> str:
        """Return a ready-to-run image handle, building/pulling as needed."""
        ...


class DockerProvisioner:
    """Resolves images through the docker CLI (inspect, then build or pull)."""

    def __init__(self, docker_bin: str = "docker", workspace: Path | None = None):
        self.docker_bin = docker_bin
        self.workspace = (workspace or Path(".")).resolve()

    def _docker(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker_bin, *args],
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise ProvisioningError(
                job="",
                message="Docker is not available",
                details={"hint": "Install Docker and ensure the daemon is running."},
            ) from None

    def ensure(self, request: ImageRequest) -> str:
        ref = request.reference
        if self._docker("image", "inspect", ref).returncode == 0:
            logger.debug("image %s found in local cache", ref)
            return ref

        if request.dockerfile:
            context = self.workspace / (request.context or ".")
            cmd = ["build", "-t", ref, "-f", str(self.workspace / request.dockerfile)]
            for k, v in request.build_args.items():
                cmd.extend(["--build-arg", f"{k}={v}"])
            cmd.append(str(context))
            logger.info("building image %s from %s", ref, request.dockerfile)
            proc = self._docker(*cmd)
            action = "build"
        else:
            logger.info("pulling image %s", ref)
            proc = self._docker("pull", ref)
            action = "pull"

        if proc.returncode != 0:
            raise ProvisioningError(
                job="",
                message=f"docker {action} failed for image {ref}",
                details={"exit_code": proc.returncode, "stderr": proc.stderr[-2000:]},
            )
        return ref


# ---------------------------------------------------------------------
# Provisioner
# ---------------------------------------------------------------------

def resolve_action_inputs(action: ContainerAction, given: Mapping[str, str]) -> Dict[str, str]:
    """Apply declared defaults; reject unknown inputs and missing required ones."""
    unknown = sorted(set(given) - set(action.inputs))
    if unknown:
        raise ValueError(f"Action '{action.id}' got unknown inputs {unknown}; declared: {sorted(action.inputs)}")

    resolved: Dict[str, str] = {}
    for name, spec in action.inputs.items():
        if name in given:
            resolved[name] = given[name]
        elif spec.default is not None:
            resolved[name] = spec.default
        elif spec.required:
            raise ValueError(f"Action '{action.id}' requires input '{name}'")
    return resolved


class Provisioner:
    """
    Resolves the execution environment of each job: runner platform,
    environment variables and, for containerized stages or container
    actions, a provisioned image.
    """

    def __init__(self, config: EngineConfig, containers: ContainerProvisioner | None = None):
        self.config = config
        self.containers = containers or DockerProvisioner(config.docker_bin, config.workspace)

    def _ensure_image(self, request: ImageRequest) -> str:
        handle = self.containers.ensure(request)
        if not handle:
            raise ValueError(f"No image handle returned for {request.reference}")
        return handle

    def provision(self, job: Job, definition: PipelineDefinition, trigger: TriggerContext) -> Environment:
        stage = job.stage
        matrix = job.variant.as_dict()
        scratch: Path | None = None
        try:
            ctx = build_context(matrix=matrix, secrets=trigger.secrets, trigger=trigger.as_scope())
            variables = render_env(definition.env, ctx)
            ctx["env"] = variables
            variables.update(render_env(stage.env, ctx))

            platform = resolve_platform(render(stage.runs_on, ctx))
            variables.update(
                {
                    "CI": "true",
                    "RUNNER_OS": RUNNER_OS[platform],
                    "GATEDCI_STAGE": stage.id,
                    "GATEDCI_VARIANT": job.variant.key,
                    "GATEDCI_EVENT": trigger.event,
                    "GATEDCI_BRANCH": trigger.branch,
                    "GATEDCI_SHA": trigger.sha,
                    "GATEDCI_WORKSPACE": CONTAINER_WORKSPACE if stage.container else str(self.config.workspace),
                }
            )

            self.config.work_dir.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix=f"{_slug(job.name)}-", dir=self.config.work_dir))
            (scratch / "coverage").mkdir()
            variables["GATEDCI_COVERAGE_DIR"] = (
                f"{CONTAINER_SCRATCH}/coverage" if stage.container else str(scratch / "coverage")
            )

            container = None
            if stage.container:
                image = render(stage.container, ctx)
                handle = self._ensure_image(ImageRequest(template=stage.container, reference=image))
                container = ContainerSpec(
                    image=handle,
                    mounts=self._mounts(scratch),
                    workdir=CONTAINER_WORKSPACE,
                )
        except (TemplateError, ValueError, OSError) as e:
            self._discard(scratch)
            raise ProvisioningError(job=job.name, message=str(e)) from e
        except ProvisioningError as e:
            self._discard(scratch)
            raise ProvisioningError(job=job.name, message=e.message, details=e.details) from e

        logger.debug("provisioned %s on %s (container=%s)", job.name, platform, container and container.image)
        return Environment(
            job=job.key,
            platform=platform,
            variables=variables,
            workspace=self.config.workspace,
            trigger=trigger,
            matrix=matrix,
            scratch=scratch,
            container=container,
        )

    def provision_action(
        self,
        action: ContainerAction,
        inputs: Mapping[str, str],
        environment: Environment,
    ) -> ContainerSpec:
        """
        Resolve a container action for one step.

        Environment variable names that embed an input
        (`LLVM_SYS_${{ inputs.llvm-sys-version }}0_PREFIX`) are rendered and
        validated here, before the container starts.
        """
        job = str(environment.job)
        try:
            resolved = resolve_action_inputs(action, inputs)
            ctx = environment.template_context(inputs=resolved)
            image = render(action.image, ctx)
            env = render_env(action.env, ctx)
            args = tuple(render_all(action.args, ctx))
            build_args = render_mapping(action.build_args, ctx)
            version = resolved.get(action.version_input) if action.version_input else None
            handle = self._ensure_image(
                ImageRequest(
                    template=action.image,
                    reference=image,
                    version=version,
                    dockerfile=action.dockerfile,
                    context=action.context,
                    build_args=build_args,
                )
            )
        except (TemplateError, ValueError) as e:
            raise ProvisioningError(job=job, message=str(e), details={"action": action.id}) from e
        except ProvisioningError as e:
            raise ProvisioningError(job=job, message=e.message, details={"action": action.id, **e.details}) from e

        return ContainerSpec(
            image=handle,
            mounts=self._mounts(environment.scratch),
            workdir=CONTAINER_WORKSPACE,
            env=env,
            args=args,
            entrypoint=action.entrypoint,
        )

    def _mounts(self, scratch: Path | None) -> tuple:
        mounts = [f"{self.config.workspace}:{CONTAINER_WORKSPACE}"]
        if scratch is not None:
            mounts.append(f"{scratch}:{CONTAINER_SCRATCH}")
        return tuple(mounts)

    @staticmethod
    def _discard(scratch: Path | None) -> None:
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
