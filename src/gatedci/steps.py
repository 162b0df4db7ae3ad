# steps.py
from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .conditions import matches
from .config import EngineConfig
from .environment import CONTAINER_SCRATCH, CONTAINER_WORKSPACE, Provisioner
from .errors import ActionNotFound, ProvisioningError, StepFailure, TemplateError
from .model import ContainerSpec, Environment, Job, PipelineDefinition, RunStatus, Step
from .status import StepResult
from .templating import render, render_env, render_mapping

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Shells
# ---------------------------------------------------------------------

# shell -> (argv template, script suffix); "{0}" is replaced by the script path
SHELLS: Dict[str, tuple] = {
    "bash": (["bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"], ".sh"),
    "sh": (["sh", "-e", "{0}"], ".sh"),
    "python": (["python", "{0}"], ".py"),
    "pwsh": (["pwsh", "-NoProfile", "-NonInteractive", "-Command", ". '{0}'"], ".ps1"),
    "powershell": (["powershell", "-NoProfile", "-NonInteractive", "-Command", ". '{0}'"], ".ps1"),
    "cmd": (["cmd", "/D", "/E:ON", "/V:OFF", "/S", "/C", 'CALL "{0}"'], ".cmd"),
}


def default_shell(platform: str) -> str:
    return "pwsh" if platform == "windows" else "bash"


def shell_command(shell: str, script: str, *, native: bool = True) -> List[str]:
    try:
        argv, _suffix = SHELLS[shell]
    except KeyError:
        raise ValueError(f"Unknown shell {shell!r}. Known shells: {sorted(SHELLS)}") from None
    out = [a.replace("{0}", script) for a in argv]
    if shell == "python" and native:
        # the interpreter running the engine
        out[0] = sys.executable
    return out


# ---------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ActionResult:
    exit_code: int
    outputs: Mapping[str, str] = field(default_factory=dict)
    log: str = ""


ActionFn = Callable[[str, Mapping[str, str], Environment], ActionResult]


class ActionRegistry:
    """
    Named external operations a step can `uses:`.

    An action receives (action id, string inputs, job environment) and
    returns its exit status plus declared outputs.
    """

    def __init__(self):
        self._actions: Dict[str, ActionFn] = {}

    def register(self, action_id: str, fn: ActionFn) -> None:
        self._actions[action_id] = fn

    def action(self, action_id: str):
        def deco(fn: ActionFn) -> ActionFn:
            self.register(action_id, fn)
            return fn
        return deco

    def get(self, action_id: str) -> ActionFn:
        try:
            return self._actions[action_id]
        except KeyError:
            raise ActionNotFound(action_id, list(self._actions)) from None

    def ids(self) -> List[str]:
        return sorted(self._actions)

    def copy(self) -> ActionRegistry:
        reg = ActionRegistry()
        reg._actions = dict(self._actions)
        return reg


def _checkout(action_id: str, inputs: Mapping[str, str], environment: Environment) -> ActionResult:
    # the workspace is the checkout
    return ActionResult(exit_code=0, log=f"workspace {environment.workspace}")


def default_registry() -> ActionRegistry:
    reg = ActionRegistry()
    reg.register("checkout", _checkout)
    return reg


# ---------------------------------------------------------------------
# Step runner
# ---------------------------------------------------------------------

@dataclass
class StepsOutcome:
    results: List[StepResult]
    failed_step: Optional[str] = None
    cancelled: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.failed_step is not None


class StepRunner:
    """
    Runs the ordered steps of one job inside its environment.

    The first failing step fails the job; later steps are skipped unless
    marked `always`. `should_stop` is polled between steps (never inside a
    running command) and returns a cancellation reason or None.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        provisioner: Provisioner,
        config: EngineConfig,
        registry: ActionRegistry | None = None,
    ):
        self.definition = definition
        self.provisioner = provisioner
        self.config = config
        self.registry = registry or default_registry()

    def run_steps(
        self,
        job: Job,
        environment: Environment,
        *,
        should_stop: Callable[[], Optional[str]] = lambda: None,
        on_result: Callable[[StepResult], None] = lambda r: None,
    ) -> StepsOutcome:
        outcome = StepsOutcome(results=[])

        def record(result: StepResult) -> None:
            outcome.results.append(result)
            on_result(result)

        for index, step in enumerate(job.stage.steps):
            if outcome.cancelled is None:
                outcome.cancelled = should_stop()
            if outcome.cancelled is not None:
                record(StepResult(name=step.name, status=RunStatus.CANCELLED, error=outcome.cancelled))
                continue

            if outcome.failed and not step.always:
                record(StepResult(name=step.name, status=RunStatus.SKIPPED, error="previous step failed"))
                continue

            if not matches(step.condition, environment.trigger):
                record(StepResult(name=step.name, status=RunStatus.SKIPPED, error="condition not met"))
                continue

            logger.info("[%s] > %s", job.name, step.name)
            result = self._run_step(job, step, index, environment)
            record(result)
            if result.status is RunStatus.FAILED and not outcome.failed:
                outcome.failed_step = step.name

        return outcome

    # -----------------------------------------------------------------

    def _run_step(self, job: Job, step: Step, index: int, environment: Environment) -> StepResult:
        try:
            ctx = environment.template_context()
            step_env = render_env(step.env, ctx)
            if step.uses is not None:
                inputs = render_mapping(step.inputs, environment.template_context(env=step_env))
                return self._run_action(job, step, inputs, step_env, environment)
            script = render(step.run or "", environment.template_context(env=step_env))
            return self._run_command(job, step, index, script, step_env, environment)
        except StepFailure as e:
            logger.warning(str(e))
            return StepResult(
                name=step.name,
                status=RunStatus.FAILED,
                exit_code=e.exit_code,
                output=e.output,
                error=str(e),
            )
        except (TemplateError, ProvisioningError, ActionNotFound, ValueError, OSError) as e:
            logger.warning("[%s] step '%s' could not start: %s", job.name, step.name, e)
            return StepResult(name=step.name, status=RunStatus.FAILED, error=str(e))

    def _tail(self, text: str | None) -> str:
        return (text or "")[-self.config.log_tail:]

    def _cwd(self, job: Job, step: Step, environment: Environment) -> Path:
        cwd = (environment.workspace / (step.working_directory or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.name}] step '{step.name}' working directory not found: {cwd}")
        return cwd

    def _run_command(
        self,
        job: Job,
        step: Step,
        index: int,
        script: str,
        step_env: Mapping[str, str],
        environment: Environment,
    ) -> StepResult:
        shell = step.shell or default_shell(environment.platform)
        if shell not in SHELLS:
            raise ValueError(f"Unknown shell {shell!r}. Known shells: {sorted(SHELLS)}")
        if environment.scratch is None:
            raise ValueError(f"[{job.name}] environment has no scratch directory")

        suffix = SHELLS[shell][1]
        script_path = environment.scratch / f"step-{index}{suffix}"
        script_path.write_text(script, encoding="utf-8")

        variables = dict(environment.variables)
        variables.update(step_env)

        if environment.container is not None:
            inner = shell_command(shell, f"{CONTAINER_SCRATCH}/{script_path.name}", native=False)
            workdir = f"{CONTAINER_WORKSPACE}/{step.working_directory or '.'}".replace("//", "/")
            cmd = self._docker_run(environment.container, variables, workdir=workdir) + inner
            proc = subprocess.run(cmd, text=True, capture_output=True)
        else:
            cmd = shell_command(shell, str(script_path))
            env = os.environ.copy()
            env.update(variables)
            proc = subprocess.run(
                cmd,
                cwd=str(self._cwd(job, step, environment)),
                env=env,
                text=True,
                capture_output=True,
            )

        output = self._tail((proc.stdout or "") + (proc.stderr or ""))
        if proc.returncode != 0:
            raise StepFailure(
                job=job.name,
                step=step.name,
                cmd=script.strip().splitlines()[0] if script.strip() else shell,
                exit_code=proc.returncode,
                output=output,
            )
        return StepResult(name=step.name, status=RunStatus.SUCCEEDED, exit_code=0, output=output)

    def _run_action(
        self,
        job: Job,
        step: Step,
        inputs: Mapping[str, str],
        step_env: Mapping[str, str],
        environment: Environment,
    ) -> StepResult:
        action_id = step.uses or ""
        declared = self.definition.actions.get(action_id)

        if declared is not None:
            spec = self.provisioner.provision_action(declared, inputs, environment)
            variables = dict(environment.variables)
            variables.update(step_env)
            variables.update(spec.env)
            cmd = self._docker_run(spec, variables, workdir=spec.workdir, entrypoint=spec.entrypoint)
            cmd.extend(spec.args)
            proc = subprocess.run(cmd, text=True, capture_output=True)
            result = ActionResult(exit_code=proc.returncode, log=(proc.stdout or "") + (proc.stderr or ""))
        else:
            fn = self.registry.get(action_id)
            scoped = Environment(
                job=environment.job,
                platform=environment.platform,
                variables={**environment.variables, **step_env},
                workspace=environment.workspace,
                trigger=environment.trigger,
                matrix=environment.matrix,
                scratch=environment.scratch,
                container=environment.container,
            )
            try:
                result = fn(action_id, dict(inputs), scoped)
            except Exception as e:
                logger.warning("[%s] action '%s' crashed: %s", job.name, action_id, e)
                return StepResult(
                    name=step.name,
                    status=RunStatus.FAILED,
                    error=f"action '{action_id}' crashed: {e}",
                )

        output = self._tail(result.log)
        if result.exit_code != 0:
            raise StepFailure(job=job.name, step=step.name, cmd=action_id, exit_code=result.exit_code, output=output)
        return StepResult(
            name=step.name,
            status=RunStatus.SUCCEEDED,
            exit_code=0,
            output=output,
            outputs=dict(result.outputs),
        )

    def _docker_run(
        self,
        spec: ContainerSpec,
        variables: Mapping[str, str],
        *,
        workdir: str,
        entrypoint: str | None = None,
    ) -> List[str]:
        cmd = [self.config.docker_bin, "run", "--rm"]
        for mount in spec.mounts:
            cmd.extend(["-v", mount])
        cmd.extend(["-w", workdir])
        for key, value in variables.items():
            cmd.extend(["-e", f"{key}={value}"])
        if entrypoint:
            cmd.extend(["--entrypoint", entrypoint])
        cmd.append(spec.image)
        return cmd
