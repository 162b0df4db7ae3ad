# scheduler.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from .artifacts import ArtifactAggregator, ArtifactStore, CoverageSink, HttpCoverageSink, LocalArtifactStore
from .conditions import Decision, blocking_upstream, evaluate, trigger_matches
from .config import EngineConfig
from .dag import JobGraph, build_job_graph
from .environment import ContainerProvisioner, Provisioner
from .errors import ProvisioningError
from .model import Artifact, Job, JobKey, PipelineDefinition, RunStatus, TriggerContext
from .status import JobRecord, StatusTable, aggregate
from .steps import ActionRegistry, StepRunner
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag. Checked between steps; a command that
    already started is never interrupted.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by request") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PipelineResult:
    name: str
    status: RunStatus
    records: List[JobRecord]
    graph: JobGraph
    artifacts: List[Artifact]

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def record(self, key: JobKey) -> JobRecord:
        for r in self.records:
            if r.key == key:
                return r
        raise KeyError(key)

    def failed_jobs(self) -> List[JobRecord]:
        return [r for r in self.records if r.status is RunStatus.FAILED]

    def stage_status(self, stage_id: str) -> RunStatus:
        return aggregate(r.status for r in self.records if r.key.stage == stage_id)


def plan(definition: PipelineDefinition) -> JobGraph:
    """Compile the job graph without running anything."""
    return build_job_graph(definition)


class Scheduler:
    """
    Ready-set scheduler.

    - Compiles the definition into a job graph (definition errors raise
      before anything runs).
    - A job is ready once every dependency job is terminal; the condition
      evaluator then decides run, skip, or skip-by-dependency.
    - Ready jobs run concurrently on a bounded thread pool.
    - A failing matrix variant never cancels its siblings unless the stage
      sets fail_fast. Failures propagate only along dependency edges.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        trigger: TriggerContext,
        *,
        config: EngineConfig | None = None,
        registry: ActionRegistry | None = None,
        containers: ContainerProvisioner | None = None,
        store: ArtifactStore | None = None,
        sink: CoverageSink | None = None,
        cancel: CancelToken | None = None,
        console: Console | None = None,
    ):
        self.definition = definition
        self.trigger = trigger
        self.config = config or EngineConfig.from_env()
        self.cancel = cancel or CancelToken()
        self.console = console or get_console()

        self.graph = build_job_graph(definition)
        self.status = StatusTable(self.graph.keys)

        if store is None:
            store = LocalArtifactStore(self.config.artifact_dir)
        if sink is None and self.config.coverage_url:
            sink = HttpCoverageSink(self.config.coverage_url, token=self.config.coverage_token)
        self.aggregator = ArtifactAggregator(self.status, store=store, sink=sink)

        self.provisioner = Provisioner(self.config, containers)
        self.step_runner = StepRunner(definition, self.provisioner, self.config, registry)

        self._tripped_stages: Set[str] = set()
        self._tripped_lock = threading.Lock()

    # -----------------------------------------------------------------

    def run(self) -> PipelineResult:
        if not trigger_matches(self.definition.triggers, self.trigger):
            reason = f"pipeline not triggered by {self.trigger.event} on '{self.trigger.branch}'"
            logger.info(reason)
            for key in self.graph.keys:
                self.status.transition(key, RunStatus.SKIPPED, reason=reason)
            return self._result()

        remaining: Dict[JobKey, int] = {k: len(self.graph.dependencies(k)) for k in self.graph.keys}
        ready: List[JobKey] = [k for k in self.graph.keys if remaining[k] == 0]
        in_flight: Dict[Future, JobKey] = {}

        def resolved(key: JobKey) -> None:
            for nxt in self.graph.dependents(key):
                remaining[nxt] -= 1
                if remaining[nxt] == 0:
                    ready.append(nxt)

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            while ready or in_flight:
                # schedule everything currently ready
                while ready:
                    key = ready.pop(0)
                    if self._gate(key):
                        fut = pool.submit(self._run_job, self.graph.job(key))
                        in_flight[fut] = key
                    else:
                        resolved(key)

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    key = in_flight.pop(fut)
                    fut.result()
                    resolved(key)

        return self._result()

    def _gate(self, key: JobKey) -> bool:
        """Decide a ready job's fate. True means it was marked running."""
        job = self.graph.job(key)

        if self.cancel.is_cancelled:
            self.status.transition(key, RunStatus.CANCELLED, reason=self.cancel.reason)
            self.console.print_job_finished(str(key), RunStatus.CANCELLED.value, self.cancel.reason)
            return False

        upstream = self.status.snapshot(self.graph.dependencies(key))
        decision = evaluate(job.stage.condition, self.trigger, upstream)

        if decision is Decision.SKIP_UPSTREAM:
            blocked = ", ".join(f"{k} ({upstream[k].value})" for k in blocking_upstream(upstream))
            reason = f"needs did not succeed: {blocked}"
            self.status.transition(key, RunStatus.SKIPPED_BY_DEPENDENCY, reason=reason)
            self.console.print_job_finished(str(key), RunStatus.SKIPPED_BY_DEPENDENCY.value, reason)
            return False

        if decision is Decision.SKIP:
            reason = f"condition not met ({job.stage.condition.describe()})"
            self.status.transition(key, RunStatus.SKIPPED, reason=reason)
            self.console.print_job_finished(str(key), RunStatus.SKIPPED.value, reason)
            return False

        self.status.transition(key, RunStatus.RUNNING)
        return True

    def _stop_reason(self, job: Job) -> Optional[str]:
        if self.cancel.is_cancelled:
            return self.cancel.reason
        with self._tripped_lock:
            if job.stage.id in self._tripped_stages:
                return "a sibling variant failed (fail_fast)"
        return None

    def _trip(self, job: Job) -> None:
        if job.stage.fail_fast:
            with self._tripped_lock:
                self._tripped_stages.add(job.stage.id)

    def _finish(self, job: Job, status: RunStatus, reason: Optional[str] = None, failed_step: Optional[str] = None) -> None:
        self.status.transition(job.key, status, reason=reason, failed_step=failed_step)
        if status is RunStatus.FAILED:
            self._trip(job)
        self.console.print_job_finished(job.name, status.value, reason)

    def _run_job(self, job: Job) -> None:
        """Worker body. Every outcome ends up in the status table."""
        key = job.key
        environment = None
        try:
            stop = self._stop_reason(job)
            if stop is not None:
                self._finish(job, RunStatus.CANCELLED, stop)
                return

            self.console.print_job_start(job.name)
            try:
                environment = self.provisioner.provision(job, self.definition, self.trigger)
            except ProvisioningError as e:
                logger.warning(str(e))
                self._finish(job, RunStatus.FAILED, str(e))
                return
            self.status.set_platform(key, environment.platform)

            outcome = self.step_runner.run_steps(
                job,
                environment,
                should_stop=lambda: self._stop_reason(job),
                on_result=lambda r: self.status.add_step(key, r),
            )

            if outcome.cancelled is not None:
                self._finish(job, RunStatus.CANCELLED, outcome.cancelled)
                return

            if not outcome.failed:
                self.aggregator.collect_coverage(job, environment)
            # past this point the job uploads and is no longer cancellable
            self.aggregator.collect(job, environment)

            if outcome.failed:
                self._finish(job, RunStatus.FAILED, f"step '{outcome.failed_step}' failed", outcome.failed_step)
            else:
                self._finish(job, RunStatus.SUCCEEDED)
        except Exception as e:
            logger.exception("[%s] crashed", job.name)
            if not self.status.status(key).is_terminal:
                self._finish(job, RunStatus.FAILED, f"internal error: {e}")
        finally:
            if environment is not None:
                environment.teardown()

    def _result(self) -> PipelineResult:
        return PipelineResult(
            name=self.definition.name,
            status=self.status.pipeline_status(),
            records=self.status.records(),
            graph=self.graph,
            artifacts=self.aggregator.artifacts(),
        )


def run_pipeline(definition: PipelineDefinition, trigger: TriggerContext, **kwargs) -> PipelineResult:
    """Run a pipeline to completion and return its status table."""
    return Scheduler(definition, trigger, **kwargs).run()
