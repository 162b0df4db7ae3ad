# status.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import StatusError
from .model import JobKey, RunStatus


@dataclass
class StepResult:
    name: str
    status: RunStatus
    exit_code: Optional[int] = None
    output: str = ""
    error: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class JobRecord:
    key: JobKey
    status: RunStatus = RunStatus.PENDING
    reason: Optional[str] = None
    failed_step: Optional[str] = None
    platform: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)
    # artifact name -> stored reference
    artifacts: Dict[str, str] = field(default_factory=dict)
    # sink/upload problems that did not fail the job
    degraded: List[str] = field(default_factory=list)


_ALLOWED = {
    RunStatus.PENDING: {
        RunStatus.RUNNING,
        RunStatus.SKIPPED,
        RunStatus.SKIPPED_BY_DEPENDENCY,
        RunStatus.CANCELLED,
    },
    RunStatus.RUNNING: {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    },
}


def aggregate(statuses: Iterable[RunStatus]) -> RunStatus:
    """Fold job statuses into one stage (or pipeline) status."""
    statuses = list(statuses)
    if not statuses:
        return RunStatus.SUCCEEDED
    for s in (RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.RUNNING, RunStatus.PENDING):
        if s in statuses:
            return s
    if all(s.is_skipped for s in statuses):
        if all(s is RunStatus.SKIPPED for s in statuses):
            return RunStatus.SKIPPED
        return RunStatus.SKIPPED_BY_DEPENDENCY
    return RunStatus.SUCCEEDED


class StatusTable:
    """
    Job status records shared by every worker.

    Writes go through one lock. Transitions are monotonic: once a record is
    terminal it never changes again.
    """

    def __init__(self, keys: Iterable[JobKey]):
        self._lock = threading.Lock()
        self._records: Dict[JobKey, JobRecord] = {k: JobRecord(key=k) for k in keys}

    def _get(self, key: JobKey) -> JobRecord:
        try:
            return self._records[key]
        except KeyError:
            raise StatusError(f"Unknown job '{key}'") from None

    def transition(
        self,
        key: JobKey,
        status: RunStatus,
        *,
        reason: Optional[str] = None,
        failed_step: Optional[str] = None,
    ) -> None:
        with self._lock:
            rec = self._get(key)
            if status not in _ALLOWED.get(rec.status, set()):
                raise StatusError(f"Illegal transition for '{key}': {rec.status.value} -> {status.value}")
            rec.status = status
            if reason is not None:
                rec.reason = reason
            if failed_step is not None:
                rec.failed_step = failed_step

    def set_platform(self, key: JobKey, platform: str) -> None:
        with self._lock:
            self._get(key).platform = platform

    def add_step(self, key: JobKey, result: StepResult) -> None:
        with self._lock:
            self._get(key).steps.append(result)

    def add_artifact(self, key: JobKey, name: str, reference: str) -> None:
        with self._lock:
            self._get(key).artifacts[name] = reference

    def mark_degraded(self, key: JobKey, note: str) -> None:
        with self._lock:
            self._get(key).degraded.append(note)

    def status(self, key: JobKey) -> RunStatus:
        with self._lock:
            return self._get(key).status

    def snapshot(self, keys: Optional[Iterable[JobKey]] = None) -> Mapping[JobKey, RunStatus]:
        with self._lock:
            wanted = list(keys) if keys is not None else list(self._records)
            return {k: self._get(k).status for k in wanted}

    def record(self, key: JobKey) -> JobRecord:
        with self._lock:
            return self._get(key)

    def records(self) -> List[JobRecord]:
        with self._lock:
            return list(self._records.values())

    def stage_status(self, stage_id: str) -> RunStatus:
        return aggregate(s for k, s in self.snapshot().items() if k.stage == stage_id)

    def pipeline_status(self) -> RunStatus:
        """
        failed if any job failed, else cancelled if any job was cancelled,
        else succeeded. Skipped jobs do not count against success.
        """
        status = aggregate(self.snapshot().values())
        if status.is_skipped:
            return RunStatus.SUCCEEDED
        return status
