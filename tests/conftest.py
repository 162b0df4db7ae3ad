"""Pytest configuration and fixtures."""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from gatedci.config import EngineConfig
from gatedci.environment import ImageRequest
from gatedci.errors import ProvisioningError, SinkError
from gatedci.model import JobKey, TriggerContext
from gatedci.scheduler import Scheduler
from gatedci.steps import ActionResult, default_registry
from gatedci.ui.console import Console


class FakeContainers:
    """Container provisioner that never talks to docker."""

    def __init__(self, broken: Tuple[str, ...] = ()):
        self.broken = set(broken)
        self.requests: List[ImageRequest] = []
        self._lock = threading.Lock()

    def ensure(self, request: ImageRequest) -> str:
        with self._lock:
            self.requests.append(request)
        if request.reference in self.broken:
            raise ProvisioningError(job="", message=f"cannot build {request.reference}")
        return f"{request.reference}@fake"


class MemoryStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.stored: Dict[Tuple[JobKey, str], List[str]] = {}

    def store(self, job, name, paths, *, root):
        if self.fail:
            raise SinkError("storage is down")
        self.stored[(job, name)] = sorted(str(Path(p).relative_to(root)) for p in paths)
        return f"mem://{job.stage}/{job.variant}/{name}"


class RecordingSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.reports = []

    def upload(self, report, *, job):
        if self.fail:
            raise SinkError("coverage service returned 503")
        self.reports.append((job, report))


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def config(workspace, tmp_path) -> EngineConfig:
    return EngineConfig.from_env(
        {},
        workspace=workspace,
        work_dir=tmp_path / "work",
        artifact_dir=tmp_path / "artifacts",
        max_workers=4,
    )


@pytest.fixture
def push_master() -> TriggerContext:
    return TriggerContext(event="push", branch="master", sha="abc123")


@pytest.fixture
def calls() -> List[Tuple[str, Dict[str, str], str]]:
    return []


@pytest.fixture
def registry(calls):
    """
    Actions used across the tests:
      ok       -> succeeds
      fail     -> exit code 3
      write    -> writes inputs["path"] with inputs["content"] into the workspace
      fragment -> writes inputs["file"] with inputs["content"] into the job's coverage dir
      crash    -> raises RuntimeError("kaboom")
      record   -> appends (action, inputs, job) to `calls`
    """
    reg = default_registry()
    lock = threading.Lock()

    @reg.action("ok")
    def _ok(action_id, inputs, env):
        return ActionResult(exit_code=0, outputs={"job": str(env.job)}, log="ok\n")

    @reg.action("fail")
    def _fail(action_id, inputs, env):
        return ActionResult(exit_code=3, log="boom\n")

    @reg.action("write")
    def _write(action_id, inputs, env):
        target = env.workspace / inputs["path"]
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(inputs.get("content", ""), encoding="utf-8")
        return ActionResult(exit_code=0)

    @reg.action("fragment")
    def _fragment(action_id, inputs, env):
        target = Path(env.variables["GATEDCI_COVERAGE_DIR"]) / inputs["file"]
        target.write_text(inputs.get("content", ""), encoding="utf-8")
        return ActionResult(exit_code=0)

    @reg.action("crash")
    def _crash(action_id, inputs, env):
        raise RuntimeError("kaboom")

    @reg.action("record")
    def _record(action_id, inputs, env):
        with lock:
            calls.append((action_id, dict(inputs), str(env.job)))
        return ActionResult(exit_code=0)

    return reg


@pytest.fixture
def containers() -> FakeContainers:
    return FakeContainers()


@pytest.fixture
def make_scheduler(config, registry, containers):
    def _make(definition, trigger, **kwargs):
        kwargs.setdefault("config", config)
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("containers", containers)
        kwargs.setdefault("store", MemoryStore())
        kwargs.setdefault("console", Console(quiet=True))
        return Scheduler(definition, trigger, **kwargs)

    return _make
