# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_WORK_DIR = ".gatedci/work"
DEFAULT_ARTIFACT_DIR = ".gatedci/artifacts"


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine settings. Every field can come from a GATEDCI_* environment
    variable; explicit overrides (CLI options) win.
    """
    max_workers: int
    workspace: Path
    work_dir: Path
    artifact_dir: Path
    coverage_url: Optional[str] = None
    coverage_token: Optional[str] = None
    docker_bin: str = "docker"
    # characters of step output kept per step
    log_tail: int = 4000

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> EngineConfig:
        env = os.environ if environ is None else environ

        workspace = Path(env.get("GATEDCI_WORKSPACE", ".")).resolve()
        config = cls(
            max_workers=int(env.get("GATEDCI_MAX_WORKERS", _default_workers())),
            workspace=workspace,
            work_dir=Path(env.get("GATEDCI_WORK_DIR", workspace / DEFAULT_WORK_DIR)),
            artifact_dir=Path(env.get("GATEDCI_ARTIFACT_DIR", workspace / DEFAULT_ARTIFACT_DIR)),
            coverage_url=env.get("GATEDCI_COVERAGE_URL") or None,
            coverage_token=env.get("GATEDCI_COVERAGE_TOKEN") or None,
            docker_bin=env.get("GATEDCI_DOCKER", "docker"),
            log_tail=int(env.get("GATEDCI_LOG_TAIL", "4000")),
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides) -> EngineConfig:
        """Apply non-None overrides. A new workspace moves the derived dirs along."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if "workspace" in values:
            ws = Path(values["workspace"]).resolve()
            values["workspace"] = ws
            values.setdefault("work_dir", ws / DEFAULT_WORK_DIR)
            values.setdefault("artifact_dir", ws / DEFAULT_ARTIFACT_DIR)
        for k in ("work_dir", "artifact_dir"):
            if k in values:
                values[k] = Path(values[k])
        return replace(self, **values)
