# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class GatedCIError(Exception):
    """Base class for every error raised by the engine."""


@dataclass(eq=False)
class DefinitionError(GatedCIError):
    """
    The pipeline definition is unusable: malformed fields, dangling `needs`,
    dependency cycles, empty matrix axes.

    Raised at load/build time. The pipeline never starts.
    """
    message: str
    source: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message]
        if self.source:
            lines.append(f"source={self.source}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class TemplateError(GatedCIError):
    """A `${{ ... }}` expression could not be rendered."""


@dataclass(eq=False)
class ProvisioningError(GatedCIError):
    """Environment or image resolution failed. Fatal to one job only."""
    job: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"provisioning failed: {self.message}", f"job={self.job}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class StepFailure(GatedCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class SinkError(GatedCIError):
    """
    An external sink (artifact storage, coverage ingestion) rejected or could
    not be reached. Degrades the run's diagnostics, never fails a job.
    """


class StatusError(GatedCIError):
    """Illegal status transition (a terminal status may never change)."""


class ActionNotFound(GatedCIError):
    def __init__(self, action_id: str, known: Optional[list[str]] = None):
        self.action_id = action_id
        self.known = sorted(known or [])
        super().__init__(f"Unknown action '{action_id}'. Known actions: {self.known}")
