"""Console output formatting utilities for gatedci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..dag import JobGraph
    from ..scheduler import PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        source: str,
        job_count: int,
        event: str,
        branch: str,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Source: {source}",
            f"Trigger: {event} on '{branch}'",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, graph: JobGraph) -> None:
        """Print the job graph level by level."""
        self.print_header("PLAN")
        for idx, level in enumerate(graph.levels, start=1):
            self._emit(f"Level {idx}:")
            for stage_id in level:
                for job in graph.jobs_of(stage_id):
                    needs = graph.dependencies(job.key)
                    suffix = f" (needs {len(needs)} job(s))" if needs else ""
                    self._emit(f"  {job.key}{suffix}")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._emit(f"JOB STARTED: {name}")

    def print_job_finished(self, name: str, status: str, reason: Optional[str] = None) -> None:
        if self.quiet:
            return
        line = f"JOB {status.upper()}: {name}"
        if reason:
            line += f" ({reason})"
        self._emit(line)

    def print_results(self, result: PipelineResult) -> None:
        """Print the final per-job status table."""
        self._emit("\n" + "=" * 40, "RESULTS", "=" * 40)
        for rec in result.records:
            status_display = rec.status.value.upper()
            line = f"  {rec.key}: {status_display}"
            if rec.failed_step:
                line += f" (step: {rec.failed_step})"
            elif rec.reason and rec.status.value != "succeeded":
                line += f" ({rec.reason})"
            self._emit(line)
            for note in rec.degraded:
                self._emit(f"      degraded: {note}")
            if self.debug:
                for step in rec.steps:
                    self._emit(f"      - {step.name}: {step.status.value}")
        for art in result.artifacts:
            where = art.reference or "not uploaded"
            variant = f" [{art.variant}]" if art.variant else ""
            self._emit(f"  artifact {art.stage}{variant} {art.name}: {where}")
        self._emit(f"\nPIPELINE: {result.status.value.upper()}")

    def print_failure_output(self, result: PipelineResult) -> None:
        """Show the captured output of every failed step."""
        for rec in result.failed_jobs():
            for step in rec.steps:
                if step.status.value != "failed":
                    continue
                self._emit(f"\nSTEP FAILED: {rec.key} / {step.name}", err=True)
                if step.exit_code is not None:
                    self._emit(f"Exit code: {step.exit_code}", err=True)
                if step.error and (self.debug or step.exit_code is None):
                    self._emit(f"Error: {step.error}", err=True)
                if step.output:
                    self._emit(step.output.rstrip(), err=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
