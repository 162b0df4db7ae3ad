# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import re
import tarfile
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .coverage import CoverageReport, find_fragments, merge_lcov
from .errors import SinkError, TemplateError
from .model import Artifact, Environment, Job, JobKey, check_relative_pattern
from .status import StatusTable
from .templating import render

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Hashing helpers
# ---------------------------------------------------------------------

def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _files_of(paths: Sequence[Path]) -> List[Path]:
    files: List[Path] = []
    for p in paths:
        if p.is_dir():
            files.extend(_iter_files_under(p))
        elif p.is_file():
            files.append(p)
    return sorted(set(files))


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.=-]+", "_", text).strip("_") or "default"


def path_part(text: str) -> str:
    """
    File-system safe form of a stage id, variant key or artifact name.
    A slug that had to drop characters gets a short digest of the raw text,
    so "os=x y" and "os=x/y" never share a path.
    """
    slug = _slug(text)
    if not text or slug == text:
        return slug
    return f"{slug}-{hashlib.sha256(text.encode('utf-8')).hexdigest()[:10]}"


def report_path(output: str, variant: str) -> str:
    """lcov.info -> lcov-os=linux.info for a matrix job; unchanged otherwise."""
    if not variant:
        return output
    p = PurePosixPath(output.replace("\\", "/"))
    return str(p.with_name(f"{p.stem}-{path_part(variant)}{p.suffix}"))


def resolve_paths(root: Path, pattern: str) -> List[Path]:
    """
    Expand an artifact path declaration relative to the workspace:
      - file path: "lcov.info"
      - dir path:  "linux"
      - glob:      "target/debug/*.pdb"
    """
    pattern = check_relative_pattern(pattern.strip())
    if not pattern:
        return []
    p = root / pattern
    if p.exists():
        return [p]
    return sorted(m for m in root.glob(pattern) if m.exists())


# ---------------------------------------------------------------------
# Artifact storage collaborator
# ---------------------------------------------------------------------

class ArtifactStore(Protocol):
    def store(self, job: JobKey, name: str, paths: Sequence[Path], *, root: Path) -> str:
        """Persist the files and return a stored reference. Re-upload is allowed."""
        ...


class LocalArtifactStore:
    """
    File-based artifact store:
      root/
        <stage>/
          <variant key>/
            <name>.tar.gz
            <name>.manifest.json

    Storing identical content twice returns the same reference without
    rewriting the archive.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _dir(self, job: JobKey) -> Path:
        d = self.root / path_part(job.stage) / path_part(job.variant)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def archive_path(self, job: JobKey, name: str) -> Path:
        return self._dir(job) / f"{path_part(name)}.tar.gz"

    def manifest_path(self, job: JobKey, name: str) -> Path:
        return self._dir(job) / f"{path_part(name)}.manifest.json"

    def store(self, job: JobKey, name: str, paths: Sequence[Path], *, root: Path) -> str:
        files = _files_of(paths)
        entries = [(_relpath(f, root), _hash_file_contents(f), f.stat().st_size) for f in files]
        digest = hashlib.sha256(_json_dumps_stable(entries).encode("utf-8")).hexdigest()

        art = self.archive_path(job, name)
        man = self.manifest_path(job, name)
        reference = art.as_uri()

        if art.exists() and man.exists():
            try:
                stored = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                stored = {}
            if stored.get("digest") == digest:
                logger.debug("artifact %s/%s unchanged, keeping %s", job, name, reference)
                return reference

        manifest = {
            "stage": job.stage,
            "variant": job.variant,
            "name": name,
            "digest": digest,
            "files": entries,
            "stored_at_unix": int(time.time()),
        }

        tmp = art.with_suffix(".tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for f, (rel, _digest, _size) in zip(files, entries):
                    tar.add(str(f), arcname=rel, recursive=False)
                payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                info = tarfile.TarInfo(name=".gatedci_manifest.json")
                info.size = len(payload)
                info.mtime = manifest["stored_at_unix"]
                tar.addfile(info, fileobj=io.BytesIO(payload))
            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return reference


# ---------------------------------------------------------------------
# Coverage sink collaborator
# ---------------------------------------------------------------------

class CoverageSink(Protocol):
    def upload(self, report: CoverageReport, *, job: JobKey) -> None:
        """Hand a merged report over. Raises SinkError on (transient) failure."""
        ...


class HttpCoverageSink:
    """POSTs the normalized lcov report to a coverage ingestion endpoint."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.url = url
        self.token = token
        self.timeout = timeout

    def upload(self, report: CoverageReport, *, job: JobKey) -> None:
        headers = {
            "Content-Type": "text/plain; charset=utf-8",
            "X-Gatedci-Job": str(job),
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"

        req = urllib.request.Request(
            self.url,
            data=report.to_lcov().encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            raise SinkError(f"coverage upload failed: {e.code} {e.reason}. {error_body}".strip()) from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            raise SinkError(f"coverage sink unreachable: {e}") from e


# ---------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------

class ArtifactAggregator:
    """
    Captures declared outputs of every job and forwards them to the
    collaborators. Keys are (stage id, variant key, artifact name).

    Upload and sink problems are recorded as degraded on the job; they
    never fail it.
    """

    def __init__(
        self,
        status: StatusTable,
        store: ArtifactStore | None = None,
        sink: CoverageSink | None = None,
    ):
        self.status = status
        self.store = store
        self.sink = sink
        self._lock = threading.Lock()
        self._artifacts: Dict[Tuple[str, str, str], Artifact] = {}
        self._reports: Dict[JobKey, CoverageReport] = {}

    # -- lookups ------------------------------------------------------

    def get(self, stage: str, variant: str, name: str) -> Artifact:
        with self._lock:
            return self._artifacts[(stage, variant, name)]

    def artifacts(self) -> List[Artifact]:
        with self._lock:
            return [self._artifacts[k] for k in sorted(self._artifacts)]

    def coverage_report(self, job: JobKey) -> Optional[CoverageReport]:
        with self._lock:
            return self._reports.get(job)

    # -- capture ------------------------------------------------------

    def _degrade(self, job: JobKey, note: str) -> None:
        logger.warning("[%s] %s", job, note)
        self.status.mark_degraded(job, note)

    def collect(self, job: Job, environment: Environment) -> List[Artifact]:
        """Capture and upload every artifact the job's stage declares."""
        out: List[Artifact] = []
        ctx = environment.template_context()
        for template, pattern in job.stage.artifacts.items():
            try:
                name = render(template, ctx)
                pattern = render(pattern, ctx)
            except TemplateError as e:
                self._degrade(job.key, f"artifact {template!r}: {e}")
                continue

            try:
                paths = resolve_paths(environment.workspace, pattern)
            except (ValueError, NotImplementedError, OSError) as e:
                self._degrade(job.key, f"artifact {name!r}: {e}")
                continue
            if not paths:
                self._degrade(job.key, f"artifact {name!r}: no files matched {pattern!r}")
                continue

            key = (job.stage.id, job.variant.key, name)
            reference = None
            if self.store is not None:
                try:
                    reference = self.store.store(job.key, name, paths, root=environment.workspace)
                except (SinkError, OSError, ValueError, tarfile.TarError) as e:
                    self._degrade(job.key, f"artifact {name!r} upload failed: {e}")

            artifact = Artifact(
                stage=job.stage.id,
                variant=job.variant.key,
                name=name,
                paths=tuple(paths),
                reference=reference,
            )
            with self._lock:
                if key in self._artifacts:
                    self._degrade(job.key, f"artifact {name!r} declared twice, keeping the last one")
                self._artifacts[key] = artifact
            if reference is not None:
                self.status.add_artifact(job.key, name, reference)
            out.append(artifact)
        return out

    def collect_coverage(self, job: Job, environment: Environment) -> Optional[CoverageReport]:
        """Merge the job's coverage fragments, write the report, hand it to the sink."""
        spec = job.stage.coverage
        if spec is None:
            return None

        root = environment.workspace
        fragment_dir = environment.coverage_dir
        if fragment_dir is None:
            self._degrade(job.key, "coverage: job has no coverage directory")
            return None
        try:
            fragments = find_fragments(fragment_dir, spec.fragments)
        except (ValueError, NotImplementedError, OSError) as e:
            self._degrade(job.key, f"coverage fragments: {e}")
            return None
        report = merge_lcov(
            fragments,
            root=root,
            exclude=spec.exclude,
            ignore_not_existing=spec.ignore_not_existing,
        )
        for fragment, reason in report.fragments_skipped.items():
            self._degrade(job.key, f"coverage fragment skipped: {fragment}: {reason}")

        with self._lock:
            self._reports[job.key] = report

        if not report.fragments_used:
            self._degrade(job.key, f"no usable coverage fragments matched {list(spec.fragments)}")
            return report

        output = report_path(spec.output, job.variant.key)
        try:
            (root / check_relative_pattern(output)).write_text(report.to_lcov(), encoding="utf-8")
        except (ValueError, OSError) as e:
            self._degrade(job.key, f"could not write coverage report {output}: {e}")

        logger.info(
            "[%s] coverage: %d files, %d/%d lines (%.1f%%)",
            job.name,
            len(report.files),
            report.lines_hit,
            report.lines_found,
            report.line_rate * 100,
        )

        if spec.upload and self.sink is not None:
            try:
                self.sink.upload(report, job=job.key)
            except SinkError as e:
                self._degrade(job.key, f"coverage upload: {e}")
        return report
