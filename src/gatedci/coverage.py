# coverage.py
"""
Coverage fragment merging.

Test processes write one lcov tracefile fragment each. `merge_lcov` folds
every fragment into one normalized report:

  - source paths made relative to the workspace when they live inside it
  - hit counts summed per line, function and branch
  - totals (LF/LH, FNF/FNH, BRF/BRH) recomputed instead of trusted
  - files sorted, records sorted

A fragment that cannot be parsed is skipped (and reported), never fatal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .model import check_relative_pattern

logger = logging.getLogger(__name__)


class CorruptFragment(ValueError):
    pass


BranchKey = Tuple[int, str, str]


@dataclass
class FileCoverage:
    path: str
    lines: Dict[int, int] = field(default_factory=dict)
    # function name -> declaration line
    functions: Dict[str, int] = field(default_factory=dict)
    function_hits: Dict[str, int] = field(default_factory=dict)
    # (line, block, branch) -> taken; None means "never evaluated" ("-")
    branches: Dict[BranchKey, Optional[int]] = field(default_factory=dict)

    def merge(self, other: FileCoverage) -> None:
        for line, hits in other.lines.items():
            self.lines[line] = self.lines.get(line, 0) + hits
        for name, line in other.functions.items():
            self.functions.setdefault(name, line)
        for name, hits in other.function_hits.items():
            self.function_hits[name] = self.function_hits.get(name, 0) + hits
        for key, taken in other.branches.items():
            mine = self.branches.get(key)
            if mine is None and taken is None:
                self.branches[key] = None
            else:
                self.branches[key] = (mine or 0) + (taken or 0)

    @property
    def lines_found(self) -> int:
        return len(self.lines)

    @property
    def lines_hit(self) -> int:
        return sum(1 for h in self.lines.values() if h > 0)


@dataclass
class CoverageReport:
    files: Dict[str, FileCoverage] = field(default_factory=dict)
    fragments_used: List[str] = field(default_factory=list)
    # fragment path -> reason
    fragments_skipped: Dict[str, str] = field(default_factory=dict)
    excluded_files: List[str] = field(default_factory=list)

    @property
    def lines_found(self) -> int:
        return sum(f.lines_found for f in self.files.values())

    @property
    def lines_hit(self) -> int:
        return sum(f.lines_hit for f in self.files.values())

    @property
    def line_rate(self) -> float:
        return self.lines_hit / self.lines_found if self.lines_found else 0.0

    def to_lcov(self) -> str:
        out: List[str] = []
        for path in sorted(self.files):
            fc = self.files[path]
            out.append("TN:")
            out.append(f"SF:{path}")
            for name, line in sorted(fc.functions.items(), key=lambda kv: (kv[1], kv[0])):
                out.append(f"FN:{line},{name}")
            for name in sorted(fc.functions, key=lambda n: (fc.functions[n], n)):
                out.append(f"FNDA:{fc.function_hits.get(name, 0)},{name}")
            out.append(f"FNF:{len(fc.functions)}")
            out.append(f"FNH:{sum(1 for n in fc.functions if fc.function_hits.get(n, 0) > 0)}")
            for (line, block, branch), taken in sorted(fc.branches.items()):
                out.append(f"BRDA:{line},{block},{branch},{'-' if taken is None else taken}")
            out.append(f"BRF:{len(fc.branches)}")
            out.append(f"BRH:{sum(1 for t in fc.branches.values() if t)}")
            for line, hits in sorted(fc.lines.items()):
                out.append(f"DA:{line},{hits}")
            out.append(f"LF:{fc.lines_found}")
            out.append(f"LH:{fc.lines_hit}")
            out.append("end_of_record")
        return "\n".join(out) + ("\n" if out else "")


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

def _count(raw: str, where: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        # some producers emit floats for huge counters
        try:
            value = int(float(raw))
        except ValueError:
            raise CorruptFragment(f"{where}: bad count {raw!r}") from None
    if value < 0:
        raise CorruptFragment(f"{where}: negative count {raw!r}")
    return value


def _line_no(raw: str, where: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise CorruptFragment(f"{where}: bad line number {raw!r}") from None
    if value < 0:
        raise CorruptFragment(f"{where}: bad line number {raw!r}")
    return value


def parse_lcov(text: str, source: str = "<fragment>") -> List[FileCoverage]:
    records: List[FileCoverage] = []
    current: Optional[FileCoverage] = None

    for n, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        where = f"{source}:{n}"
        if not line:
            continue
        if line == "end_of_record":
            if current is None:
                raise CorruptFragment(f"{where}: end_of_record outside a record")
            records.append(current)
            current = None
            continue
        if ":" not in line:
            raise CorruptFragment(f"{where}: unparseable line {raw!r}")

        tag, _, value = line.partition(":")
        if tag == "TN":
            continue
        if tag == "SF":
            if current is not None:
                raise CorruptFragment(f"{where}: SF before end_of_record")
            if not value:
                raise CorruptFragment(f"{where}: empty source file")
            current = FileCoverage(path=value)
            continue
        if current is None:
            raise CorruptFragment(f"{where}: {tag} outside a record")

        if tag == "DA":
            parts = value.split(",")
            if len(parts) < 2:
                raise CorruptFragment(f"{where}: malformed DA {value!r}")
            ln = _line_no(parts[0], where)
            current.lines[ln] = current.lines.get(ln, 0) + _count(parts[1], where)
        elif tag == "FN":
            ln, _, name = value.partition(",")
            if not name:
                raise CorruptFragment(f"{where}: malformed FN {value!r}")
            current.functions[name] = _line_no(ln, where)
        elif tag == "FNDA":
            hits, _, name = value.partition(",")
            if not name:
                raise CorruptFragment(f"{where}: malformed FNDA {value!r}")
            current.function_hits[name] = current.function_hits.get(name, 0) + _count(hits, where)
        elif tag == "BRDA":
            parts = value.split(",")
            if len(parts) != 4:
                raise CorruptFragment(f"{where}: malformed BRDA {value!r}")
            key = (_line_no(parts[0], where), parts[1], parts[2])
            taken = None if parts[3] == "-" else _count(parts[3], where)
            current.branches[key] = taken
        elif tag in ("LF", "LH", "FNF", "FNH", "BRF", "BRH"):
            # totals are recomputed
            _count(value, where)
        elif not tag.isupper():
            raise CorruptFragment(f"{where}: unknown record {tag!r}")

    if current is not None:
        raise CorruptFragment(f"{source}: missing end_of_record for {current.path}")
    return records


# ---------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------

def find_fragments(root: Path, patterns: Sequence[str]) -> List[Path]:
    found = set()
    for pat in patterns:
        for p in root.glob(check_relative_pattern(pat)):
            if p.is_file():
                found.add(p.resolve())
    return sorted(found)


def _normalize(path: str, root: Path) -> str:
    p = Path(path)
    if p.is_absolute():
        try:
            return p.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            return p.as_posix()
    return PurePosixPath(path.replace("\\", "/")).as_posix()


def _excluded(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch(path, pat) for pat in patterns)


def merge_lcov(
    fragments: Iterable[Path],
    *,
    root: Path,
    exclude: Sequence[str] = (),
    ignore_not_existing: bool = True,
) -> CoverageReport:
    report = CoverageReport()
    excluded = set()

    for fragment in fragments:
        name = str(fragment)
        try:
            text = Path(fragment).read_text(encoding="utf-8")
            records = parse_lcov(text, source=name)
        except (CorruptFragment, UnicodeDecodeError, OSError) as e:
            logger.warning("skipping coverage fragment %s: %s", name, e)
            report.fragments_skipped[name] = str(e)
            continue

        report.fragments_used.append(name)
        for rec in records:
            path = _normalize(rec.path, root)
            if _excluded(path, exclude):
                excluded.add(path)
                continue
            if ignore_not_existing and not (root / path).exists():
                excluded.add(path)
                continue
            rec.path = path
            if path in report.files:
                report.files[path].merge(rec)
            else:
                report.files[path] = rec

    report.excluded_files = sorted(excluded)
    return report
