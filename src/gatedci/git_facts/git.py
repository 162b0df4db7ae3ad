# git.py
# Small wrapper around the Git CLI, used to fill in the trigger context
# (branch, commit) when a run is started locally.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """Name of the checked-out branch, or "" on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return "" if name == "HEAD" else name


def trigger_facts(cwd: Optional[str | Path] = None) -> tuple[str, str]:
    """
    Best-effort (branch, sha) for the working tree; empty strings outside
    a repository or without git.
    """
    try:
        return current_branch(cwd), head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "", ""
