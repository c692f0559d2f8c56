# git.py
# Small, focused wrapper around the Git CLI.
# The checkout capability goes through here instead of calling
# subprocess("git ...") itself.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


class GitError(RuntimeError):
    """A git invocation failed; carries git's stderr."""


def _git(args: list[str], cwd: Optional[Path | str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises GitError with git's stderr when the command exits nonzero or
    git is not installed.
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=None if cwd is None else str(cwd),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        raise GitError("git command not found. Please install Git.") from None

    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc.stdout.strip()


def is_repo(path: Path) -> bool:
    return (path / ".git").exists()


def head_sha(cwd: Path) -> str:
    """Full SHA of HEAD in the given checkout."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def clone_or_update(source: str, dest: Path, ref: Optional[str] = None) -> str:
    """
    Clone `source` into `dest` (or fetch if `dest` is already a checkout),
    then check out `ref` when given. Returns the checked out HEAD sha.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)

    if is_repo(dest):
        _git(["fetch", "origin"], cwd=dest)
    else:
        _git(["clone", "--quiet", source, str(dest)])

    if ref:
        _git(["checkout", "--quiet", ref], cwd=dest)

    return head_sha(dest)
