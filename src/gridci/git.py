# git.py
# Small, focused wrapper around the Git CLI.
# Every git invocation in gridci goes through _git() so the rest of the
# codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: if git exits non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Name of the checked out branch, or None on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def clone(url: str, dest: Path) -> None:
    _git(["clone", "--quiet", "--no-checkout", url, str(dest)])


def fetch(cwd: Path, remote: str = "origin") -> None:
    # fetch commits that are only reachable from PR refs too (fork heads)
    _git(["fetch", "--quiet", remote, "+refs/heads/*:refs/remotes/origin/*", "+refs/pull/*:refs/remotes/pull/*"], cwd=cwd)


def worktree_add(repo: Path, dest: Path, ref: str) -> None:
    """New detached working tree of `repo` at `dest`, checked out at `ref`."""
    _git(["worktree", "add", "--quiet", "--detach", str(dest), ref], cwd=repo)


def worktree_prune(repo: Path) -> None:
    """Forget working trees whose directories are gone."""
    _git(["worktree", "prune"], cwd=repo)
