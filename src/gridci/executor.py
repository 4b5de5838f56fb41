# executor.py
from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Dict, Mapping, Protocol

from . import git
from .ui.console import get_console

logger = logging.getLogger(__name__)

# how much captured output to echo when a command fails
OUTPUT_TAIL = 4000


# ---------------------------------------------------------------------
# Task executor
# ---------------------------------------------------------------------

class TaskExecutor(Protocol):
    def execute(self, command: str, env: Mapping[str, str], cwd: Path) -> int:
        """Run `command`; return its exit code. Command semantics are opaque."""
        ...


class ShellTaskExecutor:
    """Runs commands through the system shell."""

    def __init__(self, *, capture: bool = True):
        self.capture = capture

    def execute(self, command: str, env: Mapping[str, str], cwd: Path) -> int:
        if not cwd.exists():
            raise FileNotFoundError(f"step cwd not found: {cwd}")

        proc = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            env=dict(env),
            text=True,
            capture_output=self.capture,
        )

        if self.capture:
            # full output only in debug mode unless the command failed
            console = get_console()
            emit = console.print_output if proc.returncode != 0 else console.print_debug
            for stream in (proc.stdout, proc.stderr):
                if stream:
                    emit(stream[-OUTPUT_TAIL:])
        return proc.returncode


# ---------------------------------------------------------------------
# Source checkout
# ---------------------------------------------------------------------

class CheckoutProvider(Protocol):
    def checkout(self, ref: str, slot: str) -> Path:
        """Make `ref` available for the job instance `slot`; return its working directory."""
        ...


class LocalCheckout:
    """
    Uses an existing working tree as-is.

    Local runs build whatever is on disk; the requested ref is only logged.
    """

    def __init__(self, root: str | Path = "."):
        self.root = Path(root).resolve()

    def checkout(self, ref: str, slot: str) -> Path:
        logger.debug("local checkout", extra={"ref": ref, "slot": slot, "root": str(self.root)})
        return self.root


_UNSAFE_DIR = re.compile(r"[^A-Za-z0-9._-]+")

# clone path -> lock; clone, fetch and worktree bookkeeping share one .git dir
_clone_locks: Dict[Path, threading.Lock] = {}
_clone_locks_guard = threading.Lock()


def _clone_lock(path: Path) -> threading.Lock:
    with _clone_locks_guard:
        return _clone_locks.setdefault(path, threading.Lock())


class GitCheckout:
    """
    Keeps one clone of `repo_url` under `work_dir` and gives every job
    instance its own detached worktree of it.

    Instances of a matrix run in parallel, so each (ref, slot) pair gets a
    separate directory; only the clone itself is shared, and every git
    command touching it runs under that clone's lock. A later checkout of
    the same ref and slot replaces the previous tree.
    """

    def __init__(self, repo_url: str, work_dir: str | Path):
        self.repo_url = repo_url
        self.work_dir = Path(work_dir).resolve()

    @property
    def repo_name(self) -> str:
        return self.repo_url.rstrip("/").split("/")[-1].replace(".git", "")

    def _target(self, ref: str) -> str:
        if ref.startswith("refs/heads/"):
            return "origin/" + ref[len("refs/heads/"):]
        if ref.startswith("refs/pull/"):
            return "pull/" + ref[len("refs/pull/"):]
        return ref

    def tree_for(self, ref: str, slot: str) -> Path:
        return self.work_dir / f"{self.repo_name}-{_UNSAFE_DIR.sub('_', ref)}-{_UNSAFE_DIR.sub('_', slot)}"

    def checkout(self, ref: str, slot: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        clone = self.work_dir / self.repo_name
        dest = self.tree_for(ref, slot)

        try:
            with _clone_lock(clone):
                if not clone.exists():
                    git.clone(self.repo_url, clone)
                git.fetch(clone)
                if dest.exists():
                    shutil.rmtree(dest)
                git.worktree_prune(clone)
                git.worktree_add(clone, dest, self._target(ref))
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"git checkout of {ref} failed: {(e.stderr or '').strip()}") from e
        except FileNotFoundError:
            raise RuntimeError("git command not found. Please install Git.") from None

        logger.info("checked out", extra={"ref": ref, "slot": slot, "path": str(dest)})
        return dest
