"""Tests for git-backed checkouts against a throwaway local origin repo."""

import os
import shutil
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from gridci import git
from gridci.concurrency import ConcurrencyRegistry
from gridci.dsl import job, sh, wf
from gridci.executor import GitCheckout, ShellTaskExecutor
from gridci.model import EventContext, EventKind, JobStatus, RunConfig
from gridci.runner import Orchestrator

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    return subprocess.check_output(
        ["git", "-c", "user.name=gridci", "-c", "user.email=ci@example.com", "-c", "commit.gpgsign=false", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    ).strip()


def _commit(repo: Path, content: str) -> str:
    (repo / "README.md").write_text(content)
    _git(repo, "add", "README.md")
    _git(repo, "commit", "--quiet", "-m", content.strip())
    return _git(repo, "rev-parse", "HEAD")


@pytest.fixture
def origin(tmp_path: Path) -> SimpleNamespace:
    repo = tmp_path / "origin"
    repo.mkdir()
    _git(repo, "init", "--quiet")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    main = _commit(repo, "main\n")
    _git(repo, "checkout", "--quiet", "-b", "feature/x")
    feature = _commit(repo, "feature\n")
    _git(repo, "checkout", "--quiet", "main")
    return SimpleNamespace(path=repo, main=main, feature=feature)


def test_checks_out_branch_and_commit(origin: SimpleNamespace, tmp_path: Path) -> None:
    checkout = GitCheckout(str(origin.path), tmp_path / "work")

    on_main = checkout.checkout("refs/heads/main", "docs")
    on_head = checkout.checkout(origin.feature, "docs")

    assert on_main != on_head
    assert git.head_sha(on_main) == origin.main
    assert git.head_sha(on_head) == origin.feature
    assert (on_head / "README.md").read_text() == "feature\n"
    assert git.current_branch(on_head) is None


def test_each_slot_gets_its_own_tree(origin: SimpleNamespace, tmp_path: Path) -> None:
    checkout = GitCheckout(str(origin.path), tmp_path / "work")

    first = checkout.checkout("refs/heads/main", "docs-0")
    second = checkout.checkout("refs/heads/main", "docs-1")
    (first / "README.md").write_text("dirty\n")

    assert first != second
    assert (second / "README.md").read_text() == "main\n"


def test_checkout_again_picks_up_new_commits(origin: SimpleNamespace, tmp_path: Path) -> None:
    checkout = GitCheckout(str(origin.path), tmp_path / "work")
    tree = checkout.checkout("refs/heads/main", "docs")
    (tree / "stale.txt").write_text("left over\n")

    newer = _commit(origin.path, "main v2\n")
    again = checkout.checkout("refs/heads/main", "docs")

    assert again == tree
    assert git.head_sha(again) == newer
    assert not (again / "stale.txt").exists()


def test_unknown_ref_is_a_runtime_error(origin: SimpleNamespace, tmp_path: Path) -> None:
    checkout = GitCheckout(str(origin.path), tmp_path / "work")

    with pytest.raises(RuntimeError, match="git checkout of refs/heads/nope failed"):
        checkout.checkout("refs/heads/nope", "docs")


def test_parallel_matrix_instances_do_not_share_a_tree(origin: SimpleNamespace, tmp_path: Path) -> None:
    # each instance claims its tree, waits, then checks nobody else wrote to it
    claim = 'test ! -e claimed && echo ${{ n }} > claimed && sleep 0.3 && test "$(cat claimed)" = ${{ n }}'
    workflow = wf("ci", job("test", sh("claim", claim), matrix={"n": [1, 2, 3, 4, 5, 6]}))
    ctx = EventContext(kind=EventKind.PUSH, head_sha=origin.main, branch="main", ref="refs/heads/main")
    orchestrator = Orchestrator(
        executor=ShellTaskExecutor(),
        checkout=GitCheckout(str(origin.path), tmp_path / "work"),
        registry=ConcurrencyRegistry(),
        max_workers=6,
    )

    result = orchestrator.run(
        workflow,
        ctx,
        run_config=RunConfig(env={"PATH": os.environ["PATH"]}, inherit_environ=False, workspace=tmp_path),
    )

    assert [j.status for j in result.jobs] == [JobStatus.SUCCEEDED] * 6
    assert result.exit_code == 0
    trees = sorted(p.name for p in (tmp_path / "work").iterdir() if p.name != "origin")
    assert trees == [f"origin-refs_heads_main-test-{i}" for i in range(6)]
