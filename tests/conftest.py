"""Test configuration and fixtures."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import pytest

from gridci.model import EventContext, EventKind, RunConfig
from gridci.ui.console import Console, set_console


class FakeExecutor:
    """Records commands; exit code per command (default 0), optional hooks."""

    def __init__(
        self,
        exit_codes: Optional[Dict[str, int]] = None,
        hooks: Optional[Dict[str, Callable[[], None]]] = None,
    ):
        self.exit_codes = dict(exit_codes or {})
        self.hooks = dict(hooks or {})
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def execute(self, command: str, env: Mapping[str, str], cwd: Path) -> int:
        with self._lock:
            self.calls.append((command, dict(env), cwd))
        hook = self.hooks.get(command)
        if hook is not None:
            hook()
        return self.exit_codes.get(command, 0)

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [c[0] for c in self.calls]

    def env_for(self, command: str) -> Dict[str, str]:
        for cmd, env, _cwd in self.calls:
            if cmd == command:
                return env
        raise KeyError(command)


class FakeCheckout:
    def __init__(self, root: Path):
        self.root = root
        self.refs: List[str] = []
        self.slots: List[str] = []

    def checkout(self, ref: str, slot: str) -> Path:
        self.refs.append(ref)
        self.slots.append(slot)
        return self.root


class FakeRegistry:
    def __init__(self, fail_push: bool = False):
        self.fail_push = fail_push
        self.logins: List[object] = []
        self.builds: List[dict] = []

    def login(self, credentials) -> None:
        self.logins.append(credentials)

    def build_and_push(self, context, file, tags: Sequence[str], labels, push: bool) -> None:
        self.builds.append({"context": context, "file": file, "tags": list(tags), "labels": dict(labels), "push": push})
        if push and self.fail_push:
            from gridci.images import RegistryError

            raise RegistryError("push", 1, "denied")


@pytest.fixture(autouse=True)
def quiet_console() -> Console:
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("gridci")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def push_main() -> EventContext:
    return EventContext(
        kind=EventKind.PUSH,
        head_sha="deadbeef",
        branch="main",
        ref="refs/heads/main",
    )


@pytest.fixture
def pr_target() -> EventContext:
    return EventContext(
        kind=EventKind.PULL_REQUEST_TARGET,
        head_sha="abc123",
        branch="feature/x",
        pr_number=42,
        base_sha="base000",
        ref="refs/heads/main",
    )


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfig:
    return RunConfig(env={"CI_LEVEL": "test"}, inherit_environ=False, workspace=tmp_path)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_checkout(tmp_path: Path) -> FakeCheckout:
    return FakeCheckout(tmp_path)


@pytest.fixture
def make_executor() -> Callable[..., FakeExecutor]:
    return FakeExecutor


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()
