# concurrency.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation flag.

    A child token reports cancelled when it or any ancestor is cancelled,
    so cancelling a run reaches every job while fail-fast cancels only the
    siblings of one job.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def reason(self) -> str | None:
        """Why this token, or the nearest cancelled ancestor, was cancelled."""
        if self._event.is_set():
            return self._reason
        return self._parent.reason if self._parent is not None else None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until this token itself is cancelled (ancestors are not watched)."""
        return self._event.wait(timeout)


@dataclass
class ConcurrencyGroup:
    key: str
    active_run_id: str | None = None
    token: CancellationToken | None = None


class ConcurrencyRegistry:
    """
    Process-wide map of concurrency group key -> active run.

    Cancellation is check-then-act, so every access holds the lock. A newer
    run cancels the previous one before registering itself; overlap while the
    previous run notices its token is accepted (best-effort).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[str, ConcurrencyGroup] = {}

    def acquire(self, key: str, run_id: str, token: CancellationToken) -> str | None:
        """
        Register `run_id` as the active run for `key`.

        Returns the id of the run that was cancelled, if any.
        """
        with self._lock:
            group = self._groups.setdefault(key, ConcurrencyGroup(key=key))
            previous = group.active_run_id
            if previous is not None and previous != run_id and group.token is not None:
                group.token.cancel(reason=f"superseded by run {run_id}")
                logger.info(
                    "cancelled in-progress run",
                    extra={"group": key, "cancelled_run": previous, "new_run": run_id},
                )
            group.active_run_id = run_id
            group.token = token
            return previous if previous != run_id else None

    def release(self, key: str, run_id: str) -> bool:
        """Clear the slot only if it still belongs to `run_id`."""
        with self._lock:
            group = self._groups.get(key)
            if group is None or group.active_run_id != run_id:
                return False
            group.active_run_id = None
            group.token = None
            return True

    def active(self, key: str) -> str | None:
        with self._lock:
            group = self._groups.get(key)
            return group.active_run_id if group else None


_registry: Optional[ConcurrencyRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> ConcurrencyRegistry:
    """The process-wide registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ConcurrencyRegistry()
        return _registry
