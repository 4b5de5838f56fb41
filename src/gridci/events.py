"""Trigger context resolution.

Turns an event descriptor (a GitHub-style webhook payload plus its event
name) into an immutable EventContext, and derives from it the checkout ref
and the concurrency group key of a run.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from . import git
from .errors import MalformedEvent
from .model import EventContext, EventKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CommitRef(_Payload):
    sha: str | None = None
    ref: str | None = None


class PullRequestPayload(_Payload):
    number: int | None = None
    head: CommitRef = CommitRef()
    base: CommitRef = CommitRef()


class HeadCommit(_Payload):
    id: str | None = None


class RepositoryPayload(_Payload):
    full_name: str | None = None


class EventPayload(_Payload):
    """Fields gridci reads from an event; everything else is ignored."""
    event_name: str | None = None
    kind: str | None = None
    ref: str | None = None
    sha: str | None = None
    after: str | None = None
    before: str | None = None
    head_commit: HeadCommit | None = None
    pull_request: PullRequestPayload | None = None
    repository: RepositoryPayload | str | None = None


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def _branch_of(ref: str | None) -> str | None:
    if ref and ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return None


def _repository_of(payload: EventPayload) -> str | None:
    repo = payload.repository
    if isinstance(repo, RepositoryPayload):
        return repo.full_name
    return repo


def _infer_kind(payload: EventPayload) -> str | None:
    # bare webhook bodies carry no event name; their shape gives it away
    if payload.pull_request is not None:
        return EventKind.PULL_REQUEST.value
    if payload.after or payload.head_commit is not None:
        return EventKind.PUSH.value
    return None


def _parse_kind(raw: str | None) -> EventKind:
    if not raw:
        raise MalformedEvent("event kind is required (pass it explicitly or set event_name)", missing=["kind"])
    try:
        return EventKind.parse(raw)
    except ValueError:
        raise MalformedEvent(f"unsupported event kind: {raw!r}", kind=raw) from None


def resolve_event(payload: Mapping[str, Any], kind: str | EventKind | None = None) -> EventContext:
    """
    Resolve an event payload into an EventContext.

    `kind` wins over any `event_name`/`kind` key inside the payload. With
    neither, a payload with `pull_request` is a pull_request event and one
    with `after` or `head_commit` is a push.

    Raises:
        MalformedEvent: unknown kind, or fields required by the kind are absent.
    """
    try:
        p = EventPayload.model_validate(dict(payload))
    except ValidationError as e:
        raise MalformedEvent(f"invalid event payload: {e.errors()[0]['msg']}") from e

    if isinstance(kind, EventKind):
        k = kind
    else:
        k = _parse_kind(kind or p.kind or p.event_name or _infer_kind(p))

    repository = _repository_of(p)

    if k in (EventKind.PULL_REQUEST, EventKind.PULL_REQUEST_TARGET):
        pr = p.pull_request
        missing = []
        if pr is None or pr.number is None:
            missing.append("pull_request.number")
        if pr is None or not pr.head.sha:
            missing.append("pull_request.head.sha")
        if missing:
            raise MalformedEvent(f"{k.value} event is incomplete", kind=k.value, missing=missing)

        if k is EventKind.PULL_REQUEST_TARGET:
            # runs in the base repository's context but must build the fork's code
            head_sha = pr.head.sha
        else:
            head_sha = p.sha or pr.head.sha

        return EventContext(
            kind=k,
            head_sha=head_sha,
            branch=pr.head.ref,
            pr_number=pr.number,
            base_sha=pr.base.sha,
            ref=p.ref or f"refs/pull/{pr.number}/merge",
            repository=repository,
        )

    if k is EventKind.PUSH:
        sha = p.after or p.sha or (p.head_commit.id if p.head_commit else None)
        if not sha:
            raise MalformedEvent("push event has no commit SHA", kind=k.value, missing=["after"])
        return EventContext(
            kind=k,
            head_sha=sha,
            branch=_branch_of(p.ref),
            base_sha=p.before,
            ref=p.ref,
            repository=repository,
        )

    # manual dispatch
    if not p.sha:
        raise MalformedEvent("manual event has no commit SHA", kind=k.value, missing=["sha"])
    return EventContext(
        kind=k,
        head_sha=p.sha,
        branch=_branch_of(p.ref),
        ref=p.ref,
        repository=repository,
    )


def load_event(path: str | Path, kind: str | EventKind | None = None) -> EventContext:
    """Resolve an event from a JSON descriptor file."""
    event_path = Path(path)
    try:
        payload = json.loads(event_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise MalformedEvent(f"event file not found: {event_path}") from None
    except json.JSONDecodeError as e:
        raise MalformedEvent(f"event file is not valid JSON: {event_path}: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedEvent(f"event file must contain a JSON object: {event_path}")
    return resolve_event(payload, kind)


def event_from_environment(environ: Mapping[str, str] | None = None) -> EventContext:
    """
    Resolve an event from GitHub-Actions style environment variables.

    GITHUB_EVENT_PATH fields win; GITHUB_SHA / GITHUB_REF / GITHUB_REPOSITORY
    only fill what the payload lacks.
    """
    env = os.environ if environ is None else environ
    payload: dict[str, Any] = {}
    event_path = env.get("GITHUB_EVENT_PATH")
    if event_path:
        try:
            payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedEvent(f"cannot read GITHUB_EVENT_PATH {event_path}: {e}") from e

    payload.setdefault("sha", env.get("GITHUB_SHA"))
    payload.setdefault("ref", env.get("GITHUB_REF"))
    if env.get("GITHUB_REPOSITORY"):
        payload.setdefault("repository", env["GITHUB_REPOSITORY"])

    return resolve_event(payload, env.get("GITHUB_EVENT_NAME"))


def local_event(cwd: str | Path | None = None) -> EventContext:
    """A manual-dispatch context describing the local checkout."""
    try:
        sha = git.head_sha(cwd)
        branch = git.current_branch(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise MalformedEvent(f"cannot describe local checkout: {e}") from e
    logger.debug("local event", extra={"sha": sha, "branch": branch})
    return EventContext(
        kind=EventKind.MANUAL,
        head_sha=sha,
        branch=branch,
        ref=f"refs/heads/{branch}" if branch else None,
    )


# ---------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------

def checkout_ref(ctx: EventContext) -> str:
    """The ref every job of the run checks out."""
    if ctx.kind is EventKind.PULL_REQUEST_TARGET:
        return ctx.head_sha
    return ctx.ref or ctx.head_sha


def concurrency_key(workflow_name: str, ctx: EventContext) -> str:
    """Runs sharing this key cancel each other (one per PR, one for all pushes)."""
    number = "" if ctx.pr_number is None else str(ctx.pr_number)
    return f"{workflow_name}-{number}"
