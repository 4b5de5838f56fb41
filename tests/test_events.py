"""Unit tests for trigger context resolution."""

import json
from pathlib import Path

import pytest

from gridci.errors import MalformedEvent
from gridci.events import checkout_ref, concurrency_key, event_from_environment, load_event, resolve_event
from gridci.model import EventContext, EventKind


def _pr_payload(**overrides) -> dict:
    payload = {
        "sha": "merge999",
        "pull_request": {
            "number": 42,
            "head": {"sha": "abc123", "ref": "feature/x"},
            "base": {"sha": "base000", "ref": "main"},
        },
        "repository": {"full_name": "anoma/namada"},
    }
    payload.update(overrides)
    return payload


def test_push_event() -> None:
    ctx = resolve_event(
        {"ref": "refs/heads/main", "after": "deadbeef", "before": "cafe"},
        "push",
    )

    assert ctx.kind is EventKind.PUSH
    assert ctx.head_sha == "deadbeef"
    assert ctx.branch == "main"
    assert ctx.base_sha == "cafe"
    assert ctx.pr_number is None


def test_push_falls_back_to_head_commit() -> None:
    ctx = resolve_event({"ref": "refs/tags/v1.0.0", "head_commit": {"id": "feed"}}, "push")

    assert ctx.head_sha == "feed"
    assert ctx.branch is None
    assert ctx.tag == "v1.0.0"


def test_push_without_sha_is_malformed() -> None:
    with pytest.raises(MalformedEvent) as exc:
        resolve_event({"ref": "refs/heads/main"}, "push")

    assert exc.value.kind == "push"
    assert "after" in exc.value.missing


def test_pull_request_target_builds_pr_head() -> None:
    ctx = resolve_event(_pr_payload(), "pull_request_target")

    assert ctx.kind is EventKind.PULL_REQUEST_TARGET
    assert ctx.head_sha == "abc123"
    assert ctx.pr_number == 42
    assert ctx.base_sha == "base000"
    assert ctx.branch == "feature/x"
    assert ctx.repository == "anoma/namada"
    assert checkout_ref(ctx) == "abc123"


def test_pull_request_prefers_event_sha() -> None:
    ctx = resolve_event(_pr_payload(), "pull_request")

    assert ctx.head_sha == "merge999"
    assert ctx.ref == "refs/pull/42/merge"
    assert checkout_ref(ctx) == "refs/pull/42/merge"


@pytest.mark.parametrize("kind", ["pull_request", "pull_request_target"])
def test_pull_request_without_number_is_malformed(kind: str) -> None:
    payload = _pr_payload()
    del payload["pull_request"]["number"]

    with pytest.raises(MalformedEvent) as exc:
        resolve_event(payload, kind)

    assert exc.value.missing == ["pull_request.number"]


def test_pull_request_without_payload_lists_all_missing_fields() -> None:
    with pytest.raises(MalformedEvent) as exc:
        resolve_event({"sha": "x"}, "pull_request_target")

    assert exc.value.missing == ["pull_request.number", "pull_request.head.sha"]
    assert "missing" in str(exc.value)


def test_manual_event_and_dispatch_alias() -> None:
    ctx = resolve_event({"sha": "abc", "ref": "refs/heads/release"}, "workflow_dispatch")

    assert ctx.kind is EventKind.MANUAL
    assert ctx.branch == "release"

    with pytest.raises(MalformedEvent):
        resolve_event({"ref": "refs/heads/release"}, "manual")


def test_unknown_kind() -> None:
    with pytest.raises(MalformedEvent) as exc:
        resolve_event({"sha": "abc"}, "schedule")

    assert exc.value.kind == "schedule"


def test_kind_from_payload_and_explicit_kind_wins() -> None:
    payload = {"event_name": "push", "after": "abc", "ref": "refs/heads/main"}

    assert resolve_event(payload).kind is EventKind.PUSH
    assert resolve_event({**payload, "sha": "abc"}, EventKind.MANUAL).kind is EventKind.MANUAL


def test_kind_inferred_from_bare_webhook_body() -> None:
    push = resolve_event({"ref": "refs/heads/main", "after": "abc123"})
    pr = resolve_event(_pr_payload())

    assert push.kind is EventKind.PUSH
    assert push.head_sha == "abc123"
    assert pr.kind is EventKind.PULL_REQUEST
    assert pr.pr_number == 42

    with pytest.raises(MalformedEvent) as exc:
        resolve_event({"sha": "abc"})
    assert exc.value.missing == ["kind"]


def test_invalid_payload_types() -> None:
    with pytest.raises(MalformedEvent):
        resolve_event(_pr_payload(pull_request={"number": "not-a-number", "head": {"sha": "x"}}), "pull_request")


def test_load_event_file(tmp_path: Path) -> None:
    path = tmp_path / "event.json"
    path.write_text(json.dumps({"event_name": "pull_request_target", **_pr_payload()}))

    ctx = load_event(path)

    assert ctx.head_sha == "abc123"

    with pytest.raises(MalformedEvent):
        load_event(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]")
    with pytest.raises(MalformedEvent):
        load_event(bad, "push")


def test_event_from_environment(tmp_path: Path) -> None:
    path = tmp_path / "event.json"
    path.write_text(json.dumps({"before": "cafe"}))

    ctx = event_from_environment(
        {
            "GITHUB_EVENT_NAME": "push",
            "GITHUB_EVENT_PATH": str(path),
            "GITHUB_SHA": "deadbeef",
            "GITHUB_REF": "refs/heads/main",
            "GITHUB_REPOSITORY": "anoma/namada",
        }
    )

    assert ctx.head_sha == "deadbeef"
    assert ctx.branch == "main"
    assert ctx.base_sha == "cafe"
    assert ctx.repository == "anoma/namada"


def test_concurrency_key() -> None:
    push = EventContext(kind=EventKind.PUSH, head_sha="a", branch="main")
    pr = EventContext(kind=EventKind.PULL_REQUEST, head_sha="b", pr_number=42)

    assert concurrency_key("Build docs", push) == "Build docs-"
    assert concurrency_key("Build docs", pr) == "Build docs-42"
