"""Unit tests for the step executor."""

from dataclasses import replace
from pathlib import Path

from gridci.artifacts import ArtifactPublisher, MemoryArtifactStore
from gridci.concurrency import CancellationToken
from gridci.conditions import event_is, ref_is
from gridci.dsl import cleanup, job, sh
from gridci.images import ImagePublisher
from gridci.matrix import expand
from gridci.model import JobStatus, StepStatus
from gridci.runner import StepExecutor
from gridci.step_workflows.artifact import upload_artifact
from gridci.step_workflows.docker import docker_build


def _instance(*steps, matrix=None):
    return expand(job("docs", *steps, matrix=matrix))[0]


def _executor(ctx, fake_executor, fake_checkout, run_config, **kwargs) -> StepExecutor:
    return StepExecutor(ctx, executor=fake_executor, checkout=fake_checkout, run_config=run_config, **kwargs)


def test_first_step_failure_skips_rest(push_main, make_executor, fake_checkout, run_config) -> None:
    fake = make_executor({"build": 2})
    inst = _instance(sh("build", "build"), sh("test", "test"), sh("package", "package"))

    result = _executor(push_main, fake, fake_checkout, run_config).run(inst)

    assert result.status is JobStatus.FAILED
    assert fake.commands == ["build"]
    assert [s.status for s in result.steps] == [StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED]
    assert result.steps[0].exit_code == 2
    assert len(result.executed) == 1
    assert "exit=2" in result.error


def test_run_on_failure_steps_still_run(push_main, make_executor, fake_checkout, run_config) -> None:
    fake = make_executor({"build": 1})
    inst = _instance(
        sh("build", "build"),
        sh("test", "test"),
        cleanup("stats", "sccache --show-stats"),
        cleanup("stop", "sccache --stop-server"),
    )

    result = _executor(push_main, fake, fake_checkout, run_config).run(inst)

    assert result.status is JobStatus.FAILED
    assert fake.commands == ["build", "sccache --show-stats", "sccache --stop-server"]


def test_failing_cleanup_with_continue_on_error_keeps_success(push_main, make_executor, fake_checkout, run_config) -> None:
    fake = make_executor({"sccache --stop-server": 1})
    inst = _instance(sh("build", "build"), cleanup("stop", "sccache --stop-server"))

    result = _executor(push_main, fake, fake_checkout, run_config).run(inst)

    assert result.status is JobStatus.SUCCEEDED
    assert result.steps[1].status is StepStatus.FAILED


def test_run_on_failure_step_failing_fails_the_job(push_main, make_executor, fake_checkout, run_config) -> None:
    fake = make_executor({"report": 1})
    inst = _instance(sh("build", "build"), sh("report", "report", always=True))

    result = _executor(push_main, fake, fake_checkout, run_config).run(inst)

    assert result.status is JobStatus.FAILED


def test_condition_gates_steps(push_main, pr_target, make_executor, fake_checkout, run_config) -> None:
    inst = _instance(
        sh("show push", "git log -1", when=event_is("push")),
        sh("show pr", "git log -1 --stat", when=event_is("pull_request_target")),
    )

    fake = make_executor()
    result = _executor(push_main, fake, fake_checkout, run_config).run(inst)
    assert fake.commands == ["git log -1"]
    assert result.steps[1].status is StepStatus.SKIPPED
    assert result.status is JobStatus.SUCCEEDED

    fake = make_executor()
    _executor(pr_target, fake, fake_checkout, run_config).run(inst)
    assert fake.commands == ["git log -1 --stat"]


def test_step_environment(pr_target, make_executor, fake_checkout, run_config, tmp_path: Path) -> None:
    fake = make_executor()
    inst = expand(
        job(
            "docs",
            sh("build", "build", cwd="docs"),
            matrix={"os": ["ubuntu-latest"]},
            env={"SITE": "site-${{ sha }}"},
        )
    )[0]
    (tmp_path / "docs").mkdir()

    _executor(pr_target, fake, fake_checkout, run_config).run(inst)

    env = fake.env_for("build")
    assert env["CI_LEVEL"] == "test"
    assert env["MATRIX_OS"] == "ubuntu-latest"
    assert env["SITE"] == "site-abc123"
    assert env["GRIDCI_SHA"] == "abc123"
    assert env["GRIDCI_EVENT_NAME"] == "pull_request_target"
    assert env["GRIDCI_PR_NUMBER"] == "42"
    assert "PATH" not in env
    assert fake.calls[0][2] == (tmp_path / "docs").resolve()
    assert fake_checkout.refs == ["abc123"]
    assert fake_checkout.slots == ["docs-0"]


def test_cancelled_before_start(push_main, fake_executor, fake_checkout, run_config) -> None:
    token = CancellationToken()
    token.cancel("superseded")
    inst = _instance(sh("build", "build"), cleanup("stop", "stop"))

    result = _executor(push_main, fake_executor, fake_checkout, run_config).run(inst, token)

    assert result.status is JobStatus.CANCELLED
    assert fake_executor.commands == []
    assert fake_checkout.refs == []
    assert {s.status for s in result.steps} == {StepStatus.CANCELLED}


def test_cancellation_between_steps(push_main, make_executor, fake_checkout, run_config) -> None:
    token = CancellationToken()
    fake = make_executor(hooks={"build": lambda: token.cancel("superseded by run r2")})
    inst = _instance(sh("build", "build"), sh("test", "test"), cleanup("stop", "stop"))

    result = _executor(push_main, fake, fake_checkout, run_config).run(inst, token)

    assert fake.commands == ["build"]
    assert result.status is JobStatus.CANCELLED
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.CANCELLED, StepStatus.CANCELLED]
    assert result.error == "superseded by run r2"


def test_checkout_failure_fails_instance(push_main, fake_executor, run_config) -> None:
    class BrokenCheckout:
        def checkout(self, ref, slot):
            raise RuntimeError("git command not found")

    result = _executor(push_main, fake_executor, BrokenCheckout(), run_config).run(_instance(sh("build", "build")))

    assert result.status is JobStatus.FAILED
    assert "checkout failed" in result.error
    assert fake_executor.commands == []


def test_upload_artifact_step(push_main, fake_executor, fake_checkout, run_config, tmp_path: Path) -> None:
    book = tmp_path / "documentation" / "dev" / "book"
    book.mkdir(parents=True)
    (book / "index.html").write_text("<h1>docs</h1>")
    store = MemoryArtifactStore()
    inst = _instance(
        upload_artifact("upload", "${{ make.folder }}/book", bucket="${{ make.bucket }}"),
        matrix={"make": [{"folder": "documentation/dev", "bucket": "dev-site"}]},
    )

    result = _executor(
        push_main, fake_executor, fake_checkout, run_config, artifacts=ArtifactPublisher(store)
    ).run(inst)

    assert result.status is JobStatus.SUCCEEDED
    assert list(store.uploads) == ["dev-site-deadbeef"]
    assert fake_executor.commands == []


def test_missing_artifact_fails_and_cleanup_runs(push_main, fake_executor, fake_checkout, run_config) -> None:
    store = MemoryArtifactStore()
    inst = _instance(
        upload_artifact("upload", "docs/book", bucket="site"),
        cleanup("stop", "sccache --stop-server"),
    )

    result = _executor(
        push_main, fake_executor, fake_checkout, run_config, artifacts=ArtifactPublisher(store)
    ).run(inst)

    assert result.status is JobStatus.FAILED
    assert "does not exist" in result.steps[0].error
    assert store.uploads == {}
    assert fake_executor.commands == ["sccache --stop-server"]


def test_docker_step_pushes_only_when_condition_holds(
    push_main, pr_target, fake_executor, fake_checkout, run_config, fake_registry
) -> None:
    inst = _instance(docker_build("image", "ghcr.io/acme/docs", push_when=ref_is("refs/heads/main")))
    publisher = ImagePublisher(fake_registry)

    on_main = _executor(push_main, fake_executor, fake_checkout, run_config, images=publisher).run(inst)
    on_pr = _executor(
        replace(pr_target, ref="refs/pull/42/merge"),
        fake_executor,
        fake_checkout,
        run_config,
        images=publisher,
    ).run(inst)

    assert on_main.status is JobStatus.SUCCEEDED
    assert on_pr.status is JobStatus.SUCCEEDED
    assert [b["push"] for b in fake_registry.builds] == [True, False]
    assert fake_registry.builds[0]["tags"] == ["ghcr.io/acme/docs:main", "ghcr.io/acme/docs:latest"]
    assert fake_registry.builds[1]["tags"] == ["ghcr.io/acme/docs:pr-42", "ghcr.io/acme/docs:latest"]


def test_missing_publisher_is_a_step_failure(push_main, fake_executor, fake_checkout, run_config) -> None:
    inst = _instance(docker_build("image", "ghcr.io/acme/docs"))

    result = _executor(push_main, fake_executor, fake_checkout, run_config).run(inst)

    assert result.status is JobStatus.FAILED
    assert "no container registry configured" in result.error
