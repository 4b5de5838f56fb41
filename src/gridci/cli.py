# cli.py
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Dict, Iterable

import click

from .artifacts import ArtifactPublisher, LocalArtifactStore
from .config import Settings
from .errors import ConfigError
from .events import event_from_environment, load_event, local_event
from .executor import GitCheckout, LocalCheckout
from .images import DockerRegistry, ImagePublisher, resolve_labels, resolve_tags
from .log import configure_logging
from .matrix import axis
from .model import EventContext, MatrixAxis, RunConfig
from .runner import Orchestrator, load_workflow
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOW = "gridci_workflow.py"


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory: gridci_workflow.py, then *_workflow.py."""
    current_dir = Path(".")
    workflow_files = []
    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)
    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gridci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion="Create a workflow file or specify one explicitly:\n  gridci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  gridci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def parse_axes(entries: Iterable[str]) -> Dict[str, MatrixAxis]:
    """
    --axis os=ubuntu-latest,macos-latest
    --axis 'make=[{"folder": "docs", "bucket": "b"}]'
    """
    out: Dict[str, MatrixAxis] = {}
    for entry in entries:
        name, sep, raw = entry.partition("=")
        name = name.strip()
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUES, got {entry!r}", param_hint="--axis")
        raw = raw.strip()
        if raw.startswith("["):
            try:
                values = json.loads(raw)
            except json.JSONDecodeError as e:
                raise click.BadParameter(f"invalid JSON for axis {name!r}: {e}", param_hint="--axis") from e
        else:
            values = [v.strip() for v in raw.split(",") if v.strip()]
        out[name] = axis(name, values)
    return out


def parse_env(pairs: Iterable[str]) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key] = value
    return env


def resolve_context(event: str | None, event_name: str | None) -> EventContext:
    """--event file, else GitHub-Actions environment, else the local checkout."""
    if event:
        return load_event(event, event_name)
    if os.environ.get("GITHUB_EVENT_NAME"):
        return event_from_environment()
    return local_event()


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and command output")
@click.option("--log-level", default=None, help="Diagnostic log level (overrides GRIDCI_LOG_LEVEL)")
@click.option("--log-json", is_flag=True, default=False, help="Emit diagnostic logs as JSON lines")
@click.pass_context
def cli(ctx, debug, log_level, log_json):
    """gridci: matrix CI runner with concurrency groups."""
    settings = Settings()
    console = Console(debug=debug)
    set_console(console)
    level = log_level or ("DEBUG" if debug else settings.log_level)
    configure_logging(level, json_output=log_json or settings.log_json)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


_event_options = [
    click.option("--event", default=None, help="Event descriptor JSON file"),
    click.option(
        "--event-name",
        default=None,
        help="push | pull_request | pull_request_target | manual (defaults to the file's event_name)",
    ),
]


def event_options(fn):
    for option in reversed(_event_options):
        fn = option(fn)
    return fn


def _fail_config(ctx, exc: Exception) -> None:
    console = get_console()
    console.print_error("Invalid configuration", str(exc))
    if ctx.obj.get("debug", False):
        console.print_exception(exc)
    sys.exit(EXIT_CONFIG)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@event_options
@click.option("--axis", "axes", multiple=True, help="Override a matrix axis: NAME=V1,V2 or NAME=<json list>")
@click.option("--job", "jobs", multiple=True, help="Only run these jobs")
@click.option("--env", "env_pairs", multiple=True, help="Extra workflow env KEY=VALUE")
@click.option("--clean-env/--inherit-env", default=False, help="Do not pass the caller's environment to steps")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--artifact-dir", default=None, help="Local artifact store directory")
@click.option("--repo", default=None, help="Clone this repository instead of using the working tree")
@click.pass_context
def run(ctx, workflow, event, event_name, axes, jobs, env_pairs, clean_env, workers, artifact_dir, repo):
    """Run a gridci workflow for an event."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        if settings.workflow_name:
            wf.name = settings.workflow_name
        context = resolve_context(event, event_name)
        overrides = parse_axes(axes)
        run_config = RunConfig(
            env=parse_env(env_pairs),
            inherit_environ=not clean_env,
            workspace=Path(".").resolve(),
        )
    except ConfigError as e:
        _fail_config(ctx, e)

    checkout = GitCheckout(repo, settings.work_dir) if repo else LocalCheckout(".")
    store = LocalArtifactStore(artifact_dir or settings.artifact_dir)
    images = ImagePublisher(DockerRegistry(), settings.registry_credentials())

    orchestrator = Orchestrator(
        checkout=checkout,
        artifacts=ArtifactPublisher(store),
        images=images,
        max_workers=workers or settings.max_workers,
    )

    try:
        result = orchestrator.run(
            wf,
            context,
            run_config=run_config,
            overrides=overrides,
            only=jobs,
        )
    except ConfigError as e:
        _fail_config(ctx, e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(result)
    if result.exit_code != 0:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--axis", "axes", multiple=True, help="Override a matrix axis: NAME=V1,V2 or NAME=<json list>")
@click.option("--job", "jobs", multiple=True, help="Only show these jobs")
@click.pass_context
def plan(ctx, workflow, axes, jobs):
    """Print the matrix expansion without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        instances = Orchestrator(max_workers=1).plan(wf, overrides=parse_axes(axes), only=jobs)
    except ConfigError as e:
        _fail_config(ctx, e)

    console.print_header(f"{wf.name}: {len(instances)} job instance(s)")
    console.print_plan(instances)


@cli.command()
@event_options
@click.option("--image", default=None, help="Image repository; prints full references when given")
@click.option("--labels/--no-labels", default=False, help="Also print OCI labels")
@click.pass_context
def tags(ctx, event, event_name, image, labels):
    """Print the image tags an event resolves to."""
    console = get_console()
    try:
        context = resolve_context(event, event_name)
    except ConfigError as e:
        _fail_config(ctx, e)

    tag_set = resolve_tags(context)
    for line in (tag_set.references(image) if image else tag_set.tags):
        console.print_info(line)
    if labels:
        for k, v in resolve_labels(context, image or "image").items():
            console.print_info(f"{k}={v}")


if __name__ == "__main__":
    cli()
