# step_workflows/docker.py
from __future__ import annotations

from pathlib import Path

from ..conditions import Condition
from ..images import ImageBuild, ImageOutcome, ImagePublisher
from ..model import STEP_DOCKER_BUILD, EventContext, Step


# ---------------------------------------------------------------------
# Docker build step helper
# ---------------------------------------------------------------------

def docker_build(
    name: str,
    image: str,
    *,
    context: str = ".",
    file: str | None = None,
    push_when: Condition | None = None,
    source_url: str | None = None,
    condition: Condition | None = None,
) -> Step:
    """
    Create a step that builds `image` with tags resolved from the event.

    The image is pushed only when `push_when` holds for the run's event; a
    build without push still succeeds.
    """
    return Step(
        name=name,
        condition=condition,
        kind=STEP_DOCKER_BUILD,
        data={
            "image": image,
            "context": context,
            "file": file,
            "push_when": push_when,
            "source_url": source_url,
        },
    )


def build_of(step: Step) -> ImageBuild:
    data = step.data or {}
    return ImageBuild(
        image=data["image"],
        context=data.get("context") or ".",
        file=data.get("file"),
        push_when=data.get("push_when"),
        source_url=data.get("source_url"),
    )


# ---------------------------------------------------------------------
# Docker build step execution
# ---------------------------------------------------------------------

def run_step(step: Step, ctx: EventContext, workspace: Path, publisher: ImagePublisher) -> ImageOutcome:
    return publisher.publish(build_of(step), ctx, workspace)
