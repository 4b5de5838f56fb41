# step_workflows/artifact.py
from __future__ import annotations

from pathlib import Path

from ..artifacts import DEFAULT_UPLOAD_TEMPLATE, ArtifactDescriptor, ArtifactPublisher
from ..conditions import Condition
from ..model import STEP_UPLOAD_ARTIFACT, EventContext, Step


# ---------------------------------------------------------------------
# Upload step helper
# ---------------------------------------------------------------------

def upload_artifact(
    name: str,
    path: str,
    *,
    bucket: str,
    archive_name: str | None = None,
    upload_name: str = DEFAULT_UPLOAD_TEMPLATE,
    condition: Condition | None = None,
) -> Step:
    """
    Create a step that tars `path` and uploads it.

    `bucket`, `path` and `archive_name` may use matrix placeholders, e.g.
    bucket="${{ make.bucket }}"; the upload name is rendered with the bucket
    and the run's head SHA.
    """
    return Step(
        name=name,
        condition=condition,
        kind=STEP_UPLOAD_ARTIFACT,
        data={
            "source_path": path,
            "archive_name": archive_name or f"{bucket}.tar",
            "upload_name": upload_name,
            "bucket": bucket,
        },
    )


def descriptor_of(step: Step) -> ArtifactDescriptor:
    data = step.data or {}
    return ArtifactDescriptor(
        source_path=data["source_path"],
        archive_name=data["archive_name"],
        upload_name=data.get("upload_name", DEFAULT_UPLOAD_TEMPLATE),
        bucket=data.get("bucket", ""),
    )


# ---------------------------------------------------------------------
# Upload step execution
# ---------------------------------------------------------------------

def run_step(step: Step, ctx: EventContext, workspace: Path, publisher: ArtifactPublisher) -> str:
    """Package and upload; raises MissingArtifact when there is nothing to upload."""
    return publisher.publish(descriptor_of(step), workspace, ctx.head_sha)
