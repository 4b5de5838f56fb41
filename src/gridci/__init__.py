from .conditions import all_of, always, any_of, branch_is, event_is, event_is_not, ref_is
from .dsl import JobBuilder, build, cleanup, job, sh, wf
from .matrix import axis
from .model import EventContext, EventKind, Job, Step, Workflow
from .runner import Orchestrator, load_workflow
from .step_workflows.artifact import upload_artifact
from .step_workflows.docker import docker_build

__all__ = [
    "job", "sh", "cleanup", "wf", "axis", "JobBuilder", "build",
    "upload_artifact", "docker_build",
    "always", "event_is", "event_is_not", "ref_is", "branch_is", "all_of", "any_of",
    "Orchestrator", "load_workflow",
    "EventContext", "EventKind", "Job", "Step", "Workflow",
]
