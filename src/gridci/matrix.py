# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import EmptyAxis, TemplateError, WorkflowError
from .model import Job, JobInstance, MatrixAxis, Step

# ${{ name }}; shell ${VAR} expansions pass through untouched
_PLACEHOLDER = re.compile(r"\$\{\{\s*([A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")
_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


# ---------------------------------------------------------------------
# Axes
# ---------------------------------------------------------------------

def axis(name: str, values: Iterable[Any]) -> MatrixAxis:
    """
    Build an axis from scalars or mappings.

        axis("os", ["ubuntu-latest"])                  -> binds os
        axis("make", [{"folder": "docs", "bucket": "b"}]) -> binds make.folder, make.bucket
    """
    if not name:
        raise WorkflowError("matrix axis needs a name")
    value_sets: List[Dict[str, Any]] = []
    for v in values:
        if isinstance(v, Mapping):
            value_sets.append({f"{name}.{k}": val for k, val in v.items()})
        else:
            value_sets.append({name: v})
    return MatrixAxis(name=name, values=tuple(value_sets))


def _to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def env_name(binding: str) -> str:
    """make.folder -> MATRIX_MAKE_FOLDER"""
    return "MATRIX_" + _ENV_UNSAFE.sub("_", binding).strip("_").upper()


# ---------------------------------------------------------------------
# Placeholder rendering
# ---------------------------------------------------------------------

def render(template: str, variables: Mapping[str, str]) -> str:
    """Substitute ${{ name }} placeholders; unknown names are an error."""

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in variables:
            raise TemplateError(f"unknown placeholder '{key}' in {template!r}; known: {sorted(variables)}")
        return variables[key]

    return _PLACEHOLDER.sub(_sub, template)


def _render_data(data: Any, variables: Mapping[str, str]) -> Any:
    if isinstance(data, str):
        return render(data, variables)
    if isinstance(data, Mapping):
        return {k: _render_data(v, variables) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return type(data)(_render_data(v, variables) for v in data)
    return data


def _late_bound(variables: Mapping[str, str], keep: Sequence[str]) -> Dict[str, str]:
    # placeholders listed in `keep` survive for a later pass (e.g. sha at run time)
    scoped = dict(variables)
    scoped.update({k: "${{ " + k + " }}" for k in keep if k not in scoped})
    return scoped


def _render_step(step: Step, variables: Mapping[str, str], *, keep: Sequence[str] = ()) -> Step:
    scoped = _late_bound(variables, keep)
    return replace(
        step,
        name=render(step.name, scoped),
        run=render(step.run, scoped),
        cwd=render(step.cwd, scoped) if step.cwd is not None else None,
        data=_render_data(step.data, scoped) if step.data is not None else None,
    )


# resolved once a run starts (sha) or by the step that owns them (bucket)
LATE_BOUND = ("sha", "bucket")


def bind_late(step: Step, values: Mapping[str, str]) -> Step:
    """Second rendering pass for placeholders only known once a run starts."""
    return _render_step(step, values, keep=LATE_BOUND)


def render_late(template: str, values: Mapping[str, str]) -> str:
    return render(template, _late_bound(values, LATE_BOUND))


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def _label(value_set: Mapping[str, Any]) -> str:
    values = list(value_set.values())
    if len(values) == 1:
        return _to_str(values[0])
    # mapping axes: prefer a human name when one is declared
    for k, v in value_set.items():
        if k.endswith(".name"):
            return _to_str(v)
    return ", ".join(_to_str(v) for v in values)


def expand(job: Job, axes: Optional[Sequence[MatrixAxis]] = None) -> List[JobInstance]:
    """
    Cross product of the job's axes, first axis varying slowest.

    Raises:
        EmptyAxis: an axis has no value-sets (never silently expand to zero jobs).
        WorkflowError: two axes share a name.
    """
    axes = list(job.matrix if axes is None else axes)

    seen: set[str] = set()
    for a in axes:
        if a.name in seen:
            raise WorkflowError(f"Job '{job.name}': duplicate matrix axis '{a.name}'")
        seen.add(a.name)
        if len(a.values) == 0:
            raise EmptyAxis(job.name, a.name)

    instances: List[JobInstance] = []
    index_ranges = [range(len(a.values)) for a in axes]
    for coordinate in itertools.product(*index_ranges):
        bindings: Dict[str, str] = {}
        labels: List[str] = []
        for a, idx in zip(axes, coordinate):
            value_set = a.values[idx]
            bindings.update({k: _to_str(v) for k, v in value_set.items()})
            labels.append(_label(value_set))

        steps = tuple(_render_step(s, bindings, keep=LATE_BOUND) for s in job.steps)
        env = {k: render(str(v), _late_bound(bindings, LATE_BOUND)) for k, v in job.env.items()}
        env.update({env_name(k): v for k, v in bindings.items()})

        instance_id = job.name if not coordinate else f"{job.name}-" + "-".join(str(i) for i in coordinate)
        display = f"{job.name} ({', '.join(labels)})" if labels else job.name

        instances.append(
            JobInstance(
                id=instance_id,
                job=job.name,
                coordinate=tuple(coordinate),
                bindings=bindings,
                steps=steps,
                env=env,
                fail_fast=job.fail_fast,
                continue_on_error=job.continue_on_error,
                display_name=display,
            )
        )

    return instances


def expand_all(jobs: Iterable[Job], overrides: Optional[Mapping[str, MatrixAxis]] = None) -> List[JobInstance]:
    """
    Expand every job of a workflow.

    `overrides` replaces same-named axes (e.g. from --axis on the CLI); an
    override for an axis a job does not declare is ignored for that job.
    """
    out: List[JobInstance] = []
    names: set[str] = set()
    for j in jobs:
        if j.name in names:
            raise WorkflowError(f"Duplicate job name: {j.name}")
        names.add(j.name)
        axes = list(j.matrix)
        if overrides:
            axes = [overrides.get(a.name, a) for a in axes]
        for inst in expand(j, axes):
            # ids key results and checkout directories
            clash = next((o for o in out if o.id == inst.id), None)
            if clash is not None:
                raise WorkflowError(
                    f"Job '{inst.job}' instance id '{inst.id}' clashes with job '{clash.job}'; rename one of the jobs"
                )
            out.append(inst)
    return out
