"""Container image tags, labels and the build+push step.

Tag rules are evaluated independently, in this order:

    push/manual on a branch   -> <branch>
    pull request              -> pr-<number>
    semver tag ref (v1.2.3)   -> 1.2.3, 1.2, 1
    always                    -> latest
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from pydantic import SecretStr

from .conditions import Condition, holds
from .errors import GridCIError
from .model import EventContext, EventKind

logger = logging.getLogger(__name__)

LATEST = "latest"

_SEMVER = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)
# docker tags: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(frozen=True)
class ImageTagSet:
    """Ordered, de-duplicated, never empty."""
    tags: Tuple[str, ...] = (LATEST,)

    def __post_init__(self) -> None:
        if not self.tags:
            object.__setattr__(self, "tags", (LATEST,))

    def __iter__(self):
        return iter(self.tags)

    def __len__(self) -> int:
        return len(self.tags)

    def __contains__(self, tag: object) -> bool:
        return tag in self.tags

    def references(self, image: str) -> List[str]:
        return [f"{image}:{t}" for t in self.tags]


def sanitize_tag(value: str) -> str:
    tag = _TAG_UNSAFE.sub("-", value)
    if tag.startswith((".", "-")):
        tag = "_" + tag[1:]
    return tag[:128]


def _semver_tags(tag: str) -> List[str]:
    m = _SEMVER.match(tag)
    if not m:
        return []
    version = tag[1:] if tag.startswith("v") else tag
    if m.group("pre"):
        # pre-releases never move the floating major/minor tags
        return [version]
    major, minor = m.group("major"), m.group("minor")
    out = [version, f"{major}.{minor}"]
    if major != "0":
        out.append(major)
    return out


def resolve_tags(ctx: EventContext) -> ImageTagSet:
    tags: List[str] = []

    if ctx.kind in (EventKind.PUSH, EventKind.MANUAL) and ctx.branch:
        tags.append(sanitize_tag(ctx.branch))

    if ctx.is_pull_request and ctx.pr_number is not None:
        tags.append(f"pr-{ctx.pr_number}")

    if ctx.tag:
        tags.extend(_semver_tags(ctx.tag))

    tags.append(LATEST)

    seen: set[str] = set()
    ordered = tuple(t for t in tags if not (t in seen or seen.add(t)))
    return ImageTagSet(ordered)


def _version_label(ctx: EventContext, tags: ImageTagSet) -> str:
    # a semver tag outranks branch and PR tags
    semver = _semver_tags(ctx.tag) if ctx.tag else []
    return semver[0] if semver else tags.tags[0]


def resolve_labels(
    ctx: EventContext,
    image: str,
    *,
    source_url: str | None = None,
    created: datetime | None = None,
) -> Dict[str, str]:
    """OCI annotations for the image."""
    tags = resolve_tags(ctx)
    created = created or datetime.now(timezone.utc)
    labels = {
        "org.opencontainers.image.title": image.rsplit("/", 1)[-1],
        "org.opencontainers.image.revision": ctx.head_sha,
        "org.opencontainers.image.version": _version_label(ctx, tags),
        "org.opencontainers.image.created": created.isoformat(),
    }
    if source_url is None and ctx.repository:
        source_url = f"https://github.com/{ctx.repository}"
    if source_url:
        labels["org.opencontainers.image.source"] = source_url
    return labels


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RegistryCredentials:
    registry: str
    username: str
    password: SecretStr = field(repr=False, default=SecretStr(""))


class ContainerRegistry(Protocol):
    def login(self, credentials: RegistryCredentials) -> None:
        ...

    def build_and_push(
        self,
        context: Path,
        file: Optional[Path],
        tags: Sequence[str],
        labels: Mapping[str, str],
        push: bool,
    ) -> None:
        ...


@dataclass
class RegistryError(GridCIError):
    action: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"docker {self.action} failed (exit={self.exit_code}): {self.output.strip()[-500:]}"


class DockerRegistry:
    """Drives the docker CLI."""

    def __init__(self, docker: str = "docker"):
        self.docker = docker

    def _run(self, action: str, args: List[str], *, stdin: str | None = None) -> None:
        try:
            proc = subprocess.run(
                [self.docker, *args],
                input=stdin,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            raise RegistryError(action, 127, "Install Docker and ensure the daemon is running.") from None
        if proc.returncode != 0:
            raise RegistryError(action, proc.returncode, proc.stderr or proc.stdout)

    def login(self, credentials: RegistryCredentials) -> None:
        self._run(
            "login",
            ["login", credentials.registry, "--username", credentials.username, "--password-stdin"],
            stdin=credentials.password.get_secret_value(),
        )

    def build_and_push(
        self,
        context: Path,
        file: Optional[Path],
        tags: Sequence[str],
        labels: Mapping[str, str],
        push: bool,
    ) -> None:
        args = ["build"]
        if file is not None:
            args.extend(["--file", str(file)])
        for t in tags:
            args.extend(["--tag", t])
        for k, v in sorted(labels.items()):
            args.extend(["--label", f"{k}={v}"])
        args.append(str(context))
        self._run("build", args)

        if not push:
            return
        # stops at the first failing tag; tags pushed before it stay pushed
        for t in tags:
            self._run("push", ["push", t])


# ---------------------------------------------------------------------
# Build+push
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ImageBuild:
    image: str                       # repository, e.g. registry.example.com/namada-rust-docs
    context: str = "."
    file: str | None = None
    push_when: Condition | None = None  # None -> never push
    source_url: str | None = None


@dataclass
class ImageOutcome:
    tags: ImageTagSet
    references: List[str]
    labels: Dict[str, str]
    pushed: bool


class ImagePublisher:
    def __init__(self, registry: ContainerRegistry, credentials: RegistryCredentials | None = None):
        self.registry = registry
        self.credentials = credentials
        self._logged_in = False
        self._login_lock = threading.Lock()

    def publish(self, build: ImageBuild, ctx: EventContext, workspace: Path) -> ImageOutcome:
        """
        Build the image and push it when `build.push_when` holds.

        A skipped push is not a failure.
        """
        tags = resolve_tags(ctx)
        refs = tags.references(build.image)
        labels = resolve_labels(ctx, build.image, source_url=build.source_url)
        push = build.push_when is not None and holds(build.push_when, ctx)

        if push and self.credentials is not None:
            with self._login_lock:
                if not self._logged_in:
                    self.registry.login(self.credentials)
                    self._logged_in = True

        context = workspace / build.context
        file = workspace / build.file if build.file else None
        self.registry.build_and_push(context, file, refs, labels, push)

        logger.info(
            "image built",
            extra={"image": build.image, "tags": list(tags), "pushed": push},
        )
        return ImageOutcome(tags=tags, references=refs, labels=labels, pushed=push)
