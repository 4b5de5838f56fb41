# artifacts.py
from __future__ import annotations

import logging
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Protocol

from .errors import MissingArtifact
from .matrix import render

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# An artifact is a directory (or file) produced by a job, e.g. a rendered
# book under docs/book. It is archived deterministically:
#   - members in sorted relative-path order
#   - mtime / uid / gid zeroed, owner names blank
#   - modes normalized to 0644 (0755 for executables and dirs)
# so the same tree always produces byte-identical archives, and uploaded
# under a name derived only from (bucket, commit sha). Re-running a commit
# overwrites its artifact instead of accumulating differently named copies.
# ---------------------------------------------------------------------

DEFAULT_UPLOAD_TEMPLATE = "${{ bucket }}-${{ sha }}"
DEFAULT_ARTIFACT_DIR = ".gridci/artifacts"


@dataclass(frozen=True)
class ArtifactDescriptor:
    source_path: str
    archive_name: str
    upload_name: str  # template; ${{ bucket }} and ${{ sha }} are filled at publish time
    bucket: str = ""


def upload_name(bucket: str, sha: str, template: str = DEFAULT_UPLOAD_TEMPLATE) -> str:
    """Pure function of (bucket, sha): repeated runs of a commit reuse the name."""
    return render(template, {"bucket": bucket, "sha": sha})


# ---------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------

def _relpath(p: Path, root: Path) -> str:
    return str(p.relative_to(root)).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _normalized(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if info.isdir() or info.mode & 0o111:
        info.mode = 0o755
    else:
        info.mode = 0o644
    return info


def _members(source: Path) -> List[Path]:
    if source.is_file():
        return [source]
    return list(_iter_files_under(source))


def package(source: str | Path, archive_path: str | Path, *, arc_root: str | Path | None = None) -> Path:
    """
    Archive `source` into an uncompressed tar at `archive_path`.

    Member names are relative to `arc_root` (defaults to source's parent) so
    `docs/book` archives as `book/...` unless told otherwise.

    Raises:
        MissingArtifact: source does not exist or contains no files.
    """
    src = Path(source)
    if not src.exists():
        raise MissingArtifact(str(source))
    members = _members(src)
    if not members or (src.is_file() and src.stat().st_size == 0):
        raise MissingArtifact(str(source), reason="is empty")

    root = Path(arc_root) if arc_root is not None else src.parent
    out = Path(archive_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    tmp = out.with_name(out.name + ".tmp")
    try:
        with tarfile.open(str(tmp), mode="w", format=tarfile.PAX_FORMAT) as tar:
            for f in members:
                info = _normalized(tar.gettarinfo(str(f), arcname=_relpath(f, root)))
                with f.open("rb") as fh:
                    tar.addfile(info, fileobj=fh)
        tmp.replace(out)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)

    logger.debug("packaged artifact", extra={"source": str(src), "archive": str(out), "files": len(members)})
    return out


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class ArtifactStore(Protocol):
    def upload(self, name: str, data: bytes) -> None:
        """Idempotent per name: a second upload replaces the first."""
        ...


class LocalArtifactStore:
    """
    File-based artifact store:
      root/
        <upload_name>
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()

    def path_for(self, name: str) -> Path:
        if "/" in name or "\\" in name or name in ("", ".", ".."):
            raise ValueError(f"invalid artifact name: {name!r}")
        return self.root / name

    def upload(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        dest = self.path_for(name)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(dest)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def names(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_file() and not p.name.endswith(".tmp"))


class MemoryArtifactStore:
    """Keeps uploads in a dict; handy for dry runs and tests."""

    def __init__(self) -> None:
        self.uploads: dict[str, bytes] = {}

    def upload(self, name: str, data: bytes) -> None:
        self.uploads[name] = data


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

class ArtifactPublisher:
    def __init__(self, store: ArtifactStore):
        self.store = store

    def publish(self, descriptor: ArtifactDescriptor, workspace: Path, sha: str) -> str:
        """
        Package descriptor.source_path (relative to `workspace`) and upload it.

        Returns the upload name.
        """
        source = workspace / descriptor.source_path
        archive = workspace / descriptor.archive_name
        # members keep their workspace-relative paths, like `tar -cf x.tar docs/book`
        inside = workspace in source.parents or source == workspace
        package(source, archive, arc_root=workspace if inside else None)

        name = render(descriptor.upload_name, {"bucket": descriptor.bucket, "sha": sha})
        data = archive.read_bytes()
        self.store.upload(name, data)
        logger.info("uploaded artifact", extra={"artifact": name, "bytes": len(data)})
        return name
