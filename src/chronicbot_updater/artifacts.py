"""Turn verified downloads into the directory layout of an installation."""

from __future__ import annotations

import shutil
import stat
import tarfile
from pathlib import Path, PurePosixPath
from typing import Protocol

from chronicbot_updater.errors import ExtractionError
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import FetchedAssets, StagedTree
from chronicbot_updater.staging import StagingWorkspace

log = get_logger("chronicbot_updater.artifacts")


class ArtifactStore(Protocol):
    """Prepares staged directories from verified assets."""

    def stage(self, assets: FetchedAssets, workspace: StagingWorkspace) -> StagedTree: ...


def _check_member(member: tarfile.TarInfo) -> None:
    path = PurePosixPath(member.name)
    if path.is_absolute() or ".." in path.parts:
        raise ExtractionError(f"Unsafe path in archive: {member.name}")
    if member.isdev():
        raise ExtractionError(f"Device entry in archive: {member.name}")
    if member.issym() or member.islnk():
        target = PurePosixPath(member.linkname)
        if target.is_absolute():
            raise ExtractionError(f"Link {member.name} points outside the archive")
        base = path.parent if member.issym() else PurePosixPath()
        depth = 0
        for part in (base / target).parts:
            depth += -1 if part == ".." else (0 if part == "." else 1)
            if depth < 0:
                raise ExtractionError(f"Link {member.name} points outside the archive")


def extract_archive(archive: Path, target: Path) -> int:
    """Extract a tar archive into ``target`` after checking every member.

    Returns the number of members extracted.
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member)
            target.mkdir(parents=True, exist_ok=True)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=target, filter="data")
            else:  # pragma: no cover - interpreters without extraction filters
                tar.extractall(path=target)  # nosec B202 - members checked above
    except (tarfile.TarError, OSError, EOFError) as exc:
        raise ExtractionError(f"Failed to extract {archive.name}: {exc}") from exc
    return len(members)


class TarArtifactStore:
    """Extract the primary archive into one directory, copy modules into another."""

    def __init__(
        self, primary_directory: str = "bin", auxiliary_directory: str = "channels"
    ) -> None:
        self._primary_directory = primary_directory
        self._auxiliary_directory = auxiliary_directory

    def stage(self, assets: FetchedAssets, workspace: StagingWorkspace) -> StagedTree:
        directories: dict[str, Path] = {}

        primary_dir = workspace.staged_directory(self._primary_directory)
        if tarfile.is_tarfile(assets.primary.path):
            count = extract_archive(assets.primary.path, primary_dir)
            log.info("artifact_extracted", asset=assets.primary.name, members=count)
        else:
            # A bare executable rather than an archive.
            try:
                primary_dir.mkdir(parents=True, exist_ok=True)
                dest = primary_dir / assets.primary.name
                shutil.copy2(assets.primary.path, dest)
                dest.chmod(dest.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as exc:
                raise ExtractionError(f"Failed to stage {assets.primary.name}: {exc}") from exc
            log.info("artifact_copied", asset=assets.primary.name)
        directories[self._primary_directory] = primary_dir

        if assets.auxiliary:
            aux_dir = workspace.staged_directory(self._auxiliary_directory)
            try:
                aux_dir.mkdir(parents=True, exist_ok=True)
                for asset in assets.auxiliary:
                    shutil.copy2(asset.path, aux_dir / asset.name)
            except OSError as exc:
                raise ExtractionError(f"Failed to stage auxiliary modules: {exc}") from exc
            log.info("artifact_modules_staged", count=len(assets.auxiliary))
            directories[self._auxiliary_directory] = aux_dir

        return StagedTree(root=workspace.root, directories=directories)
