"""Scoped staging workspace for one orchestration run."""

from __future__ import annotations

import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from chronicbot_updater.logging import get_logger

log = get_logger("chronicbot_updater.staging")


@dataclass(frozen=True)
class StagingWorkspace:
    """Ephemeral directory owned by exactly one run."""

    root: Path

    @property
    def downloads(self) -> Path:
        return self.root / "downloads"

    def staged_directory(self, name: str) -> Path:
        return self.root / name


def discard_stale_workspace(path: Path) -> bool:
    """Remove a workspace left behind by a crashed run.

    Returns True when something was removed.  Partial downloads are never
    resumed; the next run starts from scratch.
    """
    if not path.exists() and not path.is_symlink():
        return False
    log.warning("staging_stale_workspace_discarded", path=str(path))
    _remove(path)
    return True


@asynccontextmanager
async def staging_workspace(path: Path) -> AsyncIterator[StagingWorkspace]:
    """Create the workspace and remove it on every exit path."""
    discard_stale_workspace(path)
    path.mkdir(parents=True)
    workspace = StagingWorkspace(root=path)
    workspace.downloads.mkdir()
    log.debug("staging_workspace_created", path=str(path))
    try:
        yield workspace
    finally:
        try:
            _remove(path)
            log.debug("staging_workspace_removed", path=str(path))
        except OSError as exc:
            # Left for the next run's crash recovery.
            log.warning("staging_workspace_cleanup_failed", path=str(path), error=str(exc))


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    else:
        shutil.rmtree(path)
