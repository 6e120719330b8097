"""Swap a staged release into the active installation and back out again.

Lifecycle of one swap:
1. Refuse to start if backups from an earlier run are still present
2. Stop the managed service
3. For each managed directory: rename active -> backup, then staged -> active
4. Start the service on the new tree
5. Either ``promote`` (record the tag, drop backups) or ``rollback``
   (restore backups, restart, confirm the service is running)

Every rename happens inside the install directory, so each step is a
single atomic rename and, at every point, either the backup or the new
tree for a directory is complete and nameable.  Swapping several
directories is not atomic as a whole; a failed rename mid-sequence is
undone directory by directory before ``SwapError`` is raised.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from chronicbot_updater.errors import (
    RollbackFailed,
    ServiceControlError,
    StaleBackupError,
    SwapError,
)
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import DirectorySwap, StagedTree, SwapHandle
from chronicbot_updater.service import ServiceController
from chronicbot_updater.state import InstalledStateStore

log = get_logger("chronicbot_updater.installation")


def _exists(path: Path) -> bool:
    return path.exists() or path.is_symlink()


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


class InstallationManager:
    """Owns the active directories under ``install_dir``."""

    def __init__(
        self,
        install_dir: Path,
        managed_directories: Sequence[str],
        service: ServiceController,
        state_store: InstalledStateStore,
        backup_suffix: str = ".old",
    ) -> None:
        self._install_dir = install_dir
        self._managed_directories = tuple(managed_directories)
        self._service = service
        self._state_store = state_store
        self._backup_suffix = backup_suffix

    def active_path(self, name: str) -> Path:
        return self._install_dir / name

    def backup_path(self, name: str) -> Path:
        return self._install_dir / f"{name}{self._backup_suffix}"

    def stale_backups(self) -> list[Path]:
        """Backup directories left behind by an interrupted swap or rollback."""
        return [
            self.backup_path(name)
            for name in self._managed_directories
            if _exists(self.backup_path(name))
        ]

    # ------------------------------------------------------------------
    # Swap
    # ------------------------------------------------------------------

    async def swap(self, staged: StagedTree, tag: str) -> SwapHandle:
        """Move the staged tree into place and start the service on it.

        Raises ``StaleBackupError`` before touching anything if an earlier
        backup still exists, and ``SwapError`` if the service cannot be
        stopped or a rename fails.  A service that does not come back up
        after a complete swap is reported through
        ``SwapHandle.service_started`` instead of an exception, so the
        caller rolls back.
        """
        stale = self.stale_backups()
        if stale:
            raise StaleBackupError([str(path) for path in stale])

        handle = SwapHandle(tag=tag, previous_tag=self._state_store.read_tag())
        for name in self._managed_directories:
            active = self.active_path(name)
            staged_dir = staged.directories.get(name)
            if staged_dir is None and not _exists(active):
                continue
            handle.directories.append(
                DirectorySwap(
                    name=name,
                    active=active,
                    backup=self.backup_path(name),
                    staged=staged_dir,
                )
            )

        log.info(
            "swap_started",
            tag=tag,
            previous_tag=handle.previous_tag,
            directories=[d.name for d in handle.directories],
        )

        try:
            await self._service.stop()
        except ServiceControlError as exc:
            log.error("swap_stop_failed", error=str(exc))
            await self._try_start("swap_stop_failed")
            raise SwapError(f"Failed to stop service before swap: {exc}", recovered=True) from exc

        for entry in handle.directories:
            try:
                if _exists(entry.active):
                    os.rename(entry.active, entry.backup)
                    entry.backed_up = True
                    log.debug("swap_backed_up", directory=entry.name, backup=str(entry.backup))
                if entry.staged is not None:
                    os.rename(entry.staged, entry.active)
                    entry.installed = True
                    log.debug("swap_installed", directory=entry.name)
            except OSError as exc:
                log.error("swap_rename_failed", directory=entry.name, error=str(exc))
                await self._abort_swap(handle, exc)

        try:
            await self._service.start()
            handle.service_started = True
        except ServiceControlError as exc:
            log.error("swap_start_failed", tag=tag, error=str(exc))

        log.info("swap_complete", tag=tag, service_started=handle.service_started)
        return handle

    async def _abort_swap(self, handle: SwapHandle, cause: OSError) -> None:
        """Undo already-swapped directories, then raise ``SwapError``."""
        failures: list[str] = []
        for entry in reversed(handle.directories):
            try:
                if entry.installed and entry.staged is not None:
                    os.rename(entry.active, entry.staged)
                    entry.installed = False
                if entry.backed_up:
                    os.rename(entry.backup, entry.active)
                    entry.backed_up = False
            except OSError as exc:
                failures.append(f"{entry.name}: {exc}")
                log.error("swap_restore_failed", directory=entry.name, error=str(exc))

        if failures:
            raise SwapError(
                f"Swap failed ({cause}) and restoring the previous installation also failed "
                f"({'; '.join(failures)}); manual intervention required",
                recovered=False,
            ) from cause

        log.warning("swap_restored_previous_installation")
        await self._try_start("swap_restored")
        raise SwapError(f"Swap failed and was undone: {cause}", recovered=True) from cause

    # ------------------------------------------------------------------
    # Promote
    # ------------------------------------------------------------------

    async def promote(self, handle: SwapHandle) -> None:
        """Record the new tag as installed, then drop the backups.

        Raises ``InstalledStateError`` with every backup still in place if
        the tag cannot be written, so the caller can still roll back.
        """
        self._state_store.write_tag(handle.tag)

        for entry in handle.directories:
            if not entry.backed_up:
                continue
            try:
                _remove_tree(entry.backup)
                entry.backed_up = False
            except OSError as exc:
                # The next run halts on this leftover backup until an operator clears it.
                log.error("promote_backup_cleanup_failed", backup=str(entry.backup), error=str(exc))

        log.info("promoted", tag=handle.tag, previous_tag=handle.previous_tag)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, handle: SwapHandle) -> None:
        """Restore the backups over the new tree and restart the service.

        The installed tag is left untouched.  Raises ``RollbackFailed`` if
        any directory cannot be restored or the service does not come back;
        no further automatic recovery is attempted in that case.
        """
        log.warning("rollback_started", tag=handle.tag, previous_tag=handle.previous_tag)

        try:
            await self._service.stop()
        except ServiceControlError as exc:
            log.warning("rollback_stop_failed", error=str(exc))

        failures: list[str] = []
        for entry in reversed(handle.directories):
            try:
                if entry.installed:
                    _remove_tree(entry.active)
                    entry.installed = False
                if entry.backed_up:
                    os.rename(entry.backup, entry.active)
                    entry.backed_up = False
                    log.info("rollback_restored", directory=entry.name)
            except OSError as exc:
                failures.append(f"{entry.name}: {exc}")
                log.error("rollback_restore_failed", directory=entry.name, error=str(exc))

        if failures:
            raise RollbackFailed(f"Could not restore previous installation: {'; '.join(failures)}")

        try:
            await self._service.start()
        except ServiceControlError as exc:
            raise RollbackFailed(f"Service did not start after rollback: {exc}") from exc

        if not await self._service.is_running():
            raise RollbackFailed("Service is not running after rollback")

        log.info("rollback_complete", restored_tag=handle.previous_tag)

    async def _try_start(self, context: str) -> None:
        try:
            await self._service.start()
        except ServiceControlError as exc:
            log.error("service_start_failed", context=context, error=str(exc))
