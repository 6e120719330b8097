"""Persisted state: the installed tag and the updater's runtime status."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from chronicbot_updater.errors import InstalledStateError
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import utc_now_iso

log = get_logger("chronicbot_updater.state")


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a fsynced temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    tmp_path.replace(path)
    try:
        dir_fd = os.open(path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError as exc:
        # The rename is done; only its durability across power loss is in doubt.
        log.debug("directory_fsync_failed", path=str(path.parent), error=str(exc))


# ---------------------------------------------------------------------------
# Installed state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstalledState:
    """What is running now."""

    current_tag: str | None
    active_directories: tuple[Path, ...]


class InstalledStateStore:
    """The single-value version record plus the managed directory layout."""

    def __init__(
        self, install_dir: Path, version_file: Path, managed_directories: tuple[str, ...]
    ) -> None:
        self._install_dir = install_dir
        self._version_file = version_file
        self._managed_directories = managed_directories

    @property
    def version_file(self) -> Path:
        return self._version_file

    def read_tag(self) -> str | None:
        try:
            tag = self._version_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InstalledStateError(f"Could not read {self._version_file}: {exc}") from exc
        return tag or None

    def load(self) -> InstalledState:
        return InstalledState(
            current_tag=self.read_tag(),
            active_directories=tuple(
                self._install_dir / name for name in self._managed_directories
            ),
        )

    def write_tag(self, tag: str) -> None:
        try:
            atomic_write_text(self._version_file, f"{tag}\n")
        except OSError as exc:
            raise InstalledStateError(f"Could not record installed tag {tag}: {exc}") from exc
        log.info("installed_tag_recorded", tag=tag, path=str(self._version_file))


# ---------------------------------------------------------------------------
# Runtime status
# ---------------------------------------------------------------------------


class RuntimeStatusStore:
    """Informational run history and the rollout pause flag.

    Never consulted to decide which tree is active.  Write failures are
    logged and swallowed so a full disk cannot change a run's outcome.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._data = self._load()

    @property
    def paused(self) -> bool:
        return bool(self._data.get("paused", False))

    @property
    def pause_reason(self) -> str:
        return str(self._data.get("pause_reason") or "")

    @property
    def last_good_tag(self) -> str | None:
        value = self._data.get("last_good_tag")
        return str(value) if value else None

    def reload(self) -> None:
        """Re-read the file; another run may have written it since construction."""
        self._data = self._load()

    def snapshot(self) -> dict[str, Any]:
        return dict(self._data)

    def mark_attempt(self, tag: str | None) -> None:
        self._data["last_checked_at"] = utc_now_iso()
        if tag is not None:
            self._data["last_attempted_tag"] = tag
        self._save()

    def record_result(
        self, outcome: str, error_code: str | None, error: str | None, tag: str | None
    ) -> None:
        now = utc_now_iso()
        self._data["last_outcome"] = outcome
        self._data["last_error_code"] = error_code
        self._data["last_error"] = error
        self._data["last_completed_at"] = now
        if outcome == "promoted" and tag:
            self._data["last_good_tag"] = tag
            self._data["last_success_at"] = now
        elif error_code is not None:
            self._data["last_failure_at"] = now
        self._save()

    def pause(self, reason: str) -> None:
        self._data["paused"] = True
        self._data["pause_reason"] = reason
        self._data["paused_at"] = utc_now_iso()
        self._save()
        log.warning("rollouts_paused", reason=reason)

    def resume(self) -> bool:
        """Clear the pause flag.  Returns False if rollouts were not paused."""
        if not self.paused:
            return False
        self._data["paused"] = False
        self._data["pause_reason"] = ""
        self._data["resumed_at"] = utc_now_iso()
        self._save()
        log.info("rollouts_resumed")
        return True

    def _default(self) -> dict[str, Any]:
        return {
            "paused": False,
            "pause_reason": "",
            "last_checked_at": None,
            "last_attempted_tag": None,
            "last_good_tag": None,
            "last_outcome": None,
            "last_error_code": None,
            "last_error": None,
            "last_success_at": None,
            "last_failure_at": None,
        }

    def _load(self) -> dict[str, Any]:
        default = self._default()
        if not self._path.exists():
            return default
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("runtime_status_load_failed", path=str(self._path), error=str(exc))
            return default
        if not isinstance(data, dict):
            return default
        return {**default, **data}

    def _save(self) -> None:
        try:
            atomic_write_text(self._path, json.dumps(self._data, indent=2, sort_keys=True))
        except OSError:
            log.exception("runtime_status_save_failed", path=str(self._path))
