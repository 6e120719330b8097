"""Exception taxonomy for the update pipeline.

Every exception carries a stable ``code`` that ends up in the run result
and the persisted runtime status.  Lower components raise; only the
orchestrator turns exceptions into outcomes.
"""

from __future__ import annotations


class UpdaterError(Exception):
    """Base class for all updater failures."""

    code = "updater_error"
    #: True when the failure may leave the installation in an undefined state.
    unsafe = False


# ---------------------------------------------------------------------------
# Release discovery
# ---------------------------------------------------------------------------


class RegistryError(UpdaterError):
    """The release registry could not be queried."""

    code = "registry_error"


class MalformedReleaseError(UpdaterError):
    """The registry response or checksum manifest could not be parsed."""

    code = "malformed_release"


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class AssetMissingError(UpdaterError):
    """A mandatory asset is absent from the release."""

    code = "asset_missing"

    def __init__(self, asset: str, tag: str) -> None:
        super().__init__(f"Release {tag} has no asset matching {asset!r}")
        self.asset = asset
        self.tag = tag


class DownloadError(UpdaterError):
    """An asset transfer failed."""

    code = "download_failed"

    def __init__(self, asset: str, reason: str) -> None:
        super().__init__(f"Failed to download {asset}: {reason}")
        self.asset = asset
        self.reason = reason


class ExtractionError(UpdaterError):
    """A verified artifact could not be unpacked into the staged tree."""

    code = "extraction_failed"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class ChecksumError(UpdaterError):
    """Base class for checksum gate failures."""

    code = "checksum_error"


class ChecksumMissingError(ChecksumError):
    """The manifest has no entry for a fetched asset."""

    code = "checksum_missing"

    def __init__(self, asset: str) -> None:
        super().__init__(f"No checksum found for {asset}")
        self.asset = asset


class ChecksumMismatchError(ChecksumError):
    """An asset's computed hash differs from its manifest entry."""

    code = "checksum_mismatch"

    def __init__(self, asset: str, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch for {asset}: expected={expected} actual={actual}")
        self.asset = asset
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class ServiceControlError(UpdaterError):
    """A service manager command failed."""

    code = "service_control_failed"


class StaleBackupError(UpdaterError):
    """A backup from a prior incomplete run is still present."""

    code = "stale_backup"
    unsafe = True

    def __init__(self, paths: list[str]) -> None:
        joined = ", ".join(paths)
        super().__init__(
            f"Backup directories from an earlier update still exist ({joined}); "
            "inspect the installation and remove or restore them manually"
        )
        self.paths = paths


class SwapError(UpdaterError):
    """Swapping the staged tree into place failed."""

    code = "swap_failed"

    def __init__(self, message: str, *, recovered: bool) -> None:
        super().__init__(message)
        self.recovered = recovered

    @property
    def unsafe(self) -> bool:  # type: ignore[override]
        return not self.recovered


class HealthCheckFailed(UpdaterError):
    """The new version never became healthy.  Expected; drives rollback."""

    code = "health_check_failed"


class RollbackFailed(UpdaterError):
    """The previous installation could not be restored."""

    code = "rollback_failed"
    unsafe = True


class InstalledStateError(UpdaterError):
    """The installed tag could not be persisted."""

    code = "installed_state_error"


class LockHeldError(UpdaterError):
    """Another run already holds the updater lock."""

    code = "lock_held"


class RolloutsPausedError(UpdaterError):
    """Automatic rollouts were paused after an earlier failure."""

    code = "paused"
