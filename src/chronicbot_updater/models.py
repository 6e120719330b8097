"""Value types passed between the update pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Release description
# ---------------------------------------------------------------------------


class AssetKind(StrEnum):
    """Role an asset plays in a release."""

    PRIMARY = "primary"
    AUXILIARY = "auxiliary"
    MANIFEST = "manifest"


@dataclass(frozen=True)
class AssetDescriptor:
    """One fetchable file belonging to a release."""

    name: str
    source_location: str
    size: int | None = None


@dataclass(frozen=True)
class ReleaseDescriptor:
    """A published release as reported by the registry.  Never persisted."""

    tag: str
    assets: tuple[AssetDescriptor, ...]
    published_at: str = ""
    html_url: str = ""


# ---------------------------------------------------------------------------
# Fetch / verify / stage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FetchedAsset:
    """An asset downloaded into the staging workspace."""

    name: str
    path: Path
    kind: AssetKind


@dataclass(frozen=True)
class FetchedAssets:
    """Everything downloaded for one release."""

    tag: str
    primary: FetchedAsset
    manifest: FetchedAsset
    auxiliary: tuple[FetchedAsset, ...] = ()

    @property
    def verifiable(self) -> tuple[FetchedAsset, ...]:
        """Assets whose content must match the checksum manifest."""
        return (self.primary, *self.auxiliary)


@dataclass
class VerificationResult:
    """Outcome of checking every fetched asset against the manifest."""

    verified: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not self.failures and bool(self.verified)


@dataclass(frozen=True)
class StagedTree:
    """Directories prepared in the workspace, keyed by managed directory name."""

    root: Path
    directories: dict[str, Path]


# ---------------------------------------------------------------------------
# Swap bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class DirectorySwap:
    """Progress of swapping a single managed directory."""

    name: str
    active: Path
    backup: Path
    staged: Path | None
    backed_up: bool = False
    installed: bool = False


@dataclass
class SwapHandle:
    """Everything promote or rollback needs to finish a swap."""

    tag: str
    previous_tag: str | None
    directories: list[DirectorySwap] = field(default_factory=list)
    service_started: bool = False


# ---------------------------------------------------------------------------
# Run state and result
# ---------------------------------------------------------------------------


class UpdateState(StrEnum):
    """States of one orchestration run."""

    IDLE = "idle"
    CHECKING_UPDATE = "checking_update"
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    SWAPPING = "swapping"
    HEALTH_CHECKING = "health_checking"
    PROMOTED = "promoted"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


class RunOutcome(StrEnum):
    """What a run reports to its caller."""

    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    SKIPPED = "skipped"

    @property
    def exit_code(self) -> int:
        if self is RunOutcome.ROLLED_BACK:
            return 1
        if self is RunOutcome.ABORTED:
            return 2
        return 0

    @property
    def is_failure(self) -> bool:
        return self.exit_code != 0


@dataclass
class RunResult:
    """Result of one orchestration run."""

    outcome: RunOutcome
    state: UpdateState
    installed_tag: str | None = None
    target_tag: str | None = None
    error_code: str | None = None
    error: str | None = None
    requires_manual_intervention: bool = False
    steps_completed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None
    duration_seconds: float | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "state": self.state.value,
            "installed_tag": self.installed_tag,
            "target_tag": self.target_tag,
            "error_code": self.error_code,
            "error": self.error,
            "requires_manual_intervention": self.requires_manual_intervention,
            "steps_completed": self.steps_completed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }
