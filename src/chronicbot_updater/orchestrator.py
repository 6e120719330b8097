"""Update orchestrator: the state machine behind one update run.

Lifecycle:
1. Take the run lock; a second concurrent trigger is skipped
2. Halt on leftover backups, keeping any staging workspace for inspection;
   otherwise discard the workspace a crashed run left behind
3. Ask the registry for the latest release; stop if it is already installed
4. Download, verify and unpack the release into a fresh staging workspace
5. Swap it into place and run the health gate
6. Promote on a healthy service, otherwise roll back to the previous tree

Failures before the swap never touch the service or the active
installation.  Swap and rollback failures that may leave an undefined
state are reported as requiring manual intervention and, by default,
pause further automatic rollouts.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from chronicbot_updater.artifacts import ArtifactStore, TarArtifactStore
from chronicbot_updater.checksums import ChecksumManifest, ChecksumVerifier
from chronicbot_updater.config import Settings
from chronicbot_updater.errors import (
    HealthCheckFailed,
    InstalledStateError,
    LockHeldError,
    RolloutsPausedError,
    StaleBackupError,
    UpdaterError,
)
from chronicbot_updater.fetcher import ArtifactFetcher, DownloadPolicy
from chronicbot_updater.health import HealthCheckConfig, HealthProbe
from chronicbot_updater.installation import InstallationManager
from chronicbot_updater.lock import RunLock
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import (
    FetchedAssets,
    ReleaseDescriptor,
    RunOutcome,
    RunResult,
    StagedTree,
    SwapHandle,
    UpdateState,
    utc_now_iso,
)
from chronicbot_updater.release_source import GitHubReleaseSource, RegistryClient
from chronicbot_updater.service import ServiceController, SystemdServiceController
from chronicbot_updater.staging import discard_stale_workspace, staging_workspace
from chronicbot_updater.state import InstalledStateStore, RuntimeStatusStore

log = get_logger("chronicbot_updater.orchestrator")

# States after which the active installation may have been touched.
_MUTATING_STATES = frozenset(
    {UpdateState.SWAPPING, UpdateState.HEALTH_CHECKING, UpdateState.ROLLING_BACK}
)


@dataclass
class RunContext:
    """Everything one run knows, threaded through each step."""

    run_id: str
    check_only: bool = False
    state: UpdateState = UpdateState.IDLE
    installed_tag: str | None = None
    release: ReleaseDescriptor | None = None
    fetched: FetchedAssets | None = None
    staged: StagedTree | None = None
    handle: SwapHandle | None = None
    steps: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now_iso)


class UpdateOrchestrator:
    """Sequence release check, fetch, verify, swap and the health gate."""

    def __init__(
        self,
        registry: RegistryClient,
        fetcher: ArtifactFetcher,
        verifier: ChecksumVerifier,
        artifact_store: ArtifactStore,
        installation: InstallationManager,
        health_probe: HealthProbe,
        state_store: InstalledStateStore,
        status_store: RuntimeStatusStore,
        run_lock: RunLock,
        staging_dir: Path,
        pause_on_failure: bool = True,
    ) -> None:
        self._registry = registry
        self._fetcher = fetcher
        self._verifier = verifier
        self._artifact_store = artifact_store
        self._installation = installation
        self._health_probe = health_probe
        self._state_store = state_store
        self._status = status_store
        self._lock = run_lock
        self._staging_dir = staging_dir
        self._pause_on_failure = pause_on_failure

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        service: ServiceController | None = None,
        registry: RegistryClient | None = None,
    ) -> UpdateOrchestrator:
        """Wire the production collaborators from ``settings``."""
        token = settings.github_token.get_secret_value() if settings.github_token else None
        service = service or SystemdServiceController(
            settings.service_name, timeout=settings.service_command_timeout_seconds
        )
        state_store = InstalledStateStore(
            settings.install_dir, settings.version_file, settings.managed_directories
        )
        return cls(
            registry=registry
            or GitHubReleaseSource(
                settings.release_api_url,
                github_token=token,
                timeout=settings.request_timeout_seconds,
            ),
            fetcher=ArtifactFetcher(
                primary_pattern=settings.primary_asset_pattern,
                auxiliary_pattern=settings.auxiliary_asset_pattern,
                checksum_asset_name=settings.checksum_asset_name,
                policy=DownloadPolicy(
                    attempts=settings.download_attempts,
                    backoff_seconds=settings.download_backoff_seconds,
                    concurrency=settings.download_concurrency,
                    max_asset_bytes=settings.max_asset_bytes,
                    timeout_seconds=settings.request_timeout_seconds,
                ),
            ),
            verifier=ChecksumVerifier(),
            artifact_store=TarArtifactStore(
                settings.primary_directory, settings.auxiliary_directory
            ),
            installation=InstallationManager(
                settings.install_dir,
                settings.managed_directories,
                service,
                state_store,
                backup_suffix=settings.backup_suffix,
            ),
            health_probe=HealthProbe(
                settings.health_url,
                HealthCheckConfig(
                    retries=settings.health_retries,
                    delay_seconds=settings.health_interval_seconds,
                    timeout_seconds=settings.health_timeout_seconds,
                ),
            ),
            state_store=state_store,
            status_store=RuntimeStatusStore(settings.state_file),
            run_lock=RunLock(settings.lock_file),
            staging_dir=settings.staging_dir,
            pause_on_failure=settings.pause_on_failure,
        )

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def status(self) -> RuntimeStatusStore:
        return self._status

    async def run(self, check_only: bool = False) -> RunResult:
        """Execute one update run and return its result.

        With ``check_only`` the run stops after the release check and never
        creates a workspace, touches the service or writes any state.
        """
        ctx = RunContext(run_id=uuid.uuid4().hex[:12], check_only=check_only)
        with structlog.contextvars.bound_contextvars(run_id=ctx.run_id):
            try:
                self._lock.acquire()
            except LockHeldError as exc:
                log.info("run_skipped_lock_held", error=str(exc))
                return self._finish(
                    ctx, RunOutcome.SKIPPED, time.monotonic(), error=exc, record=False
                )
            try:
                return await self._run_locked(ctx)
            finally:
                self._lock.release()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run_locked(self, ctx: RunContext) -> RunResult:
        start = time.monotonic()
        self._status.reload()

        if self._status.paused and not ctx.check_only:
            log.warning("run_skipped_paused", reason=self._status.pause_reason)
            paused = RolloutsPausedError(
                f"Rollouts are paused: {self._status.pause_reason or 'manual resume required'}"
            )
            return self._finish(ctx, RunOutcome.SKIPPED, start, error=paused, record=False)

        try:
            return await self._advance(ctx, start)
        except UpdaterError as exc:
            log.error("run_aborted", state=ctx.state.value, code=exc.code, error=str(exc))
            return self._finish(ctx, RunOutcome.ABORTED, start, error=exc)
        except Exception as exc:
            log.exception("run_failed_unexpectedly", state=ctx.state.value)
            return self._finish(ctx, RunOutcome.ABORTED, start, error=exc)

    async def _advance(self, ctx: RunContext, start: float) -> RunResult:
        stale = self._installation.stale_backups()
        if stale:
            raise StaleBackupError([str(path) for path in stale])

        # Crash recovery: a workspace left behind by an unterminated run is
        # discarded, never resumed.
        if discard_stale_workspace(self._staging_dir):
            ctx.steps.append("discard_stale_workspace")

        ctx.installed_tag = self._state_store.read_tag()

        self._enter(ctx, UpdateState.CHECKING_UPDATE)
        ctx.release = await self._registry.get_latest()
        ctx.steps.append("check_update")

        if ctx.release.tag == ctx.installed_tag:
            self._enter(ctx, UpdateState.UP_TO_DATE)
            log.info("up_to_date", tag=ctx.installed_tag)
            return self._finish(ctx, RunOutcome.UP_TO_DATE, start, record=False)

        self._enter(ctx, UpdateState.UPDATE_AVAILABLE)
        log.info("update_available", current=ctx.installed_tag, latest=ctx.release.tag)
        if ctx.check_only:
            return self._finish(ctx, RunOutcome.UPDATE_AVAILABLE, start, record=False)

        self._status.mark_attempt(ctx.release.tag)

        async with staging_workspace(self._staging_dir) as workspace:
            self._enter(ctx, UpdateState.FETCHING)
            ctx.fetched = await self._fetcher.fetch(ctx.release, workspace)
            ctx.steps.append("fetch")

            self._enter(ctx, UpdateState.VERIFYING)
            manifest = ChecksumManifest.from_file(
                ctx.fetched.manifest.path, self._verifier.algorithm
            )
            await asyncio.to_thread(self._verifier.verify, ctx.fetched.verifiable, manifest)
            ctx.steps.append("verify")
            ctx.staged = await asyncio.to_thread(self._artifact_store.stage, ctx.fetched, workspace)
            ctx.steps.append("stage")

            self._enter(ctx, UpdateState.SWAPPING)
            ctx.handle = await self._installation.swap(ctx.staged, ctx.release.tag)
            ctx.steps.append("swap")

            self._enter(ctx, UpdateState.HEALTH_CHECKING)
            healthy = False
            if ctx.handle.service_started:
                healthy = await self._health_probe.check()
            else:
                log.error("health_gate_skipped_service_down", tag=ctx.release.tag)

            failure: UpdaterError
            if healthy:
                ctx.steps.append("health_check")
                try:
                    await self._installation.promote(ctx.handle)
                except InstalledStateError as exc:
                    # Backups survive a failed tag write; restore them.
                    log.error("promote_failed", tag=ctx.release.tag, error=str(exc))
                    failure = exc
                else:
                    ctx.steps.append("promote")
                    self._enter(ctx, UpdateState.PROMOTED)
                    log.info(
                        "update_promoted", tag=ctx.release.tag, previous_tag=ctx.installed_tag
                    )
                    return self._finish(ctx, RunOutcome.PROMOTED, start)
            else:
                failure = HealthCheckFailed(
                    f"{ctx.release.tag} did not pass the health check at "
                    f"{self._health_probe.endpoint}"
                    if ctx.handle.service_started
                    else f"Service did not start after installing {ctx.release.tag}"
                )

            self._enter(ctx, UpdateState.ROLLING_BACK)
            await self._installation.rollback(ctx.handle)
            ctx.steps.append("rollback")
            self._enter(ctx, UpdateState.ROLLED_BACK)
            log.warning("update_rolled_back", tag=ctx.release.tag, restored_tag=ctx.installed_tag)
            return self._finish(ctx, RunOutcome.ROLLED_BACK, start, error=failure)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _enter(ctx: RunContext, state: UpdateState) -> None:
        log.debug("state_transition", source=ctx.state.value, target=state.value)
        ctx.state = state

    def _finish(
        self,
        ctx: RunContext,
        outcome: RunOutcome,
        start: float,
        error: BaseException | None = None,
        record: bool = True,
    ) -> RunResult:
        if outcome is RunOutcome.ABORTED:
            state = UpdateState.ABORTED
        else:
            state = ctx.state

        requires_manual = False
        error_code: str | None = None
        if isinstance(error, UpdaterError):
            error_code = error.code
            requires_manual = outcome is RunOutcome.ABORTED and bool(error.unsafe)
        elif error is not None:
            error_code = "unexpected_error"
            requires_manual = ctx.state in _MUTATING_STATES

        result = RunResult(
            outcome=outcome,
            state=state,
            installed_tag=self._current_tag_for(ctx, outcome),
            target_tag=ctx.release.tag if ctx.release else None,
            error_code=error_code,
            error=str(error) if error is not None else None,
            requires_manual_intervention=requires_manual,
            steps_completed=list(ctx.steps),
            started_at=ctx.started_at,
            completed_at=utc_now_iso(),
            duration_seconds=round(time.monotonic() - start, 2),
        )

        if record and not ctx.check_only:
            self._status.record_result(outcome.value, error_code, result.error, result.target_tag)
            if self._pause_on_failure and self._should_pause(outcome, requires_manual, ctx):
                self._status.pause(f"{error_code or outcome.value}: {result.error or ''}".strip())

        log.info(
            "run_finished",
            outcome=outcome.value,
            state=state.value,
            installed_tag=result.installed_tag,
            target_tag=result.target_tag,
            error_code=error_code,
            manual_intervention=requires_manual,
            duration_seconds=result.duration_seconds,
        )
        return result

    def _current_tag_for(self, ctx: RunContext, outcome: RunOutcome) -> str | None:
        if outcome is RunOutcome.PROMOTED and ctx.release is not None:
            return ctx.release.tag
        return ctx.installed_tag

    @staticmethod
    def _should_pause(outcome: RunOutcome, requires_manual: bool, ctx: RunContext) -> bool:
        if outcome is RunOutcome.ROLLED_BACK:
            return True
        if outcome is RunOutcome.ABORTED:
            return requires_manual or ctx.state in _MUTATING_STATES
        return False
