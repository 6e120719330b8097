"""Shared fixtures: a real install tree wired to fake collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
import pytest
from helpers import (
    AUXILIARY_PATTERN,
    MANAGED_DIRECTORIES,
    PRIMARY_PATTERN,
    FakeProbe,
    FakeRegistry,
    FakeServiceController,
    ReleaseFixture,
)

from chronicbot_updater.artifacts import TarArtifactStore
from chronicbot_updater.checksums import ChecksumVerifier
from chronicbot_updater.fetcher import ArtifactFetcher, DownloadPolicy
from chronicbot_updater.installation import InstallationManager
from chronicbot_updater.lock import RunLock
from chronicbot_updater.orchestrator import UpdateOrchestrator
from chronicbot_updater.state import InstalledStateStore, RuntimeStatusStore


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """An installation of v1.9.0 with a binary and one channel module."""
    root = tmp_path / "opt" / "chronicbot"
    (root / "bin").mkdir(parents=True)
    (root / "bin" / "ironclaw").write_bytes(b"old-binary")
    (root / "channels").mkdir()
    (root / "channels" / "telegram.wasm").write_bytes(b"old-telegram")
    (root / "version.txt").write_text("v1.9.0\n", encoding="utf-8")
    return root


@pytest.fixture
def service() -> FakeServiceController:
    return FakeServiceController()


@pytest.fixture
def state_store(install_dir: Path) -> InstalledStateStore:
    return InstalledStateStore(install_dir, install_dir / "version.txt", MANAGED_DIRECTORIES)


@pytest.fixture
def installation(
    install_dir: Path, service: FakeServiceController, state_store: InstalledStateStore
) -> InstallationManager:
    return InstallationManager(install_dir, MANAGED_DIRECTORIES, service, state_store)


@dataclass
class Harness:
    """A fully wired orchestrator over fakes and a real install tree."""

    orchestrator: UpdateOrchestrator
    install_dir: Path
    service: FakeServiceController
    registry: FakeRegistry
    probe: FakeProbe
    status: RuntimeStatusStore
    client: httpx.AsyncClient


@pytest.fixture
async def make_harness(
    install_dir: Path,
    service: FakeServiceController,
    state_store: InstalledStateStore,
    installation: InstallationManager,
) -> AsyncIterator[Callable[..., Harness]]:
    clients: list[httpx.AsyncClient] = []

    def _make(
        release: ReleaseFixture,
        probe: FakeProbe | None = None,
        fail_downloads: set[str] | None = None,
        pause_on_failure: bool = True,
        health_probe: object | None = None,
    ) -> Harness:
        client = httpx.AsyncClient(transport=release.transport(fail_downloads))
        clients.append(client)
        registry = FakeRegistry(release=release.descriptor)
        probe = probe or FakeProbe()
        status = RuntimeStatusStore(install_dir / "updater-state.json")
        orchestrator = UpdateOrchestrator(
            registry=registry,
            fetcher=ArtifactFetcher(
                primary_pattern=PRIMARY_PATTERN,
                auxiliary_pattern=AUXILIARY_PATTERN,
                policy=DownloadPolicy(attempts=1, backoff_seconds=0),
                client=client,
            ),
            verifier=ChecksumVerifier(),
            artifact_store=TarArtifactStore(),
            installation=installation,
            health_probe=health_probe or probe,  # type: ignore[arg-type]
            state_store=state_store,
            status_store=status,
            run_lock=RunLock(install_dir / ".update.lock"),
            staging_dir=install_dir / ".update",
            pause_on_failure=pause_on_failure,
        )
        return Harness(orchestrator, install_dir, service, registry, probe, status, client)

    yield _make
    for client in clients:
        await client.aclose()
