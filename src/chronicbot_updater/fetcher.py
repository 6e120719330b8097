"""Download the release assets the updater cares about.

Assets are chosen by pattern, not by a fixed list of names, so new
auxiliary channel modules published with a release are picked up
without code changes.  Documentation, source tarballs and anything else
that matches neither pattern is ignored.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

import httpx

from chronicbot_updater.errors import AssetMissingError, DownloadError, MalformedReleaseError
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import (
    AssetDescriptor,
    AssetKind,
    FetchedAsset,
    FetchedAssets,
    ReleaseDescriptor,
)
from chronicbot_updater.staging import StagingWorkspace

log = get_logger("chronicbot_updater.fetcher")


@dataclass(frozen=True)
class DownloadPolicy:
    """Retry and parallelism settings for asset transfers."""

    attempts: int = 1
    backoff_seconds: float = 2.0
    concurrency: int = 1
    max_asset_bytes: int = 512 * 1024 * 1024
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AssetSelection:
    primary: AssetDescriptor
    manifest: AssetDescriptor
    auxiliary: tuple[AssetDescriptor, ...]

    def all(self) -> list[tuple[AssetDescriptor, AssetKind]]:
        return [
            (self.manifest, AssetKind.MANIFEST),
            (self.primary, AssetKind.PRIMARY),
            *((asset, AssetKind.AUXILIARY) for asset in self.auxiliary),
        ]


def _check_file_name(name: str) -> None:
    if name in (".", "..") or "/" in name or "\\" in name or name != Path(name).name:
        raise MalformedReleaseError(f"Asset name {name!r} is not a plain file name")


class ArtifactFetcher:
    """Download the primary archive, auxiliary modules and checksum manifest."""

    def __init__(
        self,
        primary_pattern: str,
        auxiliary_pattern: str,
        checksum_asset_name: str = "checksums.txt",
        policy: DownloadPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._primary_re = re.compile(primary_pattern)
        self._auxiliary_re = re.compile(auxiliary_pattern)
        self._checksum_asset_name = checksum_asset_name
        self._policy = policy or DownloadPolicy()
        self._client = client

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, release: ReleaseDescriptor) -> AssetSelection:
        """Pick the assets to download.

        Raises ``AssetMissingError`` when the primary archive or checksum
        manifest is absent and ``MalformedReleaseError`` when the primary
        pattern is ambiguous.
        """
        manifest: AssetDescriptor | None = None
        primaries: list[AssetDescriptor] = []
        auxiliary: list[AssetDescriptor] = []
        seen: set[str] = set()

        for asset in release.assets:
            if asset.name == self._checksum_asset_name:
                manifest = asset
            elif self._primary_re.search(asset.name):
                primaries.append(asset)
            elif self._auxiliary_re.search(asset.name):
                auxiliary.append(asset)
            else:
                log.debug("fetch_asset_ignored", asset=asset.name)
                continue
            _check_file_name(asset.name)
            if asset.name in seen:
                raise MalformedReleaseError(f"Release {release.tag} lists asset {asset.name} twice")
            seen.add(asset.name)

        if manifest is None:
            raise AssetMissingError(self._checksum_asset_name, release.tag)
        if not primaries:
            raise AssetMissingError(self._primary_re.pattern, release.tag)
        if len(primaries) > 1:
            names = ", ".join(asset.name for asset in primaries)
            raise MalformedReleaseError(
                f"Release {release.tag} has more than one primary archive: {names}"
            )

        return AssetSelection(primary=primaries[0], manifest=manifest, auxiliary=tuple(auxiliary))

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def fetch(self, release: ReleaseDescriptor, workspace: StagingWorkspace) -> FetchedAssets:
        """Download every selected asset into ``workspace``.

        Any failure aborts the whole fetch.  Whatever was written so far
        stays in the workspace, which the caller discards.
        """
        selection = self.select(release)
        log.info(
            "fetch_started",
            tag=release.tag,
            primary=selection.primary.name,
            auxiliary=[asset.name for asset in selection.auxiliary],
        )
        workspace.downloads.mkdir(parents=True, exist_ok=True)

        if self._client is not None:
            fetched = await self._fetch_all(self._client, selection, workspace)
        else:
            async with httpx.AsyncClient(
                timeout=self._policy.timeout_seconds, follow_redirects=True
            ) as client:
                fetched = await self._fetch_all(client, selection, workspace)

        by_kind: dict[AssetKind, list[FetchedAsset]] = {kind: [] for kind in AssetKind}
        for asset in fetched:
            by_kind[asset.kind].append(asset)

        result = FetchedAssets(
            tag=release.tag,
            primary=by_kind[AssetKind.PRIMARY][0],
            manifest=by_kind[AssetKind.MANIFEST][0],
            auxiliary=tuple(by_kind[AssetKind.AUXILIARY]),
        )
        log.info("fetch_complete", tag=release.tag, assets=len(fetched))
        return result

    async def _fetch_all(
        self,
        client: httpx.AsyncClient,
        selection: AssetSelection,
        workspace: StagingWorkspace,
    ) -> list[FetchedAsset]:
        jobs = selection.all()
        if self._policy.concurrency <= 1:
            return [
                await self._download_with_retry(client, asset, kind, workspace)
                for asset, kind in jobs
            ]

        semaphore = asyncio.Semaphore(self._policy.concurrency)

        async def _bounded(asset: AssetDescriptor, kind: AssetKind) -> FetchedAsset:
            async with semaphore:
                return await self._download_with_retry(client, asset, kind, workspace)

        tasks = [asyncio.create_task(_bounded(asset, kind)) for asset, kind in jobs]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _download_with_retry(
        self,
        client: httpx.AsyncClient,
        asset: AssetDescriptor,
        kind: AssetKind,
        workspace: StagingWorkspace,
    ) -> FetchedAsset:
        target = workspace.downloads / asset.name
        attempts = max(1, self._policy.attempts)
        delay = self._policy.backoff_seconds

        for attempt in range(1, attempts + 1):
            try:
                await self._download_once(client, asset, target)
                return FetchedAsset(name=asset.name, path=target, kind=kind)
            except DownloadError as exc:
                if attempt >= attempts:
                    raise
                log.warning(
                    "fetch_retry",
                    asset=asset.name,
                    attempt=attempt,
                    attempts=attempts,
                    delay=delay,
                    error=exc.reason,
                )
                await asyncio.sleep(delay)
                delay *= 2

        raise DownloadError(asset.name, "no download attempts made")  # pragma: no cover

    async def _download_once(
        self, client: httpx.AsyncClient, asset: AssetDescriptor, target: Path
    ) -> None:
        log.info("fetch_asset", asset=asset.name, url=asset.source_location)
        limit = self._policy.max_asset_bytes
        received = 0
        try:
            async with client.stream("GET", asset.source_location, follow_redirects=True) as resp:
                if not resp.is_success:
                    raise DownloadError(asset.name, f"HTTP {resp.status_code}")
                with target.open("wb") as destination:
                    async for chunk in resp.aiter_bytes():
                        received += len(chunk)
                        if received > limit:
                            raise DownloadError(asset.name, f"exceeds size limit of {limit} bytes")
                        destination.write(chunk)
        except httpx.HTTPError as exc:
            raise DownloadError(asset.name, str(exc) or type(exc).__name__) from exc
        except OSError as exc:
            raise DownloadError(asset.name, f"write failed: {exc}") from exc

        if asset.size is not None and received != asset.size:
            raise DownloadError(asset.name, f"expected {asset.size} bytes, received {received}")
        log.debug("fetch_asset_complete", asset=asset.name, bytes=received)
