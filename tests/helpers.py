"""Fakes, release builders and install-tree helpers shared by the tests."""

from __future__ import annotations

import hashlib
import io
import tarfile
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from chronicbot_updater.errors import RegistryError, ServiceControlError
from chronicbot_updater.models import AssetDescriptor, ReleaseDescriptor

PRIMARY_ASSET = "ironclaw-aarch64-unknown-linux-gnu.tar.gz"
PRIMARY_PATTERN = r"^ironclaw-aarch64-unknown-linux-gnu\.tar\.gz$"
AUXILIARY_PATTERN = r"\.wasm$"
MANAGED_DIRECTORIES = ("bin", "channels")
BASE_URL = "https://github.example/releases/download"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeServiceController:
    """In-memory stand-in for systemd.

    ``fail`` names verbs that always raise ``ServiceControlError`` and
    ``start_failures`` fails only the next N starts.  ``calls`` keeps the
    order of every command for assertions.
    """

    running: bool = True
    fail: set[str] = field(default_factory=set)
    stays_down: bool = False
    start_failures: int = 0
    calls: list[str] = field(default_factory=list)

    async def start(self) -> None:
        self.calls.append("start")
        if self.start_failures:
            self.start_failures -= 1
            raise ServiceControlError("unit failed to start")
        if "start" in self.fail:
            raise ServiceControlError("start failed")
        self.running = not self.stays_down

    async def stop(self) -> None:
        self.calls.append("stop")
        if "stop" in self.fail:
            raise ServiceControlError("stop failed")
        self.running = False

    async def restart(self) -> None:
        self.calls.append("restart")
        if "restart" in self.fail:
            raise ServiceControlError("restart failed")
        self.running = not self.stays_down

    async def is_running(self) -> bool:
        self.calls.append("is_running")
        return self.running


@dataclass
class FakeRegistry:
    release: ReleaseDescriptor | None = None
    error: Exception | None = None
    calls: int = 0

    async def get_latest(self) -> ReleaseDescriptor:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.release is None:
            raise RegistryError("no release configured")
        return self.release


@dataclass
class FakeProbe:
    """Health probe returning scripted results."""

    results: list[bool] = field(default_factory=lambda: [True])
    endpoint: str = "http://localhost:8080/health"
    calls: int = 0

    async def check(self) -> bool:
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


# ---------------------------------------------------------------------------
# Release builders
# ---------------------------------------------------------------------------


def make_tarball(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass
class ReleaseFixture:
    """A release descriptor plus the bytes served for each asset URL."""

    descriptor: ReleaseDescriptor
    payloads: dict[str, bytes]

    def transport(self, fail: set[str] | None = None) -> httpx.MockTransport:
        fail = fail or set()

        def handler(request: httpx.Request) -> httpx.Response:
            name = request.url.path.rsplit("/", 1)[-1]
            if name in fail:
                return httpx.Response(500)
            url = str(request.url)
            if url not in self.payloads:
                return httpx.Response(404)
            return httpx.Response(200, content=self.payloads[url])

        return httpx.MockTransport(handler)


def build_release(
    tag: str = "v2.0.0",
    binary: bytes = b"new-binary",
    channels: dict[str, bytes] | None = None,
    corrupt: set[str] | None = None,
    omit_checksums_for: set[str] | None = None,
    extra_assets: dict[str, bytes] | None = None,
    include_manifest: bool = True,
) -> ReleaseFixture:
    """Build a release whose checksums match unless told otherwise."""
    channels = {"telegram.wasm": b"new-telegram"} if channels is None else channels
    corrupt = corrupt or set()
    omit = omit_checksums_for or set()

    contents: dict[str, bytes] = {PRIMARY_ASSET: make_tarball({"ironclaw": binary})}
    contents.update(channels)

    lines = []
    for name, data in contents.items():
        if name in omit:
            continue
        digest = sha256(data + b"tampered") if name in corrupt else sha256(data)
        lines.append(f"{digest}  {name}")

    all_assets = dict(contents)
    all_assets.update(extra_assets or {})
    if include_manifest:
        all_assets["checksums.txt"] = ("\n".join(lines) + "\n").encode()

    assets = tuple(
        AssetDescriptor(name=name, source_location=f"{BASE_URL}/{tag}/{name}", size=len(data))
        for name, data in all_assets.items()
    )
    payloads = {f"{BASE_URL}/{tag}/{name}": data for name, data in all_assets.items()}
    return ReleaseFixture(ReleaseDescriptor(tag=tag, assets=assets), payloads)


# ---------------------------------------------------------------------------
# Install tree helpers
# ---------------------------------------------------------------------------


def snapshot_install(install_dir: Path) -> dict[str, bytes]:
    """Bytes of every file in the active installation plus the version record."""
    snapshot: dict[str, bytes] = {}
    for name in MANAGED_DIRECTORIES:
        root = install_dir / name
        if not root.exists():
            continue
        for path in sorted(root.rglob("*")):
            if path.is_file():
                snapshot[str(path.relative_to(install_dir))] = path.read_bytes()
    version = install_dir / "version.txt"
    if version.exists():
        snapshot["version.txt"] = version.read_bytes()
    return snapshot

