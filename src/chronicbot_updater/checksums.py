"""Checksum manifest parsing and the all-or-nothing verification gate."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from chronicbot_updater.errors import (
    ChecksumError,
    ChecksumMismatchError,
    ChecksumMissingError,
    MalformedReleaseError,
)
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import FetchedAsset, VerificationResult

log = get_logger("chronicbot_updater.checksums")

_CHUNK_SIZE = 65536
# "<hex>  <name>" (text mode) or "<hex> *<name>" (binary mode), as sha256sum writes them
_LINE_RE = re.compile(r"^(?P<digest>[0-9A-Fa-f]+) [ *](?P<name>\S.*)$")


class HashAlgorithm(Protocol):
    """Content hash used for verification."""

    name: str
    digest_size: int

    def new(self) -> Any:
        """Return a fresh hashlib-style object with ``update``/``hexdigest``."""
        ...


class Sha256:
    name = "sha256"
    digest_size = 32

    def new(self) -> Any:
        return hashlib.sha256()


def compute_digest(path: Path, algorithm: HashAlgorithm) -> str:
    """Hash a file in chunks and return the lowercase hex digest."""
    digest = algorithm.new()
    with path.open("rb") as source:
        for chunk in iter(lambda: source.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return str(digest.hexdigest()).lower()


@dataclass(frozen=True)
class ChecksumManifest:
    """Expected digests keyed by asset file name."""

    entries: dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> str | None:
        return self.entries.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def parse(cls, text: str, algorithm: HashAlgorithm | None = None) -> ChecksumManifest:
        """Parse ``sha256sum``-style manifest text.

        Blank lines and ``#`` comments are skipped.  Anything else that does
        not look like ``<hex>  <name>`` is rejected, as are digests of the
        wrong length and a name listed twice with different digests.
        """
        algorithm = algorithm or Sha256()
        expected_len = algorithm.digest_size * 2
        entries: dict[str, str] = {}

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            match = _LINE_RE.match(line)
            if match is None:
                raise MalformedReleaseError(
                    f"Checksum manifest line {lineno} is malformed: {raw!r}"
                )
            digest = match.group("digest").lower()
            name = match.group("name").strip()
            if len(digest) != expected_len:
                raise MalformedReleaseError(
                    f"Checksum manifest line {lineno}: {algorithm.name} digest for {name} "
                    f"must be {expected_len} hex characters"
                )
            # Some release tooling writes "./name" or "dist/name"; key by file name.
            name = Path(name).name
            previous = entries.get(name)
            if previous is not None and previous != digest:
                raise MalformedReleaseError(
                    f"Checksum manifest lists {name} twice with different digests"
                )
            entries[name] = digest

        return cls(entries=entries)

    @classmethod
    def from_file(cls, path: Path, algorithm: HashAlgorithm | None = None) -> ChecksumManifest:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise MalformedReleaseError(
                f"Could not read checksum manifest {path.name}: {exc}"
            ) from exc
        return cls.parse(text, algorithm)


class ChecksumVerifier:
    """Compare every fetched asset with its manifest entry.

    Verification is all-or-nothing: every asset is hashed and compared, and
    if any of them fails the first failure is raised.  The full picture is
    kept on ``last_result`` for logging.
    """

    def __init__(self, algorithm: HashAlgorithm | None = None) -> None:
        self._algorithm = algorithm or Sha256()
        self.last_result: VerificationResult | None = None

    @property
    def algorithm(self) -> HashAlgorithm:
        return self._algorithm

    def verify(
        self, assets: Iterable[FetchedAsset], manifest: ChecksumManifest
    ) -> VerificationResult:
        result = VerificationResult()
        first_error: ChecksumError | None = None

        for asset in assets:
            expected = manifest.get(asset.name)
            if expected is None:
                error: ChecksumError = ChecksumMissingError(asset.name)
                result.failures[asset.name] = str(error)
                log.error("checksum_missing", asset=asset.name)
                first_error = first_error or error
                continue

            actual = compute_digest(asset.path, self._algorithm)
            if actual != expected.lower():
                error = ChecksumMismatchError(asset.name, expected, actual)
                result.failures[asset.name] = str(error)
                log.error("checksum_mismatch", asset=asset.name, expected=expected, actual=actual)
                first_error = first_error or error
                continue

            result.verified[asset.name] = actual
            log.info("checksum_ok", asset=asset.name)

        self.last_result = result
        if first_error is not None:
            raise first_error

        log.info("checksums_verified", assets=len(result.verified), algorithm=self._algorithm.name)
        return result
