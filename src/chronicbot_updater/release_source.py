"""Latest-release lookup against the GitHub Releases API.

The raw JSON is validated with pydantic before anything else looks at it,
so decision logic only ever sees a well-formed ``ReleaseDescriptor``.
"""

from __future__ import annotations

from typing import Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from chronicbot_updater.errors import MalformedReleaseError, RegistryError
from chronicbot_updater.logging import get_logger
from chronicbot_updater.models import AssetDescriptor, ReleaseDescriptor

log = get_logger("chronicbot_updater.release_source")


class RegistryClient(Protocol):
    """Anything that can report the latest published release."""

    async def get_latest(self) -> ReleaseDescriptor: ...


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _AssetPayload(BaseModel):
    name: str = Field(min_length=1)
    browser_download_url: str = Field(min_length=1)
    size: int | None = None

    @field_validator("name", "browser_download_url")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class _ReleasePayload(BaseModel):
    tag_name: str = Field(min_length=1)
    assets: list[_AssetPayload] = Field(default_factory=list)
    published_at: str | None = None
    html_url: str | None = None
    draft: bool = False

    @field_validator("tag_name")
    @classmethod
    def _strip_tag(cls, value: str) -> str:
        value = value.strip()
        if not value or value == "null":
            raise ValueError("release tag is empty")
        return value


def parse_release(payload: object) -> ReleaseDescriptor:
    """Validate a GitHub release payload and convert it to a descriptor."""
    if not isinstance(payload, dict):
        raise MalformedReleaseError("Release payload is not a JSON object")
    try:
        release = _ReleasePayload.model_validate(payload)
    except ValidationError as exc:
        raise MalformedReleaseError(f"Could not parse release payload: {exc}") from exc

    if release.draft:
        raise MalformedReleaseError(f"Release {release.tag_name} is still a draft")

    return ReleaseDescriptor(
        tag=release.tag_name,
        assets=tuple(
            AssetDescriptor(
                name=asset.name,
                source_location=asset.browser_download_url,
                size=asset.size,
            )
            for asset in release.assets
        ),
        published_at=release.published_at or "",
        html_url=release.html_url or "",
    )


# ---------------------------------------------------------------------------
# GitHub client
# ---------------------------------------------------------------------------


class GitHubReleaseSource:
    """Query ``releases/latest`` for a repository."""

    def __init__(
        self,
        api_url: str,
        github_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._github_token = github_token
        self._timeout = timeout
        self._client = client

    async def get_latest(self) -> ReleaseDescriptor:
        """Return the latest published release.

        Raises ``RegistryError`` when the API cannot be reached or answers
        with anything but 200, and ``MalformedReleaseError`` when the body
        is not a usable release.
        """
        headers: dict[str, str] = {"Accept": "application/vnd.github+json"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"

        log.info("registry_query", url=self._api_url)
        try:
            if self._client is not None:
                resp = await self._client.get(self._api_url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._api_url, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistryError(f"Failed to query release registry: {exc}") from exc

        if resp.status_code == 404:
            raise RegistryError("Release registry reports no published releases")
        if resp.status_code != 200:
            raise RegistryError(f"Release registry returned HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MalformedReleaseError(f"Release registry returned invalid JSON: {exc}") from exc

        release = parse_release(payload)
        log.info(
            "registry_latest_release",
            tag=release.tag,
            assets=len(release.assets),
            published_at=release.published_at,
        )
        return release
