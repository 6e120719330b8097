"""Tests for the GitHub release source."""

import httpx
import pytest

from chronicbot_updater.errors import MalformedReleaseError, RegistryError
from chronicbot_updater.release_source import GitHubReleaseSource, parse_release

API_URL = "https://api.github.com/repos/kingmk3r/ChronicBot/releases/latest"


def _payload(**overrides):
    payload = {
        "tag_name": "v2.0.0",
        "published_at": "2026-01-01T00:00:00Z",
        "html_url": "https://github.com/kingmk3r/ChronicBot/releases/tag/v2.0.0",
        "draft": False,
        "assets": [
            {
                "name": "ironclaw-aarch64-unknown-linux-gnu.tar.gz",
                "browser_download_url": "https://example.test/ironclaw.tar.gz",
                "size": 1024,
            },
            {
                "name": "checksums.txt",
                "browser_download_url": "https://example.test/checksums.txt",
                "size": 120,
            },
        ],
    }
    payload.update(overrides)
    return payload


def _source(handler, token=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GitHubReleaseSource(API_URL, github_token=token, client=client), client


class TestParseRelease:
    def test_valid_payload(self):
        release = parse_release(_payload())

        assert release.tag == "v2.0.0"
        assert [a.name for a in release.assets] == [
            "ironclaw-aarch64-unknown-linux-gnu.tar.gz",
            "checksums.txt",
        ]
        assert release.assets[0].source_location == "https://example.test/ironclaw.tar.gz"
        assert release.assets[0].size == 1024

    def test_tag_is_stripped(self):
        assert parse_release(_payload(tag_name="  v2.0.1\n")).tag == "v2.0.1"

    @pytest.mark.parametrize("tag", ["", "   ", "null"])
    def test_empty_tag_rejected(self, tag):
        with pytest.raises(MalformedReleaseError):
            parse_release(_payload(tag_name=tag))

    def test_missing_tag_rejected(self):
        payload = _payload()
        del payload["tag_name"]
        with pytest.raises(MalformedReleaseError):
            parse_release(payload)

    def test_non_object_rejected(self):
        with pytest.raises(MalformedReleaseError, match="not a JSON object"):
            parse_release(["v2.0.0"])

    def test_draft_rejected(self):
        with pytest.raises(MalformedReleaseError, match="draft"):
            parse_release(_payload(draft=True))

    def test_asset_without_url_rejected(self):
        with pytest.raises(MalformedReleaseError):
            parse_release(_payload(assets=[{"name": "checksums.txt"}]))

    def test_release_without_assets_is_valid(self):
        """Asset selection, not parsing, decides whether assets are missing."""
        assert parse_release(_payload(assets=[])).assets == ()


class TestGitHubReleaseSource:
    async def test_get_latest(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["url"] = str(request.url)
            return httpx.Response(200, json=_payload())

        source, client = _source(handler, token="ghp_token")
        async with client:
            release = await source.get_latest()

        assert release.tag == "v2.0.0"
        assert seen["url"] == API_URL
        assert seen["headers"]["Authorization"] == "Bearer ghp_token"
        assert seen["headers"]["Accept"] == "application/vnd.github+json"

    async def test_no_authorization_without_token(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json=_payload())

        source, client = _source(handler)
        async with client:
            await source.get_latest()

        assert "Authorization" not in seen["headers"]

    async def test_not_found_is_registry_error(self):
        source, client = _source(lambda request: httpx.Response(404))
        async with client:
            with pytest.raises(RegistryError, match="no published releases"):
                await source.get_latest()

    async def test_server_error_is_registry_error(self):
        source, client = _source(lambda request: httpx.Response(503))
        async with client:
            with pytest.raises(RegistryError, match="503"):
                await source.get_latest()

    async def test_connection_error_is_registry_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source, client = _source(handler)
        async with client:
            with pytest.raises(RegistryError, match="Failed to query"):
                await source.get_latest()

    async def test_invalid_json_is_malformed(self):
        source, client = _source(lambda request: httpx.Response(200, content=b"<html>"))
        async with client:
            with pytest.raises(MalformedReleaseError, match="invalid JSON"):
                await source.get_latest()

    async def test_registry_errors_are_not_unsafe(self):
        source, client = _source(lambda request: httpx.Response(500))
        async with client:
            with pytest.raises(RegistryError) as exc_info:
                await source.get_latest()

        assert exc_info.value.unsafe is False
        assert exc_info.value.code
