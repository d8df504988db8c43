"""Tests for the cloud settings client."""

import json

import httpx
import pytest

from schoolsync.cloud import (
    CloudSettingsClient,
    CredentialsIdentityProvider,
    StaticIdentityProvider,
)
from schoolsync.types import CloudIdentity

IDENTITY = CloudIdentity(user_id="user-1", token="secret-token")


def make_client(handler):
    return CloudSettingsClient("https://accounts.example.org/", transport=httpx.MockTransport(handler))


class TestConstruction:
    def test_trailing_slash_stripped(self):
        client = CloudSettingsClient("https://accounts.example.org/")
        assert client.settings_url == "https://accounts.example.org/api/settings"

    @pytest.mark.parametrize("url", ["ftp://example.org", "http://example.org", "not a url", ""])
    def test_rejected_urls(self, url):
        with pytest.raises(ValueError):
            CloudSettingsClient(url)

    def test_localhost_http_allowed(self):
        assert CloudSettingsClient("http://localhost:8000").base_url == "http://localhost:8000"


class TestFetch:
    @pytest.mark.asyncio
    async def test_sends_identity_headers(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["user"] = request.headers["X-User-ID"]
            return httpx.Response(200, json={"theme": "dark"})

        client = make_client(handler)
        assert await client.fetch_remote_settings(IDENTITY) == {"theme": "dark"}
        assert seen == {
            "method": "GET",
            "url": "https://accounts.example.org/api/settings",
            "auth": "Bearer secret-token",
            "user": "user-1",
        }
        await client.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="boom"),
            httpx.Response(401, json={"error": "unauthorized"}),
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json=["not", "a", "dict"]),
        ],
    )
    async def test_bad_responses_become_none(self, response):
        client = make_client(lambda request: response)
        assert await client.fetch_remote_settings(IDENTITY) is None

    @pytest.mark.asyncio
    async def test_network_error_becomes_none(self, caplog):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        assert await client.fetch_remote_settings(IDENTITY) is None
        assert "Fetching cloud settings failed" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_becomes_none(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = make_client(handler)
        assert await client.fetch_remote_settings(IDENTITY) is None


class TestPush:
    @pytest.mark.asyncio
    async def test_posts_full_document(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            assert request.method == "POST"
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        assert await client.push_remote_settings(IDENTITY, {"theme": "dark", "feeds": []}) is True
        assert bodies == [{"theme": "dark", "feeds": []}]

    @pytest.mark.asyncio
    async def test_server_error_returns_false(self):
        client = make_client(lambda request: httpx.Response(503))
        assert await client.push_remote_settings(IDENTITY, {"theme": "dark"}) is False

    @pytest.mark.asyncio
    async def test_unencodable_document_returns_false(self):
        client = make_client(lambda request: httpx.Response(200))
        assert await client.push_remote_settings(IDENTITY, {"bad": object()}) is False


class TestClientOwnership:
    @pytest.mark.asyncio
    async def test_external_client_is_not_closed(self):
        external = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        client = CloudSettingsClient("https://accounts.example.org", client=external)
        await client.aclose()
        assert not external.is_closed
        assert await client.fetch_remote_settings(IDENTITY) == {}
        await external.aclose()


class TestIdentityProviders:
    @pytest.mark.asyncio
    async def test_static(self):
        assert await StaticIdentityProvider(IDENTITY).get_identity() is IDENTITY
        assert await StaticIdentityProvider().get_identity() is None

    @pytest.mark.asyncio
    async def test_credentials_from_environment(self, monkeypatch):
        provider = CredentialsIdentityProvider()
        assert await provider.get_identity() is None
        monkeypatch.setenv("SCHOOLSYNC_USER_ID", "u-9")
        monkeypatch.setenv("SCHOOLSYNC_AUTH_TOKEN", "t-9")
        assert await provider.get_identity() == CloudIdentity("u-9", "t-9")

    @pytest.mark.asyncio
    async def test_credentials_file(self, data_home):
        (data_home / "credentials.json").write_text(json.dumps({"user_id": "u-1", "token": "legacy"}))
        assert await CredentialsIdentityProvider().get_identity() == CloudIdentity("u-1", "legacy")
