"""Tests for authorization server metadata discovery."""

import httpx
import pytest

from authflow.client.primitives.discovery import OAuth2Discovery
from authflow.errors import DiscoveryError, NetworkFailureError


def metadata(issuer: str) -> dict:
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "code_challenge_methods_supported": ["S256", "plain"],
    }


class TestDiscoveryUrlBuilding:
    def setup_method(self):
        self.discovery = OAuth2Discovery()

    def test_root_issuer(self):
        # Act
        urls = self.discovery._build_discovery_urls("https://auth.example.com")

        # Assert
        assert urls == [
            "https://auth.example.com/.well-known/oauth-authorization-server",
            "https://auth.example.com/.well-known/openid-configuration",
        ]

    def test_issuer_with_path(self):
        # Act
        urls = self.discovery._build_discovery_urls(
            "https://login.example.com/tenant-1/v2.0/"
        )

        # Assert
        assert urls == [
            "https://login.example.com/.well-known/oauth-authorization-server/tenant-1/v2.0",
            "https://login.example.com/.well-known/oauth-authorization-server",
            "https://login.example.com/tenant-1/v2.0/.well-known/openid-configuration",
            "https://login.example.com/.well-known/openid-configuration/tenant-1/v2.0",
            "https://login.example.com/.well-known/openid-configuration",
        ]


class TestDiscover:
    def setup_method(self):
        self.calls: list[str] = []

    def make_discovery(self, handler) -> OAuth2Discovery:
        discovery = OAuth2Discovery()
        discovery._http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        )
        return discovery

    async def test_falls_back_to_openid_configuration_and_caches(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            self.calls.append(request.url.path)
            if request.url.path == "/.well-known/openid-configuration":
                return httpx.Response(200, json=metadata("https://auth.example.com"))
            return httpx.Response(404)

        discovery = self.make_discovery(handler)

        # Act
        first = await discovery.discover("https://auth.example.com")
        second = await discovery.discover("https://auth.example.com/")

        # Assert
        assert first is second
        assert first.token_endpoint == "https://auth.example.com/oauth/token"
        assert self.calls == [
            "/.well-known/oauth-authorization-server",
            "/.well-known/openid-configuration",
        ]

    async def test_issuer_mismatch_rejected(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=metadata("https://evil.example.com"))

        discovery = self.make_discovery(handler)

        # Act & Assert
        with pytest.raises(DiscoveryError, match="Issuer mismatch"):
            await discovery.discover("https://auth.example.com")

    async def test_server_error_stops_walk(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            self.calls.append(request.url.path)
            return httpx.Response(503)

        discovery = self.make_discovery(handler)

        # Act & Assert
        with pytest.raises(DiscoveryError):
            await discovery.discover("https://auth.example.com")
        assert len(self.calls) == 1

    async def test_metadata_without_s256_is_skipped(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            body = metadata("https://auth.example.com")
            body["code_challenge_methods_supported"] = ["plain"]
            return httpx.Response(200, json=body)

        discovery = self.make_discovery(handler)

        # Act & Assert
        with pytest.raises(DiscoveryError):
            await discovery.discover("https://auth.example.com")

    async def test_unreachable_issuer_is_network_failure(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        discovery = self.make_discovery(handler)

        # Act & Assert
        with pytest.raises(NetworkFailureError):
            await discovery.discover("https://auth.example.com")
