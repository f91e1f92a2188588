"""Tests for the key-set cache."""

import httpx
import pytest

from authflow.errors import InvalidSignatureError, KeySetError, NetworkFailureError
from authflow.resource.jwks import JWKSCache

JWKS_URI = "https://auth.example.com/.well-known/jwks.json"


class TestJWKSCache:
    def make_cache(self, handler, **kwargs) -> JWKSCache:
        kwargs.setdefault("retry_backoff", 0.0)
        cache = JWKSCache(JWKS_URI, **kwargs)
        cache._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return cache

    async def test_fetches_once_and_serves_from_cache(self, auth_server):
        # Arrange
        cache = auth_server.key_cache()

        # Act
        first = await cache.get_signing_key("key-1")
        second = await cache.get_signing_key("key-1")

        # Assert
        assert first is second
        assert auth_server.count("/.well-known/jwks.json") == 1
        assert cache.key_ids == ["key-1"]

    async def test_unknown_kid_refetches_then_fails(self, auth_server):
        # Arrange
        cache = auth_server.key_cache(min_refresh_interval=0)
        await cache.get_signing_key("key-1")

        # Act & Assert
        with pytest.raises(InvalidSignatureError):
            await cache.get_signing_key("rotated-key")
        assert auth_server.count("/.well-known/jwks.json") == 2

    async def test_unknown_kid_refetch_is_rate_limited(self, auth_server):
        # Arrange
        cache = auth_server.key_cache(min_refresh_interval=300)
        await cache.get_signing_key("key-1")

        # Act
        for _ in range(3):
            with pytest.raises(InvalidSignatureError):
                await cache.get_signing_key("garbage")

        # Assert
        assert auth_server.count("/.well-known/jwks.json") == 1

    async def test_key_rotation_picked_up_on_miss(self, auth_server):
        # Arrange
        cache = auth_server.key_cache(min_refresh_interval=0)
        await cache.get_signing_key("key-1")
        auth_server.kid = "key-2"

        # Act
        key = await cache.get_signing_key("key-2")

        # Assert
        assert key.key_id == "key-2"
        assert cache.key_ids == ["key-2"]

    async def test_missing_kid_accepted_with_single_key(self, auth_server):
        # Arrange
        cache = auth_server.key_cache()

        # Act
        key = await cache.get_signing_key(None)

        # Assert
        assert key.key_id == "key-1"

    async def test_network_failures_are_retried(self, auth_server):
        # Arrange
        attempts = []

        async def flaky(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json=auth_server.jwks())

        cache = self.make_cache(flaky, max_retries=3)

        # Act
        key = await cache.get_signing_key("key-1")

        # Assert
        assert key.key_id == "key-1"
        assert len(attempts) == 3

    async def test_server_errors_exhaust_retries(self):
        # Arrange
        attempts = []

        def down(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(503)

        cache = self.make_cache(down, max_retries=2)

        # Act & Assert
        with pytest.raises(NetworkFailureError):
            await cache.get_signing_key("key-1")
        assert len(attempts) == 3

    async def test_client_error_is_not_retried(self):
        # Arrange
        attempts = []

        def missing(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(404)

        cache = self.make_cache(missing, max_retries=2)

        # Act & Assert
        with pytest.raises(KeySetError):
            await cache.get_signing_key("key-1")
        assert len(attempts) == 1

    async def test_empty_key_set_is_unusable(self):
        # Arrange
        cache = self.make_cache(lambda request: httpx.Response(200, json={"keys": []}))

        # Act & Assert
        with pytest.raises(KeySetError):
            await cache.get_signing_key("key-1")
