"""Process-wide cache of an issuer's JSON Web Key Set.

Keys are looked up by key id. A miss triggers a refetch of the whole set;
concurrent refetches may overlap and the last one to finish wins, which is
harmless because every fetch returns the issuer's current keys.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx
import jwt
from jwt import PyJWK, PyJWKSet
from jwt.exceptions import PyJWKSetError

from authflow.errors import InvalidSignatureError, KeySetError, NetworkFailureError

logger = logging.getLogger(__name__)


class JWKSCache:
    """Fetches and caches signing keys from a ``jwks_uri``.

    Args:
        jwks_uri: Key-set endpoint of the issuer
        timeout: HTTP request timeout in seconds
        max_retries: Extra attempts after a network failure or 5xx
        retry_backoff: Base delay in seconds, doubled on every retry
        min_refresh_interval: Minimum seconds between refetches caused by
            unknown key ids, so garbage tokens cannot hammer the issuer
    """

    def __init__(
        self,
        jwks_uri: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        min_refresh_interval: float = 30.0,
    ):
        self.jwks_uri = jwks_uri
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.min_refresh_interval = min_refresh_interval
        self._http_client = httpx.AsyncClient(timeout=timeout)
        self._keys: dict[str, PyJWK] = {}
        self._last_fetch: float | None = None

    @classmethod
    def from_config(cls, config) -> JWKSCache:
        return cls(
            config.jwks_uri,
            timeout=config.http_timeout,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
            min_refresh_interval=config.min_refresh_interval,
        )

    @property
    def key_ids(self) -> list[str]:
        return list(self._keys)

    async def get_signing_key(self, kid: str | None) -> PyJWK:
        """Return the key for a key id, refetching the set on a miss.

        A token without ``kid`` is accepted only when the set holds exactly
        one key.

        Raises:
            InvalidSignatureError: If no key matches after a refetch
            NetworkFailureError: If the key set could not be fetched
            KeySetError: If the key set document is unusable
        """
        key = self._lookup(kid)
        if key is not None:
            return key

        if self._may_refetch():
            await self.refresh()
            key = self._lookup(kid)
            if key is not None:
                return key
        else:
            logger.debug(f"Skipping key-set refetch for unknown kid {kid!r}")

        raise InvalidSignatureError(f"No signing key found for kid {kid!r}")

    async def refresh(self) -> None:
        """Fetch the key set and replace the cached keys."""
        document = await self._fetch()
        try:
            key_set = PyJWKSet.from_dict(document)
        except (PyJWKSetError, jwt.PyJWTError, KeyError, TypeError) as e:
            raise KeySetError(f"Unusable key set from {self.jwks_uri}: {e}") from e

        keys = {}
        for key in key_set.keys:
            if key.key_id is None:
                if len(key_set.keys) == 1:
                    keys[""] = key
                continue
            keys[key.key_id] = key

        # Last writer wins
        self._keys = keys
        self._last_fetch = time.monotonic()
        logger.info(f"Loaded {len(keys)} signing keys from {self.jwks_uri}")

    def _lookup(self, kid: str | None) -> PyJWK | None:
        if kid is None:
            if len(self._keys) == 1:
                return next(iter(self._keys.values()))
            return None
        return self._keys.get(kid)

    def _may_refetch(self) -> bool:
        if self._last_fetch is None:
            return True
        return time.monotonic() - self._last_fetch >= self.min_refresh_interval

    async def _fetch(self) -> dict:
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.retry_backoff * 2 ** (attempt - 1)
                logger.debug(f"Retrying key-set fetch in {delay:.2f}s")
                await asyncio.sleep(delay)

            try:
                logger.debug(f"Fetching key set from {self.jwks_uri}")
                response = await self._http_client.get(
                    self.jwks_uri, headers={"Accept": "application/json"}
                )
            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"Key-set fetch attempt {attempt + 1} failed: {e}")
                continue

            if response.status_code >= 500:
                last_error = KeySetError(
                    f"Key-set endpoint returned {response.status_code}"
                )
                logger.warning(
                    f"Key-set fetch attempt {attempt + 1} got {response.status_code}"
                )
                continue

            if response.status_code != 200:
                raise KeySetError(
                    f"Key-set endpoint {self.jwks_uri} returned {response.status_code}"
                )

            try:
                document = response.json()
            except ValueError as e:
                raise KeySetError(f"Key set from {self.jwks_uri} is not JSON") from e
            if not isinstance(document, dict):
                raise KeySetError(f"Key set from {self.jwks_uri} is not an object")
            return document

        raise NetworkFailureError(
            f"Could not fetch key set from {self.jwks_uri} after "
            f"{self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._http_client.aclose()
