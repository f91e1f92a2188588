"""Authorization server discovery primitive.

Implements RFC 8414 (Authorization Server Metadata) discovery with OpenID
Connect Discovery fallback to find the endpoints of an issuer.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from authflow.client.models.discovery import AuthorizationServerMetadata
from authflow.errors import DiscoveryError, NetworkFailureError

logger = logging.getLogger(__name__)


class OAuth2Discovery:
    """Discovers and caches authorization server metadata per issuer.

    Tries the well-known locations in RFC 8414 order, falling back to the
    OpenID Connect configuration document that most identity providers serve.
    """

    def __init__(self, timeout: float = 30.0):
        """Initialize discovery.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)
        self._cache: dict[str, AuthorizationServerMetadata] = {}

    async def discover(
        self, issuer: str, use_cache: bool = True
    ) -> AuthorizationServerMetadata:
        """Discover the metadata of an issuer.

        Args:
            issuer: Issuer identifier URL
            use_cache: Return a previously discovered document if present

        Returns:
            Authorization server metadata

        Raises:
            DiscoveryError: If no location yields valid metadata for the issuer
            NetworkFailureError: If every location failed at the network level
        """
        key = issuer.rstrip("/")
        if use_cache and key in self._cache:
            return self._cache[key]

        metadata = await self._discover_authorization_server_metadata(issuer)
        if metadata.issuer.rstrip("/") != key:
            raise DiscoveryError(
                f"Issuer mismatch: requested {issuer}, metadata says {metadata.issuer}"
            )

        self._cache[key] = metadata
        return metadata

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._http_client.aclose()

    async def _discover_authorization_server_metadata(
        self, issuer: str
    ) -> AuthorizationServerMetadata:
        discovery_urls = self._build_discovery_urls(issuer)
        network_errors = 0

        for url in discovery_urls:
            try:
                logger.debug(f"Trying authorization server metadata discovery: {url}")
                response = await self._http_client.get(url)

                if response.status_code == 200:
                    metadata = AuthorizationServerMetadata.model_validate_json(
                        response.text
                    )
                    logger.debug(
                        f"Discovered authorization server metadata from: {url}"
                    )
                    return metadata
                elif response.status_code >= 500:
                    # Server error - don't try other URLs
                    break

            except ValidationError as e:
                # Invalid metadata - try next URL
                logger.debug(f"Invalid metadata at {url}: {e}")
                continue
            except httpx.RequestError as e:
                # Network error - try next URL
                logger.debug(f"Network error fetching {url}: {e}")
                network_errors += 1
                continue

        if network_errors == len(discovery_urls):
            raise NetworkFailureError(
                f"Could not reach any discovery endpoint for {issuer}"
            )

        raise DiscoveryError(
            f"Failed to discover authorization server metadata for {issuer}. "
            f"Tried URLs: {discovery_urls}"
        )

    def _build_discovery_urls(self, issuer: str) -> list[str]:
        """Build ordered list of discovery URLs to try.

        RFC 8414 Section 3: Path-aware discovery should be tried first,
        then fallback to root discovery. OIDC Discovery appends the
        well-known suffix to the issuer path instead.
        """
        parsed = urlparse(issuer)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        path = parsed.path.rstrip("/")
        urls = []

        # RFC 8414: Path-aware OAuth discovery
        if path:
            urls.append(
                urljoin(base_url, f"/.well-known/oauth-authorization-server{path}")
            )

        # OAuth root fallback
        urls.append(urljoin(base_url, "/.well-known/oauth-authorization-server"))

        # OIDC discovery (issuer path, then RFC 8414 style insertion)
        if path:
            urls.append(urljoin(base_url, f"{path}/.well-known/openid-configuration"))
            urls.append(urljoin(base_url, f"/.well-known/openid-configuration{path}"))

        urls.append(urljoin(base_url, "/.well-known/openid-configuration"))

        return urls
