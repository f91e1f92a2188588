"""Token endpoint service: code exchange, refresh and revocation.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636) and
token revocation (RFC 7009).
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from authflow.client.models.tokens import (
    RefreshTokenRequest,
    RevocationRequest,
    TokenRequest,
    TokenResponse,
    TokenSet,
)
from authflow.errors import (
    ExchangeRejectedError,
    NetworkFailureError,
    RefreshReuseDetectedError,
    RevocationError,
    TokenError,
    TokenRefreshError,
)

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OAuth2TokenManager:
    """Manages token endpoint operations.

    Handles:
    - Authorization code to token exchange (RFC 6749 Section 4.1.3)
    - Access token refresh (RFC 6749 Section 6)
    - Token revocation (RFC 7009)

    Every call performs exactly one request. Codes and rotated refresh tokens
    are single-use at the server, so nothing here is retried. Tokens are
    returned to the caller and never persisted by the manager.
    """

    def __init__(self, timeout: float = 30.0):
        """Initialize token manager.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def exchange_code_for_token(self, token_request: TokenRequest) -> TokenSet:
        """Exchange an authorization code and PKCE verifier for tokens.

        Raises:
            ExchangeRejectedError: If the server rejects the code or verifier
            NetworkFailureError: If the token endpoint could not be reached
            TokenError: If the response is malformed
        """
        logger.debug(f"Exchanging authorization code at {token_request.token_endpoint}")

        form_data = token_request.to_form_data()

        # Log request details (without sensitive data)
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}"
        )

        response = await self._post(
            token_request.token_endpoint, form_data, "token exchange"
        )
        token_response = self._parse_token_response(response)

        if token_response.is_error():
            raise ExchangeRejectedError(
                f"Authorization code exchange rejected: {token_response.error}"
                f" ({token_response.error_description or 'no description'})",
                error=token_response.error,
                error_description=token_response.error_description,
            )

        logger.info("Authorization code exchange successful")
        return token_response.to_token_set()

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenSet:
        """Redeem a refresh token for a new token set.

        Raises:
            RefreshReuseDetectedError: If the server answers invalid_grant,
                meaning the refresh token was rotated, revoked or reused
            TokenRefreshError: For any other error response
            NetworkFailureError: If the token endpoint could not be reached
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")

        form_data = refresh_request.to_form_data()
        logger.debug(f"Refresh request: client_id={form_data['client_id']}")

        response = await self._post(
            refresh_request.token_endpoint, form_data, "token refresh"
        )
        token_response = self._parse_token_response(response)

        if token_response.is_error():
            message = (
                f"Token refresh rejected: {token_response.error}"
                f" ({token_response.error_description or 'no description'})"
            )
            if token_response.error == "invalid_grant":
                raise RefreshReuseDetectedError(
                    message,
                    error=token_response.error,
                    error_description=token_response.error_description,
                )
            raise TokenRefreshError(
                message,
                error=token_response.error,
                error_description=token_response.error_description,
            )

        logger.info("Token refresh successful")
        return token_response.to_token_set()

    async def revoke_token(self, revocation_request: RevocationRequest) -> None:
        """Revoke a token at the revocation endpoint.

        RFC 7009 Section 2.2: the server answers 200 for unknown or already
        invalid tokens as well, so only error bodies are failures.

        Raises:
            RevocationError: If the server rejects the request
            NetworkFailureError: If the revocation endpoint could not be reached
        """
        logger.debug(
            f"Revoking {revocation_request.token_type_hint or 'token'} at "
            f"{revocation_request.revocation_endpoint}"
        )

        response = await self._post(
            revocation_request.revocation_endpoint,
            revocation_request.to_form_data(),
            "token revocation",
        )

        if response.status_code == 200:
            logger.info("Token revoked")
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error", "unknown_error") if isinstance(body, dict) else None
        description = body.get("error_description") if isinstance(body, dict) else None
        raise RevocationError(
            f"Token revocation failed with {response.status_code}: {error}",
            error=error,
            error_description=description,
        )

    async def _post(
        self, url: str, form_data: dict[str, str], operation: str
    ) -> httpx.Response:
        try:
            return await self._http_client.post(
                url, data=form_data, headers=FORM_HEADERS
            )
        except httpx.HTTPError as e:
            raise NetworkFailureError(f"HTTP error during {operation}: {e}") from e

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse token endpoint response into TokenResponse.

        Handles both successful responses (200) and error responses (400+)
        according to RFC 6749 Section 5.

        Raises:
            TokenError: If response cannot be parsed
        """
        try:
            response_data = response.json()
        except ValueError as e:
            if not 400 <= response.status_code < 500:
                raise TokenError(
                    f"Token endpoint returned non-JSON response "
                    f"({response.status_code}): {e}"
                ) from e
            # A rejection without an RFC 6749 error body
            response_data = {
                "error": "unknown_error",
                "error_description": f"Non-JSON {response.status_code} response",
            }

        if not isinstance(response_data, dict):
            raise TokenError("Token endpoint returned a non-object JSON body")

        if response.status_code == 200:
            # Validate required fields
            if "access_token" not in response_data:
                raise TokenError("Token response missing required access_token")
        else:
            response_data.setdefault("error", "unknown_error")
            response_data.pop("access_token", None)
            logger.warning(
                f"Token endpoint returned {response.status_code}: "
                f"{response_data['error']} - "
                f"{response_data.get('error_description', 'No description provided')}"
            )

        try:
            return TokenResponse.model_validate(response_data)
        except ValidationError as e:
            raise TokenError(f"Invalid token response format: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
