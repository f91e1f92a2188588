"""Authorization flow orchestration service.

Coordinates the front-channel half of the authorization code flow: PKCE and
state generation, authorization URL construction and callback validation.
"""

from __future__ import annotations

import logging
from urllib.parse import parse_qs, urlparse

from authflow.client.models.discovery import AuthorizationServerMetadata
from authflow.client.models.flow import AuthorizationRequest, AuthorizationResponse
from authflow.client.models.security import PendingAuthorization
from authflow.client.primitives.pkce import PKCEManager
from authflow.client.services.security import (
    generate_nonce,
    generate_state,
    validate_redirect_uri,
    validate_state,
)
from authflow.errors import (
    AuthorizationCallbackError,
    AuthorizationError,
    StateValidationError,
)

logger = logging.getLogger(__name__)


class OAuth2FlowManager:
    """Orchestrates authorization code flows with PKCE.

    Handles the flow from initial request generation through callback
    processing, including:
    - PKCE parameter generation
    - State parameter security (CSRF protection)
    - Nonce generation for OpenID Connect id tokens
    - Authorization URL construction
    - Callback URL parsing and validation
    """

    def __init__(self, pkce_manager: PKCEManager | None = None):
        self._pkce_manager = pkce_manager or PKCEManager()

    def start_authorization_flow(
        self,
        metadata: AuthorizationServerMetadata,
        client_id: str,
        redirect_uri: str,
        scope: str | None = None,
        audience: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> tuple[str, PendingAuthorization]:
        """Start an authorization flow.

        Args:
            metadata: Discovered authorization server metadata
            client_id: Registered client identifier
            redirect_uri: URI to redirect to after authorization
            scope: Optional scope to request
            audience: Optional API audience (Auth0 style)
            extra_params: Additional query parameters for the provider

        Returns:
            Tuple of (authorization_url, pending)
            - authorization_url: URL for user to visit
            - pending: keep this until the callback; it holds the verifier

        Raises:
            AuthorizationError: If flow setup fails
        """
        if not validate_redirect_uri(redirect_uri):
            raise AuthorizationError(
                f"Redirect URI must use https or a loopback http host: {redirect_uri}"
            )

        pkce_params = self._pkce_manager.generate_parameters()
        state = generate_state()
        nonce = generate_nonce() if scope and "openid" in scope.split() else None

        logger.debug(f"Starting authorization flow for client {client_id}")

        auth_request = AuthorizationRequest(
            authorization_endpoint=metadata.authorization_endpoint,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=pkce_params.code_challenge,
            code_challenge_method=pkce_params.code_challenge_method,
            state=state,
            scope=scope,
            nonce=nonce,
            audience=audience,
            extra_params=dict(extra_params or {}),
        )

        authorization_url = auth_request.build_authorization_url()
        logger.info(f"Generated authorization URL for client {client_id}")

        pending = PendingAuthorization(
            pkce=pkce_params,
            state=state,
            redirect_uri=redirect_uri,
            nonce=nonce,
            scope=scope,
        )
        return authorization_url, pending

    def handle_authorization_callback(
        self,
        callback_url: str,
        expected_state: str,
    ) -> AuthorizationResponse:
        """Handle the redirect back from the authorization server.

        Parses the callback URL, validates the state parameter and returns
        the authorization response carrying the code.

        Raises:
            AuthorizationCallbackError: If callback URL is malformed
            StateValidationError: If state parameter is missing or doesn't match
            AuthorizationError: If the server reported an authorization error
        """
        logger.debug("Processing authorization callback")

        auth_response = self._parse_callback_url(callback_url)

        if auth_response.state is None:
            raise StateValidationError(
                "Authorization server callback missing required state parameter"
            )

        validate_state(expected_state, auth_response.state)

        if auth_response.is_error():
            logger.warning(
                f"Authorization callback contained error: {auth_response.error} - "
                f"{auth_response.error_description}"
            )
            raise AuthorizationError(
                f"Authorization failed: {auth_response.error} "
                f"({auth_response.error_description or ''})"
            )

        if not auth_response.is_success():
            raise AuthorizationCallbackError(
                "Authorization callback missing both code and error"
            )

        logger.info("Authorization callback successful - received authorization code")
        return auth_response

    def _parse_callback_url(self, callback_url: str) -> AuthorizationResponse:
        try:
            parsed = urlparse(callback_url)
            query_params = parse_qs(parsed.query)
        except ValueError as e:
            raise AuthorizationCallbackError(
                f"Failed to parse callback URL: {e}"
            ) from e

        # Extract single values from query parameter lists
        def get_single_param(key: str) -> str | None:
            values = query_params.get(key, [])
            if len(values) > 1:
                raise AuthorizationCallbackError(
                    f"Callback repeats the {key} parameter"
                )
            return values[0] if values else None

        return AuthorizationResponse(
            code=get_single_param("code"),
            state=get_single_param("state"),
            error=get_single_param("error"),
            error_description=get_single_param("error_description"),
            error_uri=get_single_param("error_uri"),
        )
