"""Complete OAuth 2.0 client orchestration.

Coordinates discovery, the authorization redirect, code exchange, token
storage and silent refresh to provide authenticated sessions.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from authflow.client.models.discovery import AuthorizationServerMetadata
from authflow.client.models.security import PendingAuthorization
from authflow.client.models.tokens import (
    RefreshTokenRequest,
    RevocationRequest,
    TokenRequest,
    TokenSet,
)
from authflow.client.primitives.discovery import OAuth2Discovery
from authflow.client.services.flow import OAuth2FlowManager
from authflow.client.services.refresh import RefreshState, SilentRefreshScheduler
from authflow.client.services.tokens import OAuth2TokenManager
from authflow.client.token_store import TokenStore
from authflow.config import ClientConfig, ValidatorConfig
from authflow.errors import (
    AuthorizationError,
    NetworkFailureError,
    ReauthenticationRequiredError,
    RevocationError,
    SessionNotFoundError,
    TokenValidationError,
)
from authflow.resource.validator import JWTValidator

logger = logging.getLogger(__name__)


class AuthorizationHandler(Protocol):
    """Protocol for handling user authorization step.

    Allows different strategies for browser interaction:
    - Manual (return URL to developer)
    - Browser automation (open browser + local server)
    - Custom UI integration
    """

    async def handle_authorization(self, auth_url: str) -> str:
        """Handle user authorization and return callback URL.

        Args:
            auth_url: Authorization URL for user to visit

        Returns:
            Callback URL received after user authorization
        """
        ...


class ManualAuthorizationHandler:
    """Authorization handler that requires manual user interaction.

    Returns the authorization URL and waits for developer to provide
    the callback URL. Suitable for CLI tools and custom integrations.
    """

    def __init__(self, callback_handler: Callable[[str], Awaitable[str]] | None = None):
        """Initialize manual authorization handler.

        Args:
            callback_handler: Optional coroutine function to call with auth URL.
                             Should return the callback URL.
        """
        self.callback_handler = callback_handler

    async def handle_authorization(self, auth_url: str) -> str:
        """Handle authorization by delegating to callback handler or raising."""
        if self.callback_handler:
            return await self.callback_handler(auth_url)
        else:
            raise NotImplementedError(
                f"Please visit {auth_url} and provide the callback URL"
            )


class AuthenticatedSession:
    """An authenticated user session.

    Explicit context object handed to the application. Tokens live in the
    client's token store; this object reads them and drives refresh and logout.
    """

    def __init__(
        self,
        session_id: str,
        client: OAuth2Client,
        scheduler: SilentRefreshScheduler,
        id_token_claims: dict[str, Any] | None = None,
    ):
        self.session_id = session_id
        self.id_token_claims = id_token_claims
        self._client = client
        self._scheduler = scheduler

    @property
    def tokens(self) -> TokenSet:
        """Current token set.

        Raises:
            ReauthenticationRequiredError: If the session was destroyed
        """
        try:
            return self._client.store.get_tokens(self.session_id)
        except SessionNotFoundError as e:
            raise ReauthenticationRequiredError(
                f"Session {self.session_id} is no longer active"
            ) from e

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_state(self) -> RefreshState:
        return self._scheduler.state

    @property
    def is_active(self) -> bool:
        return (
            self.session_id in self._client.store and not self._scheduler.failed
        )

    @property
    def is_valid(self) -> bool:
        """Check if session has an unexpired access token."""
        return self.is_active and not self.tokens.is_expired()

    async def get_access_token(self) -> str:
        """Return an access token, refreshing first once the refresh time is due.

        Raises:
            ReauthenticationRequiredError: If the session needs a new login
            NetworkFailureError: If a needed refresh could not reach the server
        """
        if self._scheduler.failed:
            raise ReauthenticationRequiredError(
                f"Session {self.session_id} must re-authenticate"
            )

        tokens = self.tokens
        if not tokens.can_refresh():
            if tokens.is_expired():
                raise ReauthenticationRequiredError(
                    "Access token expired and no refresh token is available"
                )
            return tokens.access_token

        if tokens.is_expired() or self._scheduler.refresh_due():
            return (await self._scheduler.refresh()).access_token
        return tokens.access_token

    async def refresh(self) -> TokenSet:
        """Force a refresh (joins one already in flight)."""
        return await self._scheduler.refresh()

    async def logout(self) -> None:
        """Revoke the session's tokens and destroy it locally.

        Revocation failures are logged; local teardown always happens.
        """
        try:
            tokens = self._client.store.get_tokens(self.session_id)
        except SessionNotFoundError:
            tokens = None

        await self._scheduler.close()

        if tokens is not None:
            try:
                await self._client.revoke(tokens)
            except (RevocationError, NetworkFailureError) as e:
                logger.warning(f"Revocation failed during logout: {e}")

        self._client.store.destroy(self.session_id)
        self._client.forget_session(self.session_id)
        logger.info(f"Logged out session {self.session_id}")

    async def close(self) -> None:
        """Stop background refresh without revoking anything."""
        await self._scheduler.close()


class OAuth2Client:
    """OAuth 2.0 authorization code flow client with PKCE.

    Orchestrates the full flow from discovery through token exchange and
    keeps every resulting session refreshed in the background.
    """

    def __init__(
        self,
        config: ClientConfig,
        store: TokenStore | None = None,
        id_token_validator: JWTValidator | None = None,
        authorization_handler: AuthorizationHandler | None = None,
    ):
        """Initialize OAuth client.

        Args:
            config: Client settings
            store: Token store shared by this client's sessions
            id_token_validator: Validator for id tokens; built from the
                issuer's jwks_uri on first use when omitted
            authorization_handler: Handler for user authorization step
        """
        self.config = config
        self.store = store or TokenStore()
        self.authorization_handler = (
            authorization_handler or ManualAuthorizationHandler()
        )

        # Initialize service components
        self.discovery = OAuth2Discovery(timeout=config.http_timeout)
        self.flow_manager = OAuth2FlowManager()
        self.token_manager = OAuth2TokenManager(timeout=config.http_timeout)

        self._id_token_validator = id_token_validator
        self._sessions: dict[str, AuthenticatedSession] = {}

    @property
    def sessions(self) -> dict[str, AuthenticatedSession]:
        return dict(self._sessions)

    async def get_metadata(self) -> AuthorizationServerMetadata:
        return await self.discovery.discover(self.config.issuer)

    # ================================
    # Login
    # ================================

    async def begin_login(
        self, scope: str | None = None, **extra_params: str
    ) -> tuple[str, PendingAuthorization]:
        """Build the authorization redirect for a new login.

        Returns:
            Tuple of (authorization_url, pending). Keep ``pending`` server-side
            (it holds the PKCE verifier) until the callback arrives.
        """
        metadata = await self.get_metadata()
        return self.flow_manager.start_authorization_flow(
            metadata,
            client_id=self.config.client_id,
            redirect_uri=self.config.redirect_uri,
            scope=scope or self.config.scope,
            audience=self.config.audience,
            extra_params=extra_params,
        )

    async def complete_login(
        self,
        callback_url: str,
        pending: PendingAuthorization,
        family_id: str | None = None,
    ) -> AuthenticatedSession:
        """Finish a login from the callback URL.

        Raises:
            StateValidationError: If the callback state does not match
            AuthorizationError: If the user or server denied authorization,
                or the id token failed validation
            ExchangeRejectedError: If the code exchange was rejected
        """
        auth_response = self.flow_manager.handle_authorization_callback(
            callback_url, pending.state
        )
        metadata = await self.get_metadata()

        logger.debug("Exchanging authorization code for tokens")
        tokens = await self.token_manager.exchange_code_for_token(
            TokenRequest(
                token_endpoint=metadata.token_endpoint,
                code=auth_response.code,
                redirect_uri=pending.redirect_uri,
                client_id=self.config.client_id,
                code_verifier=pending.pkce.code_verifier,
                client_secret=self.config.client_secret,
            )
        )

        claims = await self._check_id_token(tokens, pending, metadata)

        session = self.store.create(tokens, family_id=family_id)
        scheduler = SilentRefreshScheduler(
            session.session_id,
            self.store,
            self._refresh_tokens,
            margin=self.config.refresh_margin,
            retry_delay=self.config.refresh_retry_delay,
            reuse_policy=self.config.reuse_policy,
            on_failure=self._handle_session_failure,
        )
        scheduler.schedule()

        authenticated = AuthenticatedSession(
            session.session_id, self, scheduler, id_token_claims=claims
        )
        self._sessions[session.session_id] = authenticated

        logger.info(f"Authenticated session {session.session_id}")
        return authenticated

    async def authenticate(
        self,
        scope: str | None = None,
        family_id: str | None = None,
    ) -> AuthenticatedSession:
        """Run the whole flow, delegating the browser step to the handler."""
        auth_url, pending = await self.begin_login(scope)

        logger.debug("Handling user authorization")
        callback_url = await self.authorization_handler.handle_authorization(auth_url)

        return await self.complete_login(callback_url, pending, family_id=family_id)

    async def _check_id_token(
        self,
        tokens: TokenSet,
        pending: PendingAuthorization,
        metadata: AuthorizationServerMetadata,
    ) -> dict[str, Any] | None:
        if not self.config.validate_id_token or tokens.id_token is None:
            return None

        validator = self._id_token_validator
        if validator is None:
            if not metadata.jwks_uri:
                logger.warning(
                    f"Issuer {metadata.issuer} has no jwks_uri; "
                    f"id token not verified"
                )
                return None
            validator = JWTValidator(
                ValidatorConfig.from_discovery(metadata, audience=self.config.client_id)
            )
            self._id_token_validator = validator

        try:
            claims = await validator.validate(tokens.id_token)
        except TokenValidationError as e:
            raise AuthorizationError(f"Invalid id token: {e}") from e

        if pending.nonce is not None and claims.get("nonce") != pending.nonce:
            raise AuthorizationError("Id token nonce does not match the request")

        return claims

    # ================================
    # Refresh & revocation
    # ================================

    async def _refresh_tokens(self, current: TokenSet) -> TokenSet:
        metadata = await self.get_metadata()
        return await self.token_manager.refresh_access_token(
            RefreshTokenRequest(
                token_endpoint=metadata.token_endpoint,
                refresh_token=current.refresh_token,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret,
            )
        )

    def _handle_session_failure(self, session_id: str, error: Exception) -> None:
        self._sessions.pop(session_id, None)
        # Family policy may have removed sibling sessions from the store too
        for sibling_id, sibling in list(self._sessions.items()):
            if sibling_id not in self.store:
                sibling._scheduler.invalidate(error)
                del self._sessions[sibling_id]
        logger.warning(f"Session {session_id} requires re-authentication: {error}")

    async def revoke(self, tokens: TokenSet) -> bool:
        """Revoke a token set at the issuer.

        Revokes the refresh token when present (servers drop the derived
        access tokens with it), otherwise the access token.

        Returns:
            False if the issuer has no revocation endpoint
        """
        metadata = await self.get_metadata()
        if not metadata.revocation_endpoint:
            logger.debug("Issuer has no revocation endpoint; skipping revocation")
            return False

        if tokens.refresh_token:
            token, hint = tokens.refresh_token, "refresh_token"
        else:
            token, hint = tokens.access_token, "access_token"

        await self.token_manager.revoke_token(
            RevocationRequest(
                revocation_endpoint=metadata.revocation_endpoint,
                token=token,
                client_id=self.config.client_id,
                token_type_hint=hint,
            )
        )
        return True

    def forget_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def close(self) -> None:
        """Stop all sessions' refresh timers and close service connections."""
        for session in list(self._sessions.values()):
            await session.close()
        await self.discovery.close()
        await self.token_manager.close()
        if self._id_token_validator is not None:
            await self._id_token_validator.close()
