"""Exception hierarchy for OAuth 2.0 client and resource server errors.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies.
"""

from __future__ import annotations


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.0 related errors."""

    pass


class NetworkFailureError(OAuth2Error):
    """Raised when the authorization server or key-set endpoint is unreachable.

    Only idempotent reads (discovery, key-set fetch) are retried on this error.
    """

    pass


class DiscoveryError(OAuth2Error):
    """Raised when authorization server metadata discovery fails."""

    pass


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation or derivation fails."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class AuthorizationCallbackError(OAuth2Error):
    """Raised when authorization server callback data is malformed or invalid.

    This indicates the authorization server sent an invalid callback URL,
    not that our callback handling code failed.
    """

    pass


class StateValidationError(AuthorizationCallbackError):
    """Raised when OAuth state parameter validation fails.

    This indicates either a missing state parameter or a state mismatch,
    which could indicate a CSRF attack or authorization server issue.
    """

    pass


class TokenError(OAuth2Error):
    """Raised when token endpoint operations fail."""

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
    ):
        super().__init__(message)
        self.error = error
        self.error_description = error_description


class ExchangeRejectedError(TokenError):
    """Raised when the server refuses an authorization code exchange.

    Covers a code that was already redeemed, an expired code and a
    code_verifier that does not match the original challenge.
    """

    pass


class TokenRefreshError(TokenError):
    """Raised when token refresh fails."""

    pass


class RefreshReuseDetectedError(TokenRefreshError):
    """Raised when a rotated or revoked refresh token is presented again.

    Treated as possible token theft: the session must re-authenticate.
    """

    pass


class RevocationError(TokenError):
    """Raised when the revocation endpoint rejects a request."""

    pass


class SessionNotFoundError(OAuth2Error):
    """Raised when a session id is not present in the token store."""

    pass


class ReauthenticationRequiredError(OAuth2Error):
    """Raised when a session can no longer be refreshed and needs a new login."""

    pass


class TokenValidationError(OAuth2Error):
    """Base exception for bearer token validation failures.

    Never retryable for the same token; the caller must obtain a fresh one.
    """

    pass


class InvalidTokenError(TokenValidationError):
    """Raised when a token is malformed or lacks required claims."""

    pass


class InvalidSignatureError(TokenValidationError):
    """Raised when a token signature cannot be verified."""

    pass


class UnknownIssuerError(TokenValidationError):
    """Raised when the token issuer is not the configured issuer."""

    pass


class WrongAudienceError(TokenValidationError):
    """Raised when the token audience does not include the configured audience."""

    pass


class TokenExpiredError(TokenValidationError):
    """Raised when the token is past its expiry."""

    pass


class KeySetError(OAuth2Error):
    """Raised when the key-set endpoint returns an unusable document."""

    pass
