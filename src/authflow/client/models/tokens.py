"""Token set and token endpoint models.

Contains the immutable token set owned by a session, the token endpoint
request parameters and the wire model for token responses.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace

from pydantic import BaseModel


@dataclass(frozen=True)
class TokenSet:
    """Tokens issued for one session.

    Immutable: a refresh produces a new TokenSet that replaces this one.
    """

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    id_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: float | None = None  # Unix timestamp
    scope: str | None = None

    def expires_in(self, now: float | None = None) -> float | None:
        """Seconds until the access token expires, or None if it never does."""
        if self.expires_at is None:
            return None
        now = time.time() if now is None else now
        return self.expires_at - now

    def is_expired(self, leeway: float = 0.0, now: float | None = None) -> bool:
        """Check if the access token is expired or will be within ``leeway``."""
        remaining = self.expires_in(now)
        if remaining is None:
            return False  # No expiry means token doesn't expire
        return remaining <= leeway

    def can_refresh(self) -> bool:
        """Check if token can be refreshed."""
        return bool(self.refresh_token)

    def rotate(self, new: TokenSet) -> TokenSet:
        """Return the successor of this set after a refresh.

        Servers that rotate refresh tokens send a new one; servers that do not
        leave it out, in which case the current refresh token stays in use.
        """
        if new.refresh_token or not self.refresh_token:
            return new
        return replace(new, refresh_token=self.refresh_token)


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3).

    Includes the PKCE code_verifier (RFC 7636).
    """

    # Required fields first
    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    code_verifier: str = field(repr=False)

    # Optional fields with defaults last
    grant_type: str = "authorization_code"
    client_secret: str | None = field(default=None, repr=False)

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON (RFC 6749 Section 4.1.3).

        Returns:
            Dictionary suitable for httpx data parameter
        """
        data = {
            "grant_type": self.grant_type,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": self.code_verifier,
        }

        if self.client_secret:
            data["client_secret"] = self.client_secret

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token request parameters (RFC 6749 Section 6)."""

    # Required fields first
    token_endpoint: str
    refresh_token: str = field(repr=False)
    client_id: str

    # Optional fields with defaults last
    grant_type: str = "refresh_token"
    scope: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.scope:
            data["scope"] = self.scope
        if self.client_secret:
            data["client_secret"] = self.client_secret

        return data


@dataclass(frozen=True)
class RevocationRequest:
    """Token revocation request parameters (RFC 7009)."""

    revocation_endpoint: str
    token: str = field(repr=False)
    client_id: str
    token_type_hint: str | None = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        data = {"token": self.token, "client_id": self.client_id}
        if self.token_type_hint:
            data["token_type_hint"] = self.token_type_hint
        return data


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error
    responses (Section 5.2).
    """

    # Success response fields (RFC 6749 Section 5.1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    refresh_token: str | None = None
    id_token: str | None = None  # OpenID Connect Core Section 3.1.3.3
    scope: str | None = None

    # Error response fields (RFC 6749 Section 5.2)
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        """Check if token response indicates success."""
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        """Check if token response indicates an error."""
        return self.error is not None

    def calculate_expires_at(self, now: float | None = None) -> float | None:
        """Calculate absolute expiry timestamp from expires_in.

        Returns:
            Unix timestamp when token expires, or None if no expiry
        """
        if self.expires_in is None:
            return None
        now = time.time() if now is None else now
        return now + self.expires_in

    def to_token_set(self) -> TokenSet:
        """Convert successful token response to a TokenSet.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        return TokenSet(
            access_token=self.access_token,
            token_type=self.token_type,
            id_token=self.id_token,
            refresh_token=self.refresh_token,
            expires_at=self.calculate_expires_at(),
            scope=self.scope,
        )
