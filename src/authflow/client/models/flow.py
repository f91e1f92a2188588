"""Authorization flow models.

Contains models for authorization requests and callback handling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the code flow with PKCE."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    scope: str | None = None
    nonce: str | None = None
    audience: str | None = None
    extra_params: dict[str, str] = field(default_factory=dict)

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL.

        Query parameters already present on the endpoint are kept; ours are
        appended after them.
        """
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "state": self.state,
        }

        if self.scope:
            params["scope"] = self.scope
        if self.nonce:
            params["nonce"] = self.nonce
        if self.audience:
            params["audience"] = self.audience
        for key, value in self.extra_params.items():
            params.setdefault(key, value)

        parsed = urlparse(self.authorization_endpoint)
        query = parse_qsl(parsed.query, keep_blank_values=True)
        query.extend(params.items())
        return urlunparse(parsed._replace(query=urlencode(query)))


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None
