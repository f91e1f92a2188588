"""Discovery-related models for authorization server metadata.

Covers OAuth 2.0 Authorization Server Metadata (RFC 8414) and the OpenID
Connect Discovery document, which share the fields used here.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class AuthorizationServerMetadata(BaseModel):
    """Authorization server metadata (RFC 8414 / OIDC Discovery 1.0).

    Metadata returned by authorization servers describing their endpoints
    and supported capabilities.
    """

    # Required by RFC 8414
    issuer: str
    response_types_supported: list[str] = Field(default=["code"], min_length=1)

    # Required for authorization code flow (our use case)
    authorization_endpoint: str
    token_endpoint: str

    # PKCE support
    code_challenge_methods_supported: list[str] = Field(default=["S256"])

    # Used by logout and by resource servers
    revocation_endpoint: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None

    # Optional but commonly used
    userinfo_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    grant_types_supported: list[str] = Field(
        default=["authorization_code", "refresh_token"]
    )
    id_token_signing_alg_values_supported: list[str] | None = None

    @field_validator("code_challenge_methods_supported")
    @classmethod
    def validate_pkce_support(cls, v: list[str]) -> list[str]:
        if "S256" not in v:
            raise ValueError("Authorization server must support S256 PKCE method")
        return v
