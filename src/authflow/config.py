"""Configuration for OAuth clients and resource servers.

Both configs can be built directly or from ``AUTHFLOW_*`` environment
variables (a ``.env`` file is loaded first when present).
"""

from __future__ import annotations

import os
from enum import Enum
from urllib.parse import urlparse

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "AUTHFLOW_"
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ReusePolicy(str, Enum):
    """Which sessions to log out when a refresh token is rejected or reused."""

    SESSION = "session"
    FAMILY = "family"


def _require_secure_url(v: str | None) -> str | None:
    if v is None:
        return v
    parsed = urlparse(v)
    if parsed.scheme == "https":
        return v
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return v
    raise ValueError(f"URL must use https (or http on a loopback host): {v}")


def _read_env(prefix: str, names: list[str]) -> dict[str, str]:
    load_dotenv(find_dotenv(usecwd=True))
    values = {}
    for name in names:
        raw = os.getenv(f"{prefix}{name.upper()}")
        if raw is not None and raw != "":
            values[name] = raw
    return values


class ClientConfig(BaseModel):
    """Settings for an authorization code flow client."""

    issuer: str
    client_id: str
    redirect_uri: str
    client_secret: str | None = None
    scope: str = "openid profile email offline_access"
    audience: str | None = None

    # Silent refresh
    refresh_margin: float = Field(default=60.0, ge=0)
    refresh_retry_delay: float = Field(default=5.0, gt=0)
    reuse_policy: ReusePolicy = ReusePolicy.FAMILY

    # Verify the id token signature and nonce after the code exchange
    validate_id_token: bool = True

    http_timeout: float = Field(default=30.0, gt=0)

    @field_validator("issuer", "redirect_uri")
    @classmethod
    def validate_secure_urls(cls, v: str) -> str:
        return _require_secure_url(v)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides) -> ClientConfig:
        """Build from environment variables such as ``AUTHFLOW_CLIENT_ID``."""
        values = _read_env(prefix, list(cls.model_fields))
        values.update(overrides)
        return cls.model_validate(values)


class ValidatorConfig(BaseModel):
    """Settings for validating bearer tokens on a resource server."""

    issuer: str
    audience: str
    jwks_uri: str
    algorithms: list[str] = Field(default=["RS256"], min_length=1)
    leeway: float = Field(default=0.0, ge=0)
    required_claims: list[str] = Field(default=["exp", "iss", "aud"])

    # Key-set cache tuning
    http_timeout: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)
    min_refresh_interval: float = Field(default=30.0, ge=0)

    @field_validator("jwks_uri")
    @classmethod
    def validate_jwks_uri(cls, v: str) -> str:
        return _require_secure_url(v)

    @field_validator("algorithms", "required_claims", mode="before")
    @classmethod
    def split_comma_separated(cls, v):
        # Environment variables carry lists as "RS256,ES256"
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("algorithms")
    @classmethod
    def validate_algorithms(cls, v: list[str]) -> list[str]:
        for alg in v:
            if alg.lower() == "none" or alg.upper().startswith("HS"):
                raise ValueError(f"Algorithm not allowed for key-set validation: {alg}")
        return v

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides) -> ValidatorConfig:
        """Build from environment variables such as ``AUTHFLOW_AUDIENCE``."""
        values = _read_env(prefix, list(cls.model_fields))
        values.update(overrides)
        return cls.model_validate(values)

    @classmethod
    def from_discovery(cls, metadata, audience: str, **overrides) -> ValidatorConfig:
        """Build from discovered authorization server metadata."""
        if not metadata.jwks_uri:
            raise ValueError(f"Issuer {metadata.issuer} does not publish a jwks_uri")
        values = {
            "issuer": metadata.issuer,
            "audience": audience,
            "jwks_uri": metadata.jwks_uri,
        }
        if metadata.id_token_signing_alg_values_supported:
            allowed = [
                alg
                for alg in metadata.id_token_signing_alg_values_supported
                if alg.lower() != "none" and not alg.upper().startswith("HS")
            ]
            if allowed:
                values["algorithms"] = allowed
        values.update(overrides)
        return cls.model_validate(values)
