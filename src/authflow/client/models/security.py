"""Security-related models for the authorization code flow.

Contains PKCE parameters and the pending authorization record a client keeps
between redirecting the user and receiving the callback.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters (RFC 7636).

    Immutable parameters generated for each authorization flow. The challenge
    travels in the authorization redirect; the verifier is sent only in the
    code exchange.
    """

    code_verifier: str = field(repr=False)
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


@dataclass(frozen=True)
class PendingAuthorization:
    """Everything needed to finish a flow once the callback arrives."""

    pkce: PKCEParameters
    state: str
    redirect_uri: str
    nonce: str | None = None
    scope: str | None = None
