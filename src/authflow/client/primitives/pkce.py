"""PKCE (Proof Key for Code Exchange) primitives.

Implements RFC 7636 parameter generation and the S256 challenge derivation
that binds an authorization code to the client that requested it.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from authflow.client.models.security import PKCEParameters
from authflow.errors import PKCEError

# RFC 7636 Section 4.1 unreserved characters
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def derive_code_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge for a code verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
    with the trailing padding removed. Deterministic for a given verifier.

    Raises:
        PKCEError: If the verifier is not a valid RFC 7636 verifier
    """
    if not (MIN_VERIFIER_LENGTH <= len(code_verifier) <= MAX_VERIFIER_LENGTH):
        raise PKCEError(
            f"code_verifier must be {MIN_VERIFIER_LENGTH}-{MAX_VERIFIER_LENGTH} "
            f"characters, got {len(code_verifier)}"
        )
    if any(ch not in VERIFIER_ALPHABET for ch in code_verifier):
        raise PKCEError("code_verifier contains characters outside [A-Za-z0-9-._~]")

    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Check a verifier against a previously sent challenge in constant time."""
    try:
        expected = derive_code_challenge(code_verifier)
    except PKCEError:
        return False
    return secrets.compare_digest(expected, code_challenge)


class PKCEManager:
    """Generates PKCE parameters for authorization code flows.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates code verifiers from a cryptographically secure source
    """

    def __init__(self, verifier_length: int = MAX_VERIFIER_LENGTH):
        if not (MIN_VERIFIER_LENGTH <= verifier_length <= MAX_VERIFIER_LENGTH):
            raise ValueError(
                f"verifier_length must be {MIN_VERIFIER_LENGTH}-{MAX_VERIFIER_LENGTH}"
            )
        self.verifier_length = verifier_length

    def generate_parameters(self) -> PKCEParameters:
        """Generate new PKCE parameters for an authorization flow.

        Returns:
            PKCEParameters: Immutable parameters for the authorization flow

        Raises:
            PKCEError: If the entropy source is unavailable
        """
        try:
            code_verifier = self._generate_code_verifier()
        except (OSError, NotImplementedError) as e:
            raise PKCEError(f"Failed to generate PKCE parameters: {e}") from e

        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=derive_code_challenge(code_verifier),
            code_challenge_method="S256",
        )

    def _generate_code_verifier(self) -> str:
        """Generate a cryptographically secure code verifier.

        RFC 7636 Section 4.1: code verifier must be 43-128 characters long
        and use only unreserved characters:
            [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"
        """
        return "".join(
            secrets.choice(VERIFIER_ALPHABET) for _ in range(self.verifier_length)
        )
