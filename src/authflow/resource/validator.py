"""Bearer token validation for protected resources.

Verifies a JWT's signature against the issuer's published keys, then its
issuer, audience and expiry claims. Every failure is final for that token.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
from jwt import PyJWK

from authflow.config import ValidatorConfig
from authflow.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
    UnknownIssuerError,
    WrongAudienceError,
)
from authflow.resource.jwks import JWKSCache

logger = logging.getLogger(__name__)

# JWK key type each algorithm family verifies with
KEY_TYPES = {"RS": "RSA", "PS": "RSA", "ES": "EC", "Ed": "OKP"}


def key_fits_algorithm(signing_key: PyJWK, algorithm: str) -> bool:
    """Check that a JWK can verify signatures made with ``algorithm``."""
    if signing_key.key_type != KEY_TYPES.get(algorithm[:2]):
        return False
    if signing_key.key_type == "EC":
        # The curve fixes the algorithm
        return signing_key.algorithm_name == algorithm
    return True


class JWTValidator:
    """Validates signed JWT bearer tokens.

    Only the configured asymmetric algorithms are accepted, so tokens signed
    with ``none`` or with an HMAC keyed by the public key never verify.
    """

    def __init__(self, config: ValidatorConfig, key_cache: JWKSCache | None = None):
        self.config = config
        self.key_cache = key_cache or JWKSCache.from_config(config)

    async def validate(self, token: str) -> dict[str, Any]:
        """Validate a bearer token and return its claims.

        Raises:
            InvalidTokenError: If the token is malformed or lacks required claims
            InvalidSignatureError: If the signature does not verify
            UnknownIssuerError: If ``iss`` is not the configured issuer
            WrongAudienceError: If ``aud`` does not contain the configured audience
            TokenExpiredError: If ``exp`` is in the past (beyond leeway)
            NetworkFailureError: If the signing keys could not be fetched
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Malformed token: {e}") from e

        algorithm = header.get("alg")
        if algorithm not in self.config.algorithms:
            raise InvalidSignatureError(f"Algorithm {algorithm!r} is not accepted")

        signing_key = await self.key_cache.get_signing_key(header.get("kid"))
        if not key_fits_algorithm(signing_key, algorithm):
            raise InvalidSignatureError(
                f"Key {signing_key.key_id!r} cannot verify {algorithm} signatures"
            )

        try:
            claims = jwt.decode(
                token,
                key=signing_key.key,
                algorithms=[algorithm],
                audience=self.config.audience,
                issuer=self.config.issuer,
                leeway=self.config.leeway,
                options={"require": self.config.required_claims},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except jwt.InvalidAudienceError as e:
            raise WrongAudienceError(f"Token audience rejected: {e}") from e
        except jwt.InvalidIssuerError as e:
            raise UnknownIssuerError(f"Token issuer rejected: {e}") from e
        except jwt.MissingRequiredClaimError as e:
            raise InvalidTokenError(str(e)) from e
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as e:
            raise InvalidSignatureError(f"Signature verification failed: {e}") from e
        except jwt.DecodeError as e:
            raise InvalidSignatureError(f"Token could not be decoded: {e}") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Token rejected: {e}") from e

        logger.debug(f"Validated token for subject {claims.get('sub')!r}")
        return claims

    async def close(self) -> None:
        await self.key_cache.close()
