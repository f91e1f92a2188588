"""Random request parameters and the checks applied to them.

``state`` binds the callback to the browser that started the flow, ``nonce``
binds the id token to the same request.
"""

from __future__ import annotations

import secrets
from urllib.parse import urlparse

from authflow.errors import StateValidationError

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def generate_state() -> str:
    """Return 32 URL-safe characters (192 bits) for the ``state`` parameter."""
    return secrets.token_urlsafe(24)


def generate_nonce() -> str:
    return secrets.token_urlsafe(32)


def validate_state(expected: str, actual: str) -> None:
    """Compare the returned ``state`` with the one we sent, in constant time.

    Raises:
        StateValidationError: On any mismatch
    """
    if not secrets.compare_digest(expected.encode(), actual.encode()):
        raise StateValidationError("State parameter mismatch - possible CSRF attack")


def is_loopback_url(uri: str) -> bool:
    return urlparse(uri).hostname in LOOPBACK_HOSTS


def validate_redirect_uri(uri: str) -> bool:
    """Accept https redirect URIs, or plain http only on a loopback host.

    URIs carrying a fragment are never acceptable (RFC 6749 section 3.1.2).
    """
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    if parsed.fragment:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and is_loopback_url(uri)
