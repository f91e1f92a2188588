"""Tests for state, nonce and redirect URI handling."""

import pytest

from authflow.client.services.security import (
    generate_nonce,
    generate_state,
    validate_redirect_uri,
    validate_state,
)
from authflow.errors import StateValidationError


class TestStateAndNonce:
    def test_state_is_url_safe_and_unique(self):
        states = {generate_state() for _ in range(50)}

        assert len(states) == 50
        assert all(len(s) == 32 for s in states)
        assert all(c.isalnum() or c in "-_" for s in states for c in s)

    def test_nonce_is_unique(self):
        assert generate_nonce() != generate_nonce()

    def test_matching_state_passes(self):
        validate_state("abc", "abc")

    @pytest.mark.parametrize("actual", ["abd", "", "abc "])
    def test_mismatched_state_rejected(self, actual):
        with pytest.raises(StateValidationError):
            validate_state("abc", actual)


class TestRedirectUri:
    @pytest.mark.parametrize(
        "uri",
        [
            "https://app.example.com/callback",
            "http://localhost:8400/callback",
            "http://127.0.0.1/callback",
            "http://[::1]:8400/callback",
        ],
    )
    def test_accepted(self, uri):
        assert validate_redirect_uri(uri)

    @pytest.mark.parametrize(
        "uri",
        [
            "http://app.example.com/callback",
            "https://app.example.com/callback#frag",
            "javascript:alert(1)",
            "app.example.com/callback",
        ],
    )
    def test_rejected(self, uri):
        assert not validate_redirect_uri(uri)
