"""In-memory authorization server for exercising the client end to end.

The fake enforces what real servers enforce: single-use authorization codes,
PKCE verification, refresh token rotation with reuse detection, and a
published key set for the tokens it signs.
"""

import asyncio
import json
import secrets
import time
from urllib.parse import parse_qsl, urlencode, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from authflow.client.oauth_client import OAuth2Client
from authflow.client.primitives.pkce import verify_code_challenge
from authflow.config import ClientConfig, ValidatorConfig
from authflow.resource.jwks import JWKSCache
from authflow.resource.validator import JWTValidator

ISSUER = "https://auth.example.com"
CLIENT_ID = "spa-client"
REDIRECT_URI = "https://app.example.com/callback"
API_AUDIENCE = "https://api.example.com"


def _error(error: str, description: str, status_code: int = 400) -> httpx.Response:
    return httpx.Response(
        status_code, json={"error": error, "error_description": description}
    )


class FakeAuthorizationServer:
    def __init__(self, private_key):
        self.private_key = private_key
        self.kid = "key-1"
        self.issuer = ISSUER
        self.client_id = CLIENT_ID
        self.redirect_uri = REDIRECT_URI
        self.audience = API_AUDIENCE

        self.access_token_lifetime = 3600
        self.rotate_refresh_tokens = True
        self.network_down = False
        self.refresh_gate: asyncio.Event | None = None

        self.codes: dict[str, dict] = {}
        self.refresh_tokens: dict[str, dict] = {}
        self.revoked: list[tuple[str, str | None]] = []
        self.requests: list[tuple[str, str]] = []

    # ================================
    # Front channel
    # ================================

    def authorize(self, authorization_url: str, subject: str = "user-1") -> str:
        """Simulate the user logging in; returns the callback URL."""
        query = dict(parse_qsl(urlparse(authorization_url).query))
        code = secrets.token_urlsafe(16)
        self.codes[code] = {
            "client_id": query["client_id"],
            "redirect_uri": query["redirect_uri"],
            "code_challenge": query["code_challenge"],
            "nonce": query.get("nonce"),
            "subject": subject,
            "used": False,
        }
        params = {"code": code, "state": query["state"]}
        return f"{query['redirect_uri']}?{urlencode(params)}"

    # ================================
    # Signing
    # ================================

    def sign(self, claims: dict, kid: str | None = None, key=None) -> str:
        return jwt.encode(
            claims,
            key or self.private_key,
            algorithm="RS256",
            headers={"kid": kid or self.kid},
        )

    def access_token_claims(self, subject: str = "user-1", **overrides) -> dict:
        now = int(time.time())
        claims = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "iat": now,
            "exp": now + self.access_token_lifetime,
            "scope": "read:messages",
        }
        claims.update(overrides)
        return claims

    def jwks(self) -> dict:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.private_key.public_key()))
        jwk.update({"kid": self.kid, "alg": "RS256", "use": "sig"})
        return {"keys": [jwk]}

    def metadata(self) -> dict:
        return {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/oauth/token",
            "revocation_endpoint": f"{self.issuer}/oauth/revoke",
            "jwks_uri": f"{self.issuer}/.well-known/jwks.json",
            "response_types_supported": ["code"],
            "code_challenge_methods_supported": ["S256"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "id_token_signing_alg_values_supported": ["RS256"],
        }

    # ================================
    # Back channel
    # ================================

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.requests if p == path)

    def grant_count(self, grant_type: str) -> int:
        return sum(1 for g, _ in self.requests if g == grant_type)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if self.network_down:
            raise httpx.ConnectError("connection refused", request=request)

        if path == "/.well-known/openid-configuration":
            self.requests.append(("GET", path))
            return httpx.Response(200, json=self.metadata())
        if path == "/.well-known/jwks.json":
            self.requests.append(("GET", path))
            return httpx.Response(200, json=self.jwks())

        form = dict(parse_qsl(request.content.decode()))
        if path == "/oauth/token":
            grant_type = form.get("grant_type", "")
            self.requests.append((grant_type, path))
            if grant_type == "authorization_code":
                return self._code_grant(form)
            if grant_type == "refresh_token":
                if self.refresh_gate is not None:
                    await self.refresh_gate.wait()
                return self._refresh_grant(form)
            return _error("unsupported_grant_type", grant_type)
        if path == "/oauth/revoke":
            self.requests.append(("revoke", path))
            self.revoked.append((form["token"], form.get("token_type_hint")))
            self.refresh_tokens.pop(form["token"], None)
            return httpx.Response(200)

        return httpx.Response(404)

    def _code_grant(self, form: dict) -> httpx.Response:
        grant = self.codes.get(form.get("code", ""))
        if grant is None:
            return _error("invalid_grant", "Unknown authorization code")
        if grant["used"]:
            return _error("invalid_grant", "Authorization code already redeemed")
        grant["used"] = True

        if form.get("client_id") != grant["client_id"]:
            return _error("invalid_grant", "Client mismatch")
        if form.get("redirect_uri") != grant["redirect_uri"]:
            return _error("invalid_grant", "Redirect URI mismatch")
        if not verify_code_challenge(
            form.get("code_verifier", ""), grant["code_challenge"]
        ):
            return _error("invalid_grant", "PKCE verification failed")

        family = secrets.token_hex(4)
        return httpx.Response(
            200, json=self._issue(grant["subject"], family, grant["nonce"])
        )

    def _refresh_grant(self, form: dict) -> httpx.Response:
        token = form.get("refresh_token", "")
        record = self.refresh_tokens.get(token)
        if record is None:
            return _error("invalid_grant", "Unknown refresh token")
        if record["used"]:
            # Reuse of a rotated token revokes the whole family
            for other in list(self.refresh_tokens):
                if self.refresh_tokens[other]["family"] == record["family"]:
                    del self.refresh_tokens[other]
            return _error("invalid_grant", "Refresh token reuse detected")

        if self.rotate_refresh_tokens:
            record["used"] = True
        body = self._issue(record["subject"], record["family"], None)
        if not self.rotate_refresh_tokens:
            del body["refresh_token"]
        return httpx.Response(200, json=body)

    def _issue(self, subject: str, family: str, nonce: str | None) -> dict:
        refresh_token = secrets.token_urlsafe(24)
        self.refresh_tokens[refresh_token] = {
            "subject": subject,
            "family": family,
            "used": False,
        }
        now = int(time.time())
        id_claims = {
            "iss": self.issuer,
            "aud": self.client_id,
            "sub": subject,
            "iat": now,
            "exp": now + 3600,
        }
        if nonce is not None:
            id_claims["nonce"] = nonce
        return {
            "access_token": self.sign(self.access_token_claims(subject)),
            "token_type": "Bearer",
            "expires_in": self.access_token_lifetime,
            "refresh_token": refresh_token,
            "id_token": self.sign(id_claims),
            "scope": "openid profile offline_access",
        }

    # ================================
    # Wiring
    # ================================

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def key_cache(self, **kwargs) -> JWKSCache:
        cache = JWKSCache(f"{self.issuer}/.well-known/jwks.json", **kwargs)
        cache._http_client = self.http_client()
        return cache

    def validator(self, audience: str | None = None, **kwargs) -> JWTValidator:
        config = ValidatorConfig(
            issuer=self.issuer,
            audience=audience or self.audience,
            jwks_uri=f"{self.issuer}/.well-known/jwks.json",
            **kwargs,
        )
        key_cache = JWKSCache.from_config(config)
        key_cache._http_client = self.http_client()
        return JWTValidator(config, key_cache=key_cache)


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def auth_server(rsa_private_key):
    return FakeAuthorizationServer(rsa_private_key)


@pytest.fixture
def client_config():
    return ClientConfig(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        scope="openid profile offline_access",
    )


@pytest.fixture
async def oauth_client(auth_server, client_config):
    client = OAuth2Client(
        client_config,
        id_token_validator=auth_server.validator(audience=CLIENT_ID),
    )
    client.discovery._http_client = auth_server.http_client()
    client.token_manager._http_client = auth_server.http_client()
    yield client
    await client.close()
