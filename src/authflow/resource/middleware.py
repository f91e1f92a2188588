"""Starlette middleware that enforces bearer tokens on protected routes."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from authflow.errors import KeySetError, NetworkFailureError, TokenValidationError
from authflow.resource.validator import JWTValidator

logger = logging.getLogger(__name__)


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer`` header value."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def unauthorized_response(realm: str | None = None) -> JSONResponse:
    """Opaque 401: identical for every failure so no validation step leaks."""
    challenge = 'Bearer error="invalid_token"'
    if realm:
        challenge = f'Bearer realm="{realm}", error="invalid_token"'
    return JSONResponse(
        {"error": "invalid_token"},
        status_code=401,
        headers={"WWW-Authenticate": challenge},
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Validates the bearer token of every request outside ``exempt_paths``.

    Validated claims are available as ``request.state.claims``.
    """

    def __init__(
        self,
        app: ASGIApp,
        validator: JWTValidator,
        exempt_paths: set[str] | None = None,
        realm: str | None = None,
    ):
        super().__init__(app)
        self.validator = validator
        self.exempt_paths = exempt_paths or set()
        self.realm = realm

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in self.exempt_paths or request.method == "OPTIONS":
            return await call_next(request)

        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            return unauthorized_response(self.realm)

        try:
            claims = await self.validator.validate(token)
        except TokenValidationError as e:
            # Detail stays in the log, never in the response
            logger.info(f"Rejected bearer token on {request.url.path}: {e}")
            return unauthorized_response(self.realm)
        except (NetworkFailureError, KeySetError) as e:
            logger.error(f"Cannot validate tokens, key set unavailable: {e}")
            return JSONResponse({"error": "temporarily_unavailable"}, status_code=503)

        request.state.claims = claims
        return await call_next(request)
