"""
Authentication boundary for FastAPI services.
"""

from typing import Optional

from fastapi import HTTPException, Request

from ..circuit_breaker import CircuitBreakerOpenError
from ..errors import AccessLayerException, AuthenticationError, ValidationError
from ..logging import bind_principal, bind_request_context, get_logger
from .verifier import TokenVerifier, VerifiedClaims

DEVICE_HEADER = "X-Device-ID"
REQUEST_ID_HEADER = "X-Request-ID"


def status_for_exception(exc: BaseException) -> int:
    """Map a runtime error to an HTTP status by its type."""
    if isinstance(exc, CircuitBreakerOpenError):
        return 503
    if isinstance(exc, AuthenticationError):
        return 401
    if isinstance(exc, ValidationError):
        return 400
    return 500


class AuthMiddleware:
    """Verifies the bearer token of a request and enforces device binding.

    Use ``authenticate_request`` as a FastAPI dependency; the verified claims
    are also stored on ``request.state.claims``. Each request starts a fresh
    logging context carrying its ``X-Request-ID`` (or a generated one).
    """

    def __init__(self, verifier: TokenVerifier):
        self.verifier = verifier
        self.logger = get_logger("service_common.auth.middleware")

    async def __call__(self, request: Request) -> VerifiedClaims:
        return await self.authenticate_request(request)

    async def authenticate_request(self, request: Request) -> VerifiedClaims:
        bind_request_context(request.headers.get(REQUEST_ID_HEADER))
        try:
            claims = await self.authenticate(
                request.headers.get("Authorization"),
                request.headers.get(DEVICE_HEADER),
            )
        except AccessLayerException as e:
            raise HTTPException(status_code=status_for_exception(e), detail=e.message) from e

        request.state.claims = claims
        return claims

    async def authenticate(self, authorization: Optional[str], device_id: Optional[str] = None) -> VerifiedClaims:
        """Framework-independent core of ``authenticate_request``."""
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing or invalid Authorization header")

        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Authorization header contained empty bearer token")

        claims = await self.verifier.verify(token)
        if claims is None:
            raise AuthenticationError("Invalid or expired token")

        if claims.device_id is not None:
            if not device_id:
                raise ValidationError(f"Missing {DEVICE_HEADER} header")
            if device_id != claims.device_id:
                self.logger.warning("Device ID mismatch", sub=claims.subject, tenant_id=claims.tenant_id)
                raise AuthenticationError("Device ID mismatch")

        bind_principal(claims.tenant_id, claims.subject)
        self.logger.debug("Request authenticated", sub=claims.subject, tenant_id=claims.tenant_id)
        return claims
