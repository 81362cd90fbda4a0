"""
Bearer token verification package.

Verifies RS256-family JWTs against keys published at
``<master-auth-url>/.well-known/jwks.json``.

Key points:
- Keys are cached in process and in the shared keyed cache under
  ``jwks:key:<kid>`` for 24 hours.
- A kid unknown to both tiers triggers at most one remote refresh per
  rate-limit window; one refresh stores every key it returns.
- Verification failures come back as ``None``, never as exceptions.
"""

from .jwks import JWKSFetcher, base64url_to_int, jwk_to_pem
from .verifier import TokenVerifier, VerifiedClaims

__all__ = [
    "JWKSFetcher",
    "TokenVerifier",
    "VerifiedClaims",
    "base64url_to_int",
    "jwk_to_pem",
]
