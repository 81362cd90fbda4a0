"""
Shared fixtures: RSA signing keys, JWKS documents and signed tokens.
"""

import base64
import time
from typing import Any, Dict, Optional

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class FakeClock:
    """Manually advanced stand-in for ``time.monotonic``."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SigningKey:
    """An RSA key pair that can publish itself as a JWK and sign tokens."""

    def __init__(self, kid: str):
        self.kid = kid
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    @property
    def private_pem(self) -> str:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")

    @property
    def public_pem(self) -> str:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def jwk(self) -> Dict[str, Any]:
        numbers = self.private_key.public_key().public_numbers()
        return {
            "kty": "RSA",
            "kid": self.kid,
            "use": "sig",
            "alg": "RS256",
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }

    def sign(self, claims: Optional[Dict[str, Any]] = None, *, kid: Optional[str] = "", expires_in: int = 3600) -> str:
        now = int(time.time())
        payload = {
            "sub": "user1",
            "tenant_id": "tenant-1",
            "iat": now,
            "exp": now + expires_in,
        }
        payload.update(claims or {})
        headers = {} if kid is None else {"kid": kid or self.kid}
        return jwt.encode(payload, self.private_pem, algorithm="RS256", headers=headers)


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey("K1")


@pytest.fixture(scope="session")
def second_signing_key() -> SigningKey:
    return SigningKey("K2")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
