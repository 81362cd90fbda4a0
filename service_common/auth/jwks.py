"""
JWKS retrieval and RSA key decoding.
"""

import base64
from typing import Any, Dict, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers

from ..circuit_breaker import CircuitBreaker
from ..errors import JWKSFetchError
from ..logging import get_logger

JWKS_PATH = "/.well-known/jwks.json"


def base64url_to_int(value: str) -> int:
    """Decode an unpadded base64url string into a big-endian unsigned integer."""
    data = value.replace("-", "+").replace("_", "/")
    remainder = len(data) % 4
    if remainder == 1:
        raise ValueError("Illegal base64url string")
    if remainder:
        data += "=" * (4 - remainder)
    return int.from_bytes(base64.b64decode(data), "big")


def jwk_to_pem(n: str, e: str) -> str:
    """Rebuild an RSA public key from JWK modulus/exponent and return it as PEM."""
    public_key = RSAPublicNumbers(base64url_to_int(e), base64url_to_int(n)).public_key()
    pem = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode("ascii")


class JWKSFetcher:
    """Fetches the published key set and converts it into ``kid -> PEM``."""

    def __init__(
        self,
        base_url: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.jwks_url = base_url.rstrip("/") + JWKS_PATH
        self.breaker = breaker
        self.logger = get_logger("service_common.auth.jwks")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self) -> Dict[str, str]:
        """Download the key set and return every usable RSA key by kid."""
        if self.breaker is not None:
            document = await self.breaker.execute(self._download)
        else:
            document = await self._download()

        keys = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(keys, list):
            raise JWKSFetchError("JWKS response missing 'keys' array", details={"url": self.jwks_url})

        resolved: Dict[str, str] = {}
        for key_data in keys:
            kid = key_data.get("kid") if isinstance(key_data, dict) else None
            if not isinstance(kid, str) or not kid:
                self.logger.warning("Skipping JWKS entry without kid")
                continue
            pem = self._key_to_pem(kid, key_data)
            if pem is not None:
                resolved[kid] = pem

        return resolved

    async def _download(self) -> Any:
        self.logger.info("Fetching JWKS", url=self.jwks_url)
        response = await self._client.get(self.jwks_url)
        if response.status_code != 200:
            raise JWKSFetchError(
                f"JWKS endpoint returned {response.status_code}",
                details={"url": self.jwks_url, "status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise JWKSFetchError("JWKS response is not valid JSON", details={"url": self.jwks_url}) from exc

    def _key_to_pem(self, kid: str, key_data: Dict[str, Any]) -> Optional[str]:
        if key_data.get("kty", "RSA") != "RSA":
            self.logger.warning("Skipping non-RSA JWKS entry", kid=kid, kty=key_data.get("kty"))
            return None

        n, e = key_data.get("n"), key_data.get("e")
        if not isinstance(n, str) or not isinstance(e, str):
            self.logger.warning("Skipping JWKS entry without modulus/exponent", kid=kid)
            return None

        try:
            return jwk_to_pem(n, e)
        except ValueError as exc:
            self.logger.warning("Skipping undecodable JWKS entry", kid=kid, error=str(exc))
            return None
