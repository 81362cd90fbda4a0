"""
Bearer token verification against a rotating JWKS.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from ..cache.keyed_cache import KeyedCache
from ..logging import get_logger
from ..metrics import ResilienceMetrics
from .jwks import JWKSFetcher

KEY_CACHE_PREFIX = "jwks:key:"
DEFAULT_REFRESH_INTERVAL = 60.0
DEFAULT_KEY_TTL = 24 * 60 * 60


@dataclass(frozen=True)
class VerifiedClaims:
    """Signature-checked token payload handed to request handling."""

    tenant_id: str
    subject: Optional[str] = None
    device_id: Optional[str] = None
    expires_at: Optional[int] = None
    claims: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["VerifiedClaims"]:
        tenant_id = payload.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            return None

        subject = payload.get("sub")
        device_id = payload.get("device_id")
        expires_at = payload.get("exp")
        return cls(
            tenant_id=tenant_id,
            subject=subject if isinstance(subject, str) else None,
            device_id=device_id if isinstance(device_id, str) and device_id else None,
            expires_at=expires_at if isinstance(expires_at, int) else None,
            claims=dict(payload),
        )


class TokenVerifier:
    """Resolves signing keys by kid and verifies bearer tokens.

    Keys live in two tiers: a process-local dict and the shared keyed cache.
    The local dict is only written between awaits, so the event loop keeps
    those writes atomic; the refresh timestamp and the fetch itself are
    serialised by ``_refresh_lock``.
    """

    def __init__(
        self,
        cache: KeyedCache,
        fetcher: JWKSFetcher,
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        key_ttl: int = DEFAULT_KEY_TTL,
        algorithms: Iterable[str] = ("RS256",),
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        metrics: Optional[ResilienceMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.refresh_interval = refresh_interval
        self.key_ttl = key_ttl
        self.algorithms: List[str] = list(algorithms)
        self.audience = audience
        self.issuer = issuer
        self.metrics = metrics
        self.logger = get_logger("service_common.auth.verifier")
        self._clock = clock

        self._public_keys: Dict[str, str] = {}
        self._last_fetch_at: Optional[float] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def last_fetch_at(self) -> Optional[float]:
        return self._last_fetch_at

    def known_key_ids(self) -> List[str]:
        return sorted(self._public_keys)

    def clear(self) -> None:
        """Forget process-local keys and reopen the refresh window."""
        self._public_keys.clear()
        self._last_fetch_at = None

    async def verify(self, token: str) -> Optional[VerifiedClaims]:
        """Verify ``token`` and return its claims, or None to reject it."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            self.logger.warning("Malformed token header", error=str(e))
            return self._reject("malformed")

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            self.logger.warning("Token missing kid in header")
            return self._reject("missing_kid")

        public_key = await self._resolve_key(kid)
        if public_key is None:
            self.logger.warning("Public key not found for kid", kid=kid)
            return self._reject("unknown_kid")

        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except ExpiredSignatureError:
            self.logger.info("Token expired", kid=kid)
            return self._reject("expired")
        except JWTError as e:
            self.logger.warning("Invalid token", kid=kid, error=str(e))
            return self._reject("invalid")
        except Exception as e:
            self.logger.error("Token verification error", kid=kid, error=str(e), exc_info=True)
            return self._reject("error")

        claims = VerifiedClaims.from_payload(payload)
        if claims is None:
            self.logger.warning("Token missing tenant_id claim", kid=kid, sub=payload.get("sub"))
            return self._reject("missing_tenant")

        if self.metrics:
            self.metrics.increment_counter("token_verifications_total", outcome="verified")
        return claims

    async def _resolve_key(self, kid: str) -> Optional[str]:
        public_key = await self._lookup_key(kid)
        if public_key is not None:
            return public_key

        await self.refresh_keys()
        return await self._lookup_key(kid)

    async def _lookup_key(self, kid: str) -> Optional[str]:
        public_key = self._public_keys.get(kid)
        if public_key is not None:
            return public_key

        cached = await self.cache.get(f"{KEY_CACHE_PREFIX}{kid}")
        if cached is not None:
            self._public_keys.setdefault(kid, cached)
            return cached
        return None

    async def refresh_keys(self) -> bool:
        """Fetch the key set unless one was attempted within the refresh window.

        The window is stamped when an attempt starts, so a failing endpoint
        is not hammered either. Returns True when new keys were stored.
        """
        async with self._refresh_lock:
            now = self._clock()
            if self._last_fetch_at is not None and now - self._last_fetch_at < self.refresh_interval:
                self.logger.debug("JWKS refresh skipped, rate limited", since_last=now - self._last_fetch_at)
                if self.metrics:
                    self.metrics.increment_counter("jwks_refresh_total", status="rate_limited")
                return False

            self._last_fetch_at = now
            started = time.perf_counter()
            try:
                keys = await self.fetcher.fetch()
            except Exception as e:
                self.logger.error("Error fetching JWKS", url=self.fetcher.jwks_url, error=str(e))
                if self.metrics:
                    self.metrics.increment_counter("jwks_refresh_total", status="error")
                return False
            finally:
                if self.metrics:
                    self.metrics.observe_histogram("jwks_refresh_duration_seconds", time.perf_counter() - started)

            self._public_keys.update(keys)
            for kid, pem in keys.items():
                await self.cache.set(f"{KEY_CACHE_PREFIX}{kid}", pem, ttl=self.key_ttl)

            self.logger.info("JWKS fetched and cached", keys_count=len(keys))
            if self.metrics:
                self.metrics.increment_counter("jwks_refresh_total", status="success")
            return True

    def _reject(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_verifications_total", outcome=outcome)
        return None
