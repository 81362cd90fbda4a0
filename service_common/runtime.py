"""
Construction and lifecycle of the runtime components.

A service builds exactly one ``ServiceRuntime`` at startup and hands its
components to whatever needs them:

    runtime = ServiceRuntime.from_settings(get_settings())
    async with runtime:
        app.state.runtime = runtime
        ...
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry

from .auth.jwks import JWKSFetcher
from .auth.middleware import AuthMiddleware
from .auth.verifier import TokenVerifier
from .broker.event_broker import EventBroker
from .cache.keyed_cache import KeyedCache
from .cache.memory_store import MemoryStore
from .circuit_breaker import CircuitBreakerRegistry
from .config import Settings
from .logging import configure_logging, get_logger
from .metrics import ResilienceMetrics

JWKS_BREAKER = "jwks"


class ServiceRuntime:
    """Owns the cache, breakers, verifier and broker of one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        cache: KeyedCache,
        breakers: CircuitBreakerRegistry,
        fetcher: JWKSFetcher,
        verifier: TokenVerifier,
        broker: EventBroker,
        metrics: ResilienceMetrics,
    ):
        self.settings = settings
        self.cache = cache
        self.breakers = breakers
        self.fetcher = fetcher
        self.verifier = verifier
        self.broker = broker
        self.metrics = metrics
        self.auth = AuthMiddleware(verifier)
        self.logger = get_logger("service_common.runtime")
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: Optional[CollectorRegistry] = None,
        **overrides: Any,
    ) -> "ServiceRuntime":
        """Wire every component from ``settings``.

        ``overrides`` replaces individual components (``cache``, ``fetcher``,
        ``broker``...), which is how tests and unusual deployments inject
        their own.
        """
        metrics = overrides.pop("metrics", None) or ResilienceMetrics(settings.service_name, registry)

        cache = overrides.pop("cache", None) or KeyedCache(
            settings.redis_url,
            required=settings.cache_required,
            socket_timeout=settings.redis_socket_timeout,
            memory_store=MemoryStore(
                max_entries=settings.memory_cache_max_entries,
                evict_batch=settings.memory_cache_evict_batch,
            ),
            metrics=metrics,
        )

        breakers = overrides.pop("breakers", None) or CircuitBreakerRegistry(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout,
            metrics=metrics,
        )

        fetcher = overrides.pop("fetcher", None) or JWKSFetcher(
            settings.master_auth_url,
            timeout=settings.jwks_http_timeout,
            breaker=breakers.get(JWKS_BREAKER),
        )

        verifier = overrides.pop("verifier", None) or TokenVerifier(
            cache,
            fetcher,
            refresh_interval=settings.jwks_refresh_interval,
            key_ttl=settings.jwks_key_ttl,
            algorithms=settings.jwt_algorithms,
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            metrics=metrics,
        )

        broker = overrides.pop("broker", None) or EventBroker(
            settings.redis_url,
            required=settings.broker_required,
            metrics=metrics,
        )

        if overrides:
            raise TypeError(f"Unknown runtime overrides: {sorted(overrides)}")

        return cls(
            settings,
            cache=cache,
            breakers=breakers,
            fetcher=fetcher,
            verifier=verifier,
            broker=broker,
            metrics=metrics,
        )

    async def start(self) -> None:
        """Initialise backends; fatal initialisation errors propagate."""
        if self._started:
            return

        configure_logging(self.settings.service_name, self.settings.log_level)
        await self.cache.initialize()
        await self.broker.initialize()
        self._started = True
        self.logger.info(
            "Service runtime started",
            service=self.settings.service_name,
            cache_backend=self.cache.backend.value,
        )

    async def stop(self) -> None:
        await self.broker.close()
        await self.fetcher.close()
        await self.cache.close()
        self._started = False
        self.logger.info("Service runtime stopped", service=self.settings.service_name)

    async def health(self) -> Dict[str, Any]:
        """Aggregate health of every component for a readiness endpoint."""
        return {
            "cache": await self.cache.health_check(),
            "broker": await self.broker.health_check(),
            "circuit_breakers": self.breakers.get_all_states(),
            "jwks": {
                "known_keys": len(self.verifier.known_key_ids()),
                "last_fetch_at": self.verifier.last_fetch_at,
            },
        }

    async def __aenter__(self) -> "ServiceRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
