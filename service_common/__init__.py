"""
Shared resilience and trust runtime for fleet services.

This package aggregates the stateful, failure-aware building blocks every
service embeds:

- cache: Keyed cache with Redis primary and in-process fallback
- circuit_breaker: Fail-fast protection for downstream dependencies
- auth: JWKS key resolution and bearer token verification
- broker: Best-effort Redis publish/subscribe client
- runtime: Explicit construction and lifecycle of the components above

Ambient concerns live alongside them:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Components are constructed once at startup (see ``runtime``) and passed to
consumers by reference. Nothing in this package is reached through a
module-level singleton.
"""

from .auth.verifier import TokenVerifier, VerifiedClaims
from .broker.event_broker import EventBroker
from .cache.keyed_cache import CacheBackend, KeyedCache
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerRegistry,
    CircuitState,
)
from .config import Settings, get_settings
from .errors import AccessLayerException, AuthenticationError
from .runtime import ServiceRuntime

__all__ = [
    "AccessLayerException",
    "AuthenticationError",
    "CacheBackend",
    "CircuitBreaker",
    "CircuitBreakerOpenError",
    "CircuitBreakerRegistry",
    "CircuitState",
    "EventBroker",
    "KeyedCache",
    "ServiceRuntime",
    "Settings",
    "TokenVerifier",
    "VerifiedClaims",
    "get_settings",
]
