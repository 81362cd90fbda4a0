"""
Shared configuration management for the service-common runtime.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration read from ``SERVICE_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SERVICE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    service_name: str = Field(default="service")
    log_level: str = Field(default="info")

    # Remote cache / broker
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_socket_timeout: float = Field(default=5.0)
    cache_required: bool = Field(default=False)
    broker_required: bool = Field(default=True)

    # In-process fallback store
    memory_cache_max_entries: int = Field(default=10_000)
    memory_cache_evict_batch: int = Field(default=1_000)

    # Token verification
    master_auth_url: str = Field(default="http://localhost:8080")
    jwks_refresh_interval: float = Field(default=60.0)
    jwks_key_ttl: int = Field(default=86_400)
    jwks_http_timeout: float = Field(default=5.0)
    jwt_algorithms: List[str] = Field(default_factory=lambda: ["RS256"])
    jwt_audience: Optional[str] = Field(default=None)
    jwt_issuer: Optional[str] = Field(default=None)

    # Circuit breakers
    breaker_failure_threshold: int = Field(default=5)
    breaker_reset_timeout: float = Field(default=30.0)

    @property
    def redis_url(self) -> str:
        """Connection URL assembled from host, port and database."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once for process startup code.

    Components never call this themselves; they receive values from the
    runtime that constructed them.
    """
    return Settings()
