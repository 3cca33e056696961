"""Application settings using Pydantic BaseSettings."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    environment: str = Field(default="development")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    # Comma-separated Host header values accepted by the app
    allowed_hosts: str = Field(default="localhost,127.0.0.1")

    # Rate limit store backend
    # "auto"   = redis when REDIS_URL is set, otherwise in-process
    # "memory" = in-process only (single worker)
    # "redis"  = distributed, requires REDIS_URL
    limits_backend: str = Field(default="auto")
    # Format: redis://localhost:6379/0
    redis_url: str = Field(default="")
    # Upper bound on any single shared-store round trip
    limits_redis_timeout_seconds: float = Field(default=0.5)
    # Serve a decision from the in-process store when the shared store fails
    limits_fallback_to_local: bool = Field(default=True)
    limits_sweep_interval_seconds: int = Field(default=300)
    # Max keys held by each in-process store before LRU eviction
    limits_local_max_keys: int = Field(default=10_000, ge=1)
    limits_key_prefix: str = Field(default="ratewarden:")
    violation_ttl_seconds: int = Field(default=24 * 60 * 60)

    # Comma-separated client IPs that bypass rate limiting entirely
    rate_limit_whitelist: str = Field(default="")
    # Comma-separated CIDR ranges allowed to set X-Forwarded-For / X-Real-IP.
    # Empty = built-in defaults (loopback, docker bridge, k8s pod network).
    trusted_proxies: str = Field(default="")

    @property
    def allowed_hosts_list(self) -> List[str]:
        """Parse allowed hosts from comma-separated string."""
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    @property
    def rate_limit_whitelist_list(self) -> List[str]:
        """Parse whitelisted IPs from comma-separated string."""
        if not self.rate_limit_whitelist:
            return []
        return [ip.strip() for ip in self.rate_limit_whitelist.split(",") if ip.strip()]

    @property
    def trusted_proxies_list(self) -> List[str]:
        """Parse trusted proxy networks from comma-separated string."""
        if not self.trusted_proxies:
            return []
        return [net.strip() for net in self.trusted_proxies.split(",") if net.strip()]

    @property
    def effective_limits_backend(self) -> str:
        """Resolve "auto" to a concrete backend."""
        if self.limits_backend == "auto":
            return "redis" if self.redis_url else "memory"
        return self.limits_backend

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_staging(self) -> bool:
        """Check if running in staging mode."""
        return self.environment == "staging"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "test"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"development", "staging", "production", "test"}:
            raise ValueError("ENVIRONMENT must be one of: development, staging, production, test")
        return vv

    @field_validator("limits_backend")
    @classmethod
    def validate_limits_backend(cls, v: str) -> str:
        vv = (v or "").strip().lower()
        if vv not in {"auto", "memory", "redis"}:
            raise ValueError("LIMITS_BACKEND must be one of: auto, memory, redis")
        return vv

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> "Settings":
        if self.limits_backend == "redis" and not self.redis_url:
            raise ValueError("REDIS_URL is required when LIMITS_BACKEND=redis")
        if self.limits_redis_timeout_seconds <= 0:
            raise ValueError("LIMITS_REDIS_TIMEOUT_SECONDS must be positive")
        if self.limits_sweep_interval_seconds < 1:
            raise ValueError("LIMITS_SWEEP_INTERVAL_SECONDS must be >= 1")
        if self.violation_ttl_seconds < 1:
            raise ValueError("VIOLATION_TTL_SECONDS must be >= 1")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
