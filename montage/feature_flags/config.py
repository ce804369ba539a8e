"""
Engine configuration from environment variables.

ENVIRONMENT VARIABLES:
    ENVIRONMENT: Deployment environment used for fallback overrides (default: development)
    FEATURE_FAILURE_THRESHOLD: Consecutive failures before the breaker opens (default: 5)
    FEATURE_RESET_TIMEOUT_SECONDS: Seconds an open breaker waits before a trial call (default: 30)
    FEATURE_CACHE_TTL_SECONDS: Lifetime of cached decisions (default: 60)
    FEATURE_CALL_TIMEOUT_SECONDS: Upper bound for a single remote call (default: 5)
    FEATURE_API_BASE_URL: Base URL of the HTTP decision authority (default: http://localhost:8080/api)
    FEATURE_DEFAULTS_FILE: Optional JSON file replacing the built-in fallback tables
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from .exceptions import ConfigurationError

DEFAULT_ENVIRONMENT = "development"
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_SECONDS = 30.0
DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_CALL_TIMEOUT_SECONDS = 5.0
DEFAULT_API_BASE_URL = "http://localhost:8080/api"


def _number(env: Mapping[str, str], name: str, default: float, cast: type) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class ResilienceConfig:
    """Tunables for the breaker, the cache and remote calls."""

    environment: str = DEFAULT_ENVIRONMENT
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    reset_timeout: float = DEFAULT_RESET_TIMEOUT_SECONDS
    cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS
    call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS
    api_base_url: str = DEFAULT_API_BASE_URL
    defaults_file: str | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.reset_timeout < 0:
            raise ConfigurationError("reset_timeout must not be negative")
        if self.cache_ttl < 0:
            raise ConfigurationError("cache_ttl must not be negative")
        if self.call_timeout <= 0:
            raise ConfigurationError("call_timeout must be positive")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ResilienceConfig:
        """
        Read configuration from the process environment.

        Args:
            env: Mapping to read instead of os.environ (handy in tests)

        Raises:
            ConfigurationError: on unparsable or out-of-range values
        """
        env = os.environ if env is None else env
        return cls(
            environment=env.get("ENVIRONMENT") or DEFAULT_ENVIRONMENT,
            failure_threshold=_number(env, "FEATURE_FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD, int),
            reset_timeout=_number(env, "FEATURE_RESET_TIMEOUT_SECONDS", DEFAULT_RESET_TIMEOUT_SECONDS, float),
            cache_ttl=_number(env, "FEATURE_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS, float),
            call_timeout=_number(env, "FEATURE_CALL_TIMEOUT_SECONDS", DEFAULT_CALL_TIMEOUT_SECONDS, float),
            api_base_url=env.get("FEATURE_API_BASE_URL") or DEFAULT_API_BASE_URL,
            defaults_file=env.get("FEATURE_DEFAULTS_FILE") or None,
        )
