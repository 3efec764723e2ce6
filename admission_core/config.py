"""
Rate Limit Configuration
========================
Process configuration loaded from the environment at startup.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .models import RuleCombination

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./ratelimit.db"
DEFAULT_BYPASS_HEADER = "x-emergency-bypass"

# Paths never rate limited by the middleware (health checks, metrics)
DEFAULT_EXCLUDED_PATHS = {"/health", "/ready", "/metrics"}


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class RateLimitSettings:
    """Configuration for the admission engine and its stores."""
    redis_url: str = DEFAULT_REDIS_URL
    database_url: str = DEFAULT_DATABASE_URL
    whitelist: List[str] = field(default_factory=list)
    emergency_bypass_token: Optional[str] = None
    bypass_header: str = DEFAULT_BYPASS_HEADER
    store_timeout: float = 0.25  # seconds, per store call
    rule_combination: RuleCombination = RuleCombination.ALL
    config_file: Optional[str] = None
    event_sink_url: Optional[str] = None
    event_sink_timeout: float = 5.0
    breaker_fail_threshold: int = 5
    breaker_cooldown: float = 30.0
    service_name: str = "admission-core"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RateLimitSettings":
        """Read settings from environment variables."""
        return cls(
            redis_url=os.getenv("RATE_LIMIT_REDIS_URL") or os.getenv("REDIS_URL", DEFAULT_REDIS_URL),
            database_url=os.getenv("RATE_LIMIT_DATABASE_URL") or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            whitelist=_split_list(os.getenv("RATE_LIMIT_WHITELIST", "")),
            emergency_bypass_token=os.getenv("EMERGENCY_BYPASS_TOKEN") or None,
            bypass_header=os.getenv("RATE_LIMIT_BYPASS_HEADER", DEFAULT_BYPASS_HEADER).lower(),
            store_timeout=float(os.getenv("RATE_LIMIT_STORE_TIMEOUT", "0.25")),
            rule_combination=RuleCombination(os.getenv("RATE_LIMIT_RULE_COMBINATION", "all").lower()),
            config_file=os.getenv("RATE_LIMIT_CONFIG_FILE") or None,
            event_sink_url=os.getenv("RATE_LIMIT_EVENT_SINK_URL") or None,
            event_sink_timeout=float(os.getenv("RATE_LIMIT_EVENT_SINK_TIMEOUT", "5.0")),
            breaker_fail_threshold=int(os.getenv("RATE_LIMIT_BREAKER_FAIL_THRESHOLD", "5")),
            breaker_cooldown=float(os.getenv("RATE_LIMIT_BREAKER_TIMEOUT", "30")),
            service_name=os.getenv("SERVICE_NAME", "admission-core"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
