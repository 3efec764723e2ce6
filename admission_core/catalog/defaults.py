"""
Default Rate Limit Tables
=========================
Built-in endpoint, role and operation policies plus the severity map.
"""

from datetime import timedelta
from typing import Dict

from ..models import RateLimitConfig, RateLimitRule, Severity

MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


def _config(key: str, requests: int, window: timedelta, label: str, block: timedelta) -> RateLimitConfig:
    return RateLimitConfig(
        key=key,
        rules=(RateLimitRule(requests_allowed=requests, window=window, label=label),),
        block_duration=block,
    )


# Endpoint classes and role tiers
ENDPOINT_CONFIGS: Dict[str, RateLimitConfig] = {
    # Authentication endpoints - very restrictive
    "auth_login": _config("auth:login", 5, 15 * MINUTE, "15 m", 30 * MINUTE),
    "auth_register": _config("auth:register", 3, HOUR, "1 h", HOUR),
    "auth_password_reset": _config("auth:password_reset", 3, HOUR, "1 h", HOUR),
    # Authenticated API, selected by role
    "api_user": _config("api:user", 100, HOUR, "1 h", 15 * MINUTE),
    "api_admin": _config("api:admin", 1000, HOUR, "1 h", 5 * MINUTE),
    "api_security_lead": _config("api:security_lead", 2000, HOUR, "1 h", 5 * MINUTE),
    "security_sensitive": _config("security:sensitive", 10, HOUR, "1 h", HOUR),
    "public": _config("public", 20, MINUTE, "1 m", 5 * MINUTE),
}

# Operation-specific limits, usually stricter than the bucket they run under
OPERATION_CONFIGS: Dict[str, RateLimitConfig] = {
    "profile_update": _config("op:profile_update", 5, HOUR, "1 h", 30 * MINUTE),
    "password_change": _config("op:password_change", 3, DAY, "24 h", HOUR),
    "email_change": _config("op:email_change", 2, DAY, "24 h", 2 * HOUR),
    "mfa_operations": _config("op:mfa", 5, HOUR, "1 h", 30 * MINUTE),
}

DEFAULT_CONFIG_NAME = "public"
ROLE_AWARE_CONFIG_NAME = "api_user"

# Keyed by RateLimitConfig.key
SEVERITY_BY_KEY: Dict[str, Severity] = {
    "auth:login": Severity.CRITICAL,
    "auth:register": Severity.HIGH,
    "auth:password_reset": Severity.HIGH,
    "security:sensitive": Severity.CRITICAL,
    "api:user": Severity.MEDIUM,
    "api:admin": Severity.LOW,
    "api:security_lead": Severity.LOW,
    "public": Severity.MEDIUM,
    "op:password_change": Severity.HIGH,
    "op:email_change": Severity.HIGH,
    "op:mfa": Severity.HIGH,
}
