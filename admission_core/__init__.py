"""
Admission Core
==============
Rate limiting and abuse protection for HTTP services.
"""

__version__ = "0.1.0"

# Models
from admission_core.models import (
    RateLimitRule,
    RateLimitConfig,
    RateLimitContext,
    RateLimitResult,
    Role,
    Severity,
    RuleCombination,
    Degraded,
)

# Errors
from admission_core.errors import (
    RateLimitError,
    ConfigurationMissing,
    StoreUnavailable,
    FastStoreUnavailable,
    DurableStoreUnavailable,
    StoreSkipped,
    RateLimitExceeded,
)

# Catalog
from admission_core.catalog import RuleCatalog, load_catalog, scale_for_batch

# Engine
from admission_core.engine import DecisionEngine
from admission_core.ledger import BlockLedger
from admission_core.breaker import StoreBreaker, BreakerState
from admission_core.identifiers import build_identifier, get_client_ip

# Configuration
from admission_core.config import RateLimitSettings
from admission_core.factory import create_engine_from_settings

# HTTP
from admission_core.middleware import (
    RateLimitMiddleware,
    RateLimitGuard,
    build_rate_limit_response,
    rate_limit_exceeded_handler,
    endpoint_name,
)
from admission_core.health import create_health_router

__all__ = [
    # Models
    "RateLimitRule",
    "RateLimitConfig",
    "RateLimitContext",
    "RateLimitResult",
    "Role",
    "Severity",
    "RuleCombination",
    "Degraded",
    # Errors
    "RateLimitError",
    "ConfigurationMissing",
    "StoreUnavailable",
    "FastStoreUnavailable",
    "DurableStoreUnavailable",
    "StoreSkipped",
    "RateLimitExceeded",
    # Catalog
    "RuleCatalog",
    "load_catalog",
    "scale_for_batch",
    # Engine
    "DecisionEngine",
    "BlockLedger",
    "StoreBreaker",
    "BreakerState",
    "build_identifier",
    "get_client_ip",
    # Configuration
    "RateLimitSettings",
    "create_engine_from_settings",
    # HTTP
    "RateLimitMiddleware",
    "RateLimitGuard",
    "build_rate_limit_response",
    "rate_limit_exceeded_handler",
    "endpoint_name",
    "create_health_router",
]
