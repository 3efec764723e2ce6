"""
Rule Catalog
============
Static rate limit policies and their lookup.
"""

from .defaults import (
    ENDPOINT_CONFIGS,
    OPERATION_CONFIGS,
    SEVERITY_BY_KEY,
    DEFAULT_CONFIG_NAME,
    ROLE_AWARE_CONFIG_NAME,
)
from .catalog import (
    RuleCatalog,
    ROLE_TIERS,
    load_catalog,
    parse_duration,
    scale_for_batch,
    severity_for,
)

__all__ = [
    # Tables
    "ENDPOINT_CONFIGS",
    "OPERATION_CONFIGS",
    "SEVERITY_BY_KEY",
    "DEFAULT_CONFIG_NAME",
    "ROLE_AWARE_CONFIG_NAME",
    "ROLE_TIERS",
    # Lookup
    "RuleCatalog",
    "load_catalog",
    "parse_duration",
    "scale_for_batch",
    "severity_for",
]
