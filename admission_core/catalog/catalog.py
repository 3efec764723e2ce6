"""
Rule Catalog
============
Immutable lookup from a config name (endpoint class, operation or role tier)
to the RateLimitConfig enforced for it.
"""

import json
import re
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from ..errors import ConfigurationMissing
from ..models import RateLimitConfig, RateLimitRule, Role, Severity
from .defaults import (
    DEFAULT_CONFIG_NAME,
    ENDPOINT_CONFIGS,
    OPERATION_CONFIGS,
    ROLE_AWARE_CONFIG_NAME,
    SEVERITY_BY_KEY,
)

logger = structlog.get_logger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d)\s*$")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

ROLE_TIERS: Mapping[Role, str] = MappingProxyType({
    Role.USER: "api_user",
    Role.ADMIN: "api_admin",
    Role.SECURITY_LEAD: "api_security_lead",
})


def parse_duration(value: Union[str, int, float]) -> timedelta:
    """
    Parse a duration label such as ``"15 m"``, ``"24 h"`` or ``"30s"``.

    Bare numbers are read as seconds.
    """
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def severity_for(config_key: str) -> Severity:
    """Severity tag for violations of the given config key."""
    return SEVERITY_BY_KEY.get(config_key, Severity.MEDIUM)


def scale_for_batch(config: RateLimitConfig, batch_size: int) -> RateLimitConfig:
    """
    Derive a config for bulk requests that each count as ``batch_size`` items.

    Every rule keeps its window; its allowance is divided by the batch size
    and never drops below one request.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    rules = tuple(
        replace(rule, requests_allowed=max(1, rule.requests_allowed // batch_size))
        for rule in config.rules
    )
    return replace(config, rules=rules)


def _config_from_dict(name: str, data: Mapping[str, Any]) -> RateLimitConfig:
    rules = []
    for raw in data.get("rules", []):
        window = raw["window"]
        rules.append(RateLimitRule(
            requests_allowed=int(raw["requests"]),
            window=parse_duration(window),
            label=window if isinstance(window, str) else None,
        ))
    block = data.get("block_duration")
    return RateLimitConfig(
        key=data.get("key", name),
        rules=tuple(rules),
        block_duration=parse_duration(block) if block is not None else None,
    )


class RuleCatalog:
    """
    Process-wide, read-only table of rate limit configs.

    Resolution never fails: unknown names fall back to the public tier.
    """

    def __init__(
        self,
        endpoints: Optional[Mapping[str, RateLimitConfig]] = None,
        operations: Optional[Mapping[str, RateLimitConfig]] = None,
        default_name: str = DEFAULT_CONFIG_NAME,
    ):
        self._endpoints = MappingProxyType(dict(ENDPOINT_CONFIGS if endpoints is None else endpoints))
        self._operations = MappingProxyType(dict(OPERATION_CONFIGS if operations is None else operations))
        if default_name not in self._endpoints:
            raise ValueError(f"Default config '{default_name}' is not defined")
        self._default_name = default_name

    @property
    def default(self) -> RateLimitConfig:
        return self._endpoints[self._default_name]

    def names(self):
        """All config names known to the catalog."""
        return sorted(set(self._endpoints) | set(self._operations))

    def get(self, name: str) -> RateLimitConfig:
        """Strict lookup by name."""
        if name in self._operations:
            return self._operations[name]
        if name in self._endpoints:
            return self._endpoints[name]
        raise ConfigurationMissing(name)

    def resolve(self, config_key: str, role: Optional[Role] = None) -> RateLimitConfig:
        """
        Resolve the config to enforce for a key and caller role.

        Args:
            config_key: Endpoint class or operation name
            role: Caller role; only consulted for the authenticated API tier

        Returns:
            The matching config, or the default public-tier config
        """
        if config_key == ROLE_AWARE_CONFIG_NAME:
            tier = ROLE_TIERS.get(role, ROLE_AWARE_CONFIG_NAME)
            if tier in self._endpoints:
                return self._endpoints[tier]
        try:
            return self.get(config_key)
        except ConfigurationMissing:
            logger.debug("rate_limit_config_missing", config_key=config_key, fallback=self._default_name)
            return self.default

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RuleCatalog":
        """
        Build a catalog from a mapping of overrides merged over the defaults.

        Expected shape::

            {
                "endpoints": {"auth_login": {"key": "auth:login",
                                             "rules": [{"requests": 5, "window": "15 m"}],
                                             "block_duration": "30 m"}},
                "operations": {...},
                "default": "public"
            }
        """
        endpoints: Dict[str, RateLimitConfig] = dict(ENDPOINT_CONFIGS)
        operations: Dict[str, RateLimitConfig] = dict(OPERATION_CONFIGS)
        for name, raw in data.get("endpoints", {}).items():
            endpoints[name] = _config_from_dict(name, raw)
        for name, raw in data.get("operations", {}).items():
            operations[name] = _config_from_dict(name, raw)
        return cls(
            endpoints=endpoints,
            operations=operations,
            default_name=data.get("default", DEFAULT_CONFIG_NAME),
        )


def load_catalog(path: Optional[Union[str, Path]] = None) -> RuleCatalog:
    """Load the catalog, applying JSON overrides from ``path`` when given."""
    if not path:
        return RuleCatalog()
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    catalog = RuleCatalog.from_mapping(data)
    logger.info("rate_limit_catalog_loaded", path=str(path), configs=len(catalog.names()))
    return catalog
