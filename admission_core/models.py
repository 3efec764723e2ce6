"""
Rate Limit Models
=================
Data models shared by the catalog, stores, ledger and decision engine.
"""

import math
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

# Reported as limit/remaining for bypassed requests
UNLIMITED = sys.maxsize

UNKNOWN_IP = "unknown"


class Role(str, Enum):
    """Caller roles, in increasing order of API quota."""
    USER = "user"
    ADMIN = "admin"
    SECURITY_LEAD = "security_lead"


class Severity(str, Enum):
    """Severity tag attached to violation events."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RuleCombination(str, Enum):
    """How the outcomes of several rules in one config are combined."""
    ALL = "all"  # every rule must pass
    ANY = "any"  # one passing rule is enough


class Degraded(str, Enum):
    """Reasons a decision did not come from the primary enforcement path."""
    EMERGENCY_BYPASS = "emergency_bypass"
    FALLBACK_STORE = "fallback_store"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class RateLimitRule:
    """A quota of ``requests_allowed`` per trailing ``window``."""
    requests_allowed: int
    window: timedelta
    label: Optional[str] = None  # e.g. "15 m", display only

    def __post_init__(self):
        if self.requests_allowed < 1:
            raise ValueError("requests_allowed must be at least 1")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")

    @property
    def window_ms(self) -> int:
        return int(self.window.total_seconds() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """Named policy: one or more rules plus an optional penalty block."""
    key: str
    rules: Tuple[RateLimitRule, ...]
    block_duration: Optional[timedelta] = None

    def __post_init__(self):
        if not self.rules:
            raise ValueError(f"Rate limit config '{self.key}' has no rules")
        # Accept lists from callers but keep the dataclass hashable
        object.__setattr__(self, "rules", tuple(self.rules))

    @property
    def primary_rule(self) -> RateLimitRule:
        return self.rules[0]


@dataclass
class RateLimitContext:
    """Everything the engine needs to know about one inbound request."""
    ip: str
    endpoint: str
    user_agent: str = "unknown"
    user_id: Optional[str] = None
    role: Optional[Role] = None
    operation_type: Optional[str] = None
    emergency_token: Optional[str] = None

    def __post_init__(self):
        if not self.ip or not self.ip.strip():
            self.ip = UNKNOWN_IP
        else:
            self.ip = self.ip.strip()


@dataclass(frozen=True)
class CounterSnapshot:
    """Post-increment state of one counter window."""
    attempts: int
    reset_at: datetime


@dataclass(frozen=True)
class BlockStatus:
    """Whether an identifier is currently in the penalty box."""
    blocked: bool
    block_until: Optional[datetime] = None


@dataclass
class RateLimitResult:
    """Admission decision with quota metadata."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    blocked: bool = False
    block_until: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None
    degraded: Optional[str] = None
    config_key: Optional[str] = field(default=None, compare=False)

    def headers(self) -> Dict[str, str]:
        """Render the HTTP headers describing this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        if self.blocked:
            headers["X-RateLimit-Blocked"] = "true"
            if self.block_until is not None:
                headers["X-RateLimit-Block-Until"] = self.block_until.isoformat()
        return headers


def seconds_until(moment: datetime, now: datetime, minimum: int = 0) -> int:
    """Whole seconds from ``now`` until ``moment``, rounded up."""
    return max(minimum, math.ceil((moment - now).total_seconds()))
