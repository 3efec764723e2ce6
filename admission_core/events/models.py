"""
Violation Event Models
======================
Structured records handed to the external event sink.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from ..models import Severity


class ViolationType(str, Enum):
    """Why an event was emitted."""
    BLOCKED = "blocked"
    EXCEEDED = "exceeded"
    EMERGENCY_BYPASS = "emergency_bypass"
    STORAGE_UNAVAILABLE = "storage_unavailable"


_ACTIONS = {
    ViolationType.BLOCKED: "rate_limit_exceeded",
    ViolationType.EXCEEDED: "rate_limit_exceeded",
    ViolationType.EMERGENCY_BYPASS: "rate_limit_bypass",
    ViolationType.STORAGE_UNAVAILABLE: "rate_limit_degraded",
}


@dataclass
class ViolationEvent:
    """A rate limit violation, block, bypass or degradation."""
    violation_type: ViolationType
    identifier: str
    ip: str
    endpoint: str
    config_key: str
    severity: Severity
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = False
    block_until: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def action(self) -> str:
        return _ACTIONS[self.violation_type]

    def to_record(self) -> Dict[str, Any]:
        """Convert to the sink record format."""
        details = {
            "endpoint": self.endpoint,
            "config": self.config_key,
            "violation_type": self.violation_type.value,
            "severity": self.severity.value,
            "user_agent": self.user_agent,
        }
        if self.block_until is not None:
            details["block_until"] = self.block_until.isoformat()
        details.update(self.details)

        return {
            "identifier": self.identifier,
            "user_id": self.user_id,
            "ip": self.ip,
            "action": self.action,
            "details": details,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
        }
