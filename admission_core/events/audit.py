"""
Audit Trail Sink
================
Keeps violation events as a tamper-evident hash chain.

Each entry's hash covers the previous entry's hash, so editing or dropping
an entry breaks verification from that point on.
"""

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .models import ViolationEvent, ViolationType
from .sinks import BaseEventSink

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    """Audit categories for rate limit events."""
    RATE_LIMIT_HIT = "security.rate_limit"
    SECURITY_BLOCK = "security.block"
    SECURITY_BYPASS = "security.bypass"
    SECURITY_ALERT = "security.alert"


_EVENT_TYPES = {
    ViolationType.EXCEEDED: AuditEventType.RATE_LIMIT_HIT,
    ViolationType.BLOCKED: AuditEventType.SECURITY_BLOCK,
    ViolationType.EMERGENCY_BYPASS: AuditEventType.SECURITY_BYPASS,
    ViolationType.STORAGE_UNAVAILABLE: AuditEventType.SECURITY_ALERT,
}


@dataclass
class AuditRecord:
    """An audit trail entry with hash chain support."""
    id: str
    timestamp: datetime
    service: str
    event_type: str
    action: str
    outcome: str  # "blocked", "bypassed", "degraded"
    identifier: str
    payload: Dict[str, Any]
    hash: str
    previous_hash: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


def compute_event_hash(
    previous_hash: Optional[str],
    timestamp: datetime,
    service: str,
    event_type: str,
    payload: Dict[str, Any],
) -> str:
    """
    Compute the SHA-256 hash for an audit entry.

    Args:
        previous_hash: Hash of the previous entry (None for the first)
        timestamp: Entry timestamp
        service: Service name that produced the entry
        event_type: Audit category
        payload: Event record

    Returns:
        Hex digest chaining this entry to the previous one
    """
    hash_input = json.dumps({
        "previous_hash": previous_hash,
        "timestamp": timestamp.isoformat(),
        "service": service,
        "event_type": event_type,
        "payload": payload,
    }, sort_keys=True, separators=(",", ":"), default=str)

    return hashlib.sha256(hash_input.encode()).hexdigest()


def verify_chain_integrity(
    records: List[AuditRecord],
    anchor_hash: Optional[str] = None,
) -> Tuple[bool, Optional[int]]:
    """
    Verify an audit chain.

    Args:
        records: Consecutive records, oldest first
        anchor_hash: Hash the first record links to; None when the records
            start at the beginning of the chain. A later slice (a second
            ``flush()``, or a buffer that overflowed) is verified by passing
            the hash of the last record before it.

    Returns:
        Tuple of (is_valid, first_invalid_index)
    """
    if not records:
        return True, None

    if records[0].previous_hash != anchor_hash:
        logger.warning("audit_chain_anchor_mismatch", record_id=records[0].id)
        return False, 0

    for i, record in enumerate(records):
        expected = compute_event_hash(
            record.previous_hash,
            record.timestamp,
            record.service,
            record.event_type,
            record.payload,
        )
        if record.hash != expected:
            logger.warning("audit_chain_hash_mismatch", record_id=record.id, index=i)
            return False, i
        if i > 0 and record.previous_hash != records[i - 1].hash:
            logger.warning("audit_chain_linkage_broken", record_id=record.id, index=i)
            return False, i

    return True, None


def _outcome(event: ViolationEvent) -> str:
    if event.violation_type == ViolationType.EMERGENCY_BYPASS:
        return "bypassed"
    if event.violation_type == ViolationType.STORAGE_UNAVAILABLE:
        return "degraded"
    return "blocked"


class AuditTrailSink(BaseEventSink):
    """
    In-process hash-chained audit trail.

    Entries are buffered until ``flush()`` hands them to a persistence layer.
    """

    name = "audit"

    def __init__(self, service_name: str, max_buffer: int = 10_000):
        self.service_name = service_name
        self.max_buffer = max_buffer
        self._previous_hash: Optional[str] = None
        # Hash the oldest buffered entry links to
        self._anchor_hash: Optional[str] = None
        self._buffer: List[AuditRecord] = []

    @property
    def last_hash(self) -> Optional[str]:
        return self._previous_hash

    @property
    def anchor_hash(self) -> Optional[str]:
        """Pass to verify_chain_integrity together with the next flush()."""
        return self._anchor_hash

    def set_previous_hash(self, hash_value: str) -> None:
        """Resume a chain, e.g. from the last persisted entry on startup."""
        self._previous_hash = hash_value
        if not self._buffer:
            self._anchor_hash = hash_value

    def record(self, event: ViolationEvent) -> AuditRecord:
        """Append ``event`` to the chain."""
        event_type = _EVENT_TYPES[event.violation_type].value
        payload = event.to_record()
        timestamp = event.timestamp

        entry = AuditRecord(
            id=str(uuid.uuid4()),
            timestamp=timestamp,
            service=self.service_name,
            event_type=event_type,
            action=event.action,
            outcome=_outcome(event),
            identifier=event.identifier,
            payload=payload,
            hash=compute_event_hash(
                self._previous_hash, timestamp, self.service_name, event_type, payload
            ),
            previous_hash=self._previous_hash,
        )

        self._previous_hash = entry.hash
        self._buffer.append(entry)
        if len(self._buffer) > self.max_buffer:
            dropped = len(self._buffer) - self.max_buffer
            self._anchor_hash = self._buffer[dropped - 1].hash
            del self._buffer[:dropped]
            logger.warning("audit_buffer_overflow", dropped=dropped)

        logger.debug("audit_event_recorded", record_id=entry.id, event_type=event_type)
        return entry

    async def emit(self, event: ViolationEvent) -> None:
        self.record(event)

    def flush(self) -> List[AuditRecord]:
        """Get and clear buffered entries."""
        records = self._buffer
        self._buffer = []
        self._anchor_hash = self._previous_hash
        return records
