"""
Violation Events
================
Structured events for blocks, exceeded limits, emergency bypasses and
storage degradation, plus the sinks that receive them.
"""

from .models import ViolationEvent, ViolationType
from .sinks import BaseEventSink, CompositeEventSink, HttpEventSink, LoggingEventSink
from .audit import (
    AuditEventType,
    AuditRecord,
    AuditTrailSink,
    compute_event_hash,
    verify_chain_integrity,
)
from .dispatcher import EventDispatcher

__all__ = [
    # Models
    "ViolationEvent",
    "ViolationType",
    # Sinks
    "BaseEventSink",
    "LoggingEventSink",
    "HttpEventSink",
    "CompositeEventSink",
    # Audit trail
    "AuditEventType",
    "AuditRecord",
    "AuditTrailSink",
    "compute_event_hash",
    "verify_chain_integrity",
    # Dispatch
    "EventDispatcher",
]
