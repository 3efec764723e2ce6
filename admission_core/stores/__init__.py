"""
Rate Limit Stores
=================
Counter and block storage backends: Redis (fast path), SQL (durable
fallback) and in-memory (development and testing).
"""

from .base import BaseCounterStore, BaseBlockStore
from .memory import InMemoryCounterStore, InMemoryBlockStore
from .redis_store import (
    RedisCounterStore,
    RedisBlockStore,
    SLIDING_WINDOW_SCRIPT,
    BLOCK_SCRIPT,
)
from .durable import DurableCounterStore, DurableBlockStore
from .tables import CounterEntry, BlockEntry

__all__ = [
    # Interfaces
    "BaseCounterStore",
    "BaseBlockStore",
    # Backends
    "InMemoryCounterStore",
    "InMemoryBlockStore",
    "RedisCounterStore",
    "RedisBlockStore",
    "DurableCounterStore",
    "DurableBlockStore",
    # Tables
    "CounterEntry",
    "BlockEntry",
    # Scripts
    "SLIDING_WINDOW_SCRIPT",
    "BLOCK_SCRIPT",
]
