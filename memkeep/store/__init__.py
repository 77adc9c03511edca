from __future__ import annotations

from ._store import MemoryStore
from .lifecycle import LifecycleParams, Policy
from .quota import PlanLimitCache
from .types import (
    BatchAction,
    BatchResult,
    ConflictStrategy,
    DiffResult,
    HealthReport,
    LockInfo,
    LockResult,
    Memory,
    PolicyResult,
    QuotaSnapshot,
    RollbackResult,
    SafeStoreResult,
    StoreResult,
    TraversalNode,
    TraversalResult,
    Version,
)

__all__ = [
    "BatchAction",
    "BatchResult",
    "ConflictStrategy",
    "DiffResult",
    "HealthReport",
    "LifecycleParams",
    "LockInfo",
    "LockResult",
    "Memory",
    "MemoryStore",
    "PlanLimitCache",
    "Policy",
    "PolicyResult",
    "QuotaSnapshot",
    "RollbackResult",
    "SafeStoreResult",
    "StoreResult",
    "TraversalNode",
    "TraversalResult",
    "Version",
]
