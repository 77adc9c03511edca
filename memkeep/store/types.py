from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from ..linediff import DiffLine, summarize_diff


class Scope(StrEnum):
    PROJECT = "project"
    SHARED = "shared"


class ChangeType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    RESTORED = "restored"


class ConflictStrategy(StrEnum):
    REJECT = "reject"
    LAST_WRITE_WINS = "last_write_wins"
    APPEND = "append"
    RETURN_BOTH = "return_both"


@dataclass
class Memory:
    id: str
    project_id: str
    key: str
    content: str
    metadata: dict[str, Any]
    tags: list[str]
    related_keys: list[str]
    scope: str
    priority: int
    access_count: int
    last_accessed_at: str | None
    helpful_count: int
    unhelpful_count: int
    pinned_at: str | None
    archived_at: str | None
    expires_at: str | None
    created_by: str | None
    created_at: str
    updated_at: str

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_pinned(self) -> bool:
        return self.pinned_at is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Version:
    memory_id: str
    version: int
    content: str
    metadata: dict[str, Any]
    changed_by: str | None
    change_type: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LockInfo:
    project_id: str
    key: str
    locked_by: str | None
    expires_at: str


@dataclass
class LockResult:
    acquired: bool
    lock: LockInfo


@dataclass
class QuotaSnapshot:
    project_used: int
    project_soft_limit: float
    org_used: int
    org_hard_limit: float
    warn_ratio: float = 0.8

    @property
    def is_soft_full(self) -> bool:
        return math.isfinite(self.project_soft_limit) and (
            self.project_used >= self.project_soft_limit
        )

    @property
    def is_approaching(self) -> bool:
        return math.isfinite(self.project_soft_limit) and (
            self.project_used >= self.warn_ratio * self.project_soft_limit
        )

    @property
    def is_hard_full(self) -> bool:
        return math.isfinite(self.org_hard_limit) and self.org_used >= self.org_hard_limit

    @property
    def usage_ratio(self) -> float | None:
        if not math.isfinite(self.org_hard_limit) or self.org_hard_limit <= 0:
            return None
        return min(1.0, self.org_used / self.org_hard_limit)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_used": self.project_used,
            "project_soft_limit": self.project_soft_limit,
            "org_used": self.org_used,
            "org_hard_limit": self.org_hard_limit,
            "is_soft_full": self.is_soft_full,
            "is_approaching": self.is_approaching,
            "is_hard_full": self.is_hard_full,
            "usage_ratio": self.usage_ratio,
        }


@dataclass
class StoreResult:
    memory: Memory
    created: bool
    version: int
    quota: QuotaSnapshot | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class RollbackResult:
    key: str
    steps: int
    restored_version: int
    new_version: int
    previous_content: str
    restored_content: str


@dataclass
class DiffResult:
    key: str
    from_label: str
    to_label: str
    lines: list[DiffLine]

    @property
    def summary(self) -> dict[str, int]:
        return summarize_diff(self.lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "from": self.from_label,
            "to": self.to_label,
            "diff": list(self.lines),
            "summary": self.summary,
        }


@dataclass
class SafeStoreResult:
    key: str
    strategy: ConflictStrategy
    conflict: bool
    stored: bool
    message: str
    memory: Memory | None = None
    proposed_content: str | None = None
    current_content: str | None = None
    current_updated_at: str | None = None
    if_unmodified_since: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["strategy"] = str(self.strategy)
        return payload


@dataclass
class PolicyResult:
    affected: int
    details: str | None = None
    error: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"affected": self.affected}
        if self.details:
            payload["details"] = self.details
        if self.error:
            payload["error"] = self.error
        if self.skipped:
            payload["skipped"] = True
        return payload


@dataclass
class HealthReport:
    key: str
    health_score: float
    factors: dict[str, float]
    priority: int
    access_count: int
    last_accessed_at: str | None
    is_pinned: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScheduledRun:
    ran_at: str
    results: dict[str, PolicyResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ran_at": self.ran_at,
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }


@dataclass
class CleanupSuggestions:
    stale: list[Memory]
    expired: list[Memory]


class BatchAction(StrEnum):
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"
    DELETE = "delete"
    PIN = "pin"
    UNPIN = "unpin"
    SET_PRIORITY = "set_priority"
    ADD_TAGS = "add_tags"
    SET_SCOPE = "set_scope"


@dataclass
class BatchResult:
    action: BatchAction
    requested: int
    matched: int
    affected: int
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["action"] = str(self.action)
        return payload


@dataclass
class TraversalNode:
    key: str
    content: str
    depth: int


@dataclass
class TraversalResult:
    root: str
    nodes: list[TraversalNode]
    edges: list[tuple[str, str]]
    max_depth_reached: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "nodes": [asdict(node) for node in self.nodes],
            "edges": [{"from": source, "to": target} for source, target in self.edges],
            "max_depth_reached": self.max_depth_reached,
        }
