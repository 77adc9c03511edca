from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

from .. import db, scoring
from ..config import MemkeepConfig
from ..errors import InvalidArgumentError
from ..notify import LIFECYCLE_COMPLETED, MemoryEvent, dispatch_best_effort
from . import locks as store_locks
from . import quota as store_quota
from . import records as store_records
from . import tags as store_tags
from .types import CleanupSuggestions, HealthReport, Memory, PolicyResult, ScheduledRun
from .utils import Deadline, to_iso

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

BRANCH_PLAN_PREFIX: Final = "agent/context/branch_plan/"


class Policy(StrEnum):
    CLEANUP_EXPIRED = "cleanup_expired"
    CLEANUP_EXPIRED_LOCKS = "cleanup_expired_locks"
    AUTO_PROMOTE = "auto_promote"
    AUTO_DEMOTE = "auto_demote"
    AUTO_PRUNE = "auto_prune"
    AUTO_ARCHIVE_UNHEALTHY = "auto_archive_unhealthy"
    CLEANUP_OLD_VERSIONS = "cleanup_old_versions"
    PURGE_ARCHIVED = "purge_archived"
    ARCHIVE_MERGED_BRANCHES = "archive_merged_branches"


SCHEDULED_POLICIES: Final = (
    Policy.CLEANUP_EXPIRED,
    Policy.CLEANUP_EXPIRED_LOCKS,
    Policy.AUTO_PROMOTE,
    Policy.AUTO_DEMOTE,
)


@dataclass(frozen=True)
class LifecycleParams:
    access_threshold: int = 10
    feedback_threshold: int = 3
    relevance_threshold: float = 5.0
    health_threshold: float = 15.0
    max_versions: int = 50
    archive_purge_days: int = 90
    priority_step: int = 10
    merged_branches: tuple[str, ...] = ()
    decay_rate: float = 0.03
    pin_boost: float = 1.5

    def __post_init__(self) -> None:
        for name in ("access_threshold", "feedback_threshold", "archive_purge_days"):
            _require_int(name, getattr(self, name), minimum=0)
        _require_int("max_versions", self.max_versions, minimum=1)
        _require_int("priority_step", self.priority_step, minimum=0, maximum=100)
        for name in ("relevance_threshold", "health_threshold", "decay_rate", "pin_boost"):
            value = getattr(self, name)
            if (
                isinstance(value, bool)
                or not isinstance(value, int | float)
                or not math.isfinite(value)
                or value < 0
            ):
                raise InvalidArgumentError(f"{name} must be a finite number >= 0")
        if not all(isinstance(branch, str) for branch in self.merged_branches):
            raise InvalidArgumentError("merged_branches must be strings")

    @classmethod
    def from_config(cls, config: MemkeepConfig, **overrides: Any) -> LifecycleParams:
        base = cls(
            access_threshold=config.access_threshold,
            feedback_threshold=config.feedback_threshold,
            relevance_threshold=config.relevance_threshold,
            health_threshold=config.health_threshold,
            max_versions=config.max_versions_per_memory,
            archive_purge_days=config.archive_purge_days,
            priority_step=config.priority_step,
            decay_rate=config.relevance_decay_rate,
            pin_boost=config.relevance_pin_boost,
        )
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if "merged_branches" in overrides:
            overrides["merged_branches"] = tuple(overrides["merged_branches"])
        return dataclasses.replace(base, **overrides)


def _require_int(name: str, value: Any, *, minimum: int, maximum: int | None = None) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgumentError(f"{name} must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise InvalidArgumentError(f"{name} must be {bounds}")


def _active_unpinned(store: MemoryStore, project_id: str) -> list[Memory]:
    rows = store.conn.execute(
        f"""
        SELECT {store_records.MEMORY_COLUMNS} FROM memories
        WHERE project_id = ? AND archived_at IS NULL AND pinned_at IS NULL
        """,
        (project_id,),
    ).fetchall()
    return [store_records.memory_from_row(row) for row in rows]


def _archive_with_tag(store: MemoryStore, memory: Memory, tag: str, now_iso: str) -> None:
    store.conn.execute(
        "UPDATE memories SET archived_at = ?, tags_json = ? WHERE id = ?",
        (now_iso, db.to_json(store_tags.append_unique(memory.tags, tag)), memory.id),
    )


def _cleanup_expired(store: MemoryStore, project_id: str, now_iso: str) -> PolicyResult:
    cur = store.conn.execute(
        """
        DELETE FROM memories
        WHERE project_id = ? AND expires_at IS NOT NULL AND expires_at < ?
        """,
        (project_id, now_iso),
    )
    return PolicyResult(affected=int(cur.rowcount or 0))


def _auto_promote(store: MemoryStore, project_id: str, params: LifecycleParams) -> PolicyResult:
    cur = store.conn.execute(
        """
        UPDATE memories
        SET priority = MIN(priority + ?, 100)
        WHERE project_id = ?
          AND access_count >= ?
          AND priority < 50
          AND archived_at IS NULL
        """,
        (params.priority_step, project_id, params.access_threshold),
    )
    return PolicyResult(affected=int(cur.rowcount or 0))


def _auto_demote(store: MemoryStore, project_id: str, params: LifecycleParams) -> PolicyResult:
    cur = store.conn.execute(
        """
        UPDATE memories
        SET priority = MAX(priority - ?, 0)
        WHERE project_id = ?
          AND unhelpful_count >= ?
          AND unhelpful_count > helpful_count
          AND priority > 0
          AND archived_at IS NULL
        """,
        (params.priority_step, project_id, params.feedback_threshold),
    )
    return PolicyResult(affected=int(cur.rowcount or 0))


def _auto_prune(
    store: MemoryStore, project_id: str, params: LifecycleParams, now: dt.datetime
) -> PolicyResult:
    now_iso = to_iso(now)
    pruned = 0
    for memory in _active_unpinned(store, project_id):
        if scoring.is_low_relevance(
            memory,
            now,
            params.relevance_threshold,
            decay_rate=params.decay_rate,
            pin_boost=params.pin_boost,
        ):
            _archive_with_tag(store, memory, store_tags.AUTO_PRUNED, now_iso)
            pruned += 1
    return PolicyResult(
        affected=pruned,
        details=f"Archived memories with relevance < {params.relevance_threshold}",
    )


def _auto_archive_unhealthy(
    store: MemoryStore, project_id: str, params: LifecycleParams, now: dt.datetime
) -> PolicyResult:
    now_iso = to_iso(now)
    archived = 0
    for memory in _active_unpinned(store, project_id):
        if scoring.health_score(memory, now) < params.health_threshold:
            _archive_with_tag(store, memory, store_tags.AUTO_DECAYED, now_iso)
            archived += 1
    return PolicyResult(
        affected=archived,
        details=f"Archived memories with health < {params.health_threshold}",
    )


def _cleanup_old_versions(
    store: MemoryStore, project_id: str, params: LifecycleParams
) -> PolicyResult:
    cur = store.conn.execute(
        """
        DELETE FROM memory_versions
        WHERE id IN (
            SELECT id FROM (
                SELECT memory_versions.id AS id,
                       ROW_NUMBER() OVER (
                           PARTITION BY memory_versions.memory_id
                           ORDER BY memory_versions.version DESC
                       ) AS rn
                FROM memory_versions
                JOIN memories ON memories.id = memory_versions.memory_id
                WHERE memories.project_id = ?
            )
            WHERE rn > ?
        )
        """,
        (project_id, params.max_versions),
    )
    return PolicyResult(
        affected=int(cur.rowcount or 0),
        details=f"Kept the newest {params.max_versions} versions per memory",
    )


def _purge_archived(
    store: MemoryStore, project_id: str, params: LifecycleParams, now: dt.datetime
) -> PolicyResult:
    cutoff = to_iso(now - dt.timedelta(days=params.archive_purge_days))
    cur = store.conn.execute(
        """
        DELETE FROM memories
        WHERE project_id = ?
          AND archived_at IS NOT NULL
          AND archived_at < ?
          AND pinned_at IS NULL
        """,
        (project_id, cutoff),
    )
    return PolicyResult(
        affected=int(cur.rowcount or 0),
        details=f"Deleted memories archived more than {params.archive_purge_days} days ago",
    )


def branch_plan_suffix(branch: str) -> str:
    return BRANCH_PLAN_PREFIX + quote(branch, safe="!*'()")


def _matches_branch(key: str, suffix: str) -> bool:
    return key.endswith(suffix) or f"{suffix}/" in key


def _archive_merged_branches(
    store: MemoryStore, project_id: str, params: LifecycleParams, now_iso: str
) -> PolicyResult:
    if not params.merged_branches:
        return PolicyResult(affected=0, details="No merged branches provided")
    suffixes = {
        branch: branch_plan_suffix(branch) for branch in params.merged_branches if branch
    }
    archived = 0
    matched: list[str] = []
    for memory in _active_unpinned(store, project_id):
        if BRANCH_PLAN_PREFIX not in memory.key:
            continue
        hits = [
            branch for branch, suffix in suffixes.items() if _matches_branch(memory.key, suffix)
        ]
        if hits:
            store.conn.execute(
                "UPDATE memories SET archived_at = ? WHERE id = ?", (now_iso, memory.id)
            )
            archived += 1
            matched.extend(branch for branch in hits if branch not in matched)
    if not matched:
        return PolicyResult(affected=0, details="No branch plans matched the merged branches")
    return PolicyResult(
        affected=archived,
        details=f"Archived branch plans for: {', '.join(sorted(matched))}",
    )


def _run_policy(
    store: MemoryStore,
    project_id: str,
    policy: Policy,
    params: LifecycleParams,
    now: dt.datetime,
) -> PolicyResult:
    now_iso = to_iso(now)
    match policy:
        case Policy.CLEANUP_EXPIRED:
            return _cleanup_expired(store, project_id, now_iso)
        case Policy.CLEANUP_EXPIRED_LOCKS:
            return PolicyResult(affected=store_locks.cleanup_expired_locks(store, project_id))
        case Policy.AUTO_PROMOTE:
            return _auto_promote(store, project_id, params)
        case Policy.AUTO_DEMOTE:
            return _auto_demote(store, project_id, params)
        case Policy.AUTO_PRUNE:
            return _auto_prune(store, project_id, params, now)
        case Policy.AUTO_ARCHIVE_UNHEALTHY:
            return _auto_archive_unhealthy(store, project_id, params, now)
        case Policy.CLEANUP_OLD_VERSIONS:
            return _cleanup_old_versions(store, project_id, params)
        case Policy.PURGE_ARCHIVED:
            return _purge_archived(store, project_id, params, now)
        case Policy.ARCHIVE_MERGED_BRANCHES:
            return _archive_merged_branches(store, project_id, params, now_iso)


def run_lifecycle(
    store: MemoryStore,
    project_id: str,
    policies: Iterable[str],
    params: LifecycleParams | None = None,
    *,
    timeout_s: float | None = None,
    actor: str | None = None,
) -> dict[str, PolicyResult]:
    params = params or LifecycleParams.from_config(store.config)
    deadline = Deadline(timeout_s)
    store_quota.project_org(store, project_id)
    now = store.now()
    results: dict[str, PolicyResult] = {}
    for name in policies:
        if deadline.expired:
            results[name] = PolicyResult(
                affected=0, details="Skipped: deadline exceeded", skipped=True
            )
            continue
        try:
            policy = Policy(name)
        except ValueError:
            results[name] = PolicyResult(affected=0, details=f"Unknown policy: {name}")
            continue
        try:
            with store.transaction():
                results[name] = _run_policy(store, project_id, policy, params, now)
        except Exception as exc:  # noqa: BLE001
            logger.exception("lifecycle policy %s failed for %s", name, project_id)
            results[name] = PolicyResult(affected=0, error=str(exc) or type(exc).__name__)
    dispatch_best_effort(
        store.notifier,
        MemoryEvent(
            event=LIFECYCLE_COMPLETED,
            project_id=project_id,
            actor=actor,
            payload={name: result.to_dict() for name, result in results.items()},
        ),
    )
    return results


def run_scheduled_lifecycle(
    store: MemoryStore,
    project_id: str,
    params: LifecycleParams | None = None,
) -> ScheduledRun:
    ran_at = store.now_iso()
    results = run_lifecycle(store, project_id, [str(p) for p in SCHEDULED_POLICIES], params)
    return ScheduledRun(ran_at=ran_at, results=results)


def suggest_cleanup(
    store: MemoryStore,
    project_id: str,
    stale_days: int = 30,
    limit: int = 20,
) -> CleanupSuggestions:
    if stale_days < 0:
        raise InvalidArgumentError("stale_days must be >= 0")
    store_quota.project_org(store, project_id)
    now = store.now()
    cutoff = to_iso(now - dt.timedelta(days=stale_days))
    stale_rows = store.conn.execute(
        f"""
        SELECT {store_records.MEMORY_COLUMNS} FROM memories
        WHERE project_id = ? AND archived_at IS NULL AND updated_at < ?
        ORDER BY access_count ASC, COALESCE(last_accessed_at, '') ASC, key ASC
        LIMIT ?
        """,
        (project_id, cutoff, max(0, int(limit))),
    ).fetchall()
    expired_rows = store.conn.execute(
        f"""
        SELECT {store_records.MEMORY_COLUMNS} FROM memories
        WHERE project_id = ? AND archived_at IS NULL
          AND expires_at IS NOT NULL AND expires_at < ?
        ORDER BY expires_at ASC
        """,
        (project_id, to_iso(now)),
    ).fetchall()
    return CleanupSuggestions(
        stale=[store_records.memory_from_row(row) for row in stale_rows],
        expired=[store_records.memory_from_row(row) for row in expired_rows],
    )


def _active_memories(store: MemoryStore, project_id: str) -> Sequence[Memory]:
    store_quota.project_org(store, project_id)
    rows = store.conn.execute(
        f"""
        SELECT {store_records.MEMORY_COLUMNS} FROM memories
        WHERE project_id = ? AND archived_at IS NULL
        """,
        (project_id,),
    ).fetchall()
    return [store_records.memory_from_row(row) for row in rows]


def health_report(store: MemoryStore, project_id: str, limit: int = 50) -> list[HealthReport]:
    now = store.now()
    reports: list[HealthReport] = []
    for memory in _active_memories(store, project_id):
        factors = scoring.health_factors(memory, now)
        reports.append(
            HealthReport(
                key=memory.key,
                health_score=factors.total,
                factors=factors.to_dict(),
                priority=memory.priority,
                access_count=memory.access_count,
                last_accessed_at=memory.last_accessed_at,
                is_pinned=memory.is_pinned,
            )
        )
    reports.sort(key=lambda report: (report.health_score, report.key))
    return reports[: max(0, int(limit))]


def relevance_distribution(store: MemoryStore, project_id: str) -> dict[str, int]:
    now = store.now()
    params = LifecycleParams.from_config(store.config)
    scores = [
        scoring.relevance_score(
            memory, now, decay_rate=params.decay_rate, pin_boost=params.pin_boost
        )
        for memory in _active_memories(store, project_id)
    ]
    return dict(scoring.relevance_distribution(scores))
