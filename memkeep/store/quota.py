"""Two-tier capacity accounting.

Usage is counted live and compared against the org's plan. The count and the
insert that follows it are not serialized across connections, so concurrent
creates right at the hard limit can overshoot it by a few rows.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from ..errors import NotFoundError, QuotaExceededError
from ..plans import PlanLimits, limits_for_plan
from .types import QuotaSnapshot

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

PlanLookup = Callable[[str], PlanLimits]


class PlanLimitCache:
    """Per-org memo of plan limits; call `invalidate` after a plan change."""

    def __init__(self, lookup: PlanLookup) -> None:
        self._lookup = lookup
        self._limits: dict[str, PlanLimits] = {}
        self._lock = threading.Lock()

    def get(self, org_id: str) -> PlanLimits:
        with self._lock:
            cached = self._limits.get(org_id)
        if cached is not None:
            return cached
        limits = self._lookup(org_id)
        with self._lock:
            self._limits[org_id] = limits
        return limits

    def invalidate(self, org_id: str | None = None) -> None:
        with self._lock:
            if org_id is None:
                self._limits.clear()
            else:
                self._limits.pop(org_id, None)


def org_plan_lookup(store: MemoryStore) -> PlanLookup:
    def lookup(org_id: str) -> PlanLimits:
        row = store.conn.execute(
            "SELECT plan_id FROM organizations WHERE id = ?", (org_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f'Organization "{org_id}" not found')
        return limits_for_plan(row["plan_id"])

    return lookup


def project_org(store: MemoryStore, project_id: str) -> str:
    row = store.conn.execute("SELECT org_id FROM projects WHERE id = ?", (project_id,)).fetchone()
    if row is None:
        raise NotFoundError(f'Project "{project_id}" not found')
    return str(row["org_id"])


def usage(store: MemoryStore, project_id: str) -> tuple[int, int]:
    org_id = project_org(store, project_id)
    row = store.conn.execute(
        """
        SELECT
            COALESCE(SUM(CASE WHEN memories.project_id = ? THEN 1 ELSE 0 END), 0) AS project_used,
            COUNT(memories.id) AS org_used
        FROM memories
        JOIN projects ON projects.id = memories.project_id
        WHERE projects.org_id = ? AND memories.archived_at IS NULL
        """,
        (project_id, org_id),
    ).fetchone()
    return int(row["project_used"]), int(row["org_used"])


def snapshot(store: MemoryStore, project_id: str) -> QuotaSnapshot:
    org_id = project_org(store, project_id)
    limits = store.plan_limits.get(org_id)
    project_used, org_used = usage(store, project_id)
    return QuotaSnapshot(
        project_used=project_used,
        project_soft_limit=limits.soft_limit_per_project,
        org_used=org_used,
        org_hard_limit=limits.hard_limit_org,
        warn_ratio=store.config.soft_limit_warn_ratio,
    )


def check_create(store: MemoryStore, project_id: str, count: int = 1) -> QuotaSnapshot:
    """Gate `count` new or reactivated memories against the org hard limit."""
    current = snapshot(store, project_id)
    if math.isfinite(current.org_hard_limit) and (
        current.org_used + count > current.org_hard_limit
    ):
        logger.info(
            "quota gate rejected create in %s: %s/%s",
            project_id,
            current.org_used,
            current.org_hard_limit,
        )
        raise QuotaExceededError(used=current.org_used, limit=current.org_hard_limit)
    return current
