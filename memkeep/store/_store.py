from __future__ import annotations

import datetime as dt
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

from .. import db
from ..config import MemkeepConfig, load_config
from ..errors import ConflictError, InvalidArgumentError, NotFoundError
from ..notify import Notifier, SimilarityCheck
from ..plans import is_plan_id
from . import batch as store_batch
from . import conflicts as store_conflicts
from . import graph as store_graph
from . import lifecycle as store_lifecycle
from . import locks as store_locks
from . import quota as store_quota
from . import records as store_records
from . import versions as store_versions
from .lifecycle import LifecycleParams
from .quota import PlanLimitCache, PlanLookup
from .types import (
    BatchAction,
    BatchResult,
    CleanupSuggestions,
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
    ScheduledRun,
    StoreResult,
    TraversalResult,
    Version,
)
from .utils import Clock, to_iso, utc_now


class MemoryStore:
    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
        config: MemkeepConfig | None = None,
        plan_lookup: PlanLookup | None = None,
        notifier: Notifier | None = None,
        similarity_check: SimilarityCheck | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or load_config()
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(
            self.db_path,
            check_same_thread=check_same_thread,
            timeout=self.config.db_timeout_s,
        )
        # Transactions are opened explicitly with BEGIN IMMEDIATE.
        self.conn.isolation_level = None
        db.initialize_schema(self.conn)
        self.notifier = notifier
        self.similarity_check = similarity_check
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.plan_limits = PlanLimitCache(plan_lookup or store_quota.org_plan_lookup(self))

    def now(self) -> dt.datetime:
        return self._clock()

    def now_iso(self) -> str:
        return to_iso(self._clock())

    @contextmanager
    def transaction(self, *, wait: bool = True) -> Iterator[None]:
        """Re-entrant write transaction; nested blocks join the outermost one.

        With ``wait=False`` the outermost ``BEGIN IMMEDIATE`` fails at once with
        ``sqlite3.OperationalError`` when another connection holds the write
        lock, instead of waiting for the busy timeout.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return
            if wait:
                self.conn.execute("BEGIN IMMEDIATE")
            else:
                self._begin_immediate_nowait()
            self._tx_depth = 1
            try:
                yield
            except BaseException:
                self._tx_depth = 0
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            try:
                self.conn.execute("COMMIT")
            except BaseException:
                # A failed COMMIT leaves the transaction open on this connection.
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise

    def _begin_immediate_nowait(self) -> None:
        row = self.conn.execute("PRAGMA busy_timeout").fetchone()
        previous_ms = int(row[0]) if row is not None else 0
        self.conn.execute("PRAGMA busy_timeout = 0")
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        finally:
            self.conn.execute(f"PRAGMA busy_timeout = {previous_ms}")

    def close(self) -> None:
        self.conn.close()

    # Organizations and projects

    def create_org(self, org_id: str, plan_id: str | None = None) -> None:
        plan = plan_id or self.config.default_plan
        if not is_plan_id(plan):
            raise InvalidArgumentError(f'Unknown plan "{plan}"')
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO organizations(id, plan_id, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (org_id, plan, self.now_iso()),
            )

    def set_org_plan(self, org_id: str, plan_id: str) -> None:
        if not is_plan_id(plan_id):
            raise InvalidArgumentError(f'Unknown plan "{plan_id}"')
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE organizations SET plan_id = ? WHERE id = ?", (plan_id, org_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f'Organization "{org_id}" not found')
        self.plan_limits.invalidate(org_id)

    def get_org(self, org_id: str) -> dict[str, Any]:
        row = self.conn.execute(
            "SELECT id, plan_id, created_at FROM organizations WHERE id = ?", (org_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f'Organization "{org_id}" not found')
        return dict(row)

    def create_project(self, project_id: str, org_id: str) -> None:
        with self.transaction():
            if self.conn.execute(
                "SELECT 1 FROM organizations WHERE id = ?", (org_id,)
            ).fetchone() is None:
                raise NotFoundError(f'Organization "{org_id}" not found')
            self.conn.execute(
                """
                INSERT INTO projects(id, org_id, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (project_id, org_id, self.now_iso()),
            )
            owner = store_quota.project_org(self, project_id)
            if owner != org_id:
                raise ConflictError(
                    f'Project "{project_id}" already belongs to organization "{owner}"'
                )

    def list_projects(self, org_id: str | None = None) -> list[dict[str, Any]]:
        if org_id is None:
            rows = self.conn.execute(
                "SELECT id, org_id, created_at FROM projects ORDER BY id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT id, org_id, created_at FROM projects WHERE org_id = ? ORDER BY id",
                (org_id,),
            ).fetchall()
        return db.rows_to_dicts(rows)

    # Records

    def store(
        self,
        project_id: str,
        key: str,
        content: str,
        *,
        metadata: dict[str, Any] | None = None,
        priority: int | None = None,
        tags: Iterable[str] | None = None,
        expires_at: str | dt.datetime | None = None,
        scope: str | None = None,
        created_by: str | None = None,
    ) -> StoreResult:
        return store_records.store_memory(
            self,
            project_id,
            key,
            content,
            metadata=metadata,
            priority=priority,
            tags=tags,
            expires_at=expires_at,
            scope=scope,
            created_by=created_by,
        )

    def get(self, project_id: str, key: str, *, include_archived: bool = False) -> Memory:
        return store_records.get_memory(self, project_id, key, include_archived=include_archived)

    def update(
        self,
        project_id: str,
        key: str,
        *,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        priority: int | None = None,
        tags: Iterable[str] | None = None,
        expires_at: str | dt.datetime | None = None,
        changed_by: str | None = None,
        if_match: str | None = None,
    ) -> StoreResult:
        return store_records.update_memory(
            self,
            project_id,
            key,
            content=content,
            metadata=metadata,
            priority=priority,
            tags=tags,
            expires_at=expires_at,
            changed_by=changed_by,
            if_match=if_match,
        )

    def delete(
        self,
        project_id: str,
        key: str,
        *,
        if_match: str | None = None,
        deleted_by: str | None = None,
    ) -> None:
        store_records.delete_memory(
            self, project_id, key, if_match=if_match, deleted_by=deleted_by
        )

    def list_memories(
        self,
        project_id: str,
        *,
        include_archived: bool = False,
        tag: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Memory]:
        return store_records.list_memories(
            self,
            project_id,
            include_archived=include_archived,
            tag=tag,
            limit=limit,
            offset=offset,
        )

    def pin(self, project_id: str, key: str) -> Memory:
        return store_records.set_pinned(self, project_id, key, True)

    def unpin(self, project_id: str, key: str) -> Memory:
        return store_records.set_pinned(self, project_id, key, False)

    def archive(self, project_id: str, key: str) -> Memory:
        return store_records.set_archived(self, project_id, key, True)

    def unarchive(self, project_id: str, key: str) -> Memory:
        return store_records.set_archived(self, project_id, key, False)

    def feedback(self, project_id: str, key: str, *, helpful: bool) -> Memory:
        return store_records.record_feedback(self, project_id, key, helpful=helpful)

    def link(self, project_id: str, key: str, other_key: str) -> tuple[Memory, Memory]:
        return store_records.link_memories(self, project_id, key, other_key, linked=True)

    def unlink(self, project_id: str, key: str, other_key: str) -> tuple[Memory, Memory]:
        return store_records.link_memories(self, project_id, key, other_key, linked=False)

    def get_many(
        self, project_id: str, keys: Iterable[str], *, include_archived: bool = False
    ) -> dict[str, Memory]:
        return store_batch.get_many(self, project_id, keys, include_archived=include_archived)

    def batch(
        self,
        project_id: str,
        keys: Iterable[str],
        action: BatchAction | str,
        value: Any = None,
        *,
        actor: str | None = None,
    ) -> BatchResult:
        return store_batch.batch_update(self, project_id, keys, action, value, actor=actor)

    def traverse(
        self, project_id: str, key: str, depth: int = 2, *, include_archived: bool = False
    ) -> TraversalResult:
        return store_graph.traverse(
            self, project_id, key, depth, include_archived=include_archived
        )

    def entity_tag(self, project_id: str, key: str) -> str:
        memory = store_records.require_memory(self, project_id, key, include_archived=True)
        return store_conflicts.entity_tag(self, memory)

    # Versions

    def list_versions(self, project_id: str, key: str, limit: int = 50) -> list[Version]:
        return store_versions.list_versions(self, project_id, key, limit=limit)

    def rollback(
        self,
        project_id: str,
        key: str,
        steps: int = 1,
        *,
        changed_by: str | None = None,
        timeout_s: float | None = None,
    ) -> RollbackResult:
        return store_versions.rollback(
            self, project_id, key, steps, changed_by=changed_by, timeout_s=timeout_s
        )

    def restore_version(
        self,
        project_id: str,
        key: str,
        version: int,
        *,
        changed_by: str | None = None,
    ) -> RollbackResult:
        return store_versions.restore_version(
            self, project_id, key, version, changed_by=changed_by
        )

    def diff(
        self,
        project_id: str,
        key: str,
        v1: int,
        v2: int | None = None,
        *,
        timeout_s: float | None = None,
    ) -> DiffResult:
        return store_versions.diff(self, project_id, key, v1, v2, timeout_s=timeout_s)

    # Conflicts

    def store_safe(
        self,
        project_id: str,
        key: str,
        content: str,
        if_unmodified_since: str | dt.datetime,
        strategy: ConflictStrategy | str = ConflictStrategy.REJECT,
        **fields: Any,
    ) -> SafeStoreResult:
        return store_conflicts.store_safe(
            self, project_id, key, content, if_unmodified_since, strategy, **fields
        )

    # Locks

    def acquire_lock(
        self,
        project_id: str,
        key: str,
        holder: str | None = None,
        ttl_s: float | None = None,
    ) -> LockResult:
        return store_locks.acquire_lock(self, project_id, key, holder=holder, ttl_s=ttl_s)

    def release_lock(self, project_id: str, key: str, holder: str | None = None) -> None:
        store_locks.release_lock(self, project_id, key, holder=holder)

    def get_lock(self, project_id: str, key: str) -> LockInfo | None:
        return store_locks.get_lock(self, project_id, key)

    def locked(
        self,
        project_id: str,
        key: str,
        holder: str | None = None,
        ttl_s: float | None = None,
    ) -> AbstractContextManager[LockInfo]:
        return store_locks.locked(self, project_id, key, holder=holder, ttl_s=ttl_s)

    # Quota

    def usage(self, project_id: str) -> tuple[int, int]:
        return store_quota.usage(self, project_id)

    def capacity(self, project_id: str) -> QuotaSnapshot:
        return store_quota.snapshot(self, project_id)

    # Lifecycle

    def lifecycle_params(self, **overrides: Any) -> LifecycleParams:
        return LifecycleParams.from_config(self.config, **overrides)

    def run_lifecycle(
        self,
        project_id: str,
        policies: Sequence[str],
        params: LifecycleParams | None = None,
        *,
        timeout_s: float | None = None,
        actor: str | None = None,
    ) -> dict[str, PolicyResult]:
        return store_lifecycle.run_lifecycle(
            self, project_id, policies, params, timeout_s=timeout_s, actor=actor
        )

    def run_scheduled_lifecycle(
        self, project_id: str, params: LifecycleParams | None = None
    ) -> ScheduledRun:
        return store_lifecycle.run_scheduled_lifecycle(self, project_id, params)

    def suggest_cleanup(
        self, project_id: str, stale_days: int = 30, limit: int = 20
    ) -> CleanupSuggestions:
        return store_lifecycle.suggest_cleanup(self, project_id, stale_days, limit)

    def health_report(self, project_id: str, limit: int = 50) -> list[HealthReport]:
        return store_lifecycle.health_report(self, project_id, limit)

    def relevance_distribution(self, project_id: str) -> dict[str, int]:
        return store_lifecycle.relevance_distribution(self, project_id)
