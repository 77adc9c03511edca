from __future__ import annotations

import datetime as dt
import logging
import math
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from ..errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from .types import LockInfo, LockResult
from .utils import to_iso

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)


def _validate_ttl(store: MemoryStore, ttl_s: float | None) -> float:
    if ttl_s is None:
        return float(store.config.lock_ttl_s)
    if isinstance(ttl_s, bool) or not isinstance(ttl_s, int | float) or not math.isfinite(ttl_s):
        raise InvalidArgumentError("ttl_s must be a number")
    max_ttl = store.config.lock_ttl_max_s
    if ttl_s <= 0 or ttl_s > max_ttl:
        raise InvalidArgumentError(f"ttl_s must be greater than 0 and at most {max_ttl}")
    return float(ttl_s)


def _lock_from_row(project_id: str, key: str, row: sqlite3.Row) -> LockInfo:
    return LockInfo(
        project_id=project_id,
        key=key,
        locked_by=row["locked_by"],
        expires_at=row["expires_at"],
    )


def acquire_lock(
    store: MemoryStore,
    project_id: str,
    key: str,
    holder: str | None = None,
    ttl_s: float | None = None,
) -> LockResult:
    ttl = _validate_ttl(store, ttl_s)
    now = store.now()
    now_iso = to_iso(now)
    expires_at = to_iso(now + dt.timedelta(seconds=ttl))
    with store.transaction():
        store.conn.execute(
            """
            DELETE FROM memory_locks
            WHERE project_id = ? AND memory_key = ? AND expires_at <= ?
            """,
            (project_id, key, now_iso),
        )
        cur = store.conn.execute(
            """
            INSERT INTO memory_locks(project_id, memory_key, locked_by, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(project_id, memory_key) DO NOTHING
            """,
            (project_id, key, holder, expires_at, now_iso),
        )
        acquired = cur.rowcount == 1
        row = store.conn.execute(
            "SELECT locked_by, expires_at FROM memory_locks WHERE project_id = ? AND memory_key = ?",
            (project_id, key),
        ).fetchone()
    return LockResult(acquired=acquired, lock=_lock_from_row(project_id, key, row))


def get_lock(store: MemoryStore, project_id: str, key: str) -> LockInfo | None:
    row = store.conn.execute(
        """
        SELECT locked_by, expires_at FROM memory_locks
        WHERE project_id = ? AND memory_key = ? AND expires_at > ?
        """,
        (project_id, key, store.now_iso()),
    ).fetchone()
    return _lock_from_row(project_id, key, row) if row else None


def release_lock(
    store: MemoryStore,
    project_id: str,
    key: str,
    holder: str | None = None,
) -> None:
    with store.transaction():
        row = store.conn.execute(
            "SELECT id, locked_by FROM memory_locks WHERE project_id = ? AND memory_key = ?",
            (project_id, key),
        ).fetchone()
        if row is None:
            raise NotFoundError(f'No lock held on "{key}"')
        if holder is not None and row["locked_by"] != holder:
            raise ForbiddenError(holder=row["locked_by"], requested_by=holder)
        store.conn.execute("DELETE FROM memory_locks WHERE id = ?", (row["id"],))


def cleanup_expired_locks(store: MemoryStore, project_id: str) -> int:
    cur = store.conn.execute(
        "DELETE FROM memory_locks WHERE project_id = ? AND expires_at <= ?",
        (project_id, store.now_iso()),
    )
    return int(cur.rowcount or 0)


@contextmanager
def locked(
    store: MemoryStore,
    project_id: str,
    key: str,
    holder: str | None = None,
    ttl_s: float | None = None,
) -> Iterator[LockInfo]:
    result = acquire_lock(store, project_id, key, holder=holder, ttl_s=ttl_s)
    if not result.acquired:
        raise ConflictError(
            f'Memory "{key}" is locked by "{result.lock.locked_by}" '
            f"until {result.lock.expires_at}"
        )
    try:
        yield result.lock
    finally:
        try:
            release_lock(store, project_id, key, holder=holder)
        except (NotFoundError, ForbiddenError) as exc:
            # The TTL ran out while the block was running; someone else may own it now.
            logger.warning("lock on %s/%s expired before release: %s", project_id, key, exc)
