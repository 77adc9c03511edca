from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING

from .. import db, linediff
from ..errors import InsufficientHistoryError, InvalidArgumentError, NotFoundError
from ..notify import MEMORY_RESTORED, MemoryEvent, dispatch_best_effort
from . import records as store_records
from .types import ChangeType, DiffResult, Memory, RollbackResult, Version
from .utils import Deadline

if TYPE_CHECKING:
    from ._store import MemoryStore

VERSION_COLUMNS = "memory_id, version, content, metadata_json, changed_by, change_type, created_at"


def version_from_row(row: sqlite3.Row) -> Version:
    return Version(
        memory_id=row["memory_id"],
        version=int(row["version"]),
        content=row["content"],
        metadata=db.from_json(row["metadata_json"]),
        changed_by=row["changed_by"],
        change_type=row["change_type"],
        created_at=row["created_at"],
    )


def insert_version(
    store: MemoryStore,
    memory_id: str,
    version: int,
    *,
    content: str,
    metadata_json: str,
    changed_by: str | None,
    change_type: ChangeType,
    created_at: str,
) -> None:
    store.conn.execute(
        """
        INSERT INTO memory_versions(
            memory_id, version, content, metadata_json, changed_by, change_type, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (memory_id, version, content, metadata_json, changed_by, str(change_type), created_at),
    )


def latest_version_number(store: MemoryStore, memory_id: str) -> int:
    row = store.conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS latest FROM memory_versions WHERE memory_id = ?",
        (memory_id,),
    ).fetchone()
    return int(row["latest"]) if row else 0


def get_version(store: MemoryStore, memory_id: str, version: int) -> Version | None:
    row = store.conn.execute(
        f"SELECT {VERSION_COLUMNS} FROM memory_versions WHERE memory_id = ? AND version = ?",
        (memory_id, version),
    ).fetchone()
    return version_from_row(row) if row else None


def list_versions(
    store: MemoryStore, project_id: str, key: str, limit: int = 50
) -> list[Version]:
    memory = store_records.require_memory(store, project_id, key, include_archived=True)
    rows = store.conn.execute(
        f"""
        SELECT {VERSION_COLUMNS} FROM memory_versions
        WHERE memory_id = ?
        ORDER BY version DESC
        LIMIT ?
        """,
        (memory.id, max(1, int(limit))),
    ).fetchall()
    return [version_from_row(row) for row in rows]


def _validate_steps(store: MemoryStore, steps: int) -> int:
    if isinstance(steps, bool) or not isinstance(steps, int):
        raise InvalidArgumentError("steps must be an integer")
    max_steps = store.config.max_rollback_steps
    if not 1 <= steps <= max_steps:
        raise InvalidArgumentError(f"steps must be between 1 and {max_steps}")
    return steps


def _restore(
    store: MemoryStore,
    memory: Memory,
    target: Version,
    *,
    new_version: int,
    changed_by: str | None,
) -> None:
    now = store.now_iso()
    metadata_json = db.to_json(target.metadata)
    insert_version(
        store,
        memory.id,
        new_version,
        content=target.content,
        metadata_json=metadata_json,
        changed_by=changed_by,
        change_type=ChangeType.RESTORED,
        created_at=now,
    )
    store.conn.execute(
        "UPDATE memories SET content = ?, metadata_json = ?, updated_at = ? WHERE id = ?",
        (target.content, metadata_json, now, memory.id),
    )


def _notify_restored(
    store: MemoryStore, result: RollbackResult, project_id: str, actor: str | None
) -> None:
    dispatch_best_effort(
        store.notifier,
        MemoryEvent(
            event=MEMORY_RESTORED,
            project_id=project_id,
            key=result.key,
            actor=actor,
            payload={
                "restored_version": result.restored_version,
                "new_version": result.new_version,
            },
        ),
    )


def rollback(
    store: MemoryStore,
    project_id: str,
    key: str,
    steps: int = 1,
    *,
    changed_by: str | None = None,
    timeout_s: float | None = None,
) -> RollbackResult:
    steps = _validate_steps(store, steps)
    deadline = Deadline(timeout_s)
    with store.transaction():
        memory = store_records.require_memory(store, project_id, key)
        rows = store.conn.execute(
            f"""
            SELECT {VERSION_COLUMNS} FROM memory_versions
            WHERE memory_id = ?
            ORDER BY version DESC
            LIMIT ?
            """,
            (memory.id, steps + 1),
        ).fetchall()
        history = [version_from_row(row) for row in rows]
        if len(history) < steps + 1:
            raise InsufficientHistoryError(available=len(history), requested=steps)
        deadline.check("rollback")
        target = history[steps]
        new_version = history[0].version + 1
        _restore(store, memory, target, new_version=new_version, changed_by=changed_by)
    result = RollbackResult(
        key=key,
        steps=steps,
        restored_version=target.version,
        new_version=new_version,
        previous_content=memory.content,
        restored_content=target.content,
    )
    _notify_restored(store, result, project_id, changed_by)
    return result


def restore_version(
    store: MemoryStore,
    project_id: str,
    key: str,
    version: int,
    *,
    changed_by: str | None = None,
) -> RollbackResult:
    with store.transaction():
        memory = store_records.require_memory(store, project_id, key)
        target = get_version(store, memory.id, version)
        if target is None:
            raise NotFoundError(f'Version {version} of memory "{key}" not found')
        latest = latest_version_number(store, memory.id)
        new_version = latest + 1
        _restore(store, memory, target, new_version=new_version, changed_by=changed_by)
    result = RollbackResult(
        key=key,
        steps=latest - target.version,
        restored_version=target.version,
        new_version=new_version,
        previous_content=memory.content,
        restored_content=target.content,
    )
    _notify_restored(store, result, project_id, changed_by)
    return result


def diff(
    store: MemoryStore,
    project_id: str,
    key: str,
    v1: int,
    v2: int | None = None,
    *,
    timeout_s: float | None = None,
) -> DiffResult:
    deadline = Deadline(timeout_s)
    memory = store_records.require_memory(store, project_id, key, include_archived=True)
    source = get_version(store, memory.id, v1)
    if source is None:
        raise NotFoundError(f'Version {v1} of memory "{key}" not found')
    if v2 is None:
        target_content = memory.content
        to_label = "current"
    else:
        target = get_version(store, memory.id, v2)
        if target is None:
            raise NotFoundError(f'Version {v2} of memory "{key}" not found')
        target_content = target.content
        to_label = f"v{v2}"
    deadline.check("diff")
    lines = linediff.compute_line_diff(source.content, target_content)
    deadline.check("diff")
    return DiffResult(key=key, from_label=f"v{v1}", to_label=to_label, lines=lines)
