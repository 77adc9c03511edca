from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING, Any

from ..errors import ConflictError, InvalidArgumentError
from . import records as store_records
from . import versions as store_versions
from .types import ConflictStrategy, Memory, SafeStoreResult
from .utils import normalize_timestamp

if TYPE_CHECKING:
    from ._store import MemoryStore


def entity_tag(store: MemoryStore, memory: Memory) -> str:
    # Version counter plus write time; content is never hashed.
    version = store_versions.latest_version_number(store, memory.id)
    return f'"v{version}-{memory.updated_at}"'


def _strip_weak(tag: str) -> str:
    tag = tag.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    return tag


def check_if_match(store: MemoryStore, memory: Memory, if_match: str | None) -> None:
    if if_match is None:
        return
    current = entity_tag(store, memory)
    if _strip_weak(if_match) in {"*", current}:
        return
    raise ConflictError(
        f'Memory "{memory.key}" was modified since it was read (expected {if_match}, '
        f"current {current})",
        current=memory,
    )


def _parse_strategy(strategy: ConflictStrategy | str) -> ConflictStrategy:
    try:
        return ConflictStrategy(strategy)
    except ValueError as exc:
        choices = ", ".join(ConflictStrategy)
        raise InvalidArgumentError(f"strategy must be one of: {choices}") from exc


def store_safe(
    store: MemoryStore,
    project_id: str,
    key: str,
    content: str,
    if_unmodified_since: str | dt.datetime,
    strategy: ConflictStrategy | str = ConflictStrategy.REJECT,
    **fields: Any,
) -> SafeStoreResult:
    resolved = _parse_strategy(strategy)
    since = normalize_timestamp(if_unmodified_since, field="if_unmodified_since")
    if since is None:
        raise InvalidArgumentError("if_unmodified_since is required")
    actor = fields.get("created_by")

    with store.transaction():
        current = store_records.fetch_memory(store, project_id, key)
        if current is None or current.updated_at <= since:
            written = store_records.write_memory(store, project_id, key, content, **fields)
            outcome = SafeStoreResult(
                key=key,
                strategy=resolved,
                conflict=False,
                stored=True,
                message="Stored",
                memory=written.memory,
            )
        else:
            written = None
            outcome = SafeStoreResult(
                key=key,
                strategy=resolved,
                conflict=True,
                stored=False,
                message="",
                proposed_content=content,
                current_content=current.content,
                current_updated_at=current.updated_at,
                if_unmodified_since=since,
            )
            match resolved:
                case ConflictStrategy.REJECT:
                    outcome.memory = current
                    outcome.message = (
                        f"Conflict: memory was modified at {current.updated_at}, after "
                        f"{since}. Re-read it and retry."
                    )
                case ConflictStrategy.LAST_WRITE_WINS:
                    written = store_records.write_memory(
                        store, project_id, key, content, **fields
                    )
                    outcome.stored = True
                    outcome.memory = written.memory
                    outcome.message = "Conflict overridden: last write wins"
                case ConflictStrategy.APPEND:
                    merged = current.content + store.config.conflict_separator + content
                    written = store_records.write_memory(store, project_id, key, merged, **fields)
                    outcome.stored = True
                    outcome.memory = written.memory
                    outcome.message = "Conflict merged: new content appended"
                case ConflictStrategy.RETURN_BOTH:
                    outcome.memory = current
                    outcome.message = (
                        "Both versions returned. Merge them manually, then store the "
                        "result with a fresh if_unmodified_since."
                    )

    if written is not None:
        store_records.after_write(store, written, actor=actor)
    return outcome
