from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final

logger = logging.getLogger(__name__)

MEMORY_CREATED: Final = "memory.created"
MEMORY_UPDATED: Final = "memory.updated"
MEMORY_DELETED: Final = "memory.deleted"
MEMORY_RESTORED: Final = "memory.restored"
LIFECYCLE_COMPLETED: Final = "lifecycle.completed"


@dataclass(frozen=True)
class MemoryEvent:
    event: str
    project_id: str
    key: str | None = None
    actor: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


# Activity log / webhook sink. Called after the write has committed.
Notifier = Callable[[MemoryEvent], None]

# Returns keys whose content looks like a near-duplicate of the pending write.
SimilarityCheck = Callable[[str, str, str], Sequence[str]]


def dispatch_best_effort(notifier: Notifier | None, event: MemoryEvent) -> bool:
    if notifier is None:
        return False
    try:
        notifier(event)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "notifier failed for %s on %s/%s",
            event.event,
            event.project_id,
            event.key,
            exc_info=exc,
        )
        return False
    return True


def dedup_warnings(
    similarity_check: SimilarityCheck | None,
    project_id: str,
    key: str,
    content: str,
) -> list[str]:
    if similarity_check is None:
        return []
    try:
        similar = [k for k in similarity_check(project_id, key, content) if k and k != key]
    except Exception as exc:  # noqa: BLE001
        logger.warning("similarity check failed for %s/%s", project_id, key, exc_info=exc)
        return []
    if not similar:
        return []
    joined = ", ".join(similar[:5])
    return [f"Similar memories already exist: {joined}. Consider updating one of them instead."]
