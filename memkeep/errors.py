from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .store.types import Memory


class MemoryStoreError(Exception):
    """Base class for failures surfaced to callers of the memory store."""

    code = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class NotFoundError(MemoryStoreError):
    code = "not_found"


class ConflictError(MemoryStoreError):
    code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        current: Memory | None = None,
        proposed_content: str | None = None,
    ) -> None:
        super().__init__(message)
        self.current = current
        self.proposed_content = proposed_content

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.current is not None:
            payload["current_content"] = self.current.content
            payload["current_updated_at"] = self.current.updated_at
        if self.proposed_content is not None:
            payload["proposed_content"] = self.proposed_content
        return payload


class QuotaExceededError(MemoryStoreError):
    code = "quota_exceeded"

    def __init__(self, *, used: int, limit: float, scope: str = "org") -> None:
        super().__init__(
            f"Memory limit reached for {scope}: {used} of {_format_limit(limit)} active memories. "
            "Archive or delete memories before storing new keys."
        )
        self.used = used
        self.limit = limit
        self.scope = scope

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"used": self.used, "limit": self.limit, "scope": self.scope})
        return payload


class InsufficientHistoryError(MemoryStoreError):
    code = "insufficient_history"

    def __init__(self, *, available: int, requested: int) -> None:
        super().__init__(
            f"Not enough version history. Memory has {available} versions, "
            f"requested {requested} steps back."
        )
        self.available = available
        self.requested = requested


class InvalidArgumentError(MemoryStoreError, ValueError):
    code = "invalid_argument"


class ForbiddenError(MemoryStoreError):
    code = "forbidden"

    def __init__(self, *, holder: str | None, requested_by: str | None) -> None:
        super().__init__(f'Lock is held by "{holder}", not "{requested_by}"')
        self.holder = holder
        self.requested_by = requested_by


class DeadlineExceededError(MemoryStoreError):
    code = "deadline_exceeded"


def _format_limit(limit: float) -> str:
    if limit == float("inf"):
        return "unlimited"
    return str(int(limit))
