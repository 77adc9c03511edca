from __future__ import annotations

from typing import TYPE_CHECKING, Final

from ..errors import InvalidArgumentError
from . import records as store_records
from .types import Memory, TraversalNode, TraversalResult

if TYPE_CHECKING:
    from ._store import MemoryStore

MAX_TRAVERSE_DEPTH: Final = 5


def traverse(
    store: MemoryStore,
    project_id: str,
    key: str,
    depth: int = 2,
    *,
    include_archived: bool = False,
) -> TraversalResult:
    """Breadth-first walk over `related_keys` starting at `key`.

    `depth` is clamped to 1..5 hops. Every related key of a visited memory is
    reported as an edge, including keys beyond the depth limit or no longer
    present; `max_depth_reached` is set when the limit cut the walk short.
    """
    if isinstance(depth, bool) or not isinstance(depth, int):
        raise InvalidArgumentError("depth must be an integer")
    depth = min(max(depth, 1), MAX_TRAVERSE_DEPTH)
    root = store_records.require_memory(store, project_id, key, include_archived=include_archived)

    nodes = {root.key: TraversalNode(key=root.key, content=root.content, depth=0)}
    edges: list[tuple[str, str]] = []
    max_depth_reached = False
    frontier: list[Memory] = [root]
    level = 0
    while frontier:
        pending: list[str] = []
        for memory in frontier:
            for related in memory.related_keys:
                edges.append((memory.key, related))
                if related in nodes or related in pending:
                    continue
                if level + 1 > depth:
                    max_depth_reached = True
                else:
                    pending.append(related)
        found = store_records.fetch_memories(store, project_id, pending)
        frontier = []
        for related in pending:
            memory = found.get(related)
            if memory is None or (memory.is_archived and not include_archived):
                continue
            nodes[related] = TraversalNode(key=related, content=memory.content, depth=level + 1)
            frontier.append(memory)
        level += 1

    return TraversalResult(
        root=root.key,
        nodes=list(nodes.values()),
        edges=edges,
        max_depth_reached=max_depth_reached,
    )
