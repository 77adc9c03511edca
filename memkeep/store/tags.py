from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Final

MAX_TAGS: Final = 20
MAX_TAG_LENGTH: Final = 40

AUTO_PRUNED: Final = "auto:pruned"
AUTO_DECAYED: Final = "auto:decayed"


def normalize_tag(value: str) -> str:
    lowered = (value or "").strip().lower()
    if not lowered:
        return ""
    # ":" namespaces system tags such as "auto:pruned".
    lowered = re.sub(r"[^a-z0-9_:]+", "-", lowered)
    lowered = re.sub(r"-+", "-", lowered).strip("-")
    if not lowered:
        return ""
    if len(lowered) > MAX_TAG_LENGTH:
        lowered = lowered[:MAX_TAG_LENGTH].rstrip("-")
    return lowered


def normalize_tags(values: Iterable[str] | None) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values or []:
        tag = normalize_tag(value)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        deduped.append(tag)
        if len(deduped) >= MAX_TAGS:
            break
    return deduped


def append_unique(values: Iterable[str], value: str) -> list[str]:
    existing = list(values)
    if value in existing:
        return existing
    return [*existing, value]
