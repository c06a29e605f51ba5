from __future__ import annotations

from typing import Iterable

from .models import ConfiguredServer, ContainerInfo


def ids_match(a: str, b: str) -> bool:
    """Compare container identifiers that may be short (12 chars) or full (64).

    Matches when equal or when either one is a prefix of the other. Empty
    identifiers never match.
    """
    if not a or not b:
        return False
    return a == b or a.startswith(b) or b.startswith(a)


def find_container(containers: Iterable[ContainerInfo], ref: str) -> ContainerInfo | None:
    for c in containers:
        if ids_match(c.id, ref):
            return c
    return None


def find_record(records: Iterable[ConfiguredServer], container_id: str) -> ConfiguredServer | None:
    for r in records:
        if ids_match(r.container_id, container_id):
            return r
    return None


def is_referenced(container_id: str, records: Iterable[ConfiguredServer]) -> bool:
    return find_record(records, container_id) is not None
