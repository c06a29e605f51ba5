from __future__ import annotations

from typing import AbstractSet

from .errors import PortRangeExhausted


MAX_PORT = 65535


def next_free_port(start: int, used: AbstractSet[int]) -> int:
    """Return the smallest port >= start that is not in ``used``.

    Only the given set is consulted; the port may still be bound by an
    unrelated process on the host.
    """
    port = max(1, int(start))
    while port in used:
        port += 1
    if port > MAX_PORT:
        raise PortRangeExhausted(f"No available ports in range {start}-{MAX_PORT}.")
    return port


def allocate_ports(base: int, count: int, used: AbstractSet[int] | None = None) -> list[int]:
    """Assign ``count`` ports starting at ``base``, strictly increasing."""
    taken = set(used or ())
    out: list[int] = []
    nxt = base
    for _ in range(max(0, count)):
        port = next_free_port(nxt, taken)
        taken.add(port)
        out.append(port)
        nxt = port + 1
    return out
