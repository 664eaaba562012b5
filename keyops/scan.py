from __future__ import annotations

from typing import Iterator

from keyops.connection import NodeConnection


def iter_keys(conn: NodeConnection, pattern: str, count: int = 1000) -> Iterator[str | bytes]:
    """Yield every key on ``conn``'s node matching the glob ``pattern``.

    Uses the SCAN cursor so the node is never blocked for a full keyspace
    listing. Each call starts a fresh cursor; a dropped connection raises
    NodeConnectionError and the sequence cannot be resumed. Keys may repeat
    if the keyspace is rehashed mid-scan.
    """
    cursor = 0
    while True:
        cursor, keys = conn.scan(cursor, pattern, count)
        for key in keys:
            yield key
        if int(cursor) == 0:
            break
