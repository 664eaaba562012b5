"""Cluster topology discovery.

A seed node is asked ``CLUSTER INFO``. An error reply means cluster
support is disabled and the seed is the only write target. Otherwise the
``CLUSTER NODES`` table is parsed into :class:`NodeDescriptor` records and
the primaries that can accept writes become the routing table.

The resulting :class:`ClusterTopology` is an immutable snapshot. It is
shared read-only by every node worker and never re-polled during a run.
"""
from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
import logging
from typing import Callable, Iterable

import redis
from redis.crc import key_slot

from keyops.connection import Endpoint, NodeConnection
from keyops.errors import TopologyParseError

logger = logging.getLogger(__name__)

MAX_SLOT = 16384

# primaries carrying any of these flags cannot take writes
UNUSABLE_FLAGS = frozenset({"fail", "noaddr", "handshake"})


class Mode(Enum):
    STANDALONE = "standalone"
    SHARDED = "sharded"


class Role(Enum):
    PRIMARY = "primary"
    REPLICA = "replica"


@dataclass(frozen=True)
class NodeDescriptor:
    endpoint: Endpoint
    role: Role
    slot_ranges: tuple[tuple[int, int], ...] = ()
    node_id: str = ""
    flags: frozenset[str] = frozenset()

    @property
    def writable(self) -> bool:
        return self.role is Role.PRIMARY and not (self.flags & UNUSABLE_FLAGS)

    def slot_count(self) -> int:
        return sum(end - start + 1 for start, end in self.slot_ranges)


@dataclass(frozen=True)
class ClusterTopology:
    mode: Mode
    nodes: tuple[NodeDescriptor, ...]
    warnings: tuple[str, ...] = field(default=())

    @classmethod
    def standalone(cls, endpoint: Endpoint) -> "ClusterTopology":
        return cls(Mode.STANDALONE, (NodeDescriptor(endpoint, Role.PRIMARY),))

    @property
    def sharded(self) -> bool:
        return self.mode is Mode.SHARDED

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)

    @property
    def primaries(self) -> tuple[NodeDescriptor, ...]:
        """Write targets: every primary without a failure flag."""
        return tuple(n for n in self.nodes if n.writable)

    @cached_property
    def _slot_table(self) -> tuple[list[int], list[tuple[int, NodeDescriptor]]]:
        ranges = sorted(
            ((start, end, node) for node in self.primaries for start, end in node.slot_ranges),
            key=lambda r: (r[0], r[1]),
        )
        return [start for start, _, _ in ranges], [(end, node) for _, end, node in ranges]

    def owner_of_slot(self, slot: int) -> NodeDescriptor | None:
        if not self.sharded:
            return self.nodes[0]
        starts, tails = self._slot_table
        i = bisect_right(starts, slot) - 1
        if i < 0:
            return None
        end, node = tails[i]
        return node if slot <= end else None

    def owner_of(self, key: str | bytes) -> NodeDescriptor | None:
        if not self.sharded:
            return self.nodes[0]
        return self.owner_of_slot(key_slot(_as_bytes(key)))

    def coverage_problems(self) -> list[str]:
        """Gaps and overlaps in the primaries' slot coverage of [0, MAX_SLOT)."""
        if not self.sharded:
            return []
        problems = []
        ranges = sorted(
            (start, end, str(node.endpoint)) for node in self.primaries for start, end in node.slot_ranges
        )
        expected = 0
        last_owner = None
        for start, end, owner in ranges:
            if start > expected:
                problems.append(f"slots {expected}-{start - 1} have no writable primary")
            elif start < expected:
                problems.append(f"slots {start}-{min(end, expected - 1)} claimed by both {last_owner} and {owner}")
            if end + 1 > expected:
                expected = end + 1
                last_owner = owner
        if expected < MAX_SLOT:
            problems.append(f"slots {expected}-{MAX_SLOT - 1} have no writable primary")
        return problems


def _as_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8", errors="surrogatepass")


def _to_text(v: str | bytes) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return v


def _parse_slot_token(token: str) -> tuple[int, int]:
    start, sep, end = token.partition("-")
    try:
        lo = int(start)
        hi = int(end) if sep else lo
    except ValueError:
        raise TopologyParseError(f"unparsable slot range {token!r}") from None
    if not 0 <= lo <= hi < MAX_SLOT:
        raise TopologyParseError(f"slot range {token!r} outside 0-{MAX_SLOT - 1}")
    return lo, hi


def parse_node_line(line: str, seed_host: str, credential: str | None = None) -> NodeDescriptor:
    """Parse one ``CLUSTER NODES`` line.

    Format: ``<id> <ip:port@cport[,hostname]> <flags> <primary-id> <ping>
    <pong> <epoch> <link-state> [<slot> ...]``.
    """
    parts = line.split()
    if len(parts) < 8:
        raise TopologyParseError(f"expected at least 8 fields, got {len(parts)}")

    address = parts[1].split(",", 1)[0].split("@", 1)[0]
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise TopologyParseError(f"missing address in {parts[1]!r}")
    host = host.strip("[]") or seed_host

    flags = frozenset(parts[2].split(","))
    if "master" in flags:
        role = Role.PRIMARY
    elif "slave" in flags or "replica" in flags:
        role = Role.REPLICA
    else:
        raise TopologyParseError(f"no role in flags {parts[2]!r}")

    # [slot->-id] / [slot-<-id] are migration markers, not ownership
    slots = tuple(_parse_slot_token(t) for t in parts[8:] if not t.startswith("["))
    return NodeDescriptor(
        endpoint=Endpoint(host, int(port), credential),
        role=role,
        slot_ranges=slots,
        node_id=parts[0],
        flags=flags,
    )


def parse_cluster_nodes(
    text: str, seed_host: str, credential: str | None = None
) -> tuple[list[NodeDescriptor], list[str]]:
    nodes: list[NodeDescriptor] = []
    warnings: list[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            nodes.append(parse_node_line(line, seed_host, credential))
        except TopologyParseError as exc:
            logger.warning("skipping cluster node line %r: %s", line, exc)
            warnings.append(f"skipped node line ({exc})")

    if not any(n.role is Role.PRIMARY for n in nodes):
        raise TopologyParseError("CLUSTER NODES reply contains no parsable primary")
    return nodes, warnings


def _cluster_flag_warnings(nodes: Iterable[NodeDescriptor]) -> list[str]:
    out = []
    for node in nodes:
        if node.role is Role.PRIMARY and not node.writable:
            out.append(f"primary {node.endpoint} excluded (flags {','.join(sorted(node.flags))})")
    return out


def discover(
    seed: Endpoint,
    credential: str | None = None,
    connect: Callable[..., NodeConnection] = NodeConnection.open,
) -> ClusterTopology:
    """Build a topology snapshot from the seed node.

    Raises NodeConnectionError if the seed is unreachable and
    TopologyParseError if the cluster reply cannot be used for routing.
    """
    if credential is not None:
        seed = seed.with_credential(credential)

    with connect(seed) as conn:
        try:
            info = _to_text(conn.execute("CLUSTER", "INFO"))
        except redis.exceptions.ResponseError as exc:
            logger.debug("%s is not cluster-enabled: %s", seed, exc)
            return ClusterTopology.standalone(seed)
        if "cluster_state" not in info:
            return ClusterTopology.standalone(seed)

        try:
            raw = conn.execute("CLUSTER", "NODES")
        except redis.exceptions.ResponseError as exc:
            raise TopologyParseError(f"CLUSTER NODES rejected: {exc}") from exc

    if raw is None or not isinstance(raw, (str, bytes)):
        raise TopologyParseError(f"unexpected CLUSTER NODES reply type {type(raw).__name__}")

    nodes, warnings = parse_cluster_nodes(_to_text(raw), seed.host, seed.credential)
    extra = []
    if "cluster_state:fail" in info:
        extra.append("cluster reports cluster_state:fail")
    extra.extend(_cluster_flag_warnings(nodes))
    extra.extend(ClusterTopology(Mode.SHARDED, tuple(nodes)).coverage_problems())
    for w in extra:
        logger.warning("degraded topology: %s", w)

    topology = ClusterTopology(Mode.SHARDED, tuple(nodes), tuple(warnings + extra))
    logger.info(
        "sharded cluster at %s: %d primaries, %d replicas",
        seed,
        len(topology.primaries),
        sum(1 for n in nodes if n.role is Role.REPLICA),
    )
    return topology
