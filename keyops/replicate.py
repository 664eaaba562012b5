"""replicate.py -- Copy keys from one deployment to another.

Purpose
    Point-in-time copy of every key matching a pattern from a source
    deployment (single node or sharded cluster) to a destination
    deployment (single node or sharded cluster).

What it does
    1. Discovers both topologies once.
    2. Runs one worker per source primary. Each worker SCANs its node
       and takes keys in batches of ``batch_size``.
    3. For each batch, one pipelined round trip reads TYPE and PTTL of
       every key, and a second one reads the values:
         - string  (GET -> SET)
         - hash    (HGETALL -> DEL + HSET)
         - list    (LRANGE 0 -1 -> DEL + RPUSH)
         - set     (SMEMBERS -> DEL + SADD)
         - zset    (ZRANGE 0 -1 WITHSCORES -> DEL + ZADD)
         - stream  (XRANGE - + -> DEL + XADD with original entry IDs)
    4. Positive TTLs are carried over with PEXPIRE.
    5. Write commands are grouped by the destination primary owning each
       key's slot and applied through the batch executor.

Limitations
    - Not a live sync; keys written to the source during the copy may or
      may not be picked up.
    - Keys of other types (module types, ...) are counted as failed.
    - Stream consumer groups are not copied.
    - PTTL precision may drift slightly between read and apply.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from itertools import chain, islice
import logging
from typing import Any, Callable

from keyops import batch
from keyops.batch import Command, CommandResult
from keyops.config import Settings
from keyops.connection import NodeConnection, transport_errors
from keyops.drivers import RunReport, Runner
from keyops.errors import CommandError
from keyops.progress import Tally
from keyops.scan import iter_keys
from keyops.topology import ClusterTopology, NodeDescriptor

logger = logging.getLogger(__name__)

READERS: dict[str, Callable[[Any, bytes], Any]] = {
    "string": lambda pipe, k: pipe.get(k),
    "hash": lambda pipe, k: pipe.hgetall(k),
    "list": lambda pipe, k: pipe.lrange(k, 0, -1),
    "set": lambda pipe, k: pipe.smembers(k),
    "zset": lambda pipe, k: pipe.zrange(k, 0, -1, withscores=True),
    "stream": lambda pipe, k: pipe.xrange(k, "-", "+"),
}


def _to_text(v: str | bytes) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return v


@dataclass
class KeyDump:
    key: bytes
    kind: str
    ttl: int
    value: Any


def write_commands(dump: KeyDump) -> list[Command]:
    """Commands that recreate ``dump`` on a node. Empty if the key vanished."""
    k, v = dump.key, dump.value
    if dump.kind == "string":
        if v is None:
            return []
        out = [Command(k, ("SET", k, v))]
    else:
        if not v:
            return []
        out = [Command(k, ("DEL", k))]
        if dump.kind == "hash":
            out.append(Command.hset(k, v))
        elif dump.kind == "list":
            out.append(Command(k, ("RPUSH", k, *v)))
        elif dump.kind == "set":
            out.append(Command(k, ("SADD", k, *v)))
        elif dump.kind == "zset":
            # ZRANGE gives (member, score); ZADD expects score, member
            args = []
            for member, score in v:
                args.extend((score, member))
            out.append(Command(k, ("ZADD", k, *args)))
        elif dump.kind == "stream":
            for entry_id, fields in v:
                if fields:
                    out.append(Command(k, ("XADD", k, entry_id, *chain.from_iterable(fields.items()))))
    if dump.ttl > 0:
        out.append(Command(k, ("PEXPIRE", k, dump.ttl)))
    return out


def read_batch(conn: NodeConnection, keys: list[bytes], result: CommandResult) -> list[KeyDump]:
    """Two round trips: TYPE+PTTL for every key, then the typed reads."""
    with transport_errors(conn.endpoint), conn.pipeline() as pipe:
        for k in keys:
            pipe.type(k)
            pipe.pttl(k)
        meta = pipe.execute(raise_on_error=False)

    pending = []
    for k, kind, ttl in zip(keys, meta[0::2], meta[1::2]):
        if isinstance(kind, Exception):
            result.record_failure(k, CommandError(str(kind), "TYPE"))
            continue
        kind = _to_text(kind)
        if kind == "none":
            continue
        if kind not in READERS:
            result.record_failure(k, CommandError(f"unsupported type {kind!r}", "TYPE"))
            continue
        pending.append(KeyDump(k, kind, ttl if isinstance(ttl, int) else -1, None))
    if not pending:
        return []

    with transport_errors(conn.endpoint), conn.pipeline() as pipe:
        for dump in pending:
            READERS[dump.kind](pipe, dump.key)
        values = pipe.execute(raise_on_error=False)

    dumps = []
    for dump, value in zip(pending, values):
        if isinstance(value, Exception):
            result.record_failure(dump.key, CommandError(str(value), dump.kind))
            continue
        dump.value = value
        dumps.append(dump)
    return dumps


def replicate(
    source: ClusterTopology,
    dest: ClusterTopology,
    settings: Settings,
    pattern: str = "*",
    **kwargs,
) -> RunReport:
    """Copy keys matching ``pattern`` from every source primary to ``dest``.

    Counts are per write command, not per key.
    """
    connect = kwargs.pop("connect", None) or partial(NodeConnection.open, timeout=settings.timeout)
    connect = partial(connect, decode=False)
    runner = Runner("replicate", source, settings, connect=connect, **kwargs)

    def work(node: NodeDescriptor, conn: NodeConnection, result: CommandResult, progress: Tally) -> None:
        targets: dict[NodeDescriptor, NodeConnection] = {}
        keys = iter_keys(conn, pattern, settings.scan_count)
        try:
            while not runner.cancel.is_set():
                chunk = list(islice(keys, settings.batch_size))
                if not chunk:
                    break
                routed: dict[NodeDescriptor, list[Command]] = {}
                for dump in read_batch(conn, chunk, result):
                    owner = dest.owner_of(dump.key)
                    if owner is None:
                        result.record_failure(dump.key, CommandError("destination slot has no writable primary"))
                        continue
                    routed.setdefault(owner, []).extend(write_commands(dump))
                for owner, commands in routed.items():
                    if owner not in targets:
                        targets[owner] = connect(owner.endpoint)
                    # no cancel here: a key's DEL and re-create must not be split
                    batch.execute(targets[owner], commands, settings.batch_size, result=result)
                progress.advance(len(chunk))
        finally:
            for target in targets.values():
                target.close()
        logger.info("%s: %d commands applied, %d failed", node.endpoint, result.succeeded, result.failed)

    return runner.run(work)

