"""Operation drivers: delete, seed and populate.

Each driver takes a topology snapshot from :func:`keyops.topology.discover`,
turns its input into a stream of :class:`~keyops.batch.Command` per
target primary and hands each stream to the batch executor. Node workers
run concurrently, one per primary, each with its own connection.
"""
from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
import logging
import threading
from typing import Callable, Iterable, Iterator, Sequence

import redis
from redis.crc import key_slot

from keyops import batch
from keyops.batch import Command, CommandResult
from keyops.config import Settings
from keyops.connection import Endpoint, NodeConnection
from keyops.errors import CommandError, NodeConnectionError
from keyops.payload import check_pattern, key_for, seed_value
from keyops.progress import ProgressReporter, Tally
from keyops.records import FieldRecord
from keyops.scan import iter_keys
from keyops.topology import ClusterTopology, Mode, NodeDescriptor

logger = logging.getLogger(__name__)

Connector = Callable[..., NodeConnection]
NodeWork = Callable[[NodeDescriptor, NodeConnection, CommandResult, Tally], None]


@dataclass
class NodeReport:
    endpoint: Endpoint
    result: CommandResult = field(default_factory=CommandResult)
    error: BaseException | None = None
    skipped: bool = False


@dataclass
class RunReport:
    operation: str
    mode: Mode
    nodes: list[NodeReport] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rejected: CommandResult = field(default_factory=CommandResult)
    cancelled: bool = False

    @property
    def total(self) -> CommandResult:
        total = CommandResult()
        for node in self.nodes:
            total.merge(node.result)
        return total.merge(self.rejected)

    @property
    def failed_nodes(self) -> list[NodeReport]:
        return [n for n in self.nodes if n.error is not None]


class Runner:
    """Fans work out over target primaries and collects per-node reports.

    With ``resumes`` set, a retried node keeps the successes of earlier
    attempts: the work never repeats an item that already succeeded (a
    fresh SCAN does not find a deleted key). Otherwise a retry starts the
    node's counts over.
    """

    def __init__(
        self,
        operation: str,
        topology: ClusterTopology,
        settings: Settings,
        connect: Connector | None = None,
        cancel: threading.Event | None = None,
        progress: ProgressReporter | None = None,
        resumes: bool = False,
    ) -> None:
        self.operation = operation
        self.topology = topology
        self.settings = settings
        self.connect = connect or partial(NodeConnection.open, timeout=settings.timeout)
        self.cancel = cancel or threading.Event()
        self.progress = progress or ProgressReporter(operation, settings.progress_every)
        self.resumes = resumes

    def execute(
        self, conn: NodeConnection, commands: Iterable[Command], result: CommandResult, progress: Tally
    ) -> None:
        batch.execute(
            conn,
            commands,
            self.settings.batch_size,
            result=result,
            progress=progress,
            cancel=self.cancel,
        )

    def _run_node(self, node: NodeDescriptor, work: NodeWork) -> NodeReport:
        report = NodeReport(node.endpoint)
        tally = self.progress.tally()
        for attempt in range(self.settings.retries + 1):
            if self.cancel.is_set():
                report.skipped = True
                return report
            if attempt:
                kept = report.result.succeeded if self.resumes else 0
                logger.warning("%s: retrying (attempt %d, %d kept)", node.endpoint, attempt + 1, kept)
                tally.discard(kept)
                report = NodeReport(node.endpoint, CommandResult(succeeded=kept))
            try:
                with self.connect(node.endpoint) as conn:
                    work(node, conn, report.result, tally)
                return report
            except NodeConnectionError as exc:
                logger.error("%s: connection failed: %s", node.endpoint, exc.cause)
                report.error = exc
            except redis.exceptions.RedisError as exc:
                logger.error("%s: %s", node.endpoint, exc)
                report.error = exc
            except Exception as exc:
                # recorded per node; the other workers carry on
                logger.exception("%s: node worker failed", node.endpoint)
                report.error = exc
        return report

    def run(self, work: NodeWork, targets: Sequence[NodeDescriptor] | None = None) -> RunReport:
        if targets is None:
            targets = self.topology.primaries
        report = RunReport(self.operation, self.topology.mode, warnings=list(self.topology.warnings))
        workers = min(self.settings.workers or len(targets), len(targets))
        if workers <= 1:
            report.nodes = [self._run_node(node, work) for node in targets]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.operation) as pool:
                futures = [pool.submit(self._run_node, node, work) for node in targets]
                report.nodes = [f.result() for f in futures]
        report.cancelled = self.cancel.is_set()
        return report


def delete_pattern(topology: ClusterTopology, pattern: str, settings: Settings, **kwargs) -> RunReport:
    """Delete every key matching ``pattern`` on every write target.

    Keys travel as raw bytes from SCAN back to DEL, so keys that are not
    valid UTF-8 are deleted like any other.
    """
    connect = kwargs.pop("connect", None) or partial(NodeConnection.open, timeout=settings.timeout)
    runner = Runner(
        "delete", topology, settings, connect=partial(connect, decode=False), resumes=True, **kwargs
    )

    def work(node: NodeDescriptor, conn: NodeConnection, result: CommandResult, progress: Tally) -> None:
        keys = iter_keys(conn, pattern, settings.scan_count)
        runner.execute(conn, (Command.delete(k) for k in keys), result, progress)
        logger.info("%s: %d deleted, %d failed", node.endpoint, result.succeeded, result.failed)

    return runner.run(work)


def _unowned(topology: ClusterTopology, keys: Iterable[str]) -> CommandResult:
    rejected = CommandResult()
    for key in keys:
        if topology.owner_of(key) is None:
            slot = key_slot(key.encode("utf-8", errors="surrogatepass"))
            rejected.record_failure(key, CommandError(f"slot {slot} has no writable primary"))
    return rejected


def seed_values(topology: ClusterTopology, pattern: str, settings: Settings, **kwargs) -> RunReport:
    """Write ``settings.count`` generated values under keys built from ``pattern``.

    Every worker walks the full index range and keeps only the keys its
    node owns, so writes are grouped per owner without a shared buffer.
    Existing keys are overwritten.
    """
    check_pattern(pattern)
    runner = Runner("seed", topology, settings, **kwargs)
    count = settings.count

    def owned(node: NodeDescriptor) -> Iterator[Command]:
        for num in range(1, count + 1):
            key = key_for(pattern, num)
            if topology.owner_of(key) == node:
                yield Command.set(key, seed_value(num))

    def work(node: NodeDescriptor, conn: NodeConnection, result: CommandResult, progress: Tally) -> None:
        runner.execute(conn, owned(node), result, progress)
        logger.info("%s: %d written, %d failed", node.endpoint, result.succeeded, result.failed)

    report = runner.run(work)
    if topology.sharded and topology.degraded:
        report.rejected = _unowned(topology, (key_for(pattern, n) for n in range(1, count + 1)))
    return report


def populate_fields(
    topology: ClusterTopology, records: Sequence[FieldRecord], settings: Settings, **kwargs
) -> RunReport:
    """HSET each record's fields into its key. Fields not in the record are left alone."""
    runner = Runner("populate", topology, settings, **kwargs)
    rejected = CommandResult()
    routed: dict[NodeDescriptor, list[Command]] = defaultdict(list)
    for record in records:
        if not record.fields:
            rejected.record_failure(record.key, CommandError("record has no values", "HSET"))
            continue
        owner = topology.owner_of(record.key)
        if owner is None:
            rejected.merge(_unowned(topology, [record.key]))
            continue
        routed[owner].append(Command.hset(record.key, record.fields))

    def work(node: NodeDescriptor, conn: NodeConnection, result: CommandResult, progress: Tally) -> None:
        runner.execute(conn, routed[node], result, progress)
        logger.info("%s: %d records applied, %d failed", node.endpoint, result.succeeded, result.failed)

    targets = [n for n in topology.primaries if n in routed]
    report = runner.run(work, targets)
    report.rejected = rejected
    return report
