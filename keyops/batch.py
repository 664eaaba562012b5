"""Pipelined batch execution against one node.

Commands are grouped into batches of at most ``batch_size``. Each batch
is one pipelined round trip (``transaction=False``, no MULTI/EXEC), and
replies are matched to commands by position. A reply that is an error
fails only its own command. A transport failure fails the whole batch,
because a non-transactional pipeline does not report which of its
commands reached the node before the connection dropped.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from itertools import chain, islice
import logging
import threading
from typing import Iterable, Mapping

from keyops.connection import NodeConnection, transport_errors
from keyops.errors import CommandError, NodeConnectionError
from keyops.progress import ProgressReporter, Tally

logger = logging.getLogger(__name__)

# failures past this many are counted but their causes are not kept
MAX_RECORDED_ERRORS = 100


@dataclass(frozen=True)
class Command:
    key: str | bytes
    args: tuple

    @property
    def name(self) -> str:
        name = self.args[0]
        return name.decode() if isinstance(name, bytes) else str(name)

    @classmethod
    def delete(cls, key: str | bytes) -> "Command":
        return cls(key, ("DEL", key))

    @classmethod
    def set(cls, key: str | bytes, value) -> "Command":
        return cls(key, ("SET", key, value))

    @classmethod
    def hset(cls, key: str | bytes, fields: Mapping) -> "Command":
        return cls(key, ("HSET", key, *chain.from_iterable(fields.items())))


@dataclass
class CommandResult:
    succeeded: int = 0
    failed: int = 0
    errors: list[tuple[str | bytes, BaseException]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def record_failure(self, key: str | bytes, cause: BaseException) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append((key, cause))

    def merge(self, other: "CommandResult") -> "CommandResult":
        self.succeeded += other.succeeded
        self.failed += other.failed
        room = MAX_RECORDED_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(other.errors[:room])
        return self

    def __add__(self, other: "CommandResult") -> "CommandResult":
        return CommandResult().merge(self).merge(other)


def run_pipeline(conn: NodeConnection, commands: list[Command]) -> list:
    """Send ``commands`` in one round trip and return one reply per command.

    Error replies are returned as exception instances, not raised.
    """
    with transport_errors(conn.endpoint), conn.pipeline() as pipe:
        for cmd in commands:
            pipe.execute_command(*cmd.args)
        return pipe.execute(raise_on_error=False)


def execute(
    conn: NodeConnection,
    commands: Iterable[Command],
    batch_size: int,
    *,
    result: CommandResult | None = None,
    progress: ProgressReporter | Tally | None = None,
    cancel: threading.Event | None = None,
) -> CommandResult:
    """Apply ``commands`` to ``conn``'s node in pipelined batches.

    ``cancel`` is checked before each batch is formed; a batch already
    sent always completes. On a transport failure the current batch is
    recorded as failed and NodeConnectionError is re-raised, leaving the
    partial counts in ``result``; nothing is retried.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if result is None:
        result = CommandResult()

    it = iter(commands)
    while cancel is None or not cancel.is_set():
        batch = list(islice(it, batch_size))
        if not batch:
            break
        try:
            replies = run_pipeline(conn, batch)
        except NodeConnectionError as exc:
            logger.error("batch of %d aborted on %s: %s", len(batch), conn.endpoint, exc.cause)
            for cmd in batch:
                result.record_failure(cmd.key, exc)
            if progress is not None:
                progress.advance(len(batch))
            raise

        for cmd, reply in zip(batch, replies):
            if isinstance(reply, Exception):
                result.record_failure(cmd.key, CommandError(str(reply), cmd.name))
            else:
                result.succeeded += 1
        if progress is not None:
            progress.advance(len(batch))
    return result
