"""Error taxonomy shared by the engine and the command-line front end.

Only failures that make routing unsafe (seed unreachable, unreadable
topology) are raised out of a run. Per-key and per-node failures are
recorded in :class:`keyops.batch.CommandResult` and summarised at the end.
"""
from __future__ import annotations


class KeyOpsError(Exception):
    exit_code = 1


class UsageError(KeyOpsError):
    """Bad or missing command-line arguments. No network contact is made."""


class SourceError(UsageError):
    """The populate source file is missing or cannot be parsed."""


class DependencyError(KeyOpsError):
    """A required library is not importable."""


class NodeConnectionError(KeyOpsError, ConnectionError):
    exit_code = 2

    def __init__(self, endpoint, cause: BaseException | str) -> None:
        self.endpoint = endpoint
        self.cause = cause
        super().__init__(f"{endpoint}: {cause}")


class TopologyParseError(KeyOpsError):
    exit_code = 3


class CommandError(KeyOpsError):
    """One command rejected by the store (wrong type, MOVED, ...)."""

    def __init__(self, message: str, command: str | None = None) -> None:
        self.command = command
        super().__init__(message)


class Cancelled(KeyOpsError):
    exit_code = 130
