from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Logs a cumulative item count every ``every`` items.

    Shared by all node workers of a run, so updates take a lock.
    """

    def __init__(self, label: str, every: int = 1000) -> None:
        self.label = label
        self.every = every
        self.total = 0
        self._next = every
        self._lock = threading.Lock()

    def advance(self, n: int) -> None:
        with self._lock:
            self.total += n
            if self.total < self._next:
                return
            total = self.total
            self._next = (total // self.every + 1) * self.every
        logger.info("%s: %d processed", self.label, total)

    def rewind(self, n: int) -> None:
        with self._lock:
            self.total -= n
            self._next = (self.total // self.every + 1) * self.every

    def tally(self) -> "Tally":
        return Tally(self)


class Tally:
    """The share of a reporter's count contributed by one node worker."""

    def __init__(self, reporter: ProgressReporter) -> None:
        self.reporter = reporter
        self.count = 0

    def advance(self, n: int) -> None:
        self.count += n
        self.reporter.advance(n)

    def discard(self, keep: int = 0) -> None:
        """Take back everything counted so far except ``keep`` items."""
        self.reporter.rewind(self.count - keep)
        self.count = keep
