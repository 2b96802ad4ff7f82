"""Read / write / exclusive access gate for a single-writer store.

SQLite admits one writer at a time, and a schema rewrite must not be
observed half-done.  ``AccessGate`` serialises access in-process before
the driver ever sees contention:

Modes:
    READ: concurrent with other reads and with a writer; waits while an
        exclusive section is held or waiting
    WRITE: one at a time; concurrent with readers
    EXCLUSIVE: waits for every writer and reader (migrations, rewrites)

A thread that already holds the gate re-enters without blocking.  Moving
*up* to EXCLUSIVE from a read or write slot on the same thread is refused
(``SessionStateError``), since it would wait on itself.  Waiting longer
than the timeout raises ``LockTimeoutError``; the gate never retries.

Example:
    >>> gate = AccessGate()
    >>> with gate.hold(AccessMode.WRITE, timeout=5.0):
    ...     ...  # the only writer in this process
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from schemaspine.core.errors import LockTimeoutError, SessionStateError
from schemaspine.core.logging import get_logger

logger = get_logger(__name__)


class AccessMode(str, Enum):
    """Access requested from the gate (weakest first)."""

    READ = "read"
    WRITE = "write"
    EXCLUSIVE = "exclusive"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {AccessMode.READ: 0, AccessMode.WRITE: 1, AccessMode.EXCLUSIVE: 2}


@dataclass
class GateStats:
    """Counters for monitoring and tests."""

    granted: int = 0
    timeouts: int = 0
    reentries: int = 0


@dataclass
class AccessGate:
    """Reentrant read/write/exclusive gate.

    Attributes:
        name: Label used in log events
        serialize_reads: Treat every READ as WRITE (single-connection stores)
    """

    name: str = "store"
    serialize_reads: bool = False

    _cond: threading.Condition = field(default_factory=threading.Condition, init=False)
    _readers: dict[int, int] = field(default_factory=dict, init=False)
    _writer: int | None = field(default=None, init=False)
    _writer_depth: int = field(default=0, init=False)
    _exclusive: int | None = field(default=None, init=False)
    _exclusive_depth: int = field(default=0, init=False)
    _exclusive_waiting: int = field(default=0, init=False)
    _stats: GateStats = field(default_factory=GateStats, init=False)

    @property
    def stats(self) -> GateStats:
        return self._stats

    # ── queries ──────────────────────────────────────────────────────────

    def held_mode(self) -> AccessMode | None:
        """Strongest mode the current thread holds, if any."""
        me = threading.get_ident()
        with self._cond:
            if self._exclusive == me:
                return AccessMode.EXCLUSIVE
            if self._writer == me:
                return AccessMode.WRITE
            if self._readers.get(me):
                return AccessMode.READ
            return None

    @property
    def exclusive_held(self) -> bool:
        with self._cond:
            return self._exclusive is not None

    # ── acquire / release ───────────────────────────────────────────────

    def acquire(self, mode: AccessMode, timeout: float | None = None) -> AccessMode:
        """Block until ``mode`` is granted; return the slot to release later.

        The returned slot can differ from ``mode``: re-entry under an
        exclusive section is always an EXCLUSIVE slot, and READ becomes
        WRITE when reads are serialised.
        """
        mode = AccessMode(mode)
        if mode is AccessMode.READ and self.serialize_reads:
            mode = AccessMode.WRITE
        me = threading.get_ident()

        with self._cond:
            if self._exclusive == me:
                self._exclusive_depth += 1
                self._stats.reentries += 1
                return AccessMode.EXCLUSIVE

            if mode is AccessMode.EXCLUSIVE:
                if self._writer == me or self._readers.get(me):
                    raise SessionStateError(
                        "Cannot acquire exclusive access while this thread holds a read or write slot"
                    )
                self._exclusive_waiting += 1
                try:
                    granted = self._cond.wait_for(
                        lambda: self._exclusive is None and self._writer is None and not self._readers,
                        timeout,
                    )
                finally:
                    self._exclusive_waiting -= 1
                if not granted:
                    self._cond.notify_all()
                    self._timed_out(mode, timeout)
                self._exclusive = me
                self._exclusive_depth = 1

            elif mode is AccessMode.WRITE:
                if self._writer == me:
                    self._writer_depth += 1
                    self._stats.reentries += 1
                    return AccessMode.WRITE
                holds_read = bool(self._readers.get(me))
                granted = self._cond.wait_for(
                    lambda: self._exclusive is None
                    and self._writer is None
                    and (holds_read or not self._exclusive_waiting),
                    timeout,
                )
                if not granted:
                    self._timed_out(mode, timeout)
                self._writer = me
                self._writer_depth = 1

            else:
                reentrant = self._writer == me or bool(self._readers.get(me))
                if not reentrant:
                    granted = self._cond.wait_for(
                        lambda: self._exclusive is None and not self._exclusive_waiting,
                        timeout,
                    )
                    if not granted:
                        self._timed_out(mode, timeout)
                else:
                    self._stats.reentries += 1
                self._readers[me] = self._readers.get(me, 0) + 1

            self._stats.granted += 1
            return mode

    def release(self, slot: AccessMode) -> None:
        """Release a slot returned by :meth:`acquire`."""
        me = threading.get_ident()
        with self._cond:
            if slot is AccessMode.EXCLUSIVE:
                if self._exclusive != me:
                    raise SessionStateError("Exclusive slot released by a thread that does not hold it")
                self._exclusive_depth -= 1
                if self._exclusive_depth == 0:
                    self._exclusive = None
            elif slot is AccessMode.WRITE:
                if self._writer != me:
                    raise SessionStateError("Write slot released by a thread that does not hold it")
                self._writer_depth -= 1
                if self._writer_depth == 0:
                    self._writer = None
            else:
                count = self._readers.get(me, 0)
                if count == 0:
                    raise SessionStateError("Read slot released by a thread that does not hold it")
                if count == 1:
                    del self._readers[me]
                else:
                    self._readers[me] = count - 1
            self._cond.notify_all()

    @contextmanager
    def hold(self, mode: AccessMode, timeout: float | None = None) -> Iterator[AccessMode]:
        slot = self.acquire(mode, timeout)
        try:
            yield slot
        finally:
            self.release(slot)

    def _timed_out(self, mode: AccessMode, timeout: float | None) -> None:
        self._stats.timeouts += 1
        logger.warning("lock.timeout", gate=self.name, mode=mode.value, timeout=timeout)
        raise LockTimeoutError(
            f"Timed out after {timeout}s waiting for {mode.value} access to {self.name}",
            mode=mode.value,
            timeout=timeout,
        )


__all__ = ["AccessMode", "AccessGate", "GateStats"]
