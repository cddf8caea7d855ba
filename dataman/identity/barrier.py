"""
Process-wide write barrier.

The registry and every dataset store live in separate SQLite files, so no
storage transaction can cover them together. The barrier makes all mutating
calls run one at a time across all of those files, while read-only lookups
run concurrently with each other.

Invariants:
    - At most one thread holds the write side at any time
    - Readers never overlap a writer
    - The write side is reentrant for the owning thread, which may also take
      the read side while holding it
    - A waiting writer blocks new readers, so writers are not starved
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class WriteBarrier:
    """Reader/writer lock with a reentrant write side.

    Example:
        >>> barrier = WriteBarrier()
        >>> with barrier.write():
        ...     with barrier.write():  # same thread, nested
        ...         pass
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: int | None = None
        self._write_depth = 0
        self._waiting_writers = 0

    @property
    def write_held(self) -> bool:
        """Whether the calling thread holds the write side."""
        return self._writer == threading.get_ident()

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the read side for the duration of the block."""
        me = threading.get_ident()
        with self._cond:
            nested = self._writer == me
            if not nested:
                while self._writer is not None or self._waiting_writers:
                    self._cond.wait()
                self._readers += 1
        try:
            yield
        finally:
            if not nested:
                with self._cond:
                    self._readers -= 1
                    if self._readers == 0:
                        self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold the write side for the duration of the block."""
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth += 1
            else:
                self._waiting_writers += 1
                try:
                    while self._writer is not None or self._readers:
                        self._cond.wait()
                finally:
                    self._waiting_writers -= 1
                self._writer = me
                self._write_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._write_depth -= 1
                if self._write_depth == 0:
                    self._writer = None
                    self._cond.notify_all()
