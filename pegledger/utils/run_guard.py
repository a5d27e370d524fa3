from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class RunGuard:
    """Per-engine "run in progress" cell.

    `try_acquire` is a test-and-set: it never awaits, so on a single event loop
    no other task can observe the cell between the test and the set.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def try_acquire(self) -> bool:
        if self._running:
            return False
        self._running = True
        return True

    def release(self) -> None:
        self._running = False

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Yield True if the guard was acquired (and release it on exit), else False."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
