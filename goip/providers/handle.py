import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

from goip.errors import ProviderUnavailableError
from goip.logger import logger

T = TypeVar("T")


class _Generation(Generic[T]):
    __slots__ = ("handle", "readers", "retired")

    def __init__(self, handle: T) -> None:
        self.handle = handle
        self.readers = 0
        self.retired = False


class SwappableHandle(Generic[T]):
    """Database handle shared by many readers and replaced by a single writer.

    `acquire()` pins the current handle for the duration of a read. `swap()`
    installs a new handle immediately; the previous one is released by
    `closer` only once its last reader has exited, so in-flight lookups always
    complete against the handle they started with. The internal lock is held
    only to update counters, never while a lookup runs.
    """

    def __init__(self, handle: T, closer: Callable[[T], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._current: _Generation[T] | None = _Generation(handle)
        self._closer = closer

    @property
    def closed(self) -> bool:
        return self._current is None

    @contextmanager
    def acquire(self) -> Iterator[T]:
        with self._lock:
            generation = self._current
            if generation is None:
                raise ProviderUnavailableError("database is closed")
            generation.readers += 1
        try:
            yield generation.handle
        finally:
            self._release(generation)

    def swap(self, handle: T) -> None:
        """Replace the handle. Reopens a closed holder."""
        with self._lock:
            previous = self._current
            self._current = _Generation(handle)
            release_now = self._retire(previous)
        if release_now:
            self._release_quietly(previous)

    def close(self) -> None:
        """Stop serving reads. The last handle is released now, or when its last reader exits."""
        with self._lock:
            previous = self._current
            self._current = None
            release_now = self._retire(previous)
        if release_now and self._closer is not None:
            self._closer(previous.handle)

    @staticmethod
    def _retire(generation: _Generation[T] | None) -> bool:
        if generation is None:
            return False
        generation.retired = True
        return generation.readers == 0

    def _release(self, generation: _Generation[T]) -> None:
        with self._lock:
            generation.readers -= 1
            release_now = generation.retired and generation.readers == 0
        if release_now:
            self._release_quietly(generation)

    def _release_quietly(self, generation: _Generation[T]) -> None:
        # Runs on a reader's or reloader's path; the failure belongs to no caller, so log it.
        if self._closer is None:
            return
        try:
            self._closer(generation.handle)
        except Exception as exc:
            logger.warning(f"Failed to release retired database handle error={exc!r}")
