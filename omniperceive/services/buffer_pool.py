"""
Transient Buffer Accounting.

Every numpy buffer a stage allocates on the hot path (resized frames,
normalized inputs, raw model outputs) is registered with a BufferTracker and
released exactly once when the stage is done with it. The tracker keeps the
count of live buffers so a detection call can be checked for leaks: after any
call, success or error, live_count returns to its pre-call baseline.

Ownership rules:
- the stage that tracks a buffer owns it until it releases it or hands it on
- release() is idempotent per buffer; a second release is counted and logged
- scope() bounds a region: every buffer tracked inside it that is still live
  when the scope exits is released, except the ones passed as keep

Usage:
    tracker = BufferTracker()

    with tracker.hold(resized, normalized):
        outputs = run_model(normalized)
    # resized/normalized released here, even on error

    with tracker.scope():
        frame = tracker.track(make_frame())
        ...
    # anything still live from the scope is released
"""

import logging
import weakref
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock

import numpy as np


logger = logging.getLogger(__name__)

# Buffer ids tracked while a scope is open in the current task context.
# asyncio tasks spawned inside the scope inherit the same dict.
_current_scope: ContextVar[dict[int, weakref.ref] | None] = ContextVar('buffer_scope', default=None)


class BufferTracker:
    """
    Thread-safe registry of live transient buffers.

    Benefits:
    - leak detection (live_count before/after a call)
    - guaranteed release on every exit path via context managers
    - double-release detection instead of silent corruption
    """

    def __init__(self, name: str = 'transient'):
        self.name = name
        self._live: dict[int, np.ndarray] = {}
        self._lock = Lock()

        # Statistics
        self._tracked = 0
        self._released = 0
        self._double_releases = 0
        self._peak_live = 0

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def track(self, buffer: np.ndarray) -> np.ndarray:
        """
        Register a buffer as live and owned by the caller.

        Returns:
            The same buffer, for inline use
        """
        key = id(buffer)
        with self._lock:
            if key not in self._live:
                self._live[key] = buffer
                self._tracked += 1
                self._peak_live = max(self._peak_live, len(self._live))
        scope = _current_scope.get()
        if scope is not None:
            scope[key] = weakref.ref(buffer)
        return buffer

    def track_all(self, buffers: Iterable[np.ndarray]) -> list[np.ndarray]:
        return [self.track(b) for b in buffers]

    def release(self, buffer: np.ndarray) -> bool:
        """
        Release a live buffer.

        Returns:
            True if the buffer was live, False on a double or foreign release
        """
        with self._lock:
            if self._live.pop(id(buffer), None) is not None:
                self._released += 1
                return True
            self._double_releases += 1
        logger.warning(
            f'BufferTracker "{self.name}": release of a buffer that is not live '
            f'(shape={getattr(buffer, "shape", None)})'
        )
        return False

    def release_all(self, buffers: Iterable[np.ndarray]) -> None:
        for buffer in buffers:
            self.release(buffer)

    def is_live(self, buffer: np.ndarray) -> bool:
        with self._lock:
            return id(buffer) in self._live

    @contextmanager
    def hold(self, *buffers: np.ndarray) -> Iterator[tuple[np.ndarray, ...]]:
        """
        Track buffers for the duration of a block and release them afterwards.

        Buffers already released inside the block (e.g. handed on early) are
        skipped on exit.
        """
        for buffer in buffers:
            self.track(buffer)
        try:
            yield buffers
        finally:
            for buffer in buffers:
                if self.is_live(buffer):
                    self.release(buffer)

    @contextmanager
    def scope(self, keep: Iterable[np.ndarray] = ()) -> Iterator[dict[int, weakref.ref]]:
        """
        Open a buffer scope.

        Every buffer tracked while the scope is open and still live when it
        closes is released, except those in keep.
        """
        members: dict[int, weakref.ref] = {}
        token = _current_scope.set(members)
        try:
            yield members
        finally:
            _current_scope.reset(token)
            kept = {id(b) for b in keep}
            with self._lock:
                stale = [
                    key
                    for key, ref in members.items()
                    if key not in kept and ref() is not None and self._live.get(key) is ref()
                ]
                for key in stale:
                    del self._live[key]
                self._released += len(stale)
            if stale:
                logger.debug(f'BufferTracker "{self.name}": scope released {len(stale)} buffers')

    def get_stats(self) -> dict:
        """Get tracker statistics."""
        with self._lock:
            return {
                'name': self.name,
                'live': len(self._live),
                'peak_live': self._peak_live,
                'tracked': self._tracked,
                'released': self._released,
                'double_releases': self._double_releases,
            }

    def reset_stats(self) -> None:
        """Reset statistics counters (live buffers are kept)."""
        with self._lock:
            self._tracked = len(self._live)
            self._released = 0
            self._double_releases = 0
            self._peak_live = len(self._live)
