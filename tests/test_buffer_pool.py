"""
BufferTracker tests: ownership, double release, scopes.
"""

import asyncio

import numpy as np
import pytest

from omniperceive.services.buffer_pool import BufferTracker


def test_track_and_release():
    tracker = BufferTracker()
    buffer = tracker.track(np.zeros(4))

    assert tracker.live_count == 1
    assert tracker.is_live(buffer)
    assert tracker.release(buffer) is True
    assert tracker.live_count == 0


def test_double_release_is_counted():
    tracker = BufferTracker()
    buffer = tracker.track(np.zeros(4))
    tracker.release(buffer)

    assert tracker.release(buffer) is False
    assert tracker.get_stats()['double_releases'] == 1


def test_track_is_idempotent():
    tracker = BufferTracker()
    buffer = np.zeros(4)
    tracker.track(buffer)
    tracker.track(buffer)
    assert tracker.live_count == 1
    assert tracker.get_stats()['tracked'] == 1


def test_hold_releases_on_error():
    tracker = BufferTracker()
    a, b = np.zeros(2), np.ones(2)

    with pytest.raises(RuntimeError):
        with tracker.hold(a, b):
            assert tracker.live_count == 2
            raise RuntimeError('boom')

    assert tracker.live_count == 0


def test_hold_skips_buffers_released_inside():
    tracker = BufferTracker()
    a = np.zeros(2)
    with tracker.hold(a):
        tracker.release(a)
    assert tracker.get_stats()['double_releases'] == 0


def test_scope_releases_leftovers_except_keep():
    tracker = BufferTracker()
    kept = np.zeros(3)

    with tracker.scope(keep=[kept]):
        tracker.track(np.zeros(2))
        tracker.track(kept)

    assert tracker.live_count == 1
    assert tracker.is_live(kept)


def test_scope_covers_child_tasks():
    tracker = BufferTracker()

    async def child():
        tracker.track(np.zeros(2))

    async def run():
        with tracker.scope():
            await asyncio.gather(child(), child())
            assert tracker.live_count == 2

    asyncio.run(run())
    assert tracker.live_count == 0


def test_reset_stats_keeps_live_buffers():
    tracker = BufferTracker('test')
    buffer = tracker.track(np.zeros(1))
    tracker.reset_stats()

    stats = tracker.get_stats()
    assert stats['name'] == 'test'
    assert stats['live'] == 1
    assert stats['released'] == 0
    tracker.release(buffer)
