"""Tests for the advisory project state lock."""

import os

import pytest

from lbuild.modules.statelock import Busy, StateLock


class TestStateLock:
    def test_second_holder_is_busy(self, tmp_path):
        path = str(tmp_path / ".lbuild-state.lock")
        with StateLock(path) as held:
            assert held.locked
            with pytest.raises(Busy) as exc:
                StateLock(path).acquire()
            assert exc.value.holder == str(os.getpid())
            assert "travado por outro processo" in str(exc.value)
        assert not held.locked

    def test_reacquire_after_release(self, tmp_path):
        path = str(tmp_path / "state.lock")
        first = StateLock(path).acquire()
        first.release()
        second = StateLock(path).acquire()
        assert second.locked
        second.release()

    def test_acquire_is_idempotent(self, tmp_path):
        lock = StateLock(str(tmp_path / "nested" / "state.lock"))
        assert lock.acquire() is lock.acquire()
        lock.release()
        lock.release()
