"""Unit tests for the per-machine lock registry."""
import threading
import time

import pytest

from lounge.errors import StoreUnavailable
from lounge.locking import Deadline, MachineLockRegistry


class TestMachineLockRegistry:
    def test_yields_sorted_unique_ids(self):
        registry = MachineLockRegistry()
        with registry.hold([3, 1, 2, 3]) as held:
            assert held == [1, 2, 3]

    def test_locks_released_after_block(self):
        registry = MachineLockRegistry()
        with registry.hold([1, 2]):
            pass
        with registry.hold([1, 2], timeout=0.1):
            pass

    def test_timeout_raises_store_unavailable_and_releases_partial(self):
        registry = MachineLockRegistry()
        holder_ready = threading.Event()
        release = threading.Event()

        def hold_two():
            with registry.hold([2]):
                holder_ready.set()
                release.wait(2)

        worker = threading.Thread(target=hold_two)
        worker.start()
        holder_ready.wait(2)
        try:
            with pytest.raises(StoreUnavailable):
                with registry.hold([1, 2], timeout=0.05):
                    pass
            # machine 1 was acquired first and must have been released
            with registry.hold([1], timeout=0.05):
                pass
        finally:
            release.set()
            worker.join()

    def test_same_machine_is_serialized(self):
        registry = MachineLockRegistry()
        inside = []
        overlaps = []

        def critical():
            with registry.hold([7]):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=critical) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_opposite_orders_do_not_deadlock(self):
        registry = MachineLockRegistry()
        done = []

        def take(ids):
            for _ in range(50):
                with registry.hold(ids, timeout=2):
                    pass
            done.append(ids)

        a = threading.Thread(target=take, args=([1, 2],))
        b = threading.Thread(target=take, args=([2, 1],))
        a.start()
        b.start()
        a.join(5)
        b.join(5)

        assert len(done) == 2


class TestDeadline:
    def test_remaining_counts_down(self):
        deadline = Deadline(5)
        assert 0 < deadline.remaining() <= 5
        assert deadline.check() > 0

    def test_exhausted_budget_raises(self):
        deadline = Deadline(0.01)
        time.sleep(0.02)

        assert deadline.remaining() == 0.0
        with pytest.raises(StoreUnavailable):
            deadline.check()
