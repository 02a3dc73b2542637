"""Command guard and optimistic overlay."""
import threading

from modules.guard import CommandGuard
from modules.overlay import OptimisticOverlay


class TestCommandGuard:

    def test_second_acquire_is_rejected(self):
        guard = CommandGuard()
        assert guard.try_acquire("A")
        assert not guard.try_acquire("A")
        assert guard.stats['rejected'] == 1

    def test_devices_are_independent(self):
        guard = CommandGuard()
        assert guard.try_acquire("A")
        assert guard.try_acquire("B")
        assert guard.busy_devices() == ["A", "B"]

    def test_release_is_idempotent(self):
        guard = CommandGuard()
        guard.try_acquire("A")
        assert guard.release("A")
        assert not guard.release("A")
        assert not guard.is_busy("A")
        assert guard.try_acquire("A")

    def test_only_one_thread_wins(self):
        guard = CommandGuard()
        results = []
        barrier = threading.Barrier(8)

        def contend():
            barrier.wait()
            results.append(guard.try_acquire("A"))

        threads = [threading.Thread(target=contend) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestOptimisticOverlay:

    def test_set_and_clear(self):
        changes = []
        overlay = OptimisticOverlay(on_change=lambda d, v: changes.append((d, v)))

        overlay.set("A", True)
        assert overlay.get("A") is True
        assert overlay.has("A")
        assert overlay.clear("A")
        assert overlay.get("A") is None
        assert changes == [("A", True), ("A", None)]
        assert overlay.writes == 1

    def test_clear_without_value(self):
        changes = []
        overlay = OptimisticOverlay(on_change=lambda d, v: changes.append((d, v)))
        assert not overlay.clear("A")
        assert changes == []

    def test_callback_errors_are_contained(self):
        def broken(device_id, value):
            raise RuntimeError("ui gone")

        overlay = OptimisticOverlay(on_change=broken)
        overlay.set("A", False)
        assert overlay.snapshot() == {"A": False}
