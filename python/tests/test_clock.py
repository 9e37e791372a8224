"""Tests for lifesignal.clock module."""

import threading
import unittest

from lifesignal.clock import ManualClock, SystemClock, TimerRegistry


class TestManualClock(unittest.TestCase):
    def test_callbacks_fire_in_time_order(self) -> None:
        clock = ManualClock(0.0)
        fired = []
        clock.call_later(5, lambda: fired.append(("b", clock.now())))
        clock.call_later(2, lambda: fired.append(("a", clock.now())))
        clock.call_later(20, lambda: fired.append(("c", clock.now())))

        clock.advance(10)
        self.assertEqual(fired, [("a", 2.0), ("b", 5.0)])
        self.assertEqual(clock.now(), 10.0)
        self.assertEqual(clock.pending(), 1)

    def test_cancelled_callback_does_not_fire(self) -> None:
        clock = ManualClock(0.0)
        fired = []
        handle = clock.call_later(1, lambda: fired.append(1))
        handle.cancel()
        clock.advance(5)
        self.assertEqual(fired, [])

    def test_callback_can_schedule_more(self) -> None:
        clock = ManualClock(0.0)
        fired = []

        def first():
            fired.append("first")
            clock.call_later(1, lambda: fired.append("second"))

        clock.call_later(1, first)
        clock.advance(3)
        self.assertEqual(fired, ["first", "second"])

    def test_set_jumps_forward(self) -> None:
        clock = ManualClock(100.0)
        clock.set(250.0)
        self.assertEqual(clock.now(), 250.0)

    def test_failing_callback_is_logged(self) -> None:
        clock = ManualClock(0.0)

        def boom():
            raise RuntimeError("boom")

        clock.call_later(1, boom)
        with self.assertLogs("lifesignal.clock", level="ERROR"):
            clock.advance(2)


class TestSystemClock(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = SystemClock()

    def tearDown(self) -> None:
        self.clock.stop()

    def test_call_later_fires(self) -> None:
        done = threading.Event()
        self.clock.call_later(0.01, done.set)
        self.assertTrue(done.wait(2.0))

    def test_cancel(self) -> None:
        done = threading.Event()
        handle = self.clock.call_later(0.2, done.set)
        handle.cancel()
        self.assertFalse(done.wait(0.4))
        self.assertEqual(self.clock.pending(), 0)

    def test_many_timers_share_one_thread(self) -> None:
        before = threading.active_count()
        fired = []
        done = threading.Event()
        for i in range(50):
            self.clock.call_later(0.05 + i / 1000, lambda i=i: fired.append(i))
        self.clock.call_later(0.2, done.set)
        self.assertLessEqual(threading.active_count(), before + 1)

        self.assertTrue(done.wait(2.0))
        self.assertEqual(fired, list(range(50)))

    def test_earlier_timer_added_later_runs_first(self) -> None:
        fired = []
        done = threading.Event()
        self.clock.call_later(0.3, lambda: (fired.append("late"), done.set()))
        self.clock.call_later(0.05, lambda: fired.append("early"))
        self.assertTrue(done.wait(2.0))
        self.assertEqual(fired, ["early", "late"])

    def test_stop(self) -> None:
        done = threading.Event()
        self.clock.call_later(0.1, done.set)
        self.clock.stop()
        self.assertFalse(done.wait(0.3))


class TestTimerRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock(0.0)
        self.timers = TimerRegistry(self.clock)
        self.fired = []

    def test_restart_cancels_previous(self) -> None:
        self.timers.start("u", "arm_reset", 1.0, lambda: self.fired.append("first"))
        self.clock.advance(0.5)
        self.timers.start("u", "arm_reset", 1.0, lambda: self.fired.append("second"))
        self.clock.advance(2.0)
        self.assertEqual(self.fired, ["second"])
        self.assertFalse(self.timers.active("u", "arm_reset"))

    def test_keys_are_per_user_and_kind(self) -> None:
        self.timers.start("u", "arm_reset", 1.0, lambda: self.fired.append("u-arm"))
        self.timers.start("u", "disarm_hold", 1.0, lambda: self.fired.append("u-hold"))
        self.timers.start("v", "arm_reset", 1.0, lambda: self.fired.append("v-arm"))
        self.clock.advance(1.0)
        self.assertEqual(sorted(self.fired), ["u-arm", "u-hold", "v-arm"])

    def test_cancel(self) -> None:
        self.timers.start("u", "arm_reset", 1.0, lambda: self.fired.append("x"))
        self.assertTrue(self.timers.cancel("u", "arm_reset"))
        self.assertFalse(self.timers.cancel("u", "arm_reset"))
        self.clock.advance(2.0)
        self.assertEqual(self.fired, [])

    def test_cancel_prefix(self) -> None:
        self.timers.start("u", "reminder:600", 1.0, lambda: self.fired.append("a"))
        self.timers.start("u", "reminder:1800", 1.0, lambda: self.fired.append("b"))
        self.timers.start("u", "arm_reset", 1.0, lambda: self.fired.append("c"))
        self.assertEqual(self.timers.cancel_prefix("u", "reminder:"), 2)
        self.clock.advance(2.0)
        self.assertEqual(self.fired, ["c"])


if __name__ == "__main__":
    unittest.main()
