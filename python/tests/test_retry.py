"""Tests for lifesignal.retry module."""

import unittest

from lifesignal.errors import Conflict, InvalidArgument, Unavailable
from lifesignal.retry import RetryPolicy


class Flaky:
    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestRetryPolicy(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps = []
        self.policy = RetryPolicy(max_attempts=4, sleep=self.sleeps.append)

    def test_conflict_retried_until_success(self) -> None:
        fn = Flaky(2, Conflict("locked"))
        self.assertEqual(self.policy.call(fn, "ok"), "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_unavailable_exhausts(self) -> None:
        fn = Flaky(10, Unavailable("down"))
        with self.assertRaises(Unavailable):
            self.policy.call(fn, "ok")
        self.assertEqual(fn.calls, 4)
        self.assertEqual(len(self.sleeps), 3)

    def test_validation_error_not_retried(self) -> None:
        fn = Flaky(10, InvalidArgument("bad"))
        with self.assertRaises(InvalidArgument):
            self.policy.call(fn, "ok")
        self.assertEqual(fn.calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_delay_grows_and_caps(self) -> None:
        policy = RetryPolicy(initial_delay_s=0.1, max_delay_s=0.5, jitter=False)
        self.assertAlmostEqual(policy.calculate_delay(0), 0.1)
        self.assertAlmostEqual(policy.calculate_delay(1), 0.2)
        self.assertAlmostEqual(policy.calculate_delay(2), 0.4)
        self.assertAlmostEqual(policy.calculate_delay(5), 0.5)

    def test_jitter_within_quarter(self) -> None:
        policy = RetryPolicy(initial_delay_s=0.1, max_delay_s=1.0)
        for _ in range(50):
            delay = policy.calculate_delay(1)
            self.assertGreaterEqual(delay, 0.15)
            self.assertLessEqual(delay, 0.25)

    def test_wrap(self) -> None:
        fn = Flaky(1, Conflict("locked"))
        wrapped = self.policy.wrap(fn)
        self.assertEqual(wrapped("x"), "x")

    def test_invalid_attempts(self) -> None:
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)


if __name__ == "__main__":
    unittest.main()
