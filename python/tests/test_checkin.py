"""Tests for lifesignal.checkin module."""

import os
import tempfile
import unittest

from lifesignal.checkin import (
    CheckInTracker,
    due_reminders,
    expiration_epoch,
    is_expired,
    reminder_times,
)
from lifesignal.clock import ManualClock
from lifesignal.db import Store
from lifesignal.errors import InvalidArgument, NotFound
from lifesignal.models import UserRecord


class TestExpiryFunctions(unittest.TestCase):
    """Expiration is derived from the record alone."""

    def test_never_checked_in_is_expired(self) -> None:
        user = UserRecord(id="a", check_in_interval=3600)
        self.assertTrue(is_expired(user, 0.0))
        self.assertEqual(expiration_epoch(user), 0.0)
        self.assertEqual(reminder_times(user), [])

    def test_expired_after_interval_plus_one(self) -> None:
        """Interval 3600s and last check-in 3601s ago is expired."""
        now = 100_000.0
        user = UserRecord(id="a", check_in_interval=3600, last_check_in=now - 3601)
        self.assertTrue(is_expired(user, now))

    def test_epoch_follows_check_in_not_interval(self) -> None:
        user = UserRecord(id="a", check_in_interval=3600, last_check_in=1000.0)
        shorter = UserRecord(id="a", check_in_interval=1800, last_check_in=1000.0)
        self.assertEqual(expiration_epoch(user), expiration_epoch(shorter))
        self.assertEqual(expiration_epoch(user), 1000.0)

    def test_boundary_is_expired(self) -> None:
        user = UserRecord(id="a", check_in_interval=3600, last_check_in=1000.0)
        self.assertFalse(is_expired(user, 4599.0))
        self.assertTrue(is_expired(user, 4600.0))

    def test_reminder_times_sorted_by_due(self) -> None:
        user = UserRecord(
            id="a", check_in_interval=7200, last_check_in=0.0,
            reminder_offsets=frozenset({600.0, 1800.0}),
        )
        self.assertEqual(reminder_times(user), [(1800.0, 5400.0), (600.0, 6600.0)])

    def test_due_reminders_window(self) -> None:
        user = UserRecord(
            id="a", check_in_interval=7200, last_check_in=0.0,
            reminder_offsets=frozenset({600.0, 1800.0}),
        )
        self.assertEqual(due_reminders(user, 5000.0), [])
        self.assertEqual(due_reminders(user, 5400.0), [(1800.0, 5400.0)])
        self.assertEqual(len(due_reminders(user, 7000.0)), 2)
        # none once expired
        self.assertEqual(due_reminders(user, 7200.0), [])


class TestCheckInTracker(unittest.TestCase):
    """Test CheckInTracker against a real store."""

    def setUp(self) -> None:
        self.tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.tmp.close()
        self.db_path = self.tmp.name
        self.clock = ManualClock(50_000.0)
        self.store = Store(self.db_path, clock=self.clock)
        self.store.init_db()
        self.store.create_user(UserRecord(
            id="a", check_in_interval=86400, reminder_offsets=frozenset({1800.0}),
        ))
        self.tracker = CheckInTracker(self.store)

    def tearDown(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.db_path + suffix)
            except OSError:
                pass

    def test_round_trip(self) -> None:
        """setInterval(X) then check-in: fresh at now+X-1, expired at now+X."""
        x = 7200.0
        now = self.clock.now()
        self.tracker.set_interval("a", x)
        self.tracker.record_check_in("a", now)

        self.assertFalse(self.tracker.is_expired("a", now + x - 1))
        self.assertTrue(self.tracker.is_expired("a", now + x))

    def test_set_interval_recomputes_expiry(self) -> None:
        """Changing the interval moves the deadline, not the check-in."""
        self.tracker.record_check_in("a", 1000.0)
        self.assertEqual(self.tracker.expires_at("a"), 87400.0)

        user = self.tracker.set_interval("a", 3600)
        self.assertEqual(user.last_check_in, 1000.0)
        self.assertEqual(self.tracker.expires_at("a"), 4600.0)

    def test_non_positive_interval_rejected(self) -> None:
        for bad in (0, -5):
            with self.assertRaises(InvalidArgument):
                self.tracker.set_interval("a", bad)

    def test_interval_below_existing_offset_rejected(self) -> None:
        """The current 1800s reminder would no longer fit."""
        with self.assertRaises(InvalidArgument):
            self.tracker.set_interval("a", 1800)
        self.assertEqual(self.tracker.get("a").check_in_interval, 86400.0)

    def test_offsets_validated(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.tracker.set_reminder_offsets("a", [86400])
        with self.assertRaises(InvalidArgument):
            self.tracker.set_reminder_offsets("a", [0])

        user = self.tracker.set_reminder_offsets("a", [1800, 7200])
        self.assertEqual(user.reminder_offsets, frozenset({1800.0, 7200.0}))

        user = self.tracker.set_reminder_offsets("a", [])
        self.assertEqual(user.reminder_offsets, frozenset())

    def test_is_expired_reads_latest_check_in(self) -> None:
        """A check-in that lands between two reads is seen by the second."""
        self.tracker.record_check_in("a", 0.0)
        self.assertTrue(self.tracker.is_expired("a", 90_000.0))
        self.tracker.record_check_in("a", 89_999.0)
        self.assertFalse(self.tracker.is_expired("a", 90_000.0))

    def test_check_in_prunes_old_markers(self) -> None:
        first = self.tracker.record_check_in("a", 0.0)
        with self.store.transaction() as tx:
            tx.claim_mark("expired", "a", expiration_epoch(first))

        second = self.tracker.record_check_in("a", 100_000.0)
        with self.store.read() as tx:
            self.assertFalse(tx.has_mark("expired", "a", expiration_epoch(first)))
        self.assertNotEqual(expiration_epoch(first), expiration_epoch(second))

    def test_missing_user(self) -> None:
        with self.assertRaises(NotFound):
            self.tracker.record_check_in("ghost", 0.0)
        with self.assertRaises(NotFound):
            self.tracker.is_expired("ghost", 0.0)


if __name__ == "__main__":
    unittest.main()
