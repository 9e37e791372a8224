"""Tests for lifesignal.coordinator module."""

import os
import tempfile
import unittest

from lifesignal.clock import ManualClock
from lifesignal.coordinator import SafetyCoordinator, derive_status
from lifesignal.db import Store
from lifesignal.dispatcher import NotificationDispatcher
from lifesignal.errors import InvalidArgument, PermissionDenied
from lifesignal.events import PingCleared, PingReceived, StatusChanged
from lifesignal.models import ContactStatus, EdgeRecord, Session, UserRecord
from lifesignal.notify import NotificationKind

HOUR = 3600.0


class RecordingChannel:
    name = "recording"

    def __init__(self):
        self.sent = []

    def deliver(self, notification, recipient):
        self.sent.append(notification)

    def kinds_for(self, user_id):
        return [n.kind for n in self.sent if n.recipient_id == user_id]


class TestDeriveStatus(unittest.TestCase):
    """Priority: alert > non-responsive > incoming ping > outgoing ping > nominal."""

    def setUp(self) -> None:
        self.fresh = UserRecord(id="c", check_in_interval=HOUR, last_check_in=1000.0)
        self.late = UserRecord(id="c", check_in_interval=HOUR, last_check_in=1000.0 - 3601)
        self.now = 1000.0

    def edge(self, **kw):
        base = dict(owner_id="o", contact_id="c", is_responder=False, is_dependent=True)
        base.update(kw)
        return EdgeRecord(**base)

    def test_nominal(self) -> None:
        self.assertEqual(derive_status(self.edge(), self.fresh, self.now), ContactStatus.NOMINAL)

    def test_non_responsive_dependent(self) -> None:
        """Interval 3600s, last check-in 3601s ago."""
        self.assertEqual(
            derive_status(self.edge(), self.late, self.now), ContactStatus.NON_RESPONSIVE,
        )

    def test_expired_responder_is_not_non_responsive(self) -> None:
        edge = self.edge(is_responder=True, is_dependent=False)
        self.assertEqual(derive_status(edge, self.late, self.now), ContactStatus.NOMINAL)

    def test_alert_beats_everything(self) -> None:
        edge = self.edge(manual_alert_mirror=True, incoming_ping=1.0, outgoing_ping=1.0)
        self.assertEqual(derive_status(edge, self.late, self.now), ContactStatus.MANUAL_ALERT_ACTIVE)

    def test_non_responsive_beats_pings(self) -> None:
        edge = self.edge(incoming_ping=1.0, outgoing_ping=1.0)
        self.assertEqual(derive_status(edge, self.late, self.now), ContactStatus.NON_RESPONSIVE)

    def test_incoming_beats_outgoing(self) -> None:
        edge = self.edge(incoming_ping=1.0, outgoing_ping=1.0)
        self.assertEqual(derive_status(edge, self.fresh, self.now), ContactStatus.INCOMING_PING)
        edge = self.edge(outgoing_ping=1.0)
        self.assertEqual(derive_status(edge, self.fresh, self.now), ContactStatus.OUTGOING_PING)


class CoordinatorTestCase(unittest.TestCase):
    """alice is a dependent with a one-hour interval; bob responds for her."""

    def setUp(self) -> None:
        self.tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.tmp.close()
        self.db_path = self.tmp.name
        self.clock = ManualClock(1_000_000.0)
        self.store = Store(self.db_path, clock=self.clock)
        self.store.init_db()
        self.channel = RecordingChannel()
        dispatcher = NotificationDispatcher(
            self.store, self.clock, [self.channel], sleep=lambda s: None,
        )
        self.coord = SafetyCoordinator(self.store, self.clock, dispatcher)
        self.alice = Session("alice")
        self.bob = Session("bob")
        self.coord.create_user("alice", name="Alice", interval=HOUR, reminder_offsets=())
        self.coord.create_user("bob", name="Bob")
        self.coord.add_contact(self.alice, "bob", is_responder=True, is_dependent=False)
        self.channel.sent.clear()

        self.status_events = []
        self.coord.events.subscribe(StatusChanged, self.status_events.append)

    def tearDown(self) -> None:
        self.coord.shutdown()
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.db_path + suffix)
            except OSError:
                pass

    def status_seen_by(self, session, contact_id):
        for view in self.coord.contact_statuses(session):
            if view.edge.contact_id == contact_id:
                return view.status
        return None


class TestUsers(CoordinatorTestCase):
    def test_create_user_defaults(self) -> None:
        user = self.coord.create_user("carol")
        self.assertEqual(user.check_in_interval, 86400.0)
        self.assertEqual(user.reminder_offsets, frozenset({1800.0}))
        self.assertTrue(user.api_token)
        self.assertEqual(self.coord.session_for_token(user.api_token), Session("carol"))
        self.assertIsNone(self.coord.session_for_token("wrong"))
        self.assertIsNone(self.coord.session_for_token(""))

    def test_create_user_rejects_bad_offsets(self) -> None:
        with self.assertRaises(InvalidArgument):
            self.coord.create_user("carol", reminder_offsets=["soon"])
        with self.assertRaises(InvalidArgument):
            self.coord.create_user("carol", interval=HOUR, reminder_offsets=[HOUR])
        self.assertIsNone(self.store.get_user("carol"))

    def test_contact_added_notifies_counterpart(self) -> None:
        self.coord.create_user("carol", name="Carol")
        self.coord.add_contact(Session("carol"), "alice", is_responder=False, is_dependent=True)
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.CONTACT_ADDED])
        self.assertIn("responder for you", self.channel.sent[-1].body)


class TestExpirySweep(CoordinatorTestCase):
    def test_expired_dependent_shows_non_responsive(self) -> None:
        self.coord.check_in(self.alice)
        self.assertEqual(self.status_seen_by(self.bob, "alice"), ContactStatus.NOMINAL)

        self.clock.advance(3601)
        self.assertEqual(self.status_seen_by(self.bob, "alice"), ContactStatus.NON_RESPONSIVE)
        # alice's view of bob is unaffected by her own lapse
        self.assertEqual(self.status_seen_by(self.alice, "bob"), ContactStatus.NOMINAL)

    def test_sweep_notifies_once_per_epoch(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(3601)

        result = self.coord.sweep()
        self.assertEqual(result.expired_notified, 1)
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.NON_RESPONSIVE])
        self.assertIn(
            StatusChanged("bob", "alice", ContactStatus.NON_RESPONSIVE), self.status_events,
        )

        result = self.coord.sweep()
        self.assertEqual(result.expired_notified, 0)
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.NON_RESPONSIVE])

    def test_new_epoch_notifies_again(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(3601)
        self.coord.sweep()
        self.coord.check_in(self.alice)
        self.clock.advance(3601)
        self.coord.sweep()

        self.assertEqual(
            self.channel.kinds_for("bob"),
            [NotificationKind.NON_RESPONSIVE, NotificationKind.CHECKED_IN,
             NotificationKind.NON_RESPONSIVE],
        )

    def test_interval_change_while_overdue_does_not_renotify(self) -> None:
        """Same missed check-in, new deadline: responders hear about it once."""
        self.coord.check_in(self.alice)
        self.clock.advance(2 * HOUR)
        self.assertEqual(self.coord.sweep().expired_notified, 1)

        self.coord.set_interval(self.alice, HOUR / 2)
        self.assertEqual(self.coord.sweep().expired_notified, 0)
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.NON_RESPONSIVE])

    def test_check_in_before_sweep_wins(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(3601)
        self.coord.check_in(self.alice)

        result = self.coord.sweep()
        self.assertEqual(result.expired_notified, 0)
        self.assertNotIn(NotificationKind.NON_RESPONSIVE, self.channel.kinds_for("bob"))

    def test_never_checked_in_dependent_is_reported(self) -> None:
        result = self.coord.sweep()
        self.assertEqual(result.dependents_checked, 1)
        self.assertEqual(result.expired_notified, 1)
        self.assertIn("not checked in yet", self.channel.sent[-1].body)

    def test_recovery_notifies_responders(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(3601)
        self.coord.sweep()
        self.status_events.clear()

        self.coord.check_in(self.alice)
        self.assertEqual(self.channel.kinds_for("bob")[-1], NotificationKind.CHECKED_IN)
        self.assertIn(StatusChanged("bob", "alice", ContactStatus.NOMINAL), self.status_events)

    def test_first_check_in_is_not_a_recovery(self) -> None:
        self.coord.check_in(self.alice)
        self.assertEqual(self.channel.kinds_for("bob"), [])


class TestReminders(CoordinatorTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.coord.set_reminder_offsets(self.alice, [600])

    def test_scheduled_reminder_fires_once(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(2999)
        self.assertEqual(self.channel.kinds_for("alice"), [])

        self.clock.advance(1)
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.CHECK_IN_REMINDER])

        # the sweep backstop sees the claimed marker
        result = self.coord.sweep()
        self.assertEqual(result.reminders_sent, 0)
        self.assertEqual(len(self.channel.kinds_for("alice")), 1)

    def test_check_in_reschedules(self) -> None:
        self.coord.check_in(self.alice)
        self.clock.advance(2000)
        self.coord.check_in(self.alice)

        self.clock.advance(1000)  # old reminder time
        self.assertEqual(self.channel.kinds_for("alice"), [])
        self.clock.advance(2000)  # new reminder time
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.CHECK_IN_REMINDER])

    def test_sweep_backstop_sends_missed_reminder(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.shutdown()  # as if the process restarted and lost its timers
        self.clock.advance(3100)

        result = self.coord.sweep()
        self.assertEqual(result.reminders_sent, 1)
        self.assertEqual(self.coord.sweep().reminders_sent, 0)

    def test_reminder_not_sent_after_expiry(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.shutdown()
        self.clock.advance(3700)
        self.assertEqual(self.coord.sweep().reminders_sent, 0)

    def test_changing_interval_reschedules(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.set_interval(self.alice, 2 * HOUR)
        self.clock.advance(3000)
        self.assertEqual(self.channel.kinds_for("alice"), [])
        self.clock.advance(3600)
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.CHECK_IN_REMINDER])

    def test_restore_reminders(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.shutdown()
        self.assertEqual(self.coord.restore_reminders(), 1)
        self.clock.advance(3000)
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.CHECK_IN_REMINDER])


class TestPingsThroughCoordinator(CoordinatorTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.coord.check_in(self.alice)
        self.ping_events = []
        self.coord.events.subscribe(PingReceived, self.ping_events.append)
        self.coord.events.subscribe(PingCleared, self.ping_events.append)

    def test_ping_and_respond(self) -> None:
        self.coord.ping(self.bob, "alice")
        self.assertEqual(self.channel.kinds_for("alice"), [NotificationKind.PING_RECEIVED])
        self.assertEqual(self.status_seen_by(self.alice, "bob"), ContactStatus.INCOMING_PING)
        self.assertEqual(self.status_seen_by(self.bob, "alice"), ContactStatus.OUTGOING_PING)
        self.assertIsInstance(self.ping_events[0], PingReceived)
        self.assertEqual(self.ping_events[0].edge.owner_id, "alice")
        self.assertIn(
            StatusChanged("alice", "bob", ContactStatus.INCOMING_PING), self.status_events,
        )

        self.coord.respond_to_ping(self.alice, "bob")
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.PING_RESPONDED])
        self.assertEqual(self.status_seen_by(self.alice, "bob"), ContactStatus.NOMINAL)
        self.assertIsInstance(self.ping_events[-1], PingCleared)

    def test_respond_to_all_counts(self) -> None:
        self.coord.ping(self.bob, "alice")
        self.assertEqual(self.coord.respond_to_all_pings(self.alice), 1)
        self.assertEqual(self.coord.respond_to_all_pings(self.alice), 0)
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.PING_RESPONDED])

    def test_clear_ping_notifies_dependent(self) -> None:
        self.coord.ping(self.bob, "alice")
        self.coord.clear_ping(self.bob, "alice")
        self.assertEqual(
            self.channel.kinds_for("alice"),
            [NotificationKind.PING_RECEIVED, NotificationKind.PING_CLEARED],
        )

    def test_dependent_cannot_ping_responder(self) -> None:
        with self.assertRaises(PermissionDenied):
            self.coord.ping(self.alice, "bob")
        self.assertEqual(self.channel.sent, [])


class TestAlertsThroughCoordinator(CoordinatorTestCase):
    def test_alert_notifies_responders(self) -> None:
        for _ in range(4):
            self.coord.arm_alert(self.alice)

        self.assertTrue(self.coord.alert_state(self.alice).active)
        self.assertEqual(self.channel.kinds_for("bob"), [NotificationKind.MANUAL_ALERT])
        self.assertEqual(self.status_seen_by(self.bob, "alice"), ContactStatus.MANUAL_ALERT_ACTIVE)
        self.assertIn(
            StatusChanged("bob", "alice", ContactStatus.MANUAL_ALERT_ACTIVE), self.status_events,
        )

        self.coord.begin_disarm(self.alice)
        self.clock.advance(3)
        self.assertFalse(self.coord.alert_state(self.alice).active)
        self.assertEqual(
            self.channel.kinds_for("bob"),
            [NotificationKind.MANUAL_ALERT, NotificationKind.ALERT_CANCELLED],
        )

    def test_alert_outranks_ping(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.ping(self.bob, "alice")
        self.coord.activate_alert(self.alice)
        self.assertEqual(self.status_seen_by(self.bob, "alice"), ContactStatus.MANUAL_ALERT_ACTIVE)

    def test_responder_cannot_touch_dependents_alert(self) -> None:
        with self.assertRaises(PermissionDenied):
            self.coord.arm_alert(self.bob, "alice")
        with self.assertRaises(PermissionDenied):
            self.coord.deactivate_alert(self.bob, "alice")


class TestContactsAndHistory(CoordinatorTestCase):
    def test_role_change_and_removal_notify(self) -> None:
        self.coord.update_contact_roles(self.alice, "bob", is_responder=True, is_dependent=True)
        self.coord.remove_contact(self.alice, "bob")
        self.assertEqual(
            self.channel.kinds_for("bob"),
            [NotificationKind.CONTACT_ROLE_CHANGED, NotificationKind.CONTACT_REMOVED],
        )
        self.assertEqual(self.coord.contact_statuses(self.bob), [])

    def test_contact_view(self) -> None:
        self.coord.check_in(self.alice)
        (view,) = self.coord.contact_statuses(self.bob)
        d = view.as_dict()
        self.assertEqual(d["contact_id"], "alice")
        self.assertEqual(d["name"], "Alice")
        self.assertEqual(d["status"], "nominal")
        self.assertTrue(d["is_dependent"])
        self.assertEqual(d["expires_at"], 1_000_000.0 + HOUR)

    def test_notification_history(self) -> None:
        self.coord.check_in(self.alice)
        self.coord.ping(self.bob, "alice")
        history = self.coord.notifications(self.alice)
        self.assertEqual(history[0]["kind"], "ping_received")
        self.assertEqual(history[0]["subject_id"], "bob")
        self.assertGreaterEqual(self.coord.mark_notifications_read(self.alice), 1)
        self.assertTrue(all(n["is_read"] for n in self.coord.notifications(self.alice)))


if __name__ == "__main__":
    unittest.main()
