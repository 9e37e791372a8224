"""
LifeSignal safety coordinator: the one entry point callers use.

- Derives each contact's status from edges and check-in state
- Sends immediate notifications for pings, alerts and contact changes
- Schedules check-in reminders and runs the periodic expiry sweep
- Every user-facing operation takes an explicit Session

Sweep guarantees:
- Expiry is re-read from storage at sweep time, never from a cached value
- A dependent's responders hear about one expiration epoch at most once,
  because the "expired" marker is claimed before anything is sent
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from lifesignal.alerts import AlertStateMachine
from lifesignal.checkin import (
    CheckInTracker,
    due_reminders,
    expiration_epoch,
    is_expired,
    reminder_times,
)
from lifesignal.clock import SystemClock, TimerRegistry
from lifesignal.config import SafetyConfig
from lifesignal.db import Store
from lifesignal.dispatcher import NotificationDispatcher
from lifesignal.errors import NotFound, SafetyError
from lifesignal.events import (
    AlertActivated,
    AlertDeactivated,
    CheckInRecorded,
    EventBus,
    PingCleared,
    PingReceived,
    StatusChanged,
)
from lifesignal.models import (
    AlertState,
    ContactStatus,
    EdgeRecord,
    Session,
    Timestamp,
    UserRecord,
    validate_offsets,
)
from lifesignal.notify import Notification, NotificationKind
from lifesignal.pings import PingExchange
from lifesignal.relationships import Relationship, RelationshipStore

logger = logging.getLogger(__name__)

EXPIRED_MARK = "expired"
REMINDER_MARK = "reminder"


def derive_status(edge: EdgeRecord, contact: Optional[UserRecord], now: Timestamp) -> ContactStatus:
    """Highest-priority status of one contact, as seen by the edge owner."""
    if edge.manual_alert_mirror:
        return ContactStatus.MANUAL_ALERT_ACTIVE
    if edge.is_dependent and contact is not None and is_expired(contact, now):
        return ContactStatus.NON_RESPONSIVE
    if edge.incoming_ping is not None:
        return ContactStatus.INCOMING_PING
    if edge.outgoing_ping is not None:
        return ContactStatus.OUTGOING_PING
    return ContactStatus.NOMINAL


def _offset_detail(offset: float) -> str:
    return f"{offset:g}"


def _describe(seconds: float) -> str:
    if seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return f"{hours} hour" + ("s" if hours != 1 else "")
    if seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute" + ("s" if minutes != 1 else "")
    return f"{seconds:g} seconds"


@dataclass(frozen=True)
class ContactView:
    """A contact as the owner sees it."""
    edge: EdgeRecord
    status: ContactStatus
    name: str
    expires_at: Optional[Timestamp]

    def as_dict(self) -> dict:
        e = self.edge
        return {
            "contact_id": e.contact_id,
            "name": self.name,
            "status": self.status.value,
            "is_responder": e.is_responder,
            "is_dependent": e.is_dependent,
            "incoming_ping": e.incoming_ping,
            "outgoing_ping": e.outgoing_ping,
            "manual_alert": e.manual_alert_mirror,
            "expires_at": self.expires_at,
            "last_updated": e.last_updated,
        }


@dataclass
class SweepResult:
    dependents_checked: int = 0
    expired_notified: int = 0
    reminders_sent: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return {
            "dependents_checked": self.dependents_checked,
            "expired_notified": self.expired_notified,
            "reminders_sent": self.reminders_sent,
            "failures": self.failures,
        }


class SafetyCoordinator:
    """Ties the components together behind Session-scoped operations."""

    def __init__(
        self,
        store: Store,
        clock=None,
        dispatcher: Optional[NotificationDispatcher] = None,
        events: Optional[EventBus] = None,
        config: Optional[SafetyConfig] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or SafetyConfig()
        self.retry = self.config.retry_policy()
        self.events = events or EventBus()
        self.timers = TimerRegistry(self.clock)
        self.dispatcher = dispatcher or NotificationDispatcher(
            store, self.clock, attempts=self.config.notify_attempts, store_retry=self.retry,
        )

        self.checkins = CheckInTracker(store, self.retry)
        self.relationships = RelationshipStore(store, self.retry)
        self.pings = PingExchange(store, self.clock, self.retry)
        self.alerts = AlertStateMachine(store, self.timers, self.events, self.config, self.retry)

        self._reminders: Dict[str, List] = {}
        self._reminders_lock = threading.Lock()

        self.events.subscribe(AlertActivated, self._on_alert_activated)
        self.events.subscribe(AlertDeactivated, self._on_alert_deactivated)

    # === Users ===

    def create_user(
        self,
        user_id: str,
        name: str = "",
        email: Optional[str] = None,
        interval: Optional[float] = None,
        reminder_offsets: Optional[Iterable[float]] = None,
    ) -> UserRecord:
        """Create a user with a fresh API token."""
        if reminder_offsets is None:
            reminder_offsets = self.config.default_reminder_offsets
        interval = float(self.config.default_interval_s if interval is None else interval)
        user = UserRecord(
            id=user_id,
            check_in_interval=interval,
            reminder_offsets=validate_offsets(reminder_offsets, interval),
            name=name,
            email=email,
            api_token=secrets.token_urlsafe(24),
        )
        self.retry.call(self.store.create_user, user)
        logger.info("user %s created", user_id)
        return user

    def session_for_token(self, token: str) -> Optional[Session]:
        if not token:
            return None
        with self.store.read() as tx:
            user = tx.get_user_by_token(token)
        return Session(user.id) if user else None

    def user(self, session: Session) -> UserRecord:
        return self.checkins.get(session.user_id)

    def _name(self, user_id: str) -> str:
        user = self.store.get_user(user_id)
        return (user.name or user.id) if user else user_id

    # === Check-in ===

    def check_in(self, session: Session) -> UserRecord:
        uid = session.user_id
        now = self.clock.now()
        before = self.checkins.get(uid)
        was_expired = before.last_check_in is not None and is_expired(before, now)
        user = self.checkins.record_check_in(uid, now)
        self.events.emit(CheckInRecorded(user_id=uid, time=now))
        self._schedule_reminders(user)
        if was_expired:
            self._announce_recovery(user, now)
        return user

    def set_interval(self, session: Session, interval: float) -> UserRecord:
        user = self.checkins.set_interval(session.user_id, interval)
        self._schedule_reminders(user)
        return user

    def set_reminder_offsets(self, session: Session, offsets: Iterable[float]) -> UserRecord:
        user = self.checkins.set_reminder_offsets(session.user_id, offsets)
        self._schedule_reminders(user)
        return user

    def _announce_recovery(self, user: UserRecord, now: Timestamp) -> None:
        name = user.name or user.id
        for edge in self.store.edges_of(user.id):
            if not edge.is_responder:
                continue
            self._notify(
                NotificationKind.CHECKED_IN, edge.contact_id, user.id,
                f"{name} checked in",
                f"{name} has checked in again and is no longer overdue.",
            )
            self._emit_status(edge.contact_id, user.id, now)

    # === Reminders ===

    def _cancel_reminders(self, user_id: str) -> None:
        with self._reminders_lock:
            handles = self._reminders.pop(user_id, [])
        for handle in handles:
            self.dispatcher.cancel(handle)

    def _schedule_reminders(self, user: UserRecord) -> int:
        """Replace the user's pending reminders with ones for the current epoch."""
        self._cancel_reminders(user.id)
        now = self.clock.now()
        epoch = expiration_epoch(user)
        handles = []
        for offset, due in reminder_times(user):
            if due <= now:
                continue
            handles.append(self.dispatcher.schedule_at(
                due,
                self._reminder(user, offset, due),
                guard=lambda offset=offset: self._reminder_still_due(
                    user.id, epoch, user.expires_at, offset),
            ))
        with self._reminders_lock:
            self._reminders[user.id] = handles
        return len(handles)

    def restore_reminders(self) -> int:
        """Schedule reminders for every user, e.g. after a restart."""
        with self.store.read() as tx:
            users = tx.list_users()
        return sum(self._schedule_reminders(u) for u in users)

    def _reminder_still_due(
        self, user_id: str, epoch: float, deadline: Optional[Timestamp], offset: float,
    ) -> bool:
        user = self.store.get_user(user_id)
        if user is None or expiration_epoch(user) != epoch or user.expires_at != deadline:
            return False
        if is_expired(user, self.clock.now()):
            return False
        return self._claim(REMINDER_MARK, user_id, epoch, _offset_detail(offset))

    def _reminder(self, user: UserRecord, offset: float, due: Timestamp) -> Notification:
        return Notification(
            kind=NotificationKind.CHECK_IN_REMINDER,
            recipient_id=user.id,
            subject_id=user.id,
            title="Check-in reminder",
            body=f"Your check-in expires in {_describe(offset)}. Check in to let your responders know you are safe.",
            created_at=due,
            data={"offset": offset, "expires_at": user.expires_at},
        )

    def _claim(self, kind: str, user_id: str, epoch: float, detail: str = "") -> bool:
        def op() -> bool:
            with self.store.transaction() as tx:
                return tx.claim_mark(kind, user_id, epoch, detail)
        return self.retry.call(op)

    # === Contacts ===

    def contact_statuses(self, session: Session) -> List[ContactView]:
        now = self.clock.now()
        views = []
        with self.store.read() as tx:
            for edge in tx.edges_of(session.user_id):
                contact = tx.get_user(edge.contact_id)
                views.append(ContactView(
                    edge=edge,
                    status=derive_status(edge, contact, now),
                    name=(contact.name or contact.id) if contact else edge.contact_id,
                    expires_at=contact.expires_at if contact else None,
                ))
        return views

    def status_of(self, user_id: str, contact_id: str, now: Optional[Timestamp] = None) -> ContactStatus:
        now = self.clock.now() if now is None else now
        with self.store.read() as tx:
            edge = tx.get_edge(user_id, contact_id)
            if edge is None:
                raise NotFound(f"{contact_id} is not a contact of {user_id}")
            return derive_status(edge, tx.get_user(contact_id), now)

    def _emit_status(self, user_id: str, contact_id: str, now: Optional[Timestamp] = None) -> None:
        try:
            status = self.status_of(user_id, contact_id, now)
        except NotFound:
            return
        self.events.emit(StatusChanged(user_id=user_id, contact_id=contact_id, status=status))

    def _emit_pair(self, rel: Relationship) -> None:
        a, b = rel.user_ids
        now = self.clock.now()
        self._emit_status(a, b, now)
        self._emit_status(b, a, now)

    def add_contact(
        self, session: Session, contact_id: str, is_responder: bool, is_dependent: bool
    ) -> Relationship:
        uid = session.user_id
        rel = self.relationships.add_relationship(uid, contact_id, is_responder, is_dependent)
        name = self._name(uid)
        self._notify(
            NotificationKind.CONTACT_ADDED, contact_id, uid,
            f"{name} added you as a contact",
            self._roles_text(rel.backward, name),
        )
        self._emit_pair(rel)
        return rel

    def update_contact_roles(
        self, session: Session, contact_id: str, is_responder: bool, is_dependent: bool
    ) -> Relationship:
        uid = session.user_id
        rel = self.relationships.update_roles(uid, contact_id, is_responder, is_dependent)
        name = self._name(uid)
        self._notify(
            NotificationKind.CONTACT_ROLE_CHANGED, contact_id, uid,
            f"{name} changed your roles",
            self._roles_text(rel.backward, name),
        )
        self._emit_pair(rel)
        return rel

    def remove_contact(self, session: Session, contact_id: str) -> Relationship:
        uid = session.user_id
        rel = self.relationships.delete_relationship(uid, contact_id)
        name = self._name(uid)
        self._notify(
            NotificationKind.CONTACT_REMOVED, contact_id, uid,
            f"{name} removed you as a contact",
            f"You are no longer connected with {name}.",
        )
        return rel

    @staticmethod
    def _roles_text(edge: EdgeRecord, name: str) -> str:
        # edge is the recipient's own view of the relationship
        roles = []
        if edge.is_dependent:
            roles.append(f"you are now a responder for {name}")
        if edge.is_responder:
            roles.append(f"{name} is now a responder for you")
        text = "; ".join(roles)
        return text[:1].upper() + text[1:] + "."

    # === Pings ===

    def ping(self, session: Session, dependent_id: str) -> Relationship:
        uid = session.user_id
        rel = self.pings.ping_dependent(uid, dependent_id)
        name = self._name(uid)
        self._notify(
            NotificationKind.PING_RECEIVED, dependent_id, uid,
            f"{name} pinged you",
            f"{name} is asking you to confirm you are safe.",
        )
        self.events.emit(PingReceived(edge=rel.backward))
        self._emit_pair(rel)
        return rel

    def respond_to_ping(self, session: Session, responder_id: str) -> Relationship:
        uid = session.user_id
        rel = self.pings.respond_to_ping(uid, responder_id)
        self._after_response(uid, rel)
        return rel

    def respond_to_all_pings(self, session: Session) -> int:
        uid = session.user_id
        cleared = self.pings.respond_to_all_pings(uid)
        for rel in cleared:
            self._after_response(uid, rel)
        return len(cleared)

    def _after_response(self, dependent_id: str, rel: Relationship) -> None:
        name = self._name(dependent_id)
        self._notify(
            NotificationKind.PING_RESPONDED, rel.forward.owner_id, dependent_id,
            f"{name} responded to your ping",
            f"{name} confirmed they are safe.",
        )
        self.events.emit(PingCleared(edge=rel.backward))
        self._emit_pair(rel)

    def clear_ping(self, session: Session, dependent_id: str) -> Relationship:
        uid = session.user_id
        rel = self.pings.clear_ping(uid, dependent_id)
        name = self._name(uid)
        self._notify(
            NotificationKind.PING_CLEARED, dependent_id, uid,
            f"{name} withdrew their ping",
            f"{name} no longer needs a response.",
        )
        self.events.emit(PingCleared(edge=rel.backward))
        self._emit_pair(rel)
        return rel

    # === Manual alert ===

    def arm_alert(self, session: Session, user_id: Optional[str] = None) -> AlertState:
        return self.alerts.arm(user_id or session.user_id, actor_id=session.user_id)

    def begin_disarm(self, session: Session, user_id: Optional[str] = None) -> AlertState:
        return self.alerts.begin_disarm(user_id or session.user_id, actor_id=session.user_id)

    def release_disarm(self, session: Session, user_id: Optional[str] = None) -> AlertState:
        return self.alerts.release_disarm(user_id or session.user_id, actor_id=session.user_id)

    def activate_alert(self, session: Session, user_id: Optional[str] = None) -> AlertState:
        return self.alerts.activate(user_id or session.user_id, actor_id=session.user_id)

    def deactivate_alert(self, session: Session, user_id: Optional[str] = None) -> AlertState:
        return self.alerts.deactivate(user_id or session.user_id, actor_id=session.user_id)

    def alert_state(self, session: Session) -> AlertState:
        return self.alerts.state(session.user_id)

    def _alert_audience(self, user_id: str) -> List[EdgeRecord]:
        with self.store.read() as tx:
            return tx.edges_about(user_id)

    def _on_alert_activated(self, event: AlertActivated) -> None:
        name = self._name(event.user_id)
        for edge in self._alert_audience(event.user_id):
            if edge.is_dependent:
                self._notify(
                    NotificationKind.MANUAL_ALERT, edge.owner_id, event.user_id,
                    f"{name} raised an alert",
                    f"{name} has activated a manual alert and may need help.",
                    {"activated_at": event.time},
                )
            self._emit_status(edge.owner_id, event.user_id, event.time)

    def _on_alert_deactivated(self, event: AlertDeactivated) -> None:
        name = self._name(event.user_id)
        for edge in self._alert_audience(event.user_id):
            if edge.is_dependent:
                self._notify(
                    NotificationKind.ALERT_CANCELLED, edge.owner_id, event.user_id,
                    f"{name} cancelled their alert",
                    f"{name} has deactivated their manual alert.",
                    {"deactivated_at": event.time},
                )
            self._emit_status(edge.owner_id, event.user_id, event.time)

    # === Sweep ===

    def sweep(self, now: Optional[Timestamp] = None) -> SweepResult:
        """
        Notify responders of newly expired dependents and send due reminders.

        Safe to re-run at any time: markers claimed in earlier runs suppress
        repeats, so a sweep that failed half-way can simply run again.
        """
        now = self.clock.now() if now is None else now
        result = SweepResult()

        with self.store.read() as tx:
            dependents = tx.dependent_ids()
            user_ids = [u.id for u in tx.list_users()]

        for dep_id in dependents:
            result.dependents_checked += 1
            try:
                if self._sweep_expiry(dep_id, now):
                    result.expired_notified += 1
            except SafetyError as e:
                result.failures += 1
                logger.error("sweep: expiry check for %s failed: %s", dep_id, e)

        for user_id in user_ids:
            try:
                result.reminders_sent += self._sweep_reminders(user_id, now)
            except SafetyError as e:
                result.failures += 1
                logger.error("sweep: reminders for %s failed: %s", user_id, e)

        if result.expired_notified or result.reminders_sent or result.failures:
            logger.info("sweep: %s", result.as_dict())
        return result

    def _sweep_expiry(self, dependent_id: str, now: Timestamp) -> bool:
        # Re-read so a check-in that just landed wins over this sweep.
        user = self.store.get_user(dependent_id)
        if user is None or not is_expired(user, now):
            return False
        epoch = expiration_epoch(user)
        if not self._claim(EXPIRED_MARK, dependent_id, epoch):
            return False

        name = user.name or user.id
        if user.last_check_in is None:
            body = f"{name} has not checked in yet."
        else:
            body = f"{name} missed their check-in. Try to reach them."
        for edge in self.store.edges_of(dependent_id):
            if not edge.is_responder:
                continue
            self._notify(
                NotificationKind.NON_RESPONSIVE, edge.contact_id, dependent_id,
                f"{name} is non-responsive", body,
                {"expired_at": user.expires_at},
            )
            self._emit_status(edge.contact_id, dependent_id, now)
        logger.warning("%s is non-responsive (epoch %s)", dependent_id, epoch)
        return True

    def _sweep_reminders(self, user_id: str, now: Timestamp) -> int:
        user = self.store.get_user(user_id)
        if user is None:
            return 0
        epoch = expiration_epoch(user)
        sent = 0
        for offset, due in due_reminders(user, now):
            if self._claim(REMINDER_MARK, user_id, epoch, _offset_detail(offset)):
                self.dispatcher.send_now(self._reminder(user, offset, due))
                sent += 1
        return sent

    # === Notifications ===

    def _notify(
        self,
        kind: NotificationKind,
        recipient_id: str,
        subject_id: Optional[str],
        title: str,
        body: str,
        data: Optional[dict] = None,
    ) -> None:
        self.dispatcher.send_now(Notification(
            kind=kind,
            recipient_id=recipient_id,
            subject_id=subject_id,
            title=title,
            body=body,
            created_at=self.clock.now(),
            data=data or {},
        ))

    def notifications(self, session: Session, limit: int = 50) -> List[dict]:
        return self.dispatcher.history(session.user_id, limit)

    def mark_notifications_read(self, session: Session) -> int:
        return self.dispatcher.mark_read(session.user_id)

    def shutdown(self) -> None:
        """Cancel every pending reminder."""
        with self._reminders_lock:
            self._reminders.clear()
        self.dispatcher.cancel_all()
