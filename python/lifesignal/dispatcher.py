"""
LifeSignal notification dispatcher.

Every notification is written to the recipient's history first, then handed
to each delivery channel. Channel failures are retried a few times and then
logged as dropped; nothing here raises into the caller, so a failed delivery
never undoes the state change that caused it.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, Set

from lifesignal.db import Store
from lifesignal.errors import SafetyError
from lifesignal.models import Timestamp
from lifesignal.notify import Notification
from lifesignal.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

Guard = Callable[[], bool]


class NotificationDispatcher:
    """Immediate and scheduled delivery over a set of channels."""

    def __init__(
        self,
        store: Store,
        clock,
        channels: Sequence = (),
        attempts: int = 3,
        store_retry: RetryPolicy = NO_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.clock = clock
        self.channels = list(channels)
        self.delivery_retry = RetryPolicy(
            max_attempts=attempts, initial_delay_s=0.2, max_delay_s=2.0, sleep=sleep,
        )
        self.store_retry = store_retry
        self._scheduled: Set = set()
        self._lock = threading.Lock()

    # === Immediate ===

    def send_now(self, notification: Notification) -> bool:
        """Record and deliver. Returns False if anything was dropped."""
        try:
            recipient = self.store_retry.call(self._record, notification)
        except SafetyError as e:
            logger.error(
                "dropped %s notification for %s: history write failed: %s",
                notification.kind.value, notification.recipient_id, e,
            )
            return False

        delivered = True
        for channel in self.channels:
            name = getattr(channel, "name", type(channel).__name__)
            try:
                self.delivery_retry.call(channel.deliver, notification, recipient)
            except Exception as e:
                delivered = False
                logger.warning(
                    "dropped %s notification for %s via %s after %d attempt(s): %s",
                    notification.kind.value, notification.recipient_id, name,
                    self.delivery_retry.max_attempts, e,
                )
        return delivered

    def _record(self, notification: Notification):
        with self.store.transaction() as tx:
            tx.add_notification(
                notification.recipient_id,
                notification.kind.value,
                notification.subject_id,
                notification.title,
                notification.body,
                notification.data,
            )
            return tx.get_user(notification.recipient_id)

    # === Scheduled ===

    def schedule_at(
        self, when: Timestamp, notification: Notification, guard: Optional[Guard] = None
    ):
        """
        Deliver at `when`. If a guard is given it runs first, at fire time, and
        the notification goes out only if it returns True.
        """
        delay = max(0.0, when - self.clock.now())
        holder = {}

        def fire() -> None:
            with self._lock:
                self._scheduled.discard(holder.get("handle"))
            if guard is not None:
                try:
                    if not guard():
                        return
                except SafetyError as e:
                    logger.error(
                        "scheduled %s notification for %s skipped: %s",
                        notification.kind.value, notification.recipient_id, e,
                    )
                    return
            self.send_now(notification)

        with self._lock:
            handle = self.clock.call_later(delay, fire)
            holder["handle"] = handle
            self._scheduled.add(handle)
        return handle

    def cancel(self, handle) -> None:
        with self._lock:
            self._scheduled.discard(handle)
        handle.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._scheduled)
            self._scheduled.clear()
        for h in handles:
            h.cancel()

    def pending(self) -> int:
        with self._lock:
            return sum(1 for h in self._scheduled if not h.cancelled)

    # === History ===

    def history(self, user_id: str, limit: int = 50) -> List[dict]:
        with self.store.read() as tx:
            rows = tx.recent_notifications(user_id, limit)
        return [
            {
                "id": r["id"],
                "kind": r["kind"],
                "subject_id": r["subject_id"],
                "title": r["title"],
                "body": r["body"],
                "data": json.loads(r["data_json"] or "{}"),
                "created_at": r["created_at"],
                "is_read": bool(r["is_read"]),
            }
            for r in rows
        ]

    def mark_read(self, user_id: str) -> int:
        with self.store.transaction() as tx:
            return tx.mark_notifications_read(user_id)
