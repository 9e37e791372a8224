"""
LifeSignal check-in tracking.

Expiration is derived from the stored last check-in every time it is asked
for; nothing here caches an expiry.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from lifesignal.db import Store
from lifesignal.errors import InvalidArgument, NotFound
from lifesignal.models import Timestamp, UserRecord, validate_offsets
from lifesignal.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

NEVER_CHECKED_IN_EPOCH = 0.0


def expires_at(user: UserRecord) -> Optional[Timestamp]:
    """lastCheckIn + interval, or None if the user never checked in."""
    return user.expires_at


def is_expired(user: UserRecord, now: Timestamp) -> bool:
    exp = user.expires_at
    return exp is None or now >= exp


def expiration_epoch(user: UserRecord) -> float:
    """
    Identifies the current expiration window.

    Keyed on the check-in itself, so only a new check-in opens a new window.
    Changing the interval moves the deadline but keeps the epoch.
    """
    if user.last_check_in is None:
        return NEVER_CHECKED_IN_EPOCH
    return user.last_check_in


def reminder_times(user: UserRecord) -> List[Tuple[float, Timestamp]]:
    """(offset, due_at) pairs for the current epoch, earliest first."""
    exp = user.expires_at
    if exp is None:
        return []
    return sorted(((off, exp - off) for off in user.reminder_offsets), key=lambda p: p[1])


def due_reminders(user: UserRecord, now: Timestamp) -> List[Tuple[float, Timestamp]]:
    """Reminders whose time has come but whose deadline has not yet passed."""
    exp = user.expires_at
    if exp is None or now >= exp:
        return []
    return [(off, due) for off, due in reminder_times(user) if due <= now]


class CheckInTracker:
    """Per-user check-in timestamp, interval and reminder offsets."""

    def __init__(self, store: Store, retry: RetryPolicy = NO_RETRY) -> None:
        self.store = store
        self.retry = retry

    def _require(self, tx, user_id: str) -> UserRecord:
        user = tx.get_user(user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return user

    def record_check_in(self, user_id: str, now: Timestamp) -> UserRecord:
        def op() -> UserRecord:
            with self.store.transaction() as tx:
                user = self._require(tx, user_id)
                updated = replace(user, last_check_in=now)
                tx.put_user(updated)
                tx.prune_marks(user_id, expiration_epoch(updated))
                return updated
        updated = self.retry.call(op)
        logger.info("check-in recorded for %s, expires at %s", user_id, updated.expires_at)
        return updated

    def set_interval(self, user_id: str, new_interval: float) -> UserRecord:
        new_interval = float(new_interval)
        if new_interval <= 0:
            raise InvalidArgument(f"check-in interval must be positive, got {new_interval}")

        def op() -> UserRecord:
            with self.store.transaction() as tx:
                user = self._require(tx, user_id)
                updated = replace(user, check_in_interval=new_interval)
                tx.put_user(updated)
                return updated
        return self.retry.call(op)

    def set_reminder_offsets(self, user_id: str, offsets: Iterable[float]) -> UserRecord:
        offsets = list(offsets)

        def op() -> UserRecord:
            with self.store.transaction() as tx:
                user = self._require(tx, user_id)
                valid = validate_offsets(offsets, user.check_in_interval)
                updated = replace(user, reminder_offsets=valid)
                tx.put_user(updated)
                return updated
        return self.retry.call(op)

    def get(self, user_id: str) -> UserRecord:
        with self.store.read() as tx:
            return self._require(tx, user_id)

    def is_expired(self, user_id: str, now: Timestamp) -> bool:
        # Re-read on every call so a check-in that just landed is honoured.
        return is_expired(self.get(user_id), now)

    def expires_at(self, user_id: str) -> Optional[Timestamp]:
        return expires_at(self.get(user_id))
