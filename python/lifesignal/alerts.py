"""
LifeSignal manual alert state machine.

    Inactive --arm--> Arming --arm x N--> Active --hold--> Disarming --held long enough--> Inactive
               ^         |                   ^                 |
               +-timeout-+                   +-----release-----+

Arming is a series of discrete actions, each adding `arm_increment` to the
progress; a gap longer than `arm_reset_s` between actions drops progress back
to zero. Disarming is a continuous hold of `disarm_hold_s` seconds; releasing
early leaves the alert active. Both gestures are driven by per-user timers,
not by any UI loop.

Activation and deactivation write the alert state and every contact's mirror
flag in one transaction, and are single-flight per user.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Set

from lifesignal.config import SafetyConfig
from lifesignal.clock import TimerRegistry
from lifesignal.db import Store
from lifesignal.errors import Conflict, NotFound, PermissionDenied
from lifesignal.events import AlertActivated, AlertDeactivated, EventBus
from lifesignal.models import AlertState, Timestamp
from lifesignal.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

ARM_RESET = "arm_reset"
DISARM_HOLD = "disarm_hold"

# Four additions of 0.25 must count as a full arm despite float rounding.
_EPSILON = 1e-9


class AlertStateMachine:
    """Arming, activation, disarming and deactivation of a user's manual alert."""

    def __init__(
        self,
        store: Store,
        timers: TimerRegistry,
        events: EventBus,
        config: Optional[SafetyConfig] = None,
        retry: RetryPolicy = NO_RETRY,
    ) -> None:
        self.store = store
        self.timers = timers
        self.clock = timers.clock
        self.events = events
        self.config = config or SafetyConfig()
        self.retry = retry
        self._holds: Dict[str, Timestamp] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._inflight: Set[str] = set()
        self._inflight_guard = threading.Lock()

    def _lock(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.RLock())

    @staticmethod
    def _authorize(user_id: str, actor_id: Optional[str]) -> None:
        if actor_id is not None and actor_id != user_id:
            raise PermissionDenied(f"{actor_id} may not change the alert of {user_id}")

    def _require_user(self, user_id: str) -> None:
        if self.store.get_user(user_id) is None:
            raise NotFound(f"user {user_id} not found")

    def _save(self, state: AlertState) -> AlertState:
        def op() -> AlertState:
            with self.store.transaction() as tx:
                tx.put_alert(state)
            return state
        return self.retry.call(op)

    # === Queries ===

    def state(self, user_id: str) -> AlertState:
        """Stored state with the live disarm progress of any hold in progress."""
        state = self.store.get_alert(user_id)
        progress = self.disarm_progress(user_id)
        return state.evolve(disarm_progress=progress) if progress else state

    def disarm_progress(self, user_id: str) -> float:
        started = self._holds.get(user_id)
        if started is None:
            return 0.0
        elapsed = self.clock.now() - started
        return max(0.0, min(1.0, elapsed / self.config.disarm_hold_s))

    # === Arming ===

    def arm(self, user_id: str, actor_id: Optional[str] = None) -> AlertState:
        """One arm action. No-op while the alert is already active."""
        self._authorize(user_id, actor_id)
        self._require_user(user_id)
        with self._lock(user_id):
            state = self.store.get_alert(user_id)
            if state.active:
                return state
            progress = min(1.0, state.arm_progress + self.config.arm_increment)
            if progress >= 1.0 - _EPSILON:
                # activation clears arm_progress in the same write; on Conflict
                # the earlier taps stay and the pending reset still applies
                state = self.activate(user_id)
                self.timers.cancel(user_id, ARM_RESET)
                return state
            state = self._save(state.evolve(arm_progress=progress))
            self.timers.start(
                user_id, ARM_RESET, self.config.arm_reset_s,
                lambda: self._reset_arm(user_id),
            )
            logger.debug("alert arming for %s at %.2f", user_id, progress)
            return state

    def _reset_arm(self, user_id: str) -> None:
        with self._lock(user_id):
            state = self.store.get_alert(user_id)
            if state.active or state.arm_progress == 0:
                return
            self._save(state.evolve(arm_progress=0.0))
            logger.debug("alert arming for %s timed out", user_id)

    # === Disarming ===

    def begin_disarm(self, user_id: str, actor_id: Optional[str] = None) -> AlertState:
        """Start the hold. No-op unless the alert is active."""
        self._authorize(user_id, actor_id)
        with self._lock(user_id):
            state = self.store.get_alert(user_id)
            if not state.active or user_id in self._holds:
                return self.state(user_id)
            started = self.clock.now()
            self._holds[user_id] = started
            self.timers.start(
                user_id, DISARM_HOLD, self.config.disarm_hold_s,
                lambda: self._complete_disarm(user_id, started),
            )
            return self.state(user_id)

    def release_disarm(self, user_id: str, actor_id: Optional[str] = None) -> AlertState:
        """End the hold. Deactivates only if it was held for the full duration."""
        self._authorize(user_id, actor_id)
        with self._lock(user_id):
            progress = self.disarm_progress(user_id)
            started = self._holds.pop(user_id, None)
            self.timers.cancel(user_id, DISARM_HOLD)
            if started is not None and progress >= 1.0 - _EPSILON:
                return self.deactivate(user_id)
            return self.store.get_alert(user_id)

    def _complete_disarm(self, user_id: str, started: Timestamp) -> None:
        with self._lock(user_id):
            if self._holds.get(user_id) != started:
                return
            del self._holds[user_id]
            self.deactivate(user_id)

    # === Transitions ===

    def _begin_flight(self, user_id: str) -> None:
        with self._inflight_guard:
            if user_id in self._inflight:
                raise Conflict(f"an alert change for {user_id} is already in progress")
            self._inflight.add(user_id)

    def _end_flight(self, user_id: str) -> None:
        with self._inflight_guard:
            self._inflight.discard(user_id)

    def _transition(self, user_id: str, active: bool) -> AlertState:
        now = self.clock.now()

        def op():
            with self.store.transaction() as tx:
                state = tx.get_alert(user_id)
                if state.active == active:
                    return state, False
                if active:
                    new = state.evolve(active=True, activated_at=now,
                                       arm_progress=0.0, disarm_progress=0.0)
                else:
                    new = state.evolve(active=False, deactivated_at=now,
                                       arm_progress=0.0, disarm_progress=0.0)
                tx.put_alert(new)
                for edge in tx.edges_about(user_id):
                    tx.put_edge(edge.evolve(manual_alert_mirror=active))
                return new, True

        self._begin_flight(user_id)
        try:
            state, changed = self.retry.call(op)
        finally:
            self._end_flight(user_id)

        if changed:
            if active:
                logger.info("manual alert activated for %s", user_id)
                self.events.emit(AlertActivated(user_id=user_id, time=now))
            else:
                logger.info("manual alert deactivated for %s", user_id)
                self.events.emit(AlertDeactivated(user_id=user_id, time=now))
        return state

    def activate(self, user_id: str, actor_id: Optional[str] = None) -> AlertState:
        self._authorize(user_id, actor_id)
        self._require_user(user_id)
        self.timers.cancel(user_id, ARM_RESET)
        return self._transition(user_id, True)

    def deactivate(self, user_id: str, actor_id: Optional[str] = None) -> AlertState:
        self._authorize(user_id, actor_id)
        self._require_user(user_id)
        with self._lock(user_id):
            self._holds.pop(user_id, None)
        self.timers.cancel(user_id, DISARM_HOLD)
        return self._transition(user_id, False)
