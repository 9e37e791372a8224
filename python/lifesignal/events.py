"""
Outward-facing events raised by the safety core.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Type

from lifesignal.models import ContactStatus, EdgeRecord, Timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    """user_id now sees contact_id with a new derived status."""
    user_id: str
    contact_id: str
    status: ContactStatus


@dataclass(frozen=True)
class PingReceived:
    edge: EdgeRecord  # the dependent's edge about the responder


@dataclass(frozen=True)
class PingCleared:
    edge: EdgeRecord  # the dependent's edge, after clearing


@dataclass(frozen=True)
class AlertActivated:
    user_id: str
    time: Timestamp


@dataclass(frozen=True)
class AlertDeactivated:
    user_id: str
    time: Timestamp


@dataclass(frozen=True)
class CheckInRecorded:
    user_id: str
    time: Timestamp


class EventBus:
    """Synchronous fan-out. A failing listener is logged and skipped."""

    def __init__(self) -> None:
        self._listeners: Dict[type, List[Callable]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, listener: Callable) -> Callable[[], None]:
        with self._lock:
            self._listeners[event_type].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[event_type]:
                    self._listeners[event_type].remove(listener)
        return unsubscribe

    def emit(self, event: object) -> None:
        with self._lock:
            listeners = list(self._listeners.get(type(event), []))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("listener for %s failed", type(event).__name__)
