"""
LifeSignal: mutual safety monitoring.

Dependents confirm they are safe by checking in; responders are told when a
check-in lapses, when a dependent raises a manual alert, and when a ping they
sent is answered. LifeSignal guarantees:
- Both sides of a relationship always agree on roles and pings
- Expiry is computed from the latest check-in, never cached
- Responders hear about each missed check-in at most once
"""

__version__ = "0.1.0"

from lifesignal.clock import ManualClock, SystemClock
from lifesignal.config import SafetyConfig
from lifesignal.coordinator import SafetyCoordinator, derive_status
from lifesignal.db import Store
from lifesignal.errors import (
    AlreadyExists,
    Conflict,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    SafetyError,
    Unavailable,
)
from lifesignal.models import (
    AlertState,
    ContactStatus,
    EdgeRecord,
    Session,
    UserRecord,
)

__all__ = [
    "ManualClock",
    "SystemClock",
    "SafetyConfig",
    "SafetyCoordinator",
    "derive_status",
    "Store",
    "SafetyError",
    "InvalidArgument",
    "NotFound",
    "AlreadyExists",
    "PermissionDenied",
    "Conflict",
    "Unavailable",
    "AlertState",
    "ContactStatus",
    "EdgeRecord",
    "Session",
    "UserRecord",
]
