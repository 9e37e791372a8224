"""
LifeSignal records: users, relationship edges, alert state.

Rows coming out of storage are validated here, once, so the rest of the code
can trust the types.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Union

from lifesignal.errors import InvalidArgument

Timestamp = float
Row = Union[sqlite3.Row, Mapping[str, Any]]


class ContactStatus(str, Enum):
    """Derived per-contact status, highest priority first."""
    MANUAL_ALERT_ACTIVE = "manual_alert_active"
    NON_RESPONSIVE = "non_responsive"
    INCOMING_PING = "incoming_ping"
    OUTGOING_PING = "outgoing_ping"
    NOMINAL = "nominal"


class AlertPhase(str, Enum):
    INACTIVE = "inactive"
    ARMING = "arming"
    ACTIVE = "active"
    DISARMING = "disarming"


@dataclass(frozen=True)
class Session:
    """The user on whose behalf an operation runs."""
    user_id: str


def _opt_float(value: Any) -> Optional[Timestamp]:
    return None if value is None else float(value)


def validate_offsets(offsets: Iterable[float], interval: float) -> FrozenSet[float]:
    """Reminder offsets must be positive and shorter than the interval."""
    if isinstance(offsets, (str, bytes)) or not isinstance(offsets, Iterable):
        raise InvalidArgument("reminder offsets must be a list of seconds")
    result = set()
    for raw in offsets:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise InvalidArgument(f"reminder offset must be a number of seconds, got {raw!r}")
        off = float(raw)
        if off <= 0:
            raise InvalidArgument(f"reminder offset must be positive, got {off}")
        if off >= interval:
            raise InvalidArgument(
                f"reminder offset {off}s must be shorter than the check-in interval {interval}s"
            )
        result.add(off)
    return frozenset(result)


@dataclass(frozen=True)
class UserRecord:
    """A monitored user and their check-in settings."""
    id: str
    check_in_interval: float
    last_check_in: Optional[Timestamp] = None
    reminder_offsets: FrozenSet[float] = field(default_factory=frozenset)
    name: str = ""
    email: Optional[str] = None
    api_token: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidArgument("user id must not be empty")
        if self.check_in_interval <= 0:
            raise InvalidArgument(
                f"check-in interval must be positive, got {self.check_in_interval}"
            )
        validate_offsets(self.reminder_offsets, self.check_in_interval)

    @property
    def expires_at(self) -> Optional[Timestamp]:
        if self.last_check_in is None:
            return None
        return self.last_check_in + self.check_in_interval

    @classmethod
    def from_row(cls, row: Row) -> "UserRecord":
        offsets = json.loads(row["reminder_offsets_json"] or "[]")
        return cls(
            id=str(row["id"]),
            check_in_interval=float(row["check_in_interval_s"]),
            last_check_in=_opt_float(row["last_check_in"]),
            reminder_offsets=frozenset(float(o) for o in offsets),
            name=row["name"] or "",
            email=row["email"],
            api_token=row["api_token"],
        )


@dataclass(frozen=True)
class EdgeRecord:
    """
    One user's view of a relationship with a contact.

    is_responder: the contact responds for the owner.
    is_dependent: the contact depends on the owner.
    """
    owner_id: str
    contact_id: str
    is_responder: bool
    is_dependent: bool
    incoming_ping: Optional[Timestamp] = None
    outgoing_ping: Optional[Timestamp] = None
    manual_alert_mirror: bool = False
    last_updated: Timestamp = 0.0

    def __post_init__(self) -> None:
        if not (self.is_responder or self.is_dependent):
            raise InvalidArgument(
                f"edge {self.owner_id}->{self.contact_id} must carry at least one role"
            )

    @property
    def key(self) -> str:
        return edge_key(self.owner_id, self.contact_id)

    def evolve(self, **changes: Any) -> "EdgeRecord":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: Row) -> "EdgeRecord":
        return cls(
            owner_id=str(row["owner_id"]),
            contact_id=str(row["contact_id"]),
            is_responder=bool(row["is_responder"]),
            is_dependent=bool(row["is_dependent"]),
            incoming_ping=_opt_float(row["incoming_ping"]),
            outgoing_ping=_opt_float(row["outgoing_ping"]),
            manual_alert_mirror=bool(row["manual_alert_mirror"]),
            last_updated=float(row["last_updated"]),
        )


@dataclass(frozen=True)
class AlertState:
    """Manual alert state owned by exactly one user."""
    user_id: str
    active: bool = False
    activated_at: Optional[Timestamp] = None
    deactivated_at: Optional[Timestamp] = None
    arm_progress: float = 0.0
    disarm_progress: float = 0.0

    def __post_init__(self) -> None:
        for name in ("arm_progress", "disarm_progress"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidArgument(f"{name} must be within [0, 1], got {value}")

    @property
    def phase(self) -> AlertPhase:
        if self.active:
            return AlertPhase.DISARMING if self.disarm_progress > 0 else AlertPhase.ACTIVE
        return AlertPhase.ARMING if self.arm_progress > 0 else AlertPhase.INACTIVE

    def evolve(self, **changes: Any) -> "AlertState":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: Row) -> "AlertState":
        return cls(
            user_id=str(row["user_id"]),
            active=bool(row["active"]),
            activated_at=_opt_float(row["activated_at"]),
            deactivated_at=_opt_float(row["deactivated_at"]),
            arm_progress=float(row["arm_progress"]),
            disarm_progress=float(row["disarm_progress"]),
        )


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def edge_key(owner_id: str, contact_id: str) -> str:
    return f"edge:{owner_id}:{contact_id}"


def alert_key(user_id: str) -> str:
    return f"alert:{user_id}"
