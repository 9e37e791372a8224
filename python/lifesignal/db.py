"""
LifeSignal database layer: SQLite-backed storage for users, relationship
edges, alert state, notification markers and notification history.

Design principles:
- Every multi-record write goes through one transaction (BEGIN IMMEDIATE)
- Rows become validated records at this boundary
- Change listeners fire only after a successful commit
- WAL mode for concurrent read/write
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Tuple

from lifesignal.errors import AlreadyExists, Conflict, InvalidArgument, Unavailable
from lifesignal.models import (
    AlertState,
    EdgeRecord,
    Timestamp,
    UserRecord,
    alert_key,
    edge_key,
    user_key,
)

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL DEFAULT '',
  email TEXT,
  api_token TEXT UNIQUE,
  check_in_interval_s REAL NOT NULL CHECK(check_in_interval_s > 0),
  last_check_in REAL,
  reminder_offsets_json TEXT NOT NULL DEFAULT '[]',
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS edges (
  owner_id TEXT NOT NULL,
  contact_id TEXT NOT NULL,
  is_responder INTEGER NOT NULL CHECK(is_responder IN (0, 1)),
  is_dependent INTEGER NOT NULL CHECK(is_dependent IN (0, 1)),
  incoming_ping REAL,
  outgoing_ping REAL,
  manual_alert_mirror INTEGER NOT NULL DEFAULT 0 CHECK(manual_alert_mirror IN (0, 1)),
  last_updated REAL NOT NULL,
  PRIMARY KEY(owner_id, contact_id),
  CHECK(is_responder = 1 OR is_dependent = 1),
  CHECK(owner_id <> contact_id),
  FOREIGN KEY(owner_id) REFERENCES users(id),
  FOREIGN KEY(contact_id) REFERENCES users(id)
);

CREATE INDEX IF NOT EXISTS idx_edges_contact ON edges(contact_id);

CREATE TABLE IF NOT EXISTS alert_states (
  user_id TEXT PRIMARY KEY,
  active INTEGER NOT NULL DEFAULT 0 CHECK(active IN (0, 1)),
  activated_at REAL,
  deactivated_at REAL,
  arm_progress REAL NOT NULL DEFAULT 0,
  disarm_progress REAL NOT NULL DEFAULT 0,
  updated_at REAL NOT NULL,
  FOREIGN KEY(user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS notice_marks (
  kind TEXT NOT NULL,
  user_id TEXT NOT NULL,
  epoch REAL NOT NULL,
  detail TEXT NOT NULL DEFAULT '',
  marked_at REAL NOT NULL,
  PRIMARY KEY(kind, user_id, epoch, detail)
);

CREATE TABLE IF NOT EXISTS notifications (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  recipient_id TEXT NOT NULL,
  kind TEXT NOT NULL,
  subject_id TEXT,
  title TEXT NOT NULL,
  body TEXT NOT NULL,
  data_json TEXT NOT NULL DEFAULT '{}',
  created_at REAL NOT NULL,
  is_read INTEGER NOT NULL DEFAULT 0 CHECK(is_read IN (0, 1))
);

CREATE INDEX IF NOT EXISTS idx_notif_recipient ON notifications(recipient_id, created_at);
"""


def _translate(e: sqlite3.Error) -> Exception:
    msg = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return Conflict(f"storage contention: {e}")
    if isinstance(e, sqlite3.IntegrityError):
        return InvalidArgument(f"storage constraint violated: {e}")
    return Unavailable(f"storage error: {e}")


class Transaction:
    """
    Typed view of one open transaction.

    Writes are staged in SQLite until the surrounding Store.transaction()
    block exits; changed keys are collected so listeners can be told after
    commit.
    """

    def __init__(self, conn: sqlite3.Connection, now: Timestamp) -> None:
        self.conn = conn
        self.now = now
        self.changes: Dict[str, Any] = {}

    # === Users ===

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return UserRecord.from_row(row) if row else None

    def get_user_by_token(self, token: str) -> Optional[UserRecord]:
        row = self.conn.execute("SELECT * FROM users WHERE api_token = ?", (token,)).fetchone()
        return UserRecord.from_row(row) if row else None

    def insert_user(self, user: UserRecord) -> None:
        if self.get_user(user.id) is not None:
            raise AlreadyExists(f"user {user.id} already exists")
        self.conn.execute(
            """INSERT INTO users
               (id, name, email, api_token, check_in_interval_s, last_check_in,
                reminder_offsets_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                user.id, user.name, user.email, user.api_token,
                user.check_in_interval, user.last_check_in,
                json.dumps(sorted(user.reminder_offsets)), self.now, self.now,
            ),
        )
        self.changes[user_key(user.id)] = user

    def put_user(self, user: UserRecord) -> None:
        self.conn.execute(
            """UPDATE users SET name = ?, email = ?, check_in_interval_s = ?,
                  last_check_in = ?, reminder_offsets_json = ?, updated_at = ?
               WHERE id = ?""",
            (
                user.name, user.email, user.check_in_interval, user.last_check_in,
                json.dumps(sorted(user.reminder_offsets)), self.now, user.id,
            ),
        )
        self.changes[user_key(user.id)] = user

    def list_users(self) -> List[UserRecord]:
        rows = self.conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [UserRecord.from_row(r) for r in rows]

    # === Edges ===

    def get_edge(self, owner_id: str, contact_id: str) -> Optional[EdgeRecord]:
        row = self.conn.execute(
            "SELECT * FROM edges WHERE owner_id = ? AND contact_id = ?",
            (owner_id, contact_id),
        ).fetchone()
        return EdgeRecord.from_row(row) if row else None

    def put_edge(self, edge: EdgeRecord) -> EdgeRecord:
        """Insert or replace an edge, stamping last_updated."""
        edge = edge.evolve(last_updated=self.now)
        self.conn.execute(
            """INSERT OR REPLACE INTO edges
               (owner_id, contact_id, is_responder, is_dependent, incoming_ping,
                outgoing_ping, manual_alert_mirror, last_updated)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                edge.owner_id, edge.contact_id, int(edge.is_responder),
                int(edge.is_dependent), edge.incoming_ping, edge.outgoing_ping,
                int(edge.manual_alert_mirror), edge.last_updated,
            ),
        )
        self.changes[edge.key] = edge
        return edge

    def delete_edge(self, owner_id: str, contact_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM edges WHERE owner_id = ? AND contact_id = ?",
            (owner_id, contact_id),
        )
        if cursor.rowcount:
            self.changes[edge_key(owner_id, contact_id)] = None
        return cursor.rowcount > 0

    def edges_of(self, owner_id: str) -> List[EdgeRecord]:
        """Edges owned by a user, i.e. that user's contact list."""
        rows = self.conn.execute(
            "SELECT * FROM edges WHERE owner_id = ? ORDER BY contact_id", (owner_id,)
        ).fetchall()
        return [EdgeRecord.from_row(r) for r in rows]

    def edges_about(self, contact_id: str) -> List[EdgeRecord]:
        """Edges other users hold about this user."""
        rows = self.conn.execute(
            "SELECT * FROM edges WHERE contact_id = ? ORDER BY owner_id", (contact_id,)
        ).fetchall()
        return [EdgeRecord.from_row(r) for r in rows]

    def all_edges(self) -> List[EdgeRecord]:
        rows = self.conn.execute("SELECT * FROM edges ORDER BY owner_id, contact_id").fetchall()
        return [EdgeRecord.from_row(r) for r in rows]

    def dependent_ids(self) -> List[str]:
        """Users that have at least one responder."""
        rows = self.conn.execute(
            "SELECT DISTINCT owner_id FROM edges WHERE is_responder = 1 ORDER BY owner_id"
        ).fetchall()
        return [str(r["owner_id"]) for r in rows]

    # === Alert state ===

    def get_alert(self, user_id: str) -> AlertState:
        """Alert state exists implicitly at zero."""
        row = self.conn.execute(
            "SELECT * FROM alert_states WHERE user_id = ?", (user_id,)
        ).fetchone()
        return AlertState.from_row(row) if row else AlertState(user_id=user_id)

    def put_alert(self, state: AlertState) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO alert_states
               (user_id, active, activated_at, deactivated_at, arm_progress,
                disarm_progress, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                state.user_id, int(state.active), state.activated_at,
                state.deactivated_at, state.arm_progress, state.disarm_progress,
                self.now,
            ),
        )
        self.changes[alert_key(state.user_id)] = state

    def all_alerts(self) -> List[AlertState]:
        rows = self.conn.execute("SELECT * FROM alert_states").fetchall()
        return [AlertState.from_row(r) for r in rows]

    # === Notice markers ===

    def claim_mark(self, kind: str, user_id: str, epoch: float, detail: str = "") -> bool:
        """Record that a notice went out. False if it was already recorded."""
        cursor = self.conn.execute(
            """INSERT OR IGNORE INTO notice_marks (kind, user_id, epoch, detail, marked_at)
               VALUES (?, ?, ?, ?, ?)""",
            (kind, user_id, epoch, detail, self.now),
        )
        return cursor.rowcount > 0

    def has_mark(self, kind: str, user_id: str, epoch: float, detail: str = "") -> bool:
        row = self.conn.execute(
            """SELECT 1 FROM notice_marks
               WHERE kind = ? AND user_id = ? AND epoch = ? AND detail = ?""",
            (kind, user_id, epoch, detail),
        ).fetchone()
        return row is not None

    def prune_marks(self, user_id: str, before_epoch: float) -> int:
        cursor = self.conn.execute(
            "DELETE FROM notice_marks WHERE user_id = ? AND epoch < ?",
            (user_id, before_epoch),
        )
        return cursor.rowcount

    # === Notification history ===

    def add_notification(
        self, recipient_id: str, kind: str, subject_id: Optional[str],
        title: str, body: str, data: Optional[dict] = None,
    ) -> int:
        cursor = self.conn.execute(
            """INSERT INTO notifications
               (recipient_id, kind, subject_id, title, body, data_json, created_at, is_read)
               VALUES (?, ?, ?, ?, ?, ?, ?, 0)""",
            (recipient_id, kind, subject_id, title, body, json.dumps(data or {}), self.now),
        )
        return cursor.lastrowid or 0

    def recent_notifications(self, recipient_id: str, limit: int = 50) -> List[sqlite3.Row]:
        return self.conn.execute(
            """SELECT * FROM notifications WHERE recipient_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (recipient_id, limit),
        ).fetchall()

    def mark_notifications_read(self, recipient_id: str) -> int:
        cursor = self.conn.execute(
            "UPDATE notifications SET is_read = 1 WHERE recipient_id = ? AND is_read = 0",
            (recipient_id,),
        )
        return cursor.rowcount


class Store:
    """
    SQLite-backed storage for LifeSignal.

    Thread-safe via connection-per-operation pattern. Write transactions take
    the database write lock up front (BEGIN IMMEDIATE); contention surfaces as
    Conflict for the caller's retry policy.
    """

    def __init__(self, db_path: str, busy_timeout_s: float = 5.0, clock=None) -> None:
        self.db_path = db_path
        self.busy_timeout_s = busy_timeout_s
        self.clock = clock
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._listeners_lock = threading.Lock()

    def _now(self) -> Timestamp:
        if self.clock is not None:
            return self.clock.now()
        return time.time()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_s,
                check_same_thread=False,
                isolation_level=None,  # transactions are explicit
            )
        except sqlite3.Error as e:
            raise _translate(e) from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Initialize database schema."""
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Transaction]:
        """Apply every operation in the block atomically, or none of them."""
        with self._conn() as conn:
            tx = Transaction(conn, self._now())
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
                yield tx
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise _translate(e) from e
            except BaseException:
                self._rollback(conn)
                raise
        self._publish(tx.changes)

    def read(self) -> ContextManager[Transaction]:
        return self.transaction(write=False)

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    # === Single-record conveniences ===

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.read() as tx:
            return tx.get_user(user_id)

    def get_edge(self, owner_id: str, contact_id: str) -> Optional[EdgeRecord]:
        with self.read() as tx:
            return tx.get_edge(owner_id, contact_id)

    def get_alert(self, user_id: str) -> AlertState:
        with self.read() as tx:
            return tx.get_alert(user_id)

    def edges_of(self, owner_id: str) -> List[EdgeRecord]:
        with self.read() as tx:
            return tx.edges_of(owner_id)

    def create_user(self, user: UserRecord) -> None:
        with self.transaction() as tx:
            tx.insert_user(user)

    # === Change subscriptions ===

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        """Call listener(key, record_or_None) after each commit touching key."""
        with self._listeners_lock:
            self._listeners[key].append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners.get(key, []):
                    self._listeners[key].remove(listener)
        return unsubscribe

    def _publish(self, changes: Dict[str, Any]) -> None:
        if not changes:
            return
        with self._listeners_lock:
            targets: List[Tuple[Listener, str, Any]] = [
                (fn, key, value)
                for key, value in changes.items()
                for fn in list(self._listeners.get(key, []))
            ]
        for fn, key, value in targets:
            try:
                fn(key, value)
            except Exception:
                logger.exception("change listener for %s failed", key)
