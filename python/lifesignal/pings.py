"""
LifeSignal ping exchange.

A responder pings a dependent to ask for a status confirmation. The ping is
recorded twice: outgoing_ping on the responder's edge and incoming_ping on the
dependent's edge. Both are always written together so that
responder->dependent.outgoing_ping == dependent->responder.incoming_ping.
"""

from __future__ import annotations

import logging
from typing import List

from lifesignal.db import Store, Transaction
from lifesignal.errors import NotFound, PermissionDenied
from lifesignal.relationships import Relationship, load_pair
from lifesignal.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)


def _set_ping(tx: Transaction, pair: Relationship, when) -> Relationship:
    """Write one ping timestamp (or None) to both sides of a responder->dependent pair."""
    forward = tx.put_edge(pair.forward.evolve(outgoing_ping=when))
    backward = tx.put_edge(pair.backward.evolve(incoming_ping=when))
    return Relationship(forward=forward, backward=backward)


class PingExchange:
    """Send, answer and cancel pings along relationship edges."""

    def __init__(self, store: Store, clock, retry: RetryPolicy = NO_RETRY) -> None:
        self.store = store
        self.clock = clock
        self.retry = retry

    def ping_dependent(self, responder_id: str, dependent_id: str) -> Relationship:
        """
        Ping a dependent. An outstanding ping is overwritten with the new time.

        Returns the pair as (responder->dependent, dependent->responder).
        """
        def op() -> Relationship:
            now = self.clock.now()
            with self.store.transaction() as tx:
                pair = load_pair(tx, responder_id, dependent_id)
                if not pair.forward.is_dependent:
                    raise PermissionDenied(
                        f"{dependent_id} is not a dependent of {responder_id}"
                    )
                return _set_ping(tx, pair, now)

        rel = self.retry.call(op)
        logger.info("ping %s -> %s", responder_id, dependent_id)
        return rel

    def respond_to_ping(self, dependent_id: str, responder_id: str) -> Relationship:
        """Dependent confirms status for one responder's outstanding ping."""
        def op() -> Relationship:
            with self.store.transaction() as tx:
                pair = load_pair(tx, responder_id, dependent_id)
                if pair.backward.incoming_ping is None:
                    raise NotFound(f"no outstanding ping from {responder_id} to {dependent_id}")
                return _set_ping(tx, pair, None)

        rel = self.retry.call(op)
        logger.info("ping %s -> %s answered", responder_id, dependent_id)
        return rel

    def respond_to_all_pings(self, dependent_id: str) -> List[Relationship]:
        """Answer every outstanding ping. Calling it again clears nothing."""
        def op() -> List[Relationship]:
            cleared = []
            with self.store.transaction() as tx:
                for edge in tx.edges_of(dependent_id):
                    if edge.incoming_ping is None:
                        continue
                    pair = load_pair(tx, edge.contact_id, dependent_id)
                    cleared.append(_set_ping(tx, pair, None))
            return cleared

        cleared = self.retry.call(op)
        if cleared:
            logger.info("%s answered %d ping(s)", dependent_id, len(cleared))
        return cleared

    def clear_ping(self, responder_id: str, dependent_id: str) -> Relationship:
        """Responder withdraws a ping without waiting for an answer."""
        def op() -> Relationship:
            with self.store.transaction() as tx:
                pair = load_pair(tx, responder_id, dependent_id)
                if pair.forward.outgoing_ping is None:
                    raise NotFound(f"no outstanding ping from {responder_id} to {dependent_id}")
                return _set_ping(tx, pair, None)

        rel = self.retry.call(op)
        logger.info("ping %s -> %s withdrawn", responder_id, dependent_id)
        return rel

    def outstanding_incoming(self, user_id: str) -> List[str]:
        return [e.contact_id for e in self.store.edges_of(user_id) if e.incoming_ping is not None]

    def outstanding_outgoing(self, user_id: str) -> List[str]:
        return [e.contact_id for e in self.store.edges_of(user_id) if e.outgoing_ping is not None]
