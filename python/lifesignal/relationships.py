"""
LifeSignal contact relationships.

A relationship between A and B is stored as two edges, A->B and B->A. This
module is the only writer of role fields, and it always writes both edges in
one transaction:

- A->B.is_responder == B->A.is_dependent
- A->B.is_dependent == B->A.is_responder
- an edge with neither role does not exist
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from lifesignal.db import Store, Transaction
from lifesignal.errors import AlreadyExists, InvalidArgument, NotFound
from lifesignal.models import EdgeRecord
from lifesignal.retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Relationship:
    """One logical relationship, seen from either side."""
    forward: EdgeRecord   # owner -> contact
    backward: EdgeRecord  # contact -> owner

    @property
    def user_ids(self) -> Tuple[str, str]:
        return self.forward.owner_id, self.forward.contact_id

    def view_of(self, user_id: str) -> EdgeRecord:
        if user_id == self.forward.owner_id:
            return self.forward
        if user_id == self.backward.owner_id:
            return self.backward
        raise NotFound(f"user {user_id} is not part of this relationship")


def _check_roles(is_responder: bool, is_dependent: bool) -> None:
    if not (is_responder or is_dependent):
        raise InvalidArgument(
            "a relationship needs at least one role; delete it instead"
        )


def load_pair(tx: Transaction, owner_id: str, contact_id: str) -> Relationship:
    """Both edges of a relationship, or NotFound if either is missing."""
    forward = tx.get_edge(owner_id, contact_id)
    backward = tx.get_edge(contact_id, owner_id)
    if forward is None or backward is None:
        raise NotFound(f"no relationship between {owner_id} and {contact_id}")
    return Relationship(forward=forward, backward=backward)


class RelationshipStore:
    """Creates, updates and removes mirrored edge pairs atomically."""

    def __init__(self, store: Store, retry: RetryPolicy = NO_RETRY) -> None:
        self.store = store
        self.retry = retry

    def add_relationship(
        self, owner_id: str, contact_id: str, is_responder: bool, is_dependent: bool
    ) -> Relationship:
        _check_roles(is_responder, is_dependent)
        if owner_id == contact_id:
            raise InvalidArgument("a user cannot enter a relationship with themself")

        def op() -> Relationship:
            with self.store.transaction() as tx:
                for uid in (owner_id, contact_id):
                    if tx.get_user(uid) is None:
                        raise NotFound(f"user {uid} not found")
                if tx.get_edge(owner_id, contact_id) or tx.get_edge(contact_id, owner_id):
                    raise AlreadyExists(
                        f"relationship between {owner_id} and {contact_id} already exists"
                    )
                forward = tx.put_edge(EdgeRecord(
                    owner_id=owner_id,
                    contact_id=contact_id,
                    is_responder=is_responder,
                    is_dependent=is_dependent,
                    manual_alert_mirror=tx.get_alert(contact_id).active,
                ))
                backward = tx.put_edge(EdgeRecord(
                    owner_id=contact_id,
                    contact_id=owner_id,
                    is_responder=is_dependent,
                    is_dependent=is_responder,
                    manual_alert_mirror=tx.get_alert(owner_id).active,
                ))
                return Relationship(forward=forward, backward=backward)

        rel = self.retry.call(op)
        logger.info(
            "relationship %s->%s created (responder=%s, dependent=%s)",
            owner_id, contact_id, is_responder, is_dependent,
        )
        return rel

    def update_roles(
        self, owner_id: str, contact_id: str, is_responder: bool, is_dependent: bool
    ) -> Relationship:
        _check_roles(is_responder, is_dependent)

        def op() -> Relationship:
            with self.store.transaction() as tx:
                pair = load_pair(tx, owner_id, contact_id)
                forward = pair.forward.evolve(is_responder=is_responder, is_dependent=is_dependent)
                backward = pair.backward.evolve(is_responder=is_dependent, is_dependent=is_responder)
                # A ping only makes sense while the pinger is still a responder.
                if not forward.is_dependent and forward.outgoing_ping is not None:
                    forward = forward.evolve(outgoing_ping=None)
                    backward = backward.evolve(incoming_ping=None)
                if not backward.is_dependent and backward.outgoing_ping is not None:
                    backward = backward.evolve(outgoing_ping=None)
                    forward = forward.evolve(incoming_ping=None)
                return Relationship(forward=tx.put_edge(forward), backward=tx.put_edge(backward))

        rel = self.retry.call(op)
        logger.info(
            "relationship %s->%s roles updated (responder=%s, dependent=%s)",
            owner_id, contact_id, is_responder, is_dependent,
        )
        return rel

    def delete_relationship(self, owner_id: str, contact_id: str) -> Relationship:
        """Remove both edges; returns the pair as it was before deletion."""
        def op() -> Relationship:
            with self.store.transaction() as tx:
                pair = load_pair(tx, owner_id, contact_id)
                tx.delete_edge(owner_id, contact_id)
                tx.delete_edge(contact_id, owner_id)
                return pair

        rel = self.retry.call(op)
        logger.info("relationship %s<->%s deleted", owner_id, contact_id)
        return rel

    def get_relationship(self, owner_id: str, contact_id: str) -> Relationship:
        with self.store.read() as tx:
            return load_pair(tx, owner_id, contact_id)

    def find_relationship(self, owner_id: str, contact_id: str) -> Optional[Relationship]:
        try:
            return self.get_relationship(owner_id, contact_id)
        except NotFound:
            return None

    def contacts_of(self, owner_id: str) -> List[EdgeRecord]:
        return self.store.edges_of(owner_id)

    def responders_of(self, user_id: str) -> List[str]:
        return [e.contact_id for e in self.store.edges_of(user_id) if e.is_responder]

    def dependents_of(self, user_id: str) -> List[str]:
        return [e.contact_id for e in self.store.edges_of(user_id) if e.is_dependent]
