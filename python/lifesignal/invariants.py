"""
LifeSignal invariants: whole-database consistency checks.

These assertions enforce the relationship contract:
- Every edge has a mirror, and the mirror carries the opposite roles
- A ping is recorded on both sides or on neither
- Every edge carries at least one role
- An edge's alert mirror matches the contact's own alert flag

Run with: python -m lifesignal.invariants --db lifesignal.db
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from lifesignal.db import Store


@dataclass
class InvariantResult:
    """Result of an invariant check."""
    name: str
    passed: bool
    message: str
    evidence: Optional[dict] = None


def _edge_rows(store: Store) -> Dict[Tuple[str, str], dict]:
    # Raw rows, so that a malformed edge is reported rather than rejected on load.
    with store._conn() as conn:
        rows = conn.execute("SELECT * FROM edges").fetchall()
    return {(r["owner_id"], r["contact_id"]): dict(r) for r in rows}


def check_role_mirror(store: Store) -> List[InvariantResult]:
    """
    INV1: A->B exists iff B->A exists, with
    A->B.is_responder == B->A.is_dependent and A->B.is_dependent == B->A.is_responder.
    """
    results = []
    edges = _edge_rows(store)

    for (owner, contact), edge in sorted(edges.items()):
        name = f"inv_role_mirror:{owner}:{contact}"
        mirror = edges.get((contact, owner))
        if mirror is None:
            results.append(InvariantResult(
                name=name,
                passed=False,
                message="Edge has no mirror",
            ))
            continue

        if (bool(edge["is_responder"]) == bool(mirror["is_dependent"])
                and bool(edge["is_dependent"]) == bool(mirror["is_responder"])):
            results.append(InvariantResult(
                name=name,
                passed=True,
                message="Roles mirrored",
            ))
        else:
            results.append(InvariantResult(
                name=name,
                passed=False,
                message="Roles not mirrored",
                evidence={
                    "is_responder": edge["is_responder"],
                    "is_dependent": edge["is_dependent"],
                    "mirror_is_responder": mirror["is_responder"],
                    "mirror_is_dependent": mirror["is_dependent"],
                },
            ))

    return results


def check_ping_mirror(store: Store) -> List[InvariantResult]:
    """
    INV2: A->B.outgoing_ping == B->A.incoming_ping, including both null.
    """
    results = []
    edges = _edge_rows(store)

    for (owner, contact), edge in sorted(edges.items()):
        mirror = edges.get((contact, owner))
        if mirror is None:
            continue  # reported by check_role_mirror

        if edge["outgoing_ping"] == mirror["incoming_ping"]:
            results.append(InvariantResult(
                name=f"inv_ping_mirror:{owner}:{contact}",
                passed=True,
                message="Ping mirrored",
            ))
        else:
            results.append(InvariantResult(
                name=f"inv_ping_mirror:{owner}:{contact}",
                passed=False,
                message="Outgoing ping does not match the mirror's incoming ping",
                evidence={
                    "outgoing_ping": edge["outgoing_ping"],
                    "mirror_incoming_ping": mirror["incoming_ping"],
                },
            ))

    return results


def check_role_present(store: Store) -> List[InvariantResult]:
    """
    INV3: No edge exists with neither role.
    """
    results = []

    for (owner, contact), edge in sorted(_edge_rows(store).items()):
        if edge["is_responder"] or edge["is_dependent"]:
            continue
        results.append(InvariantResult(
            name=f"inv_role_present:{owner}:{contact}",
            passed=False,
            message="Edge carries no role",
        ))

    if not results:
        results.append(InvariantResult(
            name="inv_role_present",
            passed=True,
            message="Every edge carries a role",
        ))
    return results


def check_alert_mirror(store: Store) -> List[InvariantResult]:
    """
    INV4: Every edge about a user mirrors that user's alert flag.
    """
    results = []

    with store.read() as tx:
        active = {a.user_id for a in tx.all_alerts() if a.active}
    edges = _edge_rows(store)

    for (owner, contact), edge in sorted(edges.items()):
        expected = contact in active
        if bool(edge["manual_alert_mirror"]) == expected:
            results.append(InvariantResult(
                name=f"inv_alert_mirror:{owner}:{contact}",
                passed=True,
                message="Alert mirror matches",
            ))
        else:
            results.append(InvariantResult(
                name=f"inv_alert_mirror:{owner}:{contact}",
                passed=False,
                message=f"Mismatch: mirror={bool(edge['manual_alert_mirror'])}, contact_active={expected}",
            ))

    return results


def check_all_invariants(store: Store) -> Tuple[int, int, List[InvariantResult]]:
    """Run all invariant checks. Returns (passed, failed, results)."""
    all_results = []

    all_results.extend(check_role_mirror(store))
    all_results.extend(check_ping_mirror(store))
    all_results.extend(check_role_present(store))
    all_results.extend(check_alert_mirror(store))

    passed = sum(1 for r in all_results if r.passed)
    failed = sum(1 for r in all_results if not r.passed)

    return passed, failed, all_results


def main() -> None:
    import argparse

    ap = argparse.ArgumentParser(description="Check LifeSignal invariants")
    ap.add_argument("--db", required=True, help="SQLite database path")
    ap.add_argument("--verbose", "-v", action="store_true", help="Show all results")
    args = ap.parse_args()

    store = Store(args.db)
    passed, failed, results = check_all_invariants(store)

    print(f"Invariant check: {passed} passed, {failed} failed")

    for r in results:
        if not r.passed or args.verbose:
            status = "PASS" if r.passed else "FAIL"
            print(f"  [{status}] {r.name}: {r.message}")
            if r.evidence:
                print(f"         evidence: {json.dumps(r.evidence)}")

    sys.exit(0 if failed == 0 else 1)


if __name__ == "__main__":
    main()
