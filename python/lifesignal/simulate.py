#!/usr/bin/env python3
"""
LifeSignal model simulation: runs through scenarios and checks invariants.

Time is driven by a ManualClock, so timers (arm reset, disarm hold,
reminders) fire exactly when the scenario advances past them.

Usage: python -m lifesignal.simulate
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import List

from lifesignal.clock import ManualClock
from lifesignal.coordinator import SafetyCoordinator
from lifesignal.db import Store
from lifesignal.events import StatusChanged
from lifesignal.invariants import InvariantResult, check_all_invariants
from lifesignal.models import Session


@dataclass
class SimulationFrame:
    step: int
    action: str
    state_summary: dict
    invariant_results: List[InvariantResult]

    def __str__(self) -> str:
        passed = sum(1 for r in self.invariant_results if r.passed)
        failed = sum(1 for r in self.invariant_results if not r.passed)
        status = "OK" if failed == 0 else "FAIL"
        return f"[Frame {self.step}] {self.action}\n  {status} Invariants: {passed} passed, {failed} failed"


class Simulator:
    """Model simulator for LifeSignal."""

    def __init__(self, start: float = 1_000_000.0):
        self.tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        self.tmp.close()
        self.clock = ManualClock(start)
        self.store = Store(self.tmp.name, clock=self.clock)
        self.store.init_db()
        self.coordinator = SafetyCoordinator(self.store, self.clock)
        self.status_log: List[StatusChanged] = []
        self.coordinator.events.subscribe(StatusChanged, self.status_log.append)
        self.frames: List[SimulationFrame] = []
        self.step = 0

    def cleanup(self):
        self.coordinator.shutdown()
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.tmp.name + suffix)
            except OSError:
                pass

    def _record_frame(self, action: str):
        """Record current state and check invariants."""
        _, _, results = check_all_invariants(self.store)

        with self.store.read() as tx:
            state = {
                "now": self.clock.now(),
                "users": len(tx.list_users()),
                "edges": len(tx.all_edges()),
                "active_alerts": sum(1 for a in tx.all_alerts() if a.active),
            }

        frame = SimulationFrame(
            step=self.step,
            action=action,
            state_summary=state,
            invariant_results=results,
        )
        self.frames.append(frame)
        self.step += 1
        return frame

    def tick(self, delta: float):
        """Advance time, firing any timers that come due."""
        self.clock.advance(delta)
        return self._record_frame(f"tick({delta:g}) -> now={self.clock.now():g}")

    def create_user(self, user_id: str, interval: float, offsets=()):
        self.coordinator.create_user(user_id, name=user_id, interval=interval, reminder_offsets=offsets)
        return self._record_frame(f"create_user({user_id}, interval={interval:g})")

    def add_contact(self, owner: str, contact: str, is_responder: bool, is_dependent: bool):
        self.coordinator.add_contact(Session(owner), contact, is_responder, is_dependent)
        return self._record_frame(
            f"add_contact({owner} -> {contact}, responder={is_responder}, dependent={is_dependent})"
        )

    def check_in(self, user_id: str):
        self.coordinator.check_in(Session(user_id))
        return self._record_frame(f"check_in({user_id}) at t={self.clock.now():g}")

    def ping(self, responder: str, dependent: str):
        self.coordinator.ping(Session(responder), dependent)
        return self._record_frame(f"ping({responder} -> {dependent})")

    def respond_all(self, dependent: str):
        cleared = self.coordinator.respond_to_all_pings(Session(dependent))
        return self._record_frame(f"respond_to_all_pings({dependent}) -> {cleared} cleared")

    def arm(self, user_id: str):
        state = self.coordinator.arm_alert(Session(user_id))
        return self._record_frame(f"arm({user_id}) -> {state.phase.value} {state.arm_progress:.2f}")

    def hold_disarm(self, user_id: str, seconds: float):
        session = Session(user_id)
        self.coordinator.begin_disarm(session)
        self.clock.advance(seconds)
        state = self.coordinator.release_disarm(session)
        return self._record_frame(f"hold_disarm({user_id}, {seconds:g}s) -> {state.phase.value}")

    def sweep(self):
        result = self.coordinator.sweep()
        return self._record_frame(
            f"sweep -> expired={result.expired_notified}, reminders={result.reminders_sent}"
        )

    def statuses(self, user_id: str) -> dict:
        return {
            v.edge.contact_id: v.status.value
            for v in self.coordinator.contact_statuses(Session(user_id))
        }


def _print_summary(sim: Simulator) -> None:
    print("=" * 60)
    print("SIMULATION SUMMARY")
    print("=" * 60)
    total_checks = sum(len(f.invariant_results) for f in sim.frames)
    failures = sum(
        1 for f in sim.frames
        for r in f.invariant_results
        if not r.passed
    )
    print(f"Frames: {len(sim.frames)}")
    print(f"Invariant checks: {total_checks}")
    print(f"Invariant failures: {failures}")
    if failures == 0:
        print("All invariants maintained throughout simulation")
    else:
        print("Some invariant violations detected")
        for f in sim.frames:
            for r in f.invariant_results:
                if not r.passed:
                    print(f"  Frame {f.step}: {r.name} - {r.message}")


def run_safety_simulation():
    """A dependent misses a check-in, is pinged, recovers, then raises an alert."""
    print("=" * 60)
    print("SAFETY SIMULATION")
    print("=" * 60)
    print()

    sim = Simulator()
    try:
        print(sim.create_user("alice", interval=3600, offsets=(600,)))
        print(sim.create_user("bob", interval=86400))
        # bob responds for alice
        print(sim.add_contact("alice", "bob", is_responder=True, is_dependent=False))
        print(sim.check_in("alice"))
        print()

        print(sim.tick(3000))
        print("  Note: reminder due 600s before expiry has fired")
        print(sim.tick(601))
        print(sim.sweep())
        print(f"  bob sees: {sim.statuses('bob')}")
        print(sim.sweep())
        print("  Note: second sweep in the same epoch notifies nobody")
        print()

        print(sim.ping("bob", "alice"))
        print(f"  alice sees: {sim.statuses('alice')}")
        print(sim.respond_all("alice"))
        print(sim.check_in("alice"))
        print(f"  bob sees: {sim.statuses('bob')}")
        print()

        for _ in range(4):
            print(sim.arm("alice"))
        print(f"  bob sees: {sim.statuses('bob')}")
        print(sim.hold_disarm("alice", 1.0))
        print("  Note: released early, alert stays active")
        print(sim.hold_disarm("alice", 3.0))
        print(f"  bob sees: {sim.statuses('bob')}")
        print()

        _print_summary(sim)
    finally:
        sim.cleanup()


def run_counterexample_demo():
    """Show what happens when one side of a ping is written on its own."""
    print()
    print("=" * 60)
    print("COUNTEREXAMPLE: SINGLE-SIDED PING WRITE")
    print("=" * 60)
    print()

    sim = Simulator()
    try:
        print(sim.create_user("alice", interval=3600))
        print(sim.create_user("bob", interval=3600))
        print(sim.add_contact("alice", "bob", is_responder=True, is_dependent=False))
        print()

        # Bypass the exchange and touch only bob's edge
        with sim.store.transaction() as tx:
            edge = tx.get_edge("bob", "alice")
            tx.put_edge(edge.evolve(outgoing_ping=sim.clock.now()))
        print("  Wrote bob->alice.outgoing_ping without its mirror...")
        print()

        _, failed, results = check_all_invariants(sim.store)
        for r in results:
            if not r.passed:
                print(f"  FAIL {r.name}")
                print(f"    {r.message}")
                if r.evidence:
                    print(f"    evidence: {r.evidence}")

        print()
        print("This demonstrates: both sides of a ping must be written together.")
    finally:
        sim.cleanup()


def main() -> None:
    run_safety_simulation()
    run_counterexample_demo()


if __name__ == "__main__":
    main()
