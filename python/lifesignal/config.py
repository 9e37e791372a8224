"""
LifeSignal configuration.

Defaults follow the mobile client: one-day check-in interval, a 30 minute
reminder, four quick taps to raise an alert, a three second hold to cancel it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional, Tuple

from lifesignal.retry import RetryPolicy

ENV_PREFIX = "LIFESIGNAL_"


@dataclass(frozen=True)
class SafetyConfig:
    """Tunables for the safety core."""
    arm_increment: float = 0.25
    arm_reset_s: float = 0.8
    disarm_hold_s: float = 3.0
    sweep_interval_s: int = 300
    default_interval_s: float = 24 * 3600
    default_reminder_offsets: Tuple[float, ...] = (30 * 60,)
    retry_attempts: int = 5
    retry_initial_delay_s: float = 0.02
    retry_max_delay_s: float = 0.5
    notify_attempts: int = 3

    def __post_init__(self) -> None:
        if not 0 < self.arm_increment <= 1:
            raise ValueError("arm_increment must be within (0, 1]")
        if self.arm_reset_s <= 0 or self.disarm_hold_s <= 0:
            raise ValueError("gesture timeouts must be positive")
        if self.sweep_interval_s <= 0:
            raise ValueError("sweep_interval_s must be positive")
        if self.retry_attempts < 1 or self.notify_attempts < 1:
            raise ValueError("attempt counts must be >= 1")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            initial_delay_s=self.retry_initial_delay_s,
            max_delay_s=self.retry_max_delay_s,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SafetyConfig":
        """Build a config from LIFESIGNAL_* variables, e.g. LIFESIGNAL_ARM_RESET_S=1.5."""
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name == "default_reminder_offsets":
                overrides[f.name] = tuple(float(x) for x in raw.split(",") if x.strip())
            elif f.type in ("int", int):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)
