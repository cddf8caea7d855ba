"""
Snapshot policy value types.

A policy declares how often a dataset should be snapshotted and, optionally,
how many of those snapshots to keep:

    >>> hourly = PolicyDeclaration("hourly", IntervalUnit.HOUR, 1.0, keep_count=24)
    >>> hourly.interval_seconds
    3600.0
    >>> hourly.to_text()
    '[hourly](1.0h:24)'

Invariants:
    - Structural identity is (label, unit, multiplier); keep_count is not part
      of it, so equality and hashing ignore keep_count
    - Seconds-per-unit values are fixed; a month is 2629800 seconds
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

# Keep counts are stored as unsigned 64-bit integers
MAX_KEEP_COUNT = 2**64 - 1


class IntervalUnit(Enum):
    """Base unit of a snapshot interval.

    Values are the canonical mini-language suffixes.
    """

    MONTH = "mo"
    DAY = "d"
    HOUR = "h"
    MINUTE = "mi"
    SECOND = "s"

    @property
    def seconds(self) -> int:
        """Fixed number of seconds in one unit."""
        return _SECONDS_PER_UNIT[self]

    @classmethod
    def from_suffix(cls, value: str) -> IntervalUnit:
        """Convert a mini-language suffix to an IntervalUnit.

        Accepts ``mo``, ``d``, ``h``, ``m``, ``mi`` and ``s`` in any case.

        Raises:
            ValueError: If the suffix is not a known unit
        """
        lowered = value.lower()
        if lowered == "m":
            return cls.MINUTE
        for unit in cls:
            if unit.value == lowered:
                return unit
        valid = [u.value for u in cls]
        raise ValueError(f"Invalid interval unit '{value}'. Valid units: {valid}")


_SECONDS_PER_UNIT = {
    IntervalUnit.MONTH: 2629800,
    IntervalUnit.DAY: 86400,
    IntervalUnit.HOUR: 3600,
    IntervalUnit.MINUTE: 60,
    IntervalUnit.SECOND: 1,
}


@dataclass(frozen=True)
class PolicyDeclaration:
    """One declared snapshot policy.

    Attributes:
        label: Human-readable name; part of the policy identity
        unit: Interval base unit
        multiplier: Number of units between snapshots
        keep_count: Snapshots to retain (None = unlimited); not part of identity
    """

    label: str
    unit: IntervalUnit
    multiplier: float
    keep_count: int | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate the declaration."""
        if not self.label:
            raise ValueError("Policy label cannot be empty")
        if not isinstance(self.unit, IntervalUnit):
            raise ValueError(f"Policy unit must be an IntervalUnit, got {self.unit!r}")
        multiplier = float(self.multiplier)
        if not math.isfinite(multiplier) or multiplier <= 0:
            raise ValueError(f"Policy multiplier must be positive, got {self.multiplier}")
        object.__setattr__(self, "multiplier", multiplier)
        if self.keep_count is not None:
            if isinstance(self.keep_count, bool) or not isinstance(self.keep_count, int):
                raise ValueError(f"keep_count must be an int, got {self.keep_count!r}")
            if not 0 <= self.keep_count <= MAX_KEEP_COUNT:
                raise ValueError(
                    f"keep_count must be between 0 and {MAX_KEEP_COUNT}, got {self.keep_count}"
                )

    @property
    def interval_seconds(self) -> float:
        """Interval between snapshots in seconds."""
        return self.multiplier * self.unit.seconds

    def to_text(self) -> str:
        """Render in the ``[label](interval:keep)`` mini-language."""
        command = f"{self.multiplier!r}{self.unit.value}"
        if self.keep_count is not None:
            command += f":{self.keep_count}"
        return f"[{self.label}]({command})"


@dataclass(frozen=True)
class StoredPolicy:
    """A policy as persisted in a dataset store.

    Attributes:
        policy_id: Id assigned when the policy was first stored
        fingerprint: Content fingerprint (hex)
        label: Policy label
        interval_seconds: Interval in seconds
        keep_count: Snapshots to retain (None = unlimited)
    """

    policy_id: str
    fingerprint: str
    label: str
    interval_seconds: float
    keep_count: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary representation."""
        return {
            "policy_id": self.policy_id,
            "fingerprint": self.fingerprint,
            "label": self.label,
            "interval_seconds": self.interval_seconds,
            "keep_count": self.keep_count,
        }
