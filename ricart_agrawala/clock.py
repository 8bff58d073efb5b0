from __future__ import annotations

from .common import ClockValue


class LamportClock:
    """Scalar Lamport clock owned by a single node."""

    def __init__(self, value: ClockValue = 0):
        self._value: ClockValue = value

    @property
    def value(self) -> ClockValue:
        return self._value

    def tick(self, received_ts: ClockValue = 0) -> ClockValue:
        # A plain send passes 0, which degenerates to an increment.
        self._value = max(self._value, received_ts) + 1
        return self._value

    def reset(self) -> None:
        self._value = 0

    def __repr__(self) -> str:
        return f"LamportClock({self._value})"
