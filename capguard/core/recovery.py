"""Consecutive-attempt counters shared by the supervision loops."""

from __future__ import annotations


class RecoveryCounter:
    """Counts consecutive remediation attempts for one resource.

    The counter is reset the moment the resource is observed healthy and is
    ``exceeded`` once it climbs past ``bound``.
    """

    def __init__(self, bound: int, name: str = "recovery") -> None:
        if bound < 0:
            raise ValueError("bound must be >= 0")
        self.bound = bound
        self.name = name
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    @property
    def exceeded(self) -> bool:
        return self._value > self.bound

    def increment(self) -> int:
        self._value += 1
        return self._value

    def reset(self) -> None:
        self._value = 0

    def __repr__(self) -> str:
        return f"RecoveryCounter({self.name!r}, {self._value}/{self.bound})"


__all__ = ["RecoveryCounter"]
