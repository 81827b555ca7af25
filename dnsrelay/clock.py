"""Providers of the current time."""

from __future__ import annotations

import abc
from datetime import datetime


class Clock(abc.ABC):
    """Source of the current time, replaceable in tests."""

    @abc.abstractmethod
    def now(self) -> datetime:
        """Return the current time as a timezone-aware datetime."""


class RealClock(Clock):
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now().astimezone()