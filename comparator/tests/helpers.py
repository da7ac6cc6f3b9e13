"""Shared helpers for the comparator tests."""

from datetime import datetime, timezone


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self, seconds_ago: float = 0.0) -> datetime:
        return datetime.fromtimestamp(self.now - seconds_ago, tz=timezone.utc)
