"""Interruptible interval timer and duration helpers."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from datetime import datetime


class Ticker:
    """Fixed-interval ticker that can be stopped or re-timed while running.

    Iterating yields the tick number, starting at 0 immediately, then once
    per ``interval`` seconds until ``stop_event`` is set. The interval is
    read on every wait, so assigning ``ticker.interval`` takes effect on the
    next tick without restarting the loop.

    Example:
        stop = threading.Event()
        for tick in Ticker(60, stop):
            run_checks()
    """

    def __init__(self, interval: float, stop_event: threading.Event | None = None):
        self.interval = interval
        self.stop_event = stop_event or threading.Event()

    def stop(self) -> None:
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def __iter__(self) -> Iterator[int]:
        tick = 0
        while not self.stop_event.is_set():
            started = time.monotonic()
            yield tick
            tick += 1
            # Account for the time spent in the loop body
            remaining = self.interval - (time.monotonic() - started)
            if remaining > 0 and self.stop_event.wait(remaining):
                break


def seconds_since(then: datetime, now: datetime | None = None) -> float:
    """Seconds from *then* to *now*, treating aware timestamps as local time."""
    if then.tzinfo is not None:
        then = then.astimezone().replace(tzinfo=None)
    now = now or datetime.now()
    if now.tzinfo is not None:
        now = now.astimezone().replace(tzinfo=None)
    return (now - then).total_seconds()


def format_duration(seconds: float) -> str:
    """Format seconds as a compact human-readable duration (e.g. '1h 2m 3s')."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
