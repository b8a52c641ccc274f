"""Background spot price monitor."""

from __future__ import annotations

import logging
import threading

from spotcycle.exceptions import SpotCycleError, degraded
from spotcycle.models import MarketSample

logger = logging.getLogger("spotcycle.monitor")

DEFAULT_INTERVAL = 60.0


def classify_trend(previous: float, current: float) -> str:
    if current > previous:
        return "increase"
    if current < previous:
        return "decrease"
    return "unchanged"


class MarketMonitor:
    """Samples the market price of one (region, server class) pair on a timer.

    Runs in a daemon thread and only reads; ``stop()`` sets an event the loop
    waits on, so it returns within one interval at most. Samples are kept in
    memory for the lifetime of the process.
    """

    def __init__(self, client, region: str, server_class: str, interval: float = DEFAULT_INTERVAL) -> None:
        self.client = client
        self.region = region
        self.server_class = server_class
        self.interval = interval
        self.samples: list[MarketSample] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"market-monitor-{self.server_class}", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout if timeout is not None else self.interval + 5)
            self._thread = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until stopped; True if the stop signal was received."""
        return self._stop_event.wait(timeout)

    def __enter__(self) -> MarketMonitor:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def tick(self) -> MarketSample | None:
        """Take one sample and log how it moved since the previous one."""
        try:
            sample = self.client.market_price(self.region, self.server_class)
        except SpotCycleError as e:
            degraded(logger, "Price unavailable for monitoring", e)
            return None

        previous = self.samples[-1] if self.samples else None
        self.samples.append(sample)
        if previous is None:
            logger.info("Spot price monitoring started: %s", _fmt(sample.price))
            return sample

        trend = classify_trend(previous.price, sample.price)
        delta = sample.price - previous.price
        if trend == "increase":
            logger.info(
                "Price increased from %s to %s (up by %s)",
                _fmt(previous.price), _fmt(sample.price), _fmt(delta),
            )
        elif trend == "decrease":
            logger.info(
                "Price decreased from %s to %s (down by %s). Recommendation: Consider lowering bid price",
                _fmt(previous.price), _fmt(sample.price), _fmt(-delta),
            )
        else:
            logger.info("Price unchanged at %s", _fmt(sample.price))
        return sample

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            if self._stop_event.wait(self.interval):
                break


def _fmt(price: float) -> str:
    return f"${price:.4f}"
