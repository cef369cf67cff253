"""Kraken private-API call counter, sized by account verification tier."""

from __future__ import annotations

import asyncio
import logging
import time

logger = logging.getLogger(__name__)

# tier -> (maximum counter, decay per second)
TIER_LIMITS: dict[str, tuple[int, float]] = {
    "starter": (15, 0.33),
    "intermediate": (20, 0.5),
    "pro": (20, 1.0),
}


class KrakenRateGate:
    """Every private call adds to a counter that decays over time.

    When a call would push the counter past the tier maximum, the caller
    waits until enough has decayed. Acquisition is serialized so concurrent
    callers queue instead of racing the counter.
    """

    def __init__(self, tier: str = "starter") -> None:
        key = (tier or "starter").lower()
        if key not in TIER_LIMITS:
            logger.warning("Unknown verification tier %r, using starter limits", tier)
            key = "starter"
        self.tier = key
        self.max_counter, self.decay_per_s = TIER_LIMITS[key]
        self._counter = 0.0
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _decay(self) -> None:
        now = time.monotonic()
        self._counter = max(0.0, self._counter - (now - self._updated) * self.decay_per_s)
        self._updated = now

    @property
    def counter(self) -> float:
        self._decay()
        return self._counter

    async def acquire(self, cost: int = 1) -> None:
        async with self._lock:
            self._decay()
            overflow = self._counter + cost - self.max_counter
            if overflow > 0:
                wait = overflow / self.decay_per_s
                logger.debug("Rate gate full (%.2f/%d), waiting %.2fs", self._counter, self.max_counter, wait)
                await asyncio.sleep(wait)
                self._decay()
            self._counter += cost
