"""
Wall-clock source used by the moderation scheduler.

Every expiry instant is an epoch-millisecond integer. Delays are derived as
``max(0, expires_at - now)`` and slept through the same clock, which lets
tests substitute a virtual clock and advance time deterministically.
"""

from __future__ import annotations

import asyncio
import time


class SystemClock:
    """Clock backed by ``time.time`` and ``asyncio.sleep``."""

    def now_millis(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


def millis_until(expires_at: int, now: int) -> int:
    """Return the non-negative number of milliseconds until ``expires_at``."""
    return max(0, expires_at - now)


# Module-level singleton
system_clock = SystemClock()
