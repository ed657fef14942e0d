"""Progress reporting for long-running transfers."""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProgressTracker:
    """Forwards (percent, message) updates, never letting percent go backwards."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self.callback = callback
        self.percent = 0
        self.updates: list[tuple[int, str]] = []

    def report(self, percent: int, message: str) -> None:
        if not 0 <= percent <= 100:
            raise ValueError(f"Progress must be within 0..100, got {percent}")
        if percent < self.percent:
            raise ValueError(f"Progress went backwards: {percent} after {self.percent}")
        self.percent = percent
        self.updates.append((percent, message))
        logger.debug(f"[{percent:3d}%] {message}")
        if self.callback is not None:
            self.callback(percent, message)
