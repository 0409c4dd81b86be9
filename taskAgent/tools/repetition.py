"""Sliding-window guard against a model calling the same tool over and over."""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from typing import Callable, Deque, Dict, Tuple

from taskAgent.utils.error_handler import RepetitionLimitError

LOGGER = logging.getLogger(__name__)


class RepetitionGuard:
    """Counts calls per tool name over the last ``window_size`` calls within ``window_seconds``.

    Arguments are not considered: reading the same file with different
    offsets five times is still five reads. Only calls that passed the check
    are recorded, so a rejected call does not extend the streak.
    """

    def __init__(
        self,
        threshold: int = 5,
        window_size: int = 10,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: Deque[Tuple[str, float]] = deque(maxlen=window_size)

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._calls and self._calls[0][1] < cutoff:
            self._calls.popleft()

    def counts(self) -> Dict[str, int]:
        self._prune()
        return dict(Counter(name for name, _ in self._calls))

    def count(self, tool_name: str) -> int:
        return self.counts().get(tool_name, 0)

    def check(self, tool_name: str) -> None:
        """Raise RepetitionLimitError if another call to ``tool_name`` would exceed the threshold."""
        current = self.count(tool_name)
        if current >= self.threshold:
            LOGGER.warning(f"Repetition limit hit for {tool_name}: {current} calls in window")
            raise RepetitionLimitError(tool_name, current, self.threshold)

    def record(self, tool_name: str) -> None:
        self._calls.append((tool_name, self._clock()))

    def reset(self) -> None:
        self._calls.clear()
