from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

MIN_THRESHOLD_PX = 100.0
MAX_THRESHOLD_PX = 300.0
VIEWPORT_FRACTION = 0.15
SCROLL_FRACTION_TRIGGER = 0.90
BOTTOM_SLACK_PX = 5.0
THROTTLE_SECONDS = 0.1


@dataclass(frozen=True)
class ScrollMetrics:
    """Geometry reported by the list view's scroll observer."""

    scroll_top: float
    scroll_height: float
    viewport_height: float

    @property
    def distance_to_bottom(self) -> float:
        return max(0.0, self.scroll_height - (self.scroll_top + self.viewport_height))

    @property
    def scroll_fraction(self) -> float:
        if self.scroll_height <= 0:
            return 1.0
        return min(1.0, (self.scroll_top + self.viewport_height) / self.scroll_height)


def adaptive_threshold(viewport_height: float) -> float:
    return max(MIN_THRESHOLD_PX, min(MAX_THRESHOLD_PX, viewport_height * VIEWPORT_FRACTION))


def near_bottom(metrics: ScrollMetrics) -> bool:
    distance = metrics.distance_to_bottom
    if distance <= BOTTOM_SLACK_PX:
        return True
    if metrics.scroll_fraction >= SCROLL_FRACTION_TRIGGER:
        return True
    return distance < adaptive_threshold(metrics.viewport_height)


class ScrollTrigger:
    """Throttled decision whether a scroll position should page in older events."""

    def __init__(
        self,
        *,
        is_loading: Callable[[], bool],
        has_more: Callable[[], bool],
        on_trigger: Callable[[], object],
        time_source: Callable[[], float] = time.monotonic,
        throttle_seconds: float = THROTTLE_SECONDS,
    ) -> None:
        self._is_loading = is_loading
        self._has_more = has_more
        self._on_trigger = on_trigger
        self._time = time_source
        self._throttle = max(0.0, throttle_seconds)
        self._last_fired: float | None = None

    def on_scroll(self, metrics: ScrollMetrics) -> bool:
        if self._is_loading() or not self._has_more():
            return False
        if not near_bottom(metrics):
            return False
        now = self._time()
        if self._last_fired is not None and now - self._last_fired < self._throttle:
            return False
        self._last_fired = now
        self._on_trigger()
        return True
