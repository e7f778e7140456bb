"""
tocktrack - Stability / Quality Monitor
Flags rate drift, signal dropouts and low signal-to-noise. Flags never stop
the measurement; consumers are expected to discount results while set.
"""

from collections import deque
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from config import QualityConfig
from robust_stats import robust_median


@dataclass(frozen=True)
class QualityStatus:
    stability_ok: bool
    rate_std: float | None   # s/day over the stability window, None until filled
    dropouts_ok: bool
    dropout_count: int
    snr_db: float
    snr_ok: bool


class QualityMonitor:
    def __init__(self, config: QualityConfig):
        self.config = config
        self._rates: deque[float] = deque(maxlen=config.stability_window)

    def reset(self) -> None:
        self._rates.clear()

    def add_rate(self, rate: float) -> None:
        if np.isfinite(rate):
            self._rates.append(float(rate))

    def stability(self) -> tuple[bool, float | None]:
        """(stable, std). Not stable until the window has filled."""
        if len(self._rates) < self.config.stability_window:
            return False, None
        std = float(np.std(self._rates))
        return std < self.config.stability_threshold, std

    def count_dropouts(self, event_times: Sequence[float], now: float, since: float,
                       reference_interval: float) -> int:
        """Gaps longer than twice the median beat interval in the trailing window.

        The still-open gap since the last event (or since `since` when there
        is none) counts once per elapsed double interval, so a dead input is
        flagged even though it produces no events at all.
        """
        window_start = max(since, now - self.config.dropout_window_seconds)
        times = np.asarray([t for t in event_times if t >= window_start], dtype=np.float64)

        gaps = np.diff(times) if len(times) >= 2 else np.zeros(0)
        interval = robust_median(gaps) if len(gaps) >= 2 else reference_interval
        if interval <= 0.0:
            return 0
        limit = 2.0 * interval

        closed = int(np.count_nonzero(gaps > limit))
        anchor = float(times[-1]) if len(times) else window_start
        open_gaps = int(max(0.0, now - anchor) // limit)
        return closed + open_gaps

    def evaluate(self, event_times: Sequence[float], now: float, since: float,
                 reference_interval: float, snr_db: float) -> QualityStatus:
        stable, std = self.stability()
        dropouts = self.count_dropouts(event_times, now, since, reference_interval)
        return QualityStatus(
            stability_ok=stable,
            rate_std=std,
            dropouts_ok=dropouts <= self.config.max_dropouts,
            dropout_count=dropouts,
            snr_db=snr_db,
            snr_ok=snr_db >= self.config.min_snr_db,
        )
