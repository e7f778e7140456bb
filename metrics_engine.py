"""
tocktrack - Metrics Engine
Derives rate, beat error, beats-per-hour and amplitude from reconstructed
cycles, aggregating with outlier trimming so single corrupted cycles cannot
dominate the reported values.
"""

import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from config import STANDARD_BPH, AmplitudeModel, MetricsConfig
from cycle_reconstructor import CycleRecord
from polarity_classifier import TickEvent
from robust_stats import trimmed_mean

SECONDS_PER_DAY = 86400.0
MIN_AMPLITUDE_DEG = 0.0
MAX_AMPLITUDE_DEG = 350.0

# Maps a lift time (seconds) to a calibrated amplitude (degrees)
Calibration = Callable[[float], float]


@dataclass(frozen=True)
class MetricsEstimate:
    """Result of one aggregation over the trailing cycle window"""
    period: float                   # Seconds per oscillation (two beats)
    observed_beats_per_hour: float
    rate_seconds_per_day: float     # Positive = gaining
    beat_error_ms: float            # Signed
    lift_time: float                # Seconds, 0.0 when unavailable
    amplitude_deg: float
    cycle_count: int
    suggested_beats_per_hour: int   # Nearest standard beat train


def lift_proxy_amplitude(lift_time: float, period: float, lift_angle: float) -> float:
    """Uncalibrated amplitude proxy: (pi * lift_time / period) / sin(lift_angle / 2).

    Monotonic and repeatable in the lift time, but not an absolute angle; a
    calibration mapping turns it into degrees.
    """
    if lift_time <= 0.0 or period <= 0.0:
        return MIN_AMPLITUDE_DEG
    return (math.pi * lift_time / period) / math.sin(math.radians(lift_angle) / 2.0)


def balance_swing_amplitude(lift_time: float, period: float, lift_angle: float) -> float:
    """Balance amplitude (degrees) from the acoustic lift time.

    The balance swings as A*sin(2*pi*t/period) and covers the lift angle,
    centred on its rest point, in `lift_time`:
    lift_angle / 2 = A * sin(pi * lift_time / period).
    """
    if lift_time <= 0.0 or period <= 0.0:
        return MIN_AMPLITUDE_DEG
    phase = min(math.pi * lift_time / period, math.pi / 2.0)
    return lift_angle / (2.0 * math.sin(phase))


AMPLITUDE_MODELS = {
    AmplitudeModel.LIFT_PROXY: lift_proxy_amplitude,
    AmplitudeModel.BALANCE_SWING: balance_swing_amplitude,
}


def table_calibration(points: Sequence[tuple[float, float]]) -> Calibration:
    """Build a calibration mapping from (lift_time_s, amplitude_deg) pairs.

    Values between points are linearly interpolated; outside the table the
    nearest end value is used.
    """
    if len(points) < 2:
        raise ValueError("calibration table needs at least two points")
    ordered = sorted((float(t), float(a)) for t, a in points)
    xs = np.array([p[0] for p in ordered])
    ys = np.array([p[1] for p in ordered])

    def _calibrate(lift_time: float) -> float:
        return float(np.interp(lift_time, xs, ys))

    return _calibrate


def nearest_standard_bph(observed_bph: float) -> int:
    return min(STANDARD_BPH, key=lambda bph: abs(bph - observed_bph))


def residual_series(events: Sequence[TickEvent], beat_interval: float,
                    origin: float) -> list[tuple[float, float]]:
    """Timing residual of each event against an ideal beat grid.

    Returns (timestamp, residual_ms) pairs, each residual wrapped into
    +/- half a beat. A running watch draws two parallel lines whose slope
    shows the rate and whose separation shows the beat error.
    """
    if beat_interval <= 0.0:
        return []
    out = []
    half = beat_interval / 2.0
    for event in events:
        offset = (event.timestamp - origin + half) % beat_interval - half
        out.append((event.timestamp, offset * 1000.0))
    return out


class MetricsEngine:
    """Stateless aggregation: the same inputs always give the same estimate."""

    def __init__(self, config: MetricsConfig, calibration: Optional[Calibration] = None):
        self.config = config
        self.calibration = calibration

    def _amplitude(self, lift_time: float, period: float, lift_angle: float) -> float:
        if lift_time <= 0.0:
            return MIN_AMPLITUDE_DEG
        if self.calibration is not None:
            amplitude = float(self.calibration(lift_time))
        else:
            model = AMPLITUDE_MODELS[AmplitudeModel(self.config.amplitude_model)]
            amplitude = model(lift_time, period, lift_angle)
        return float(np.clip(amplitude, MIN_AMPLITUDE_DEG, MAX_AMPLITUDE_DEG))

    def estimate(self, cycles: Sequence[CycleRecord], events: Sequence[TickEvent],
                 expected_bph: float, lift_angle: float) -> Optional[MetricsEstimate]:
        """Aggregate the trailing `metrics_window_cycles` cycles.

        Returns None when fewer than `min_cycles` cycles are available.
        """
        window = list(cycles)[-self.config.metrics_window_cycles:]
        if len(window) < self.config.min_cycles:
            return None

        trim = self.config.trim_fraction
        period = trimmed_mean((c.period for c in window), trim)
        if not period > 0.0:
            return None
        beat_error = trimmed_mean((c.beat_error for c in window), trim)

        beat_interval = period / 2.0
        observed_bph = 3600.0 / beat_interval
        rate = (observed_bph / float(expected_bph) - 1.0) * SECONDS_PER_DAY

        since = window[0].tick_time
        widths = [e.lift_time for e in events if e.timestamp >= since and e.lift_time > 0.0]
        lift_time = trimmed_mean(widths, trim) if widths else 0.0

        return MetricsEstimate(
            period=period,
            observed_beats_per_hour=observed_bph,
            rate_seconds_per_day=rate,
            beat_error_ms=beat_error * 1000.0,
            lift_time=lift_time,
            amplitude_deg=self._amplitude(lift_time, period, lift_angle),
            cycle_count=len(window),
            suggested_beats_per_hour=nearest_standard_bph(observed_bph),
        )
