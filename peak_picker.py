"""
tocktrack - Adaptive Peak Picker
Converts the envelope into discrete tick onsets using a robust rolling
threshold (median + k * MAD) and refractory gating.
"""

from collections import deque
from dataclasses import dataclass

import numpy as np
from scipy.signal import find_peaks

from config import DetectionConfig
from transient_detector import envelope_fwhm

# Scales a median absolute deviation to a normal standard deviation
MAD_TO_SIGMA = 1.4826
MAX_SNR_DB = 120.0


@dataclass(frozen=True)
class AcceptedPeak:
    """An envelope peak that passed threshold and refractory gating"""
    index: int            # Absolute sample index of the envelope maximum
    position: float       # Sub-sample position (parabolic interpolation)
    height: float         # Envelope value at the peak
    width: float          # Envelope FWHM in samples (lift-time proxy)


class AdaptivePeakPicker:
    """
    The threshold is median + k * MAD over the trailing analysis window,
    recomputed on every call, so it follows slowly varying background noise
    while the rare tick peaks barely move it.

    Only envelope samples older than `guard` are examined: newer ones are
    still provisional (centred smoothing, polarity/width windows, and a
    possibly taller neighbour within the refractory period). Each sample is
    scanned exactly once, so repeated calls never re-emit a peak.
    """

    def __init__(self, config: DetectionConfig, sample_rate: int):
        self.config = config
        self.sample_rate = int(sample_rate)
        ms = self.sample_rate / 1000.0
        # Accepted peaks are more than this many samples apart; interpolation
        # moves each by at most half a sample
        self.min_separation = max(1, int(np.ceil(config.min_tick_separation * self.sample_rate)))
        self.window = max(3, int(round(config.analysis_window_size * self.sample_rate)))
        self.lift_search = max(1, int(round(config.lift_search_ms * ms)))
        polarity_window = max(1, int(round(config.polarity_window_ms * ms)))
        smoothing = max(1, int(round(config.envelope_smoothing_ms * ms)))
        self.guard = self.min_separation + max(polarity_window, self.lift_search) + smoothing + 2
        self.min_history = max(self.guard + 3, int(round(config.min_history_seconds * self.sample_rate)))

        self.threshold = 0.0
        self.noise_floor = 0.0
        self.rejected_refractory = 0
        self._last_accepted: int | None = None
        self._scan_from: int | None = None
        self._recent_heights: deque[float] = deque(maxlen=64)

    @property
    def guard_seconds(self) -> float:
        return self.guard / self.sample_rate

    def reset(self) -> None:
        self.threshold = 0.0
        self.noise_floor = 0.0
        self._last_accepted = None
        self._scan_from = None
        self._recent_heights.clear()

    def snr_db(self) -> float:
        """Median accepted peak height over the envelope noise floor, in dB."""
        if not self._recent_heights:
            return 0.0
        peak = float(np.median(self._recent_heights))
        if self.noise_floor <= 0.0:
            return MAX_SNR_DB
        return float(min(MAX_SNR_DB, 20.0 * np.log10(max(peak, 1e-300) / self.noise_floor)))

    def _update_threshold(self, envelope: np.ndarray) -> None:
        tail = envelope[-self.window:]
        median = float(np.median(tail))
        mad = float(np.median(np.abs(tail - median))) * MAD_TO_SIGMA
        self.noise_floor = median
        self.threshold = median + self.config.threshold_k * mad

    def _interpolate(self, envelope: np.ndarray, rel: int) -> float:
        if rel <= 0 or rel >= len(envelope) - 1:
            return 0.0
        y0, y1, y2 = envelope[rel - 1], envelope[rel], envelope[rel + 1]
        denom = y0 - 2.0 * y1 + y2
        if denom >= 0.0:
            return 0.0
        return float(np.clip(0.5 * (y0 - y2) / denom, -0.5, 0.5))

    def pick(self, envelope: np.ndarray, start_index: int) -> list[AcceptedPeak]:
        """Scan the settled, not-yet-scanned part of `envelope`.

        `start_index` is the absolute sample index of envelope[0].
        """
        n = len(envelope)
        if n < self.min_history:
            return []

        region_end = start_index + n - self.guard
        scan_from = start_index + 1 if self._scan_from is None else max(self._scan_from, start_index + 1)
        if region_end <= scan_from:
            return []

        self._update_threshold(envelope)
        self._scan_from = region_end
        if self.threshold <= 0.0:
            # Digital silence: nothing can stand out
            return []

        lo = max(0, scan_from - start_index - self.min_separation)
        candidates, _ = find_peaks(envelope[lo:], height=self.threshold,
                                   distance=self.min_separation + 1)

        accepted: list[AcceptedPeak] = []
        for rel in candidates + lo:
            abs_idx = start_index + int(rel)
            if abs_idx < scan_from or abs_idx >= region_end:
                continue
            height = float(envelope[rel])
            if height <= self.threshold:
                continue
            if self._last_accepted is not None and abs_idx - self._last_accepted <= self.min_separation:
                self.rejected_refractory += 1
                continue

            width = envelope_fwhm(envelope, int(rel), self.noise_floor, self.lift_search)
            accepted.append(AcceptedPeak(
                index=abs_idx,
                position=abs_idx + self._interpolate(envelope, int(rel)),
                height=height,
                width=width,
            ))
            self._last_accepted = abs_idx
            self._recent_heights.append(height)

        return accepted
