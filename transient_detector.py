"""
tocktrack - Transient Detector
Turns the filtered signal into an onset envelope: discrete derivative,
rectification, then a short centred moving average. Local maxima of the
envelope mark tick onsets.
"""

import numpy as np

from config import DetectionConfig


class TransientDetector:
    """
    Holds a bounded history of filtered samples (with its absolute start
    index) and derives the envelope over it on demand.

    The moving average is centred, so envelope peaks are not delayed; the
    newest half-window of the envelope is therefore provisional until more
    samples arrive, which the peak picker accounts for with its guard.
    """

    def __init__(self, config: DetectionConfig, sample_rate: int, history_seconds: float):
        self.sample_rate = int(sample_rate)
        self.smooth_len = max(1, int(round(config.envelope_smoothing_ms * self.sample_rate / 1000.0)))
        self._kernel = np.ones(self.smooth_len) / self.smooth_len
        self.max_history = max(self.smooth_len * 4, int(round(history_seconds * self.sample_rate)))
        self._history = np.zeros(0, dtype=np.float64)
        self.start_index = 0
        self._envelope = None

    def reset(self, start_index: int) -> None:
        """Drop history; the next appended sample has absolute index start_index."""
        self._history = np.zeros(0, dtype=np.float64)
        self.start_index = int(start_index)
        self._envelope = None

    @property
    def end_index(self) -> int:
        """Absolute index one past the newest sample held."""
        return self.start_index + len(self._history)

    @property
    def signal(self) -> np.ndarray:
        return self._history

    def append(self, filtered: np.ndarray) -> None:
        if len(filtered) == 0:
            return
        history = np.concatenate([self._history, np.asarray(filtered, dtype=np.float64)])
        excess = len(history) - self.max_history
        if excess > 0:
            history = history[excess:]
            self.start_index += excess
        self._history = history
        self._envelope = None

    def envelope(self) -> np.ndarray:
        """Envelope over the whole history (same length, non-negative)."""
        if self._envelope is None:
            x = self._history
            if len(x) == 0:
                self._envelope = np.zeros(0, dtype=np.float64)
            else:
                rectified = np.abs(np.diff(x, prepend=x[0]))
                if len(rectified) >= self.smooth_len:
                    self._envelope = np.convolve(rectified, self._kernel, mode='same')
                else:
                    self._envelope = np.full(len(rectified), float(np.mean(rectified)))
        return self._envelope


def envelope_fwhm(envelope: np.ndarray, idx: int, baseline: float, max_half_width: int) -> float:
    """Full width at half maximum (in samples) of the burst peaking at idx.

    Half maximum is taken above `baseline` (the envelope's noise floor), and the
    search extends at most `max_half_width` samples each side. Crossings are
    linearly interpolated. Returns 0.0 when the peak does not rise above the
    baseline.
    """
    peak = float(envelope[idx])
    if peak <= baseline:
        return 0.0
    half = baseline + (peak - baseline) / 2.0
    n = len(envelope)

    lo = max(0, idx - max_half_width)
    left_seg = envelope[lo:idx + 1][::-1]
    below = np.nonzero(left_seg <= half)[0]
    if len(below) == 0:
        left = float(lo)
    else:
        i0 = idx - int(below[0])            # at or below half
        a, b = envelope[i0], envelope[i0 + 1]
        left = i0 + (half - a) / (b - a) if b != a else float(i0)

    hi = min(n - 1, idx + max_half_width)
    right_seg = envelope[idx:hi + 1]
    below = np.nonzero(right_seg <= half)[0]
    if len(below) == 0:
        right = float(hi)
    else:
        i1 = idx + int(below[0])            # at or below half
        a, b = envelope[i1 - 1], envelope[i1]
        right = (i1 - 1) + (a - half) / (a - b) if a != b else float(i1)

    return max(0.0, right - left)
