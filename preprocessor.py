"""
tocktrack - Preprocessor
Band-limits raw audio (high-pass then low-pass Butterworth) and normalises its
level with a smoothed, clamped automatic gain control.
"""

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi

from config import FilterConfig
from logging_utils import log_event


class Preprocessor:
    """Stateful filter + AGC stage. Filter state carries across blocks so a
    continuous stream can be processed in arbitrary block sizes."""

    def __init__(self, config: FilterConfig, sample_rate: int):
        self.config = config
        self.sample_rate = int(sample_rate)
        self._sos = self._design_filters()
        self._zi = None
        self.gain = 1.0
        self._gain_initialized = False

    def _design_filters(self) -> np.ndarray:
        nyquist = self.sample_rate / 2.0
        high = min(self.config.lowpass_cutoff, nyquist * 0.95)   # Stay below Nyquist
        low = min(self.config.highpass_cutoff, high * 0.9)
        order = self.config.filter_order

        hp_sos = butter(order, low, btype='highpass', fs=self.sample_rate, output='sos')
        lp_sos = butter(order, high, btype='lowpass', fs=self.sample_rate, output='sos')
        log_event("INFO", "Preprocessor", "Filters initialized",
                  highpass=f"{low:.0f}", lowpass=f"{high:.0f}", order=order)
        # High-pass runs first, then low-pass, in one cascade
        return np.vstack([hp_sos, lp_sos])

    def reset(self) -> None:
        """Forget filter history and AGC state (stream discontinuity)."""
        self._zi = None
        self.gain = 1.0
        self._gain_initialized = False

    def filter(self, block: np.ndarray) -> np.ndarray:
        x = np.nan_to_num(np.asarray(block, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0)
        if x.size == 0:
            return x
        if self._zi is None:
            # Start from the first sample's steady state to avoid a step transient
            self._zi = sosfilt_zi(self._sos) * x[0]
        y, self._zi = sosfilt(self._sos, x, zi=self._zi)
        return y

    def _next_gain(self, filtered: np.ndarray) -> float:
        cfg = self.config
        rms = float(np.sqrt(np.mean(filtered ** 2)))
        if rms < cfg.agc_silence_floor:
            # Near-silence: hold, so quiet gaps are not blown up into noise bursts
            return self.gain
        instant = cfg.agc_target_level / rms
        if not self._gain_initialized:
            self._gain_initialized = True
            target = instant
        else:
            target = (1.0 - cfg.agc_smoothing) * self.gain + cfg.agc_smoothing * instant
        return float(np.clip(target, cfg.agc_min_gain, cfg.agc_max_gain))

    def process(self, block: np.ndarray) -> np.ndarray:
        """Filter one block and apply AGC; returns a float64 array of equal length."""
        filtered = self.filter(block)
        if filtered.size == 0:
            return filtered
        old_gain = self.gain
        first_estimate = not self._gain_initialized
        new_gain = self._next_gain(filtered)
        self.gain = new_gain
        if first_estimate or old_gain == new_gain:
            return filtered * new_gain
        # Ramp across the block so gain steps never show up as transients
        ramp = np.linspace(old_gain, new_gain, filtered.size)
        return filtered * ramp
