"""
tocktrack - Polarity Classifier
Labels each accepted peak as tick or tock from the local waveform shape.
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np


class Polarity(Enum):
    TICK = "tick"
    TOCK = "tock"


@dataclass(frozen=True)
class TickEvent:
    """One detected escapement impulse"""
    timestamp: float              # Seconds on the session's audio clock
    polarity: Polarity
    strength: float = 0.0         # Envelope peak height
    lift_time: float = 0.0        # Envelope FWHM in seconds
    polarity_score: float = 0.0   # Energy balance in [-1, 1]; > 0 means tick


class PolarityClassifier:
    """
    Compares the energy of the filtered signal just after the peak against
    the energy just before it. The score (E_post - E_pre) / (E_post + E_pre)
    is signed: positive when the post-peak lobe dominates (tick), negative
    otherwise (tock).

    This is a heuristic with no correctness guarantee. A misclassified event
    only costs the cycle reconstructor a cycle or two.
    """

    def __init__(self, sample_rate: int, window_ms: float):
        self.window = max(1, int(round(window_ms * sample_rate / 1000.0)))

    def score(self, signal: np.ndarray, rel_index: int) -> float:
        lo = max(0, rel_index - self.window)
        hi = min(len(signal), rel_index + self.window)
        pre = signal[lo:rel_index]
        post = signal[rel_index:hi]
        e_pre = float(np.dot(pre, pre))
        e_post = float(np.dot(post, post))
        total = e_pre + e_post
        if total <= 0.0:
            return 0.0
        return (e_post - e_pre) / total

    def classify(self, signal: np.ndarray, rel_index: int) -> tuple[Polarity, float]:
        value = self.score(signal, rel_index)
        return (Polarity.TICK if value > 0.0 else Polarity.TOCK), value
