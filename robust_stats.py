"""Outlier-resistant estimators shared by the metrics and quality stages."""

from typing import Iterable

import numpy as np
from scipy.stats import trim_mean


def trimmed_mean(values: Iterable[float], trim_fraction: float) -> float:
    """Mean after discarding `trim_fraction` of the samples from each tail.

    Returns NaN for an empty input.
    """
    data = np.asarray(list(values), dtype=np.float64)
    data = data[np.isfinite(data)]
    if data.size == 0:
        return float('nan')
    return float(trim_mean(data, trim_fraction))


def robust_median(values: Iterable[float], default: float = 0.0) -> float:
    data = np.asarray(list(values), dtype=np.float64)
    if data.size == 0:
        return default
    return float(np.median(data))
