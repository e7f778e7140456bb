"""
tocktrack - Cycle Reconstructor
Pairs tick/tock events into full oscillation cycles.
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from polarity_classifier import Polarity, TickEvent


@dataclass(frozen=True)
class CycleRecord:
    """tick -> tock -> next tick, i.e. one full swing of the balance"""
    tick_time: float
    tock_time: float
    next_tick_time: float
    period: float        # next_tick_time - tick_time
    beat_error: float    # (tock_time - tick_time) - period / 2, seconds


def expected_beat_interval(expected_bph: float) -> float:
    """Seconds between consecutive beats (tick to tock or tock to tick)."""
    return 3600.0 / float(expected_bph)


def expected_cycle_period(expected_bph: float) -> float:
    """Seconds per oscillation; one oscillation spans two beats."""
    return 2.0 * expected_beat_interval(expected_bph)


def reconstruct_cycles(events: Sequence[TickEvent], max_period: float,
                       expected_period: float | None = None,
                       period_tolerance: float = 0.25) -> list[CycleRecord]:
    """Build cycle records from a time-ordered event sequence.

    For every tick, take the nearest later tock and the nearest tick after
    that tock. Triples whose tock or closing tick fall outside `max_period`
    of the opening tick are dropped. When `expected_period` is given, so are
    triples whose period differs from it by more than `period_tolerance`
    (a fraction): a tock read as a tick otherwise produces a three-beat
    "cycle". Gaps and misclassified events simply yield fewer cycles.
    """
    ticks = np.array([e.timestamp for e in events if e.polarity is Polarity.TICK], dtype=np.float64)
    tocks = np.array([e.timestamp for e in events if e.polarity is Polarity.TOCK], dtype=np.float64)
    if len(ticks) < 2 or len(tocks) == 0:
        return []

    tock_idx = np.searchsorted(tocks, ticks, side='right')
    has_tock = tock_idx < len(tocks)
    opening = ticks[has_tock]
    tock_times = tocks[tock_idx[has_tock]]

    next_idx = np.searchsorted(ticks, tock_times, side='right')
    has_next = next_idx < len(ticks)
    opening = opening[has_next]
    tock_times = tock_times[has_next]
    closing = ticks[next_idx[has_next]]

    periods = closing - opening
    keep = (periods > 0.0) & (periods <= max_period) & ((tock_times - opening) < max_period)
    if expected_period is not None:
        keep &= np.abs(periods - expected_period) <= period_tolerance * expected_period

    return [
        CycleRecord(
            tick_time=float(t0),
            tock_time=float(tk),
            next_tick_time=float(t1),
            period=float(p),
            beat_error=float((tk - t0) - p / 2.0),
        )
        for t0, tk, t1, p in zip(opening[keep], tock_times[keep], closing[keep], periods[keep])
    ]
