"""
tocktrack - Posture Aggregator
Keeps smoothed (rate, amplitude, beat error) for each fixed orientation of
the movement under test.
"""

import numbers
from dataclasses import dataclass

from config import PostureConfig
from logging_utils import log_event


@dataclass
class PostureSlot:
    label: str
    rate: float = 0.0
    amplitude: float = 0.0
    beat_error: float = 0.0
    updates: int = 0


@dataclass(frozen=True)
class PostureReading:
    """Read-only copy of one slot, as published to consumers"""
    index: int
    label: str
    rate: float
    amplitude: float
    beat_error: float
    updates: int

    @property
    def measured(self) -> bool:
        return self.updates > 0


class PostureAggregator:
    """
    One slot per posture label. Entering a posture resets that slot and
    starts the settle delay; readings taken before it elapses are not used.
    Afterwards each new snapshot is blended in with exponential smoothing,
    the first one initialising the slot.

    Time is the session's audio clock (seconds of processed audio), so the
    same recording always settles at the same point.
    """

    def __init__(self, config: PostureConfig, now: float = 0.0):
        self.labels = [str(label) for label in config.posture_labels]
        self.settle_delay = float(config.settle_delay)
        self.weight = float(config.smoothing_weight)
        self.slots = [PostureSlot(label) for label in self.labels]
        self.index = int(config.initial_posture)
        self._settle_until = now + self.settle_delay

    @property
    def label(self) -> str:
        return self.labels[self.index]

    @property
    def settle_until(self) -> float:
        return self._settle_until

    def is_valid_index(self, index) -> bool:
        return (isinstance(index, numbers.Integral) and not isinstance(index, bool)
                and 0 <= int(index) < len(self.slots))

    def set_posture(self, index, now: float) -> bool:
        """Switch to `index`. Out-of-range indices are rejected and the
        current posture is kept."""
        if not self.is_valid_index(index):
            log_event("WARN", "Posture", "Rejected posture index",
                      index=index, current=self.index, valid=f"0..{len(self.slots) - 1}")
            return False
        self.index = int(index)
        self.slots[self.index] = PostureSlot(self.labels[self.index])
        self.restart_settle(now)
        log_event("INFO", "Posture", "Posture changed", index=self.index, label=self.label,
                  settle_s=f"{self.settle_delay:.1f}")
        return True

    def restart_settle(self, now: float) -> None:
        self._settle_until = now + self.settle_delay

    def is_settled(self, now: float) -> bool:
        return now >= self._settle_until

    def update(self, rate: float, amplitude: float, beat_error: float, now: float) -> bool:
        """Blend a new reading into the current slot; False while settling."""
        if not self.is_settled(now):
            return False
        slot = self.slots[self.index]
        if slot.updates == 0:
            slot.rate, slot.amplitude, slot.beat_error = rate, amplitude, beat_error
        else:
            w = self.weight
            slot.rate += w * (rate - slot.rate)
            slot.amplitude += w * (amplitude - slot.amplitude)
            slot.beat_error += w * (beat_error - slot.beat_error)
        slot.updates += 1
        return True

    def current(self) -> PostureReading:
        return self._reading(self.index)

    def readings(self) -> tuple[PostureReading, ...]:
        return tuple(self._reading(i) for i in range(len(self.slots)))

    def _reading(self, i: int) -> PostureReading:
        slot = self.slots[i]
        return PostureReading(i, slot.label, slot.rate, slot.amplitude, slot.beat_error, slot.updates)
