"""
tocktrack - Sample Ring Buffer
Fixed-capacity circular store decoupling capture cadence from processing cadence.
"""

import numpy as np


class RingBuffer:
    """
    Single-producer/single-consumer circular sample buffer.

    The capture side only calls push() and only advances the write counter;
    the processing side only calls pop_block()/clear() and only advances the
    read counter. Counters are absolute sample indices, so the consumer can
    tell where a popped block sits on the session's audio clock and whether
    wrapping has overwritten samples it never read.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self._data = np.zeros(self.capacity, dtype=np.float32)
        self._written = 0   # Total samples ever pushed (producer-owned)
        self._read = 0      # Total samples consumed or skipped (consumer-owned)
        self.overrun_samples = 0

    @classmethod
    def for_duration(cls, sample_rate: int, seconds: float) -> "RingBuffer":
        return cls(max(1, int(round(sample_rate * seconds))))

    def push(self, samples) -> None:
        """Append samples, overwriting the oldest once capacity is exceeded."""
        block = np.asarray(samples, dtype=np.float32).ravel()
        n = len(block)
        if n == 0:
            return
        start = self._written
        if n > self.capacity:
            # Only the newest `capacity` samples can survive anyway
            start += n - self.capacity
            block = block[-self.capacity:]
            n = self.capacity

        pos = start % self.capacity
        first = min(n, self.capacity - pos)
        self._data[pos:pos + first] = block[:first]
        if first < n:
            self._data[:n - first] = block[first:]
        # Publish only after the data is in place
        self._written = start + n

    def available(self) -> int:
        """Unread samples still held by the buffer."""
        return min(self._written - self._read, self.capacity)

    @property
    def read_position(self) -> int:
        return self._read

    @property
    def write_position(self) -> int:
        return self._written

    def pop_block_indexed(self, n: int) -> tuple[int, np.ndarray]:
        """Pop up to n of the oldest unread samples without blocking.

        Returns (absolute index of the first sample, samples). The array is
        empty when nothing is available.
        """
        written = self._written
        if written - self._read > self.capacity:
            lost = written - self.capacity - self._read
            self.overrun_samples += lost
            self._read = written - self.capacity

        start = self._read
        count = min(max(0, int(n)), written - start)
        if count <= 0:
            return start, np.zeros(0, dtype=np.float32)

        pos = start % self.capacity
        first = min(count, self.capacity - pos)
        out = np.empty(count, dtype=np.float32)
        out[:first] = self._data[pos:pos + first]
        if first < count:
            out[first:] = self._data[:count - first]

        # The producer may have wrapped over part of the copy meanwhile
        clobbered = self._written - self.capacity - start
        if clobbered > 0:
            clobbered = min(clobbered, count)
            self.overrun_samples += clobbered
            out = out[clobbered:]
            start += clobbered

        self._read = start + len(out)
        return start, out

    def pop_block(self, n: int) -> np.ndarray:
        """Return the oldest n unread samples, or fewer (possibly none)."""
        return self.pop_block_indexed(n)[1]

    def clear(self) -> int:
        """Discard all unread samples; returns how many were dropped."""
        written = self._written
        dropped = min(written - self._read, self.capacity)
        self._read = written
        return dropped
