"""
tocktrack - Sample Sources and Workers
Thin sample sources (live input through sounddevice, recordings through
scipy.io.wavfile) plus the capture and processing threads that connect a
source, the ring buffer and a measurement session.
"""

import threading
import time
from pathlib import Path
from typing import Callable, Optional

import numpy as np
from scipy.io import wavfile

from config import AudioConfig
from logging_utils import log_event
from ring_buffer import RingBuffer


class SampleSourceError(RuntimeError):
    """The sample source cannot deliver audio (missing device, unreadable file...)."""


def to_mono_float(data: np.ndarray) -> np.ndarray:
    """Convert integer or float PCM of any channel count to mono float32 in [-1, 1]."""
    x = np.asarray(data)
    if x.dtype == np.uint8:
        x = (x.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(x.dtype, np.integer):
        x = x.astype(np.float32) / float(np.iinfo(x.dtype).max + 1)
    else:
        x = x.astype(np.float32)
    if x.ndim == 2:
        x = x.mean(axis=1) if x.shape[1] > 1 else x[:, 0]
    return np.ascontiguousarray(x.ravel(), dtype=np.float32)


def list_input_devices() -> list[dict]:
    """Input-capable devices as reported by PortAudio."""
    try:
        import sounddevice as sd
        devices = sd.query_devices()
    except Exception as e:
        raise SampleSourceError(f"Cannot query audio devices: {e}") from e
    found = []
    for i, d in enumerate(devices):
        if d['max_input_channels'] > 0:
            found.append({
                "index": i,
                "name": d['name'],
                "channels": d['max_input_channels'],
                "default_samplerate": d['default_samplerate'],
            })
    return found


class SoundDeviceSource:
    """Live input device. Blocking reads of `block_size` frames."""

    def __init__(self, config: AudioConfig):
        self.sample_rate = int(config.sample_rate)
        self.channels = max(1, int(config.channels))
        self.block_size = max(1, int(config.block_size))
        self.device_index = config.device_index
        self.stream = None
        self.overflows = 0

    def open(self) -> None:
        if self.stream is not None:
            return
        try:
            # Imported here so offline analysis and tests work without PortAudio
            import sounddevice as sd
            self.stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.block_size,
                device=self.device_index,
                dtype='float32',
            )
            self.stream.start()
        except Exception as e:
            self.stream = None
            raise SampleSourceError(f"Cannot open input device {self.device_index}: {e}") from e
        log_event("INFO", "Capture", "Input capture started", device=self.device_index,
                  sample_rate=self.sample_rate, channels=self.channels)

    def read(self) -> np.ndarray:
        if self.stream is None:
            raise SampleSourceError("Input device is not open")
        try:
            data, overflowed = self.stream.read(self.block_size)
        except Exception as e:
            raise SampleSourceError(f"Input device read failed: {e}") from e
        if overflowed:
            self.overflows += 1
        return to_mono_float(data)

    @property
    def exhausted(self) -> bool:
        return False

    def close(self) -> None:
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            finally:
                self.stream = None
            log_event("INFO", "Capture", "Input capture stopped", overflows=self.overflows)


class WavFileSource:
    """A recording read in fixed-size chunks.

    `realtime=True` paces reads to the recording's own clock, so a file can
    stand in for a live device.
    """

    def __init__(self, path, block_size: int = 1024, realtime: bool = False):
        self.path = Path(path)
        self.block_size = max(1, int(block_size))
        self.realtime = realtime
        self.sample_rate = 0
        self._samples: Optional[np.ndarray] = None
        self._pos = 0
        self._started_at = 0.0

    def open(self) -> None:
        try:
            rate, data = wavfile.read(self.path)
        except (OSError, ValueError) as e:
            raise SampleSourceError(f"Cannot read WAV file {self.path}: {e}") from e
        self.sample_rate = int(rate)
        self._samples = to_mono_float(data)
        self._pos = 0
        self._started_at = time.monotonic()
        log_event("INFO", "Capture", "WAV file opened", path=self.path, sample_rate=self.sample_rate,
                  seconds=f"{self.duration:.1f}")

    @property
    def duration(self) -> float:
        if self._samples is None or self.sample_rate <= 0:
            return 0.0
        return len(self._samples) / self.sample_rate

    @property
    def exhausted(self) -> bool:
        return self._samples is not None and self._pos >= len(self._samples)

    def read(self) -> np.ndarray:
        """Next chunk; an empty array once the file is exhausted."""
        if self._samples is None:
            raise SampleSourceError(f"WAV file {self.path} is not open")
        if self.realtime:
            due = self._started_at + self._pos / self.sample_rate
            delay = due - time.monotonic()
            if delay > 0:
                time.sleep(delay)
        chunk = self._samples[self._pos:self._pos + self.block_size]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        self._samples = None


class CaptureWorker(threading.Thread):
    """Moves samples from a source into the ring buffer until stopped,
    the source runs dry, or the source fails."""

    def __init__(self, source, ring: RingBuffer,
                 on_error: Optional[Callable[[Exception], None]] = None):
        super().__init__(name="tocktrack-capture", daemon=True)
        self.source = source
        self.ring = ring
        self.on_error = on_error
        self.error: Optional[Exception] = None
        self.samples_captured = 0
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        try:
            while not self._stop_event.is_set():
                block = self.source.read()
                if len(block) == 0:
                    if self.source.exhausted:
                        log_event("INFO", "Capture", "Source exhausted", samples=self.samples_captured)
                        break
                    continue
                self.ring.push(block)
                self.samples_captured += len(block)
        except SampleSourceError as e:
            self.error = e
            log_event("ERROR", "Capture", "Sample source failed", error=e)
            if self.on_error is not None:
                self.on_error(e)


class ProcessingWorker(threading.Thread):
    """Runs the session's processing cycle at a fixed cadence.

    Stopping takes effect between processing cycles.
    """

    def __init__(self, session, interval_ms: Optional[float] = None):
        super().__init__(name="tocktrack-processing", daemon=True)
        self.session = session
        if interval_ms is None:
            interval_ms = session.config.audio.processing_interval_ms
        self.interval_s = max(0.001, float(interval_ms) / 1000.0)
        self.cycles_run = 0
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        next_due = time.monotonic()
        while not self._stop_event.is_set():
            if self.session.process_cycle() is not None:
                self.cycles_run += 1
            next_due += self.interval_s
            delay = next_due - time.monotonic()
            if delay < 0:
                # Fell behind: don't try to catch up with a burst of cycles
                next_due = time.monotonic()
                delay = 0.0
            self._stop_event.wait(delay)
