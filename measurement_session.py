"""
tocktrack - Measurement Session
Owns all rolling state of one measurement and runs the pipeline once per
processing cycle:

    ring buffer -> preprocessor -> transient detector -> peak picker
    -> polarity classifier -> cycle reconstructor -> metrics engine
    -> posture aggregator / quality monitor -> published snapshot

Every stage receives its state from this object; there are no module-level
globals, so independent sessions can run side by side.
"""

import copy
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Optional

from config import Config, validate_config, validate_expected_bph, validate_lift_angle
from cycle_reconstructor import CycleRecord, expected_beat_interval, expected_cycle_period, reconstruct_cycles
from logging_utils import log_event, log_throttled
from metrics_engine import Calibration, MetricsEngine, MetricsEstimate, residual_series
from peak_picker import AdaptivePeakPicker
from polarity_classifier import PolarityClassifier, TickEvent
from posture_aggregator import PostureAggregator, PostureReading
from preprocessor import Preprocessor
from quality_monitor import QualityMonitor, QualityStatus
from ring_buffer import RingBuffer
from transient_detector import TransientDetector


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable result published after every processing cycle"""
    rate_seconds_per_day: float = 0.0
    beat_error_ms: float = 0.0
    amplitude_deg: float = 0.0
    observed_beats_per_hour: float = 0.0
    stability_ok: bool = False
    dropouts_ok: bool = True
    valid: bool = False                # Settled and backed by enough cycles
    insufficient_data: bool = True     # Values are held from an earlier cycle (or empty)
    settled: bool = False
    posture_index: int = 0
    posture_label: str = ""
    expected_beats_per_hour: float = 0.0
    lift_angle: float = 0.0
    snr_db: float = 0.0
    snr_ok: bool = False
    dropout_count: int = 0
    rate_std: float | None = None
    cycle_count: int = 0
    lift_time_ms: float = 0.0
    suggested_beats_per_hour: int = 0
    session_time: float = 0.0          # Seconds of audio processed
    residuals: tuple[tuple[float, float], ...] = ()
    postures: tuple[PostureReading, ...] = ()


SnapshotCallback = Callable[[MetricsSnapshot], None]


class MeasurementSession:
    """
    Single owned session context.

    process_cycle() is the only consumer of the ring buffer. Runtime changes
    (posture, lift angle, expected beats per hour) take the same lock, so
    they are applied strictly between processing cycles and a cycle never
    observes a half-done flush.
    """

    def __init__(self, config: Config, ring: Optional[RingBuffer] = None,
                 calibration: Optional[Calibration] = None,
                 snapshot_callback: Optional[SnapshotCallback] = None):
        validate_config(config)
        # Private copy: the configuration is fixed for the session's lifetime
        self.config = copy.deepcopy(config)
        cfg = self.config
        self.sample_rate = cfg.audio.sample_rate
        self.ring = ring if ring is not None else RingBuffer.for_duration(
            self.sample_rate, cfg.audio.ring_buffer_seconds)
        self.snapshot_callback = snapshot_callback
        self.max_block = max(1, int(round(cfg.audio.max_block_seconds * self.sample_rate)))

        self.lift_angle = float(cfg.movement.lift_angle)
        self.expected_bph = float(cfg.movement.expected_beats_per_hour)

        self.preprocessor = Preprocessor(cfg.filters, self.sample_rate)
        self.picker = AdaptivePeakPicker(cfg.detection, self.sample_rate)
        history_seconds = cfg.detection.analysis_window_size + 2.0 * self.picker.guard_seconds + 0.1
        self.detector = TransientDetector(cfg.detection, self.sample_rate, history_seconds)
        self.classifier = PolarityClassifier(self.sample_rate, cfg.detection.polarity_window_ms)
        self.metrics = MetricsEngine(cfg.metrics, calibration)
        self.postures = PostureAggregator(cfg.posture, now=0.0)
        self.quality = QualityMonitor(cfg.quality)

        self._lock = threading.RLock()
        self._events: deque[TickEvent] = deque(maxlen=2 * cfg.metrics.metrics_window_cycles + 16)
        self._residuals: deque[tuple[float, float]] = deque(maxlen=cfg.metrics.residual_history)
        self._residual_origin: float | None = None
        self._estimate: MetricsEstimate | None = None
        self._insufficient = True
        self._next_index = self.ring.read_position
        self._resynced_at = 0.0
        self.events_total = 0
        self.discontinuities = 0
        self.started_at = time.time()
        self._snapshot = self._build_snapshot(self.session_time, self._quality(self.session_time))

        log_event("INFO", "Session", "Measurement session created",
                  sample_rate=self.sample_rate, bph=f"{self.expected_bph:.0f}",
                  lift_angle=f"{self.lift_angle:.1f}", posture=self.postures.label)

    # ===== Read-only views =====

    @property
    def session_time(self) -> float:
        """Seconds of audio consumed (including samples skipped by flushes)."""
        return self._next_index / self.sample_rate

    @property
    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def events(self) -> tuple[TickEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def cycles(self) -> list[CycleRecord]:
        with self._lock:
            return self._reconstruct(list(self._events))

    @property
    def beat_interval(self) -> float:
        return expected_beat_interval(self.expected_bph)

    def _reconstruct(self, events: list[TickEvent]) -> list[CycleRecord]:
        period = expected_cycle_period(self.expected_bph)
        metrics = self.config.metrics
        return reconstruct_cycles(events, metrics.cycle_search_factor * period,
                                  expected_period=period, period_tolerance=metrics.period_tolerance)

    # ===== Processing cycle =====

    def process_cycle(self) -> Optional[MetricsSnapshot]:
        """Pull one block, run every stage and publish a snapshot.

        Returns None (and changes nothing) when the ring buffer is empty.
        """
        with self._lock:
            start, block = self.ring.pop_block_indexed(self.max_block)
            if block.size == 0:
                return None
            if start != self._next_index:
                self._handle_discontinuity(start)
            self._next_index = start + len(block)

            self.detector.append(self.preprocessor.process(block))
            new_events = self._detect_events()
            now = self.session_time
            if new_events:
                self._events.extend(new_events)
                self.events_total += len(new_events)
                self._record_residuals(new_events)
                self._update_estimate(now)

            snapshot = self._build_snapshot(now, self._quality(now))
            self._snapshot = snapshot

        if self.snapshot_callback is not None:
            self.snapshot_callback(snapshot)
        return snapshot

    def run_until_drained(self) -> MetricsSnapshot:
        """Process cycles until the ring buffer is empty (offline analysis)."""
        while self.process_cycle() is not None:
            pass
        return self.snapshot

    def _handle_discontinuity(self, start: int) -> None:
        lost = start - self._next_index
        self.discontinuities += 1
        log_throttled("session-gap", 5.0, "WARN", "Session", "Audio discontinuity, restarting detector",
                      lost_samples=lost, overruns=self.ring.overrun_samples)
        self.preprocessor.reset()
        self.detector.reset(start)
        self.picker.reset()

    def _detect_events(self) -> list[TickEvent]:
        envelope = self.detector.envelope()
        origin = self.detector.start_index
        peaks = self.picker.pick(envelope, origin)
        if not peaks:
            return []
        signal = self.detector.signal
        events = []
        for peak in peaks:
            polarity, score = self.classifier.classify(signal, peak.index - origin)
            events.append(TickEvent(
                timestamp=peak.position / self.sample_rate,
                polarity=polarity,
                strength=peak.height,
                lift_time=peak.width / self.sample_rate,
                polarity_score=score,
            ))
        return events

    def _record_residuals(self, new_events: list[TickEvent]) -> None:
        if self._residual_origin is None:
            self._residual_origin = new_events[0].timestamp
        self._residuals.extend(residual_series(new_events, self.beat_interval, self._residual_origin))

    def _update_estimate(self, now: float) -> None:
        events = list(self._events)
        cycles = self._reconstruct(events)
        estimate = self.metrics.estimate(cycles, events, self.expected_bph, self.lift_angle)
        if estimate is None:
            # Keep the previous values, only flag them
            self._insufficient = True
            log_throttled("session-insufficient", 5.0, "DEBUG", "Metrics", "Insufficient cycles",
                          cycles=len(cycles), events=len(events))
            return

        self._estimate = estimate
        self._insufficient = False
        self.quality.add_rate(estimate.rate_seconds_per_day)
        self.postures.update(estimate.rate_seconds_per_day, estimate.amplitude_deg,
                             estimate.beat_error_ms, now)
        log_throttled("session-estimate", 1.0, "DEBUG", "Metrics", "Estimate",
                      rate=f"{estimate.rate_seconds_per_day:+.1f}",
                      beat_error_ms=f"{estimate.beat_error_ms:.2f}",
                      amplitude=f"{estimate.amplitude_deg:.0f}",
                      bph=f"{estimate.observed_beats_per_hour:.0f}",
                      cycles=estimate.cycle_count)

    def _quality(self, now: float) -> QualityStatus:
        times = [e.timestamp for e in self._events]
        return self.quality.evaluate(times, now, self._resynced_at, self.beat_interval, self.picker.snr_db())

    def _build_snapshot(self, now: float, quality: QualityStatus) -> MetricsSnapshot:
        settled = self.postures.is_settled(now)
        estimate = self._estimate
        base = MetricsSnapshot(
            stability_ok=quality.stability_ok,
            dropouts_ok=quality.dropouts_ok,
            valid=settled and estimate is not None and not self._insufficient,
            insufficient_data=self._insufficient,
            settled=settled,
            posture_index=self.postures.index,
            posture_label=self.postures.label,
            expected_beats_per_hour=self.expected_bph,
            lift_angle=self.lift_angle,
            snr_db=quality.snr_db,
            snr_ok=quality.snr_ok,
            dropout_count=quality.dropout_count,
            rate_std=quality.rate_std,
            session_time=now,
            residuals=tuple(self._residuals),
            postures=self.postures.readings(),
        )
        if estimate is None:
            return base
        return replace(
            base,
            rate_seconds_per_day=estimate.rate_seconds_per_day,
            beat_error_ms=estimate.beat_error_ms,
            amplitude_deg=estimate.amplitude_deg,
            observed_beats_per_hour=estimate.observed_beats_per_hour,
            cycle_count=estimate.cycle_count,
            lift_time_ms=estimate.lift_time * 1000.0,
            suggested_beats_per_hour=estimate.suggested_beats_per_hour,
        )

    # ===== Runtime changes (re-synchronising) =====

    def _resync(self, reason: str) -> None:
        dropped = self.ring.clear()
        self._next_index = self.ring.read_position
        self.preprocessor.reset()
        self.detector.reset(self._next_index)
        self.picker.reset()
        self.quality.reset()
        self._events.clear()
        self._residuals.clear()
        self._residual_origin = None
        self._estimate = None
        self._insufficient = True
        self._resynced_at = self.session_time
        log_event("INFO", "Session", "Re-synchronised", reason=reason, dropped_samples=dropped)

    def _republish(self) -> None:
        now = self.session_time
        self._snapshot = self._build_snapshot(now, self._quality(now))

    def set_posture(self, index) -> bool:
        """Switch posture: flush rolling buffers and restart the settle delay.

        Invalid indices are rejected and the current posture is kept.
        """
        with self._lock:
            if not self.postures.is_valid_index(index):
                return self.postures.set_posture(index, self.session_time)
            self._resync("posture")
            self.postures.set_posture(index, self.session_time)
            self._republish()
            return True

    def set_lift_angle(self, lift_angle) -> bool:
        with self._lock:
            problem = validate_lift_angle(lift_angle)
            if problem:
                log_event("WARN", "Session", "Rejected lift angle", reason=problem)
                return False
            self.lift_angle = float(lift_angle)
            self._resync("lift_angle")
            self.postures.restart_settle(self.session_time)
            self._republish()
            return True

    def set_expected_bph(self, expected_bph) -> bool:
        with self._lock:
            problem = validate_expected_bph(expected_bph)
            if problem:
                log_event("WARN", "Session", "Rejected expected beats per hour", reason=problem)
                return False
            self.expected_bph = float(expected_bph)
            self._resync("expected_bph")
            self.postures.restart_settle(self.session_time)
            self._republish()
            return True

    # ===== Reporting =====

    def summary(self) -> dict:
        """Plain-data summary of the session for reports."""
        with self._lock:
            snap = self._snapshot
            return {
                "session_started_at": self.started_at,
                "session_ended_at": time.time(),
                "audio_seconds": round(self.session_time, 3),
                "sample_rate": self.sample_rate,
                "expected_bph": self.expected_bph,
                "lift_angle": self.lift_angle,
                "events_detected": self.events_total,
                "discontinuities": self.discontinuities,
                "refractory_rejections": self.picker.rejected_refractory,
                "overrun_samples": self.ring.overrun_samples,
                "last_rate": snap.rate_seconds_per_day,
                "last_beat_error_ms": snap.beat_error_ms,
                "last_amplitude": snap.amplitude_deg,
                "postures": [
                    {
                        "index": r.index,
                        "label": r.label,
                        "rate": r.rate,
                        "amplitude": r.amplitude,
                        "beat_error_ms": r.beat_error,
                        "updates": r.updates,
                    }
                    for r in self.postures.readings()
                ],
            }
