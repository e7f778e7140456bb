#!/usr/bin/env python3
"""
tocktrack - Acoustic timegrapher

Measures rate, beat error and amplitude of a mechanical watch from the sound
of its escapement, either live from an input device or from a WAV recording.
"""

import argparse
import sys
import time
from pathlib import Path

from audio_capture import (
    CaptureWorker,
    ProcessingWorker,
    SampleSourceError,
    SoundDeviceSource,
    WavFileSource,
    list_input_devices,
)
from config import Config, ConfigValidationError, SourceKind
from config_persistence import get_report_dir, load_config
from logging_utils import configure_log_file, log_event, log_throttled, set_log_level
from measurement_session import MeasurementSession, MetricsSnapshot
from session_reporter import SessionReporter

EXIT_OK = 0
EXIT_SOURCE_ERROR = 1
EXIT_CONFIG_ERROR = 2


def format_snapshot(snap: MetricsSnapshot) -> str:
    if snap.cycle_count == 0:
        return f"[{snap.posture_label}] waiting for signal ({snap.session_time:.1f} s)"
    flags = []
    if not snap.settled:
        flags.append("settling")
    if snap.insufficient_data:
        flags.append("held")
    if not snap.stability_ok:
        flags.append("unstable")
    if not snap.dropouts_ok:
        flags.append("dropouts")
    if not snap.snr_ok:
        flags.append("low-snr")
    status = ",".join(flags) if flags else "ok"
    return (f"[{snap.posture_label}] rate {snap.rate_seconds_per_day:+6.1f} s/d  "
            f"beat error {snap.beat_error_ms:4.1f} ms  amplitude {snap.amplitude_deg:3.0f} deg  "
            f"{snap.observed_beats_per_hour:6.0f} bph  ({status})")


def print_snapshot(snap: MetricsSnapshot) -> None:
    log_throttled("cli-snapshot", 1.0, "INFO", "Measure", format_snapshot(snap))


def print_posture_table(session: MeasurementSession) -> None:
    for reading in session.postures.readings():
        if not reading.measured:
            continue
        log_event("INFO", "Summary", reading.label, rate=f"{reading.rate:+.1f}",
                  amplitude=f"{reading.amplitude:.0f}", beat_error_ms=f"{reading.beat_error:.2f}",
                  updates=reading.updates)


def analyze_file(session: MeasurementSession, source: WavFileSource, duration: float | None) -> None:
    """Feed a recording through the session as fast as it can be processed."""
    limit = None if duration is None else int(duration * source.sample_rate)
    fed = 0
    while not source.exhausted and (limit is None or fed < limit):
        block = source.read()
        if limit is not None:
            block = block[:limit - fed]
        session.ring.push(block)
        fed += len(block)
        session.run_until_drained()


def open_source(config: Config) -> SoundDeviceSource | WavFileSource:
    """Build the sample source named by `config.audio.source`."""
    if config.audio.source == SourceKind.WAV_FILE:
        if not config.audio.wav_path:
            raise SampleSourceError("WAV source selected but no wav_path configured")
        return WavFileSource(config.audio.wav_path, block_size=config.audio.block_size)
    return SoundDeviceSource(config.audio)


def measure_live(session: MeasurementSession, source: SoundDeviceSource, duration: float | None) -> None:
    failures = []
    capture = CaptureWorker(source, session.ring, on_error=failures.append)
    processing = ProcessingWorker(session)
    capture.start()
    processing.start()
    started = time.monotonic()
    try:
        while capture.is_alive():
            if duration is not None and time.monotonic() - started >= duration:
                break
            time.sleep(0.1)
    except KeyboardInterrupt:
        log_event("INFO", "Main", "Interrupted")
    finally:
        capture.stop()
        processing.stop()
        capture.join(timeout=2.0)
        processing.join(timeout=2.0)
    if failures:
        raise failures[0]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Acoustic watch timegrapher")
    parser.add_argument("--wav", type=Path, help="Analyse a WAV recording instead of a live input")
    parser.add_argument("--device", type=int, help="Input device index (see --list-devices)")
    parser.add_argument("--list-devices", action="store_true", help="List input devices and exit")
    parser.add_argument("--bph", type=int, help="Expected beats per hour of the movement")
    parser.add_argument("--lift-angle", type=float, help="Lift angle in degrees")
    parser.add_argument("--posture", type=int, help="Posture index (0-based)")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.tocktrack/config.json)")
    parser.add_argument("--report-dir", type=Path, help="Directory for session reports")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", type=Path, help="Also write the log to this file")
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        set_log_level(args.log_level)
    if args.log_file is not None:
        configure_log_file(args.log_file)
    try:
        return run(args)
    finally:
        if args.log_file is not None:
            configure_log_file(None)


def run(args: argparse.Namespace) -> int:
    if args.list_devices:
        try:
            devices = list_input_devices()
        except SampleSourceError as e:
            log_event("ERROR", "Main", "Cannot list devices", error=e)
            return EXIT_SOURCE_ERROR
        for d in devices:
            print(f"[{d['index']}] {d['name']}  ({d['channels']} ch, {d['default_samplerate']:.0f} Hz)")
        return EXIT_OK

    config = load_config(args.config)
    if not args.log_level:
        set_log_level(config.log_level)
    if args.bph is not None:
        config.movement.expected_beats_per_hour = args.bph
    if args.lift_angle is not None:
        config.movement.lift_angle = args.lift_angle
    if args.posture is not None:
        config.posture.initial_posture = args.posture
    if args.device is not None:
        config.audio.device_index = args.device
    if args.wav is not None:
        config.audio.source = SourceKind.WAV_FILE
        config.audio.wav_path = str(args.wav)

    try:
        source = open_source(config)
        source.open()
    except SampleSourceError as e:
        log_event("ERROR", "Main", "Cannot open sample source", error=e)
        return EXIT_SOURCE_ERROR

    try:
        config.audio.sample_rate = source.sample_rate
        try:
            session = MeasurementSession(config, snapshot_callback=print_snapshot)
        except ConfigValidationError as e:
            for problem in e.problems:
                log_event("ERROR", "Config", problem)
            return EXIT_CONFIG_ERROR

        try:
            if isinstance(source, WavFileSource):
                analyze_file(session, source, args.duration)
            else:
                measure_live(session, source, args.duration)
        except SampleSourceError as e:
            log_event("ERROR", "Main", "Measurement aborted", error=e)
            return EXIT_SOURCE_ERROR
    finally:
        source.close()

    log_event("INFO", "Measure", format_snapshot(session.snapshot))
    print_posture_table(session)
    if config.report_generation_enabled:
        reporter = SessionReporter(args.report_dir or get_report_dir())
        reporter.save_session(session.summary())
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
