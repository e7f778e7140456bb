# tocktrack Configuration
# All default values, constants and validation

from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from enum import IntEnum
from typing import List


CURRENT_CONFIG_VERSION = 1

# Beat trains a movement is commonly built for (beats per hour)
STANDARD_BPH = [3600, 7200, 14400, 18000, 19800, 21600, 25200, 28800, 36000, 43200]

MIN_EXPECTED_BPH = 1800
MAX_EXPECTED_BPH = 72000
POSTURE_SLOT_COUNT = 6

DEFAULT_POSTURE_LABELS = [
    "Dial Up",
    "Dial Down",
    "Crown Up",
    "Crown Down",
    "Crown Left",
    "Crown Right",
]


class ConfigValidationError(ValueError):
    """Raised when configuration values are outside physically sane bounds."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class SourceKind(IntEnum):
    INPUT_DEVICE = 1
    WAV_FILE = 2


class AmplitudeModel(IntEnum):
    LIFT_PROXY = 1       # (pi * lift_time / period) / sin(lift_angle / 2)
    BALANCE_SWING = 2    # lift_angle / (2 * sin(pi * lift_time / period))


@dataclass
class AudioConfig:
    """Audio ingestion settings"""
    sample_rate: int = 44100
    channels: int = 1                  # Captured channels, mixed down to mono
    block_size: int = 1024             # Frames per capture read
    device_index: int | None = None    # None = system default input
    source: SourceKind = SourceKind.INPUT_DEVICE
    wav_path: str = ""                 # Recording used when source is WAV_FILE
    ring_buffer_seconds: float = 10.0  # Ring buffer capacity
    processing_interval_ms: float = 50.0  # Processing cycle cadence
    max_block_seconds: float = 0.5     # Most audio pulled by one processing cycle


@dataclass
class FilterConfig:
    """Band-limiting filters and automatic gain control"""
    highpass_cutoff: float = 200.0     # Removes sub-audio rumble (Hz)
    lowpass_cutoff: float = 5000.0     # Removes hiss (Hz), clamped below Nyquist
    filter_order: int = 4              # Butterworth order for each filter
    agc_target_level: float = 0.1      # Target RMS after gain
    agc_smoothing: float = 0.05        # Weight of the new gain estimate per block
    agc_min_gain: float = 0.1
    agc_max_gain: float = 1000.0
    agc_silence_floor: float = 1e-6   # Blocks quieter than this RMS hold the gain


@dataclass
class DetectionConfig:
    """Transient detection and adaptive peak picking"""
    min_tick_separation: float = 0.010   # Refractory period (s)
    analysis_window_size: float = 2.0    # Trailing envelope used for the threshold (s)
    threshold_k: float = 4.0             # threshold = median + k * MAD
    envelope_smoothing_ms: float = 2.0   # Moving-average length of the envelope
    polarity_window_ms: float = 6.0      # Energy window each side of a peak
    lift_search_ms: float = 20.0         # Max half-width searched for the FWHM
    min_history_seconds: float = 0.5     # Envelope needed before picking starts


@dataclass
class MovementConfig:
    """Movement under test (runtime-adjustable)"""
    lift_angle: float = 52.0                 # Degrees
    expected_beats_per_hour: int = 21600


@dataclass
class MetricsConfig:
    """Cycle reconstruction and robust aggregation"""
    metrics_window_cycles: int = 300   # Trailing cycles aggregated per snapshot
    min_cycles: int = 4                # Fewer usable cycles = insufficient data
    trim_fraction: float = 0.1         # Fraction discarded from each tail
    cycle_search_factor: float = 1.25  # Search window as a multiple of the expected period
    period_tolerance: float = 0.25     # Cycles further than this fraction from the expected period are dropped
    amplitude_model: AmplitudeModel = AmplitudeModel.LIFT_PROXY
    residual_history: int = 600        # Points kept in the residual-vs-time series


@dataclass
class PostureConfig:
    """Posture slots and smoothing"""
    posture_labels: List[str] = field(default_factory=lambda: list(DEFAULT_POSTURE_LABELS))
    initial_posture: int = 0
    settle_delay: float = 10.0         # Seconds of audio before readings are trusted
    smoothing_weight: float = 0.2      # EMA weight on each new snapshot


@dataclass
class QualityConfig:
    """Stability, dropout and signal quality monitoring"""
    stability_window: int = 10         # Rate estimates used for the stability check
    stability_threshold: float = 0.5   # Max std of rate (s/day) considered stable
    dropout_window_seconds: float = 10.0
    max_dropouts: int = 3              # More gaps than this in the window = unreliable
    min_snr_db: float = 10.0


@dataclass
class Config:
    """Master configuration"""
    version: int = CURRENT_CONFIG_VERSION
    audio: AudioConfig = field(default_factory=AudioConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    movement: MovementConfig = field(default_factory=MovementConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    posture: PostureConfig = field(default_factory=PostureConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)

    log_level: str = "INFO"
    report_generation_enabled: bool = True


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; IntEnum fields are coerced when possible."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if isinstance(current, IntEnum):
            try:
                setattr(target, key, current.__class__(value))
            except ValueError:
                from logging_utils import log_event
                log_event("WARN", "Config", "Unknown enum value, keeping default",
                          key=key, value=value)
            continue

        if isinstance(current, list) and isinstance(value, (list, tuple)):
            setattr(target, key, [str(v) for v in value])
            continue

        setattr(target, key, value)


def _field_default(f):
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return None


def _restore_none_fields(section) -> None:
    for f in fields(section):
        value = getattr(section, f.name)
        if is_dataclass(value):
            _restore_none_fields(value)
        elif value is None:
            default = _field_default(f)
            if default is not None:
                setattr(section, f.name, default)


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Restores defaults for null fields, clamps ratios and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    if version < 1:
        _restore_none_fields(config)

    # Ratios are always clamped, whatever the file said
    config.posture.smoothing_weight = max(0.01, min(1.0, float(config.posture.smoothing_weight)))
    config.metrics.trim_fraction = max(0.0, min(0.45, float(config.metrics.trim_fraction)))
    config.filters.agc_smoothing = max(0.001, min(1.0, float(config.filters.agc_smoothing)))

    config.version = CURRENT_CONFIG_VERSION


def validate_lift_angle(value) -> str | None:
    try:
        angle = float(value)
    except (TypeError, ValueError):
        return f"lift_angle must be a number, got {value!r}"
    if not 0.0 < angle < 180.0:
        return f"lift_angle must be between 0 and 180 degrees, got {angle}"
    return None


def validate_expected_bph(value) -> str | None:
    try:
        bph = float(value)
    except (TypeError, ValueError):
        return f"expected_beats_per_hour must be a number, got {value!r}"
    if not MIN_EXPECTED_BPH <= bph <= MAX_EXPECTED_BPH:
        return (f"expected_beats_per_hour must be in "
                f"[{MIN_EXPECTED_BPH}, {MAX_EXPECTED_BPH}], got {bph:g}")
    return None


def validate_config(config: Config) -> None:
    """Reject configurations that cannot describe a measurement session.

    Raises ConfigValidationError listing every problem found.
    """
    problems: List[str] = []
    audio = config.audio
    filters = config.filters
    det = config.detection
    metrics = config.metrics
    posture = config.posture
    quality = config.quality

    if not isinstance(audio.sample_rate, int) or audio.sample_rate <= 0:
        problems.append(f"sample_rate must be a positive integer, got {audio.sample_rate!r}")
        nyquist = None
    else:
        nyquist = audio.sample_rate / 2.0
    if audio.channels < 1:
        problems.append("channels must be >= 1")
    if audio.block_size < 1:
        problems.append("block_size must be >= 1")
    if audio.ring_buffer_seconds < 1.0:
        problems.append("ring_buffer_seconds must be >= 1")
    if audio.processing_interval_ms <= 0:
        problems.append("processing_interval_ms must be > 0")
    if audio.max_block_seconds <= 0:
        problems.append("max_block_seconds must be > 0")

    if filters.highpass_cutoff <= 0:
        problems.append("highpass_cutoff must be > 0")
    if filters.lowpass_cutoff <= filters.highpass_cutoff:
        problems.append("lowpass_cutoff must be above highpass_cutoff")
    if nyquist is not None and filters.highpass_cutoff >= 0.9 * nyquist:
        problems.append(f"highpass_cutoff must be well below Nyquist ({nyquist:g} Hz)")
    if filters.filter_order < 1:
        problems.append("filter_order must be >= 1")
    if filters.agc_target_level <= 0:
        problems.append("agc_target_level must be > 0")
    if not 0.0 < filters.agc_smoothing <= 1.0:
        problems.append("agc_smoothing must be in (0, 1]")
    if filters.agc_min_gain <= 0 or filters.agc_max_gain < filters.agc_min_gain:
        problems.append("agc gain range must satisfy 0 < agc_min_gain <= agc_max_gain")

    if det.min_tick_separation <= 0:
        problems.append("min_tick_separation must be > 0")
    if det.analysis_window_size <= det.min_tick_separation:
        problems.append("analysis_window_size must exceed min_tick_separation")
    if det.threshold_k <= 0:
        problems.append("threshold_k must be > 0")
    if det.envelope_smoothing_ms <= 0 or det.polarity_window_ms <= 0 or det.lift_search_ms <= 0:
        problems.append("envelope_smoothing_ms, polarity_window_ms and lift_search_ms must be > 0")
    if det.min_history_seconds < 0:
        problems.append("min_history_seconds must be >= 0")

    for problem in (validate_lift_angle(config.movement.lift_angle),
                    validate_expected_bph(config.movement.expected_beats_per_hour)):
        if problem:
            problems.append(problem)

    if metrics.min_cycles < 1 or metrics.metrics_window_cycles < metrics.min_cycles:
        problems.append("metrics_window_cycles must be >= min_cycles >= 1")
    if not 0.0 <= metrics.trim_fraction < 0.5:
        problems.append("trim_fraction must be in [0, 0.5)")
    if not 1.0 < metrics.cycle_search_factor < 1.5:
        problems.append("cycle_search_factor must be in (1, 1.5)")
    if not 0.0 < metrics.period_tolerance < 0.5:
        problems.append("period_tolerance must be in (0, 0.5)")
    if metrics.residual_history < 1:
        problems.append("residual_history must be >= 1")

    labels = posture.posture_labels
    if not 1 <= len(labels) <= POSTURE_SLOT_COUNT:
        problems.append(f"posture_labels must name 1 to {POSTURE_SLOT_COUNT} postures")
    elif any(not str(label).strip() for label in labels):
        problems.append("posture_labels must not be empty")
    elif not 0 <= posture.initial_posture < len(labels):
        problems.append("initial_posture must index posture_labels")
    if posture.settle_delay < 0:
        problems.append("settle_delay must be >= 0")
    if not 0.0 < posture.smoothing_weight <= 1.0:
        problems.append("smoothing_weight must be in (0, 1]")

    if quality.stability_window < 10:
        problems.append("stability_window must be >= 10")
    if quality.stability_threshold <= 0:
        problems.append("stability_threshold must be > 0")
    if quality.dropout_window_seconds <= 0:
        problems.append("dropout_window_seconds must be > 0")
    if quality.max_dropouts < 0:
        problems.append("max_dropouts must be >= 0")

    if problems:
        raise ConfigValidationError(problems)


# Default config instance
DEFAULT_CONFIG = Config()
