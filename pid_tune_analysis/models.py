# PID Tune Analysis - Data Models
# Copyright (C) 2024
# License: GPLv3

"""
Data models for flight tuning analysis.

Every result type is a frozen dataclass; array fields are copied on
construction and marked read-only so results can be cached safely.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import InvalidInputError


class Axis(str, Enum):
    """Control axis of the aircraft."""
    ROLL = 'roll'
    PITCH = 'pitch'
    YAW = 'yaw'


AXES = (Axis.ROLL, Axis.PITCH, Axis.YAW)


class PeakType(str, Enum):
    FRAME_RESONANCE = 'frame_resonance'
    MOTOR_HARMONIC = 'motor_harmonic'
    ELECTRICAL = 'electrical'
    UNKNOWN = 'unknown'


class NoiseLevel(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class StepDirection(str, Enum):
    POSITIVE = 'positive'
    NEGATIVE = 'negative'


class Confidence(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class FlightStyle(str, Enum):
    SMOOTH = 'smooth'
    BALANCED = 'balanced'
    AGGRESSIVE = 'aggressive'


class CouplingRating(str, Enum):
    NONE = 'none'
    MILD = 'mild'
    SIGNIFICANT = 'significant'


class DTermRating(str, Enum):
    EFFICIENT = 'efficient'
    BALANCED = 'balanced'
    NOISY = 'noisy'


class PropWashRating(str, Enum):
    MINIMAL = 'minimal'
    MODERATE = 'moderate'
    SEVERE = 'severe'


def frozen_array(values: Any) -> np.ndarray:
    """Copy ``values`` into a read-only float array."""
    arr = np.array(values, dtype=float)
    arr.flags.writeable = False
    return arr


def normalize_throttle(values: Any) -> Union[float, np.ndarray]:
    """
    Normalize raw throttle values to the 0-1 range.

    Accepts the four raw conventions found in blackbox logs:
    1000-2000 (RC pulse), 0-1000, 0-100 and 0-1.

    Args:
        values: Scalar or array of raw throttle values

    Returns:
        Normalized value(s), same shape as the input
    """
    v = np.asarray(values, dtype=float)
    out = np.select(
        [v > 1000, v > 100, v > 1],
        [(v - 1000) / 1000, v / 1000, v / 100],
        default=v,
    )
    if np.ndim(values) == 0:
        return float(out)
    return out


@dataclass(frozen=True)
class Unavailable:
    """
    Absent analysis result.

    Returned instead of raising when there is not enough data. ``count``
    carries whatever the caller needs to explain why (samples, windows,
    observations ...). Instances are falsy.
    """
    reason: str
    count: int = 0

    def __bool__(self) -> bool:
        return False


# ---- Input contract ----

@dataclass(frozen=True)
class TimeSeries:
    """Uniformly sampled channel: ``time`` in seconds and ``values``."""
    time: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        time = frozen_array(self.time)
        values = frozen_array(self.values)
        if time.shape != values.shape:
            raise InvalidInputError(
                f"time and values differ in length: {len(time)} != {len(values)}"
            )
        object.__setattr__(self, 'time', time)
        object.__setattr__(self, 'values', values)

    def __len__(self) -> int:
        return len(self.values)

    @classmethod
    def from_values(cls, values: Sequence[float], sample_rate: float) -> "TimeSeries":
        """Build a series starting at t=0 from samples taken at ``sample_rate`` Hz."""
        values = np.asarray(values, dtype=float)
        return cls(time=np.arange(len(values)) / sample_rate, values=values)


@dataclass
class PIDGains:
    """PID parameters for a single axis."""
    p: float = 0.0
    i: float = 0.0
    d: float = 0.0
    f: float = 0.0  # Feedforward term
    d_min: float = 0.0

    def __str__(self) -> str:
        return f"P={self.p}, I={self.i}, D={self.d}, F={self.f}, D_min={self.d_min}"


@dataclass(frozen=True)
class AnalysisSegment:
    """Slice of the flight chosen by an external segment selector."""
    start_index: int
    end_index: int
    duration_seconds: float = 0.0
    average_throttle: float = 0.0


@dataclass(frozen=True)
class AxisMetricsSummary:
    """Mean step-response metrics of one axis, as stored with a past tuning."""
    mean_overshoot: float
    mean_rise_time_ms: float
    mean_settling_time_ms: float
    mean_latency_ms: float = 0.0


@dataclass(frozen=True)
class TuningRecord:
    """
    A completed tuning session supplied by the history store.

    ``metrics`` is None when the session never produced step metrics.
    """
    gains: Dict[Axis, PIDGains]
    metrics: Optional[Dict[Axis, AxisMetricsSummary]] = None
    quality_tier: Optional[str] = None


@dataclass(frozen=True)
class FlightLog:
    """
    Parsed flight log: the input of every analysis.

    Every series, throttle and derivative terms included, has the same
    number of samples; throttle and derivative-term series are optional.
    """
    sample_rate_hz: float
    gyro: Dict[Axis, TimeSeries]
    setpoint: Dict[Axis, TimeSeries]
    throttle: Optional[TimeSeries] = None
    dterm: Optional[Dict[Axis, TimeSeries]] = None
    pid_gains: Dict[Axis, PIDGains] = field(
        default_factory=lambda: {axis: PIDGains() for axis in AXES}
    )
    log_index: int = 1

    def __post_init__(self):
        if not self.sample_rate_hz or self.sample_rate_hz <= 0:
            raise InvalidInputError(f"Sample rate must be positive, got {self.sample_rate_hz}")
        for axis in AXES:
            if axis not in self.gyro or axis not in self.setpoint:
                raise InvalidInputError(f"Missing gyro or setpoint series for {axis.value}")
        n = len(self.gyro[Axis.ROLL])
        channels = [(f"gyro {axis.value}", self.gyro[axis]) for axis in AXES]
        channels += [(f"setpoint {axis.value}", self.setpoint[axis]) for axis in AXES]
        if self.dterm is not None:
            channels += [(f"dterm {axis.value}", series) for axis, series in self.dterm.items()]
        if self.throttle is not None:
            channels.append(("throttle", self.throttle))
        for name, series in channels:
            if len(series) != n:
                raise InvalidInputError(
                    f"Series lengths differ: {name} has {len(series)} samples, expected {n}"
                )

    @classmethod
    def from_arrays(
        cls,
        sample_rate_hz: float,
        gyro: Sequence[Sequence[float]],
        setpoint: Sequence[Sequence[float]],
        throttle: Optional[Sequence[float]] = None,
        dterm: Optional[Sequence[Sequence[float]]] = None,
        **kwargs: Any
    ) -> "FlightLog":
        """Build a log from per-axis arrays ordered roll, pitch, yaw."""
        def series(values):
            return TimeSeries.from_values(values, sample_rate_hz)

        return cls(
            sample_rate_hz=sample_rate_hz,
            gyro={axis: series(v) for axis, v in zip(AXES, gyro)},
            setpoint={axis: series(v) for axis, v in zip(AXES, setpoint)},
            throttle=series(throttle) if throttle is not None else None,
            dterm={axis: series(v) for axis, v in zip(AXES, dterm)} if dterm is not None else None,
            **kwargs
        )

    @property
    def sample_count(self) -> int:
        return len(self.gyro[Axis.ROLL])

    @property
    def duration_seconds(self) -> float:
        return self.sample_count / self.sample_rate_hz


class _PerAxis:
    """Mixin for results holding ``roll``, ``pitch`` and ``yaw`` fields."""

    @property
    def axes(self) -> Dict[Axis, Any]:
        return {axis: getattr(self, axis.value) for axis in AXES}

    def __getitem__(self, axis: Axis) -> Any:
        return getattr(self, Axis(axis).value)

    def __iter__(self) -> Iterator[Tuple[Axis, Any]]:
        return iter(self.axes.items())


# ---- Spectra and noise ----

@dataclass(frozen=True)
class PowerSpectrum:
    """One-sided spectrum: ascending ``frequencies`` (Hz), ``magnitudes`` (dB)."""
    frequencies: np.ndarray
    magnitudes: np.ndarray

    def __post_init__(self):
        frequencies = frozen_array(self.frequencies)
        magnitudes = frozen_array(self.magnitudes)
        if frequencies.shape != magnitudes.shape:
            raise InvalidInputError(
                f"frequencies and magnitudes differ in length: "
                f"{len(frequencies)} != {len(magnitudes)}"
            )
        object.__setattr__(self, 'frequencies', frequencies)
        object.__setattr__(self, 'magnitudes', magnitudes)

    def __len__(self) -> int:
        return len(self.frequencies)

    @classmethod
    def empty(cls) -> "PowerSpectrum":
        return cls(frequencies=np.zeros(0), magnitudes=np.zeros(0))


@dataclass(frozen=True)
class NoisePeak:
    frequency: float
    amplitude: float  # dB above the local floor
    type: PeakType = PeakType.UNKNOWN


@dataclass(frozen=True)
class AxisNoiseProfile:
    spectrum: PowerSpectrum
    noise_floor_db: float
    peaks: Tuple[NoisePeak, ...] = ()


@dataclass(frozen=True)
class NoiseProfile(_PerAxis):
    roll: AxisNoiseProfile
    pitch: AxisNoiseProfile
    yaw: AxisNoiseProfile
    overall_level: NoiseLevel
    segments_used: int = 0


# ---- Step response ----

@dataclass(frozen=True)
class StepEvent:
    """Stick-input edge; indices point into the source series."""
    axis: Axis
    start_index: int
    end_index: int
    magnitude: float
    direction: StepDirection


@dataclass(frozen=True)
class StepResponseTrace:
    time_ms: np.ndarray
    setpoint: np.ndarray
    gyro: np.ndarray

    def __post_init__(self):
        for name in ('time_ms', 'setpoint', 'gyro'):
            object.__setattr__(self, name, frozen_array(getattr(self, name)))


@dataclass(frozen=True)
class StepResponse:
    step: StepEvent
    rise_time_ms: float
    overshoot_percent: float
    settling_time_ms: float
    latency_ms: float
    ringing_count: int
    peak_value: float
    steady_state_value: float
    degenerate: bool = False  # gyro never moved meaningfully
    trace: Optional[StepResponseTrace] = None

    def __repr__(self) -> str:
        return (f"StepResponse(axis={self.step.axis.value}, "
                f"rise_time={self.rise_time_ms:.2f}ms, "
                f"overshoot={self.overshoot_percent:.1f}%)")


@dataclass(frozen=True)
class AxisStepProfile:
    axis: Axis
    responses: Tuple[StepResponse, ...] = ()
    mean_overshoot: float = 0.0
    mean_rise_time_ms: float = 0.0
    mean_settling_time_ms: float = 0.0
    mean_latency_ms: float = 0.0

    @property
    def step_count(self) -> int:
        return len(self.responses)


@dataclass(frozen=True)
class StepAnalysisResult(_PerAxis):
    roll: AxisStepProfile
    pitch: AxisStepProfile
    yaw: AxisStepProfile
    steps_detected: int = 0


# ---- Transfer function ----

@dataclass(frozen=True)
class TransferFunction:
    """Closed-loop response: linear ``magnitude`` and ``phase`` in degrees."""
    frequencies: np.ndarray
    magnitude: np.ndarray
    phase: np.ndarray
    windows_used: int = 0

    def __post_init__(self):
        for name in ('frequencies', 'magnitude', 'phase'):
            object.__setattr__(self, name, frozen_array(getattr(self, name)))
        if not (len(self.frequencies) == len(self.magnitude) == len(self.phase)):
            raise InvalidInputError("Transfer function arrays differ in length")


@dataclass(frozen=True)
class FrequencyDomainMetrics:
    bandwidth_3db: float
    phase_margin: float
    peak_resonance: float
    peak_resonance_frequency: float
    estimated_overshoot: float
    estimated_rise_time_ms: float


@dataclass(frozen=True)
class AxisTransferFunction:
    axis: Axis
    transfer_function: TransferFunction
    metrics: FrequencyDomainMetrics


AxisTransferResult = Union[AxisTransferFunction, Unavailable]


@dataclass(frozen=True)
class TransferFunctionResult(_PerAxis):
    roll: AxisTransferResult
    pitch: AxisTransferResult
    yaw: AxisTransferResult

    @property
    def available(self) -> bool:
        return any(bool(result) for result in self.axes.values())


# ---- Bayesian optimization ----

@dataclass(frozen=True)
class GainPoint:
    p: float
    d: float


@dataclass(frozen=True)
class ObjectiveMetrics:
    overshoot: float
    rise_time_ms: float
    settling_time_ms: float


@dataclass(frozen=True)
class BayesianObservation:
    gains: GainPoint
    metrics: ObjectiveMetrics
    objective_value: float
    data_quality_tier: Optional[str] = None


@dataclass(frozen=True)
class AxisOptimizationResult:
    suggested_p: float
    suggested_d: float
    expected_improvement: float
    confidence: Confidence
    predicted_objective: float
    observation_count: int


AxisOptimization = Union[AxisOptimizationResult, Unavailable]


@dataclass(frozen=True)
class BayesianOptimizationResult(_PerAxis):
    history_sessions_used: int
    used_bayesian: bool
    roll: AxisOptimization = Unavailable("not optimized")
    pitch: AxisOptimization = Unavailable("not optimized")
    yaw: AxisOptimization = Unavailable("not optimized")


# ---- Diagnostics ----

@dataclass(frozen=True)
class AxisPairCoupling:
    source_axis: Axis
    affected_axis: Axis
    correlation: float
    rating: CouplingRating


@dataclass(frozen=True)
class CrossAxisCoupling:
    pairs: Tuple[AxisPairCoupling, ...]
    has_significant_coupling: bool
    steps_used: int = 0


@dataclass(frozen=True)
class ThrottleBand:
    throttle_min: float
    throttle_max: float
    sample_count: int
    spectra: Optional[Dict[Axis, PowerSpectrum]] = None
    noise_floor_db: Optional[Dict[Axis, float]] = None


@dataclass(frozen=True)
class ThrottleSpectrogram:
    bands: Tuple[ThrottleBand, ...]
    num_bands: int
    min_samples_per_band: int
    bands_with_data: int


@dataclass(frozen=True)
class PropWashEvent:
    start_index: int
    timestamp_ms: float
    throttle_drop_rate: float
    duration_ms: float
    peak_frequency_hz: float
    severity_ratio: float
    axis_energy: Dict[Axis, float]


@dataclass(frozen=True)
class PropWashAnalysis:
    events: Tuple[PropWashEvent, ...]
    mean_severity: float
    worst_axis: Axis
    dominant_frequency_hz: float
    rating: PropWashRating
    reliable: bool  # enough events to trust the rating


@dataclass(frozen=True)
class DTermEffectiveness:
    functional_energy: float
    noise_energy: float
    ratio: float
    rating: DTermRating


AxisDTermResult = Union[DTermEffectiveness, Unavailable]


@dataclass(frozen=True)
class DTermAnalysis(_PerAxis):
    roll: AxisDTermResult
    pitch: AxisDTermResult
    yaw: AxisDTermResult


# ---- Complete analysis ----

@dataclass(frozen=True)
class FlightAnalysisResult:
    """Complete analysis result for one flight log."""
    log_index: int
    sample_rate_hz: float
    duration_seconds: float
    sample_count: int
    noise: NoiseProfile
    steps: StepAnalysisResult
    transfer_functions: Union[TransferFunctionResult, Unavailable]
    optimization: BayesianOptimizationResult
    coupling: Union[CrossAxisCoupling, Unavailable]
    dterm: Union[DTermAnalysis, Unavailable]
    prop_wash: Union[PropWashAnalysis, Unavailable]
    spectrogram: Optional[ThrottleSpectrogram] = None
    file_path: Optional[str] = None

    def summary(self) -> str:
        """Return a summary string of the analysis results."""
        source = f"{self.file_path} (Log #{self.log_index})" if self.file_path else f"Log #{self.log_index}"
        lines = [
            f"Flight Analysis: {source}",
            f"Duration: {self.duration_seconds:.2f}s, Samples: {self.sample_count}, "
            f"Sample Rate: {self.sample_rate_hz:.0f}Hz",
            f"Noise Level: {self.noise.overall_level.value.upper()} "
            f"(segments used: {self.noise.segments_used})",
            f"Steps Detected: {self.steps.steps_detected}",
            "",
            "Results:",
        ]
        for axis in AXES:
            noise = self.noise[axis]
            steps = self.steps[axis]
            lines.append(f"  {axis.value.upper()}:")
            lines.append(f"    Noise Floor: {noise.noise_floor_db:.1f} dB, Peaks: {len(noise.peaks)}")
            lines.append(f"    Steps: {steps.step_count}")
            if steps.step_count:
                lines.append(f"    Rise Time: {steps.mean_rise_time_ms:.2f} ms")
                lines.append(f"    Overshoot: {steps.mean_overshoot:.1f}%")
                lines.append(f"    Settling Time: {steps.mean_settling_time_ms:.2f} ms")
            if self.transfer_functions:
                tf = self.transfer_functions[axis]
                if tf:
                    lines.append(f"    Bandwidth: {tf.metrics.bandwidth_3db:.1f} Hz, "
                                 f"Phase Margin: {tf.metrics.phase_margin:.1f} deg")
            suggestion = self.optimization[axis]
            if suggestion:
                lines.append(f"    Suggested: P={suggestion.suggested_p:g}, D={suggestion.suggested_d:g} "
                             f"({suggestion.confidence.value} confidence)")
        if not self.optimization.used_bayesian:
            lines.append(f"  Optimizer: not run ({self.optimization.history_sessions_used} usable sessions)")
        return "\n".join(lines)
