# PID Tune Analysis - Configuration
# Copyright (C) 2024
# License: GPLv3

"""
Analysis thresholds and hyperparameters.

All tunables live in one immutable :class:`AnalysisConfig` that is passed
explicitly to every analysis function. The defaults are empirically chosen
values; the Wiener regularization ratio and the GP length-scale factor in
particular have no analytic derivation and should be changed with care.
"""

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from .errors import InvalidInputError
from .models import FlightStyle


@dataclass(frozen=True)
class StyleThresholds:
    """Step-response targets for one flying style."""
    overshoot_ideal: float
    overshoot_max: float
    settling_max_ms: float
    ringing_max: int
    moderate_overshoot: float
    sluggish_rise_ms: float


DEFAULT_STYLE_THRESHOLDS = MappingProxyType({
    FlightStyle.SMOOTH: StyleThresholds(
        overshoot_ideal=3, overshoot_max=12, settling_max_ms=250,
        ringing_max=1, moderate_overshoot=8, sluggish_rise_ms=120,
    ),
    FlightStyle.BALANCED: StyleThresholds(
        overshoot_ideal=10, overshoot_max=25, settling_max_ms=200,
        ringing_max=2, moderate_overshoot=15, sluggish_rise_ms=80,
    ),
    FlightStyle.AGGRESSIVE: StyleThresholds(
        overshoot_ideal=18, overshoot_max=35, settling_max_ms=150,
        ringing_max=3, moderate_overshoot=25, sluggish_rise_ms=50,
    ),
})


def _is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


@dataclass(frozen=True)
class AnalysisConfig:
    """Every threshold used by the analysis engine."""

    # FFT / Welch
    fft_window_size: int = 4096  # 0.5 s at 8 kHz, ~2 Hz resolution
    fft_overlap: float = 0.5
    frequency_min_hz: float = 20.0
    frequency_max_hz: float = 1000.0
    min_fft_size: int = 16
    db_floor: float = -240.0
    max_noise_segments: int = 5

    # Noise profiling
    peak_prominence_db: float = 6.0
    peak_local_window_bins: int = 50
    peak_exclusion_bins: int = 3
    noise_floor_percentile: float = 0.25
    noise_level_high_db: float = -30.0
    noise_level_medium_db: float = -50.0
    frame_resonance_min_hz: float = 80.0
    frame_resonance_max_hz: float = 200.0
    electrical_noise_min_hz: float = 500.0
    motor_harmonic_tolerance_ratio: float = 0.05
    motor_harmonic_tolerance_min_hz: float = 5.0
    motor_harmonic_min_peaks: int = 3
    motor_fundamental_min_hz: float = 30.0

    # Transfer function
    transfer_function_window_size: int = 2048
    wiener_regularization_ratio: float = 0.01
    transfer_function_min_input_energy: float = 1.0  # mean square, (deg/s)^2
    transfer_function_max_hz: float = 500.0
    synthetic_step_samples: int = 500

    # Step detection
    step_min_magnitude_deg_s: float = 100.0
    step_derivative_threshold: float = 500.0  # deg/s per second
    step_edge_relax_ratio: float = 0.3
    step_hold_tolerance: float = 0.5  # fraction of the step size
    step_response_window_ms: float = 300.0
    step_cooldown_ms: float = 100.0
    step_min_hold_ms: float = 50.0

    # Step metrics
    settling_tolerance: float = 0.02
    rise_time_low: float = 0.1
    rise_time_high: float = 0.9
    latency_threshold: float = 0.05
    min_movement_deg_s: float = 1.0
    max_plausible_overshoot: float = 500.0

    # Bayesian optimizer
    p_gain_min: float = 20.0
    p_gain_max: float = 120.0
    d_gain_min: float = 15.0
    d_gain_max: float = 80.0
    bayesian_min_history: int = 3
    bayesian_noise_variance: float = 0.01
    bayesian_signal_variance: float = 1.0
    bayesian_length_scale_factor: float = 0.3
    bayesian_p_step: float = 5.0
    bayesian_d_step: float = 5.0
    bayesian_exploration_weight: float = 0.1
    bayesian_weight_overshoot: float = 0.5
    bayesian_weight_rise_time: float = 0.3
    bayesian_weight_settling: float = 0.2
    bayesian_poor_quality_weight: float = 0.5
    bayesian_low_quality_tiers: tuple = ('poor', 'fair')
    confidence_high_min_observations: int = 6
    confidence_high_min_ei: float = 0.01
    confidence_medium_min_observations: int = 4
    confidence_medium_min_ei: float = 0.001
    style_thresholds: Mapping[FlightStyle, StyleThresholds] = field(
        default_factory=lambda: DEFAULT_STYLE_THRESHOLDS
    )

    # Cross-axis coupling
    coupling_none_threshold: float = 0.15
    coupling_significant_threshold: float = 0.4
    coupling_min_steps: int = 2

    # Throttle spectrogram
    spectrogram_bands: int = 10
    spectrogram_min_samples_per_band: int = 512

    # Prop wash
    propwash_throttle_drop_rate: float = 2.0  # normalized throttle per second
    propwash_min_drop_ms: float = 50.0
    propwash_window_ms: float = 400.0
    propwash_min_window_samples: int = 128
    propwash_freq_min_hz: float = 20.0
    propwash_freq_max_hz: float = 90.0
    propwash_severity_minimal: float = 2.0
    propwash_severity_severe: float = 5.0
    propwash_min_events: int = 3

    # D-term effectiveness
    dterm_min_samples: int = 256
    dterm_functional_min_hz: float = 20.0
    dterm_functional_max_hz: float = 150.0
    dterm_noise_min_hz: float = 150.0
    dterm_effective_ratio: float = 3.0
    dterm_noisy_ratio: float = 1.0

    def __post_init__(self):
        for name in ('fft_window_size', 'transfer_function_window_size', 'min_fft_size'):
            if not _is_power_of_two(getattr(self, name)):
                raise InvalidInputError(f"{name} must be a power of two, got {getattr(self, name)}")
        if not 0 <= self.fft_overlap < 1:
            raise InvalidInputError(f"fft_overlap must be in [0, 1), got {self.fft_overlap}")
        if self.frequency_min_hz > self.frequency_max_hz:
            raise InvalidInputError("frequency_min_hz exceeds frequency_max_hz")
        if self.p_gain_min > self.p_gain_max or self.d_gain_min > self.d_gain_max:
            raise InvalidInputError("Gain search bounds are inverted")
        if self.bayesian_p_step <= 0 or self.bayesian_d_step <= 0:
            raise InvalidInputError("Gain grid steps must be positive")
        if self.bayesian_min_history < 1:
            raise InvalidInputError("bayesian_min_history must be at least 1")
        missing = [style.value for style in FlightStyle if style not in self.style_thresholds]
        if missing:
            raise InvalidInputError(f"Missing style thresholds for: {', '.join(missing)}")

    def thresholds_for(self, style: FlightStyle) -> StyleThresholds:
        return self.style_thresholds[FlightStyle(style)]

    def replace(self, **changes: Any) -> "AnalysisConfig":
        """Return a copy with ``changes`` applied (validated like a new config)."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "AnalysisConfig":
        """
        Build a config from plain values, e.g. a parsed JSON file.

        ``style_thresholds`` may be given as a mapping of style name to a
        mapping of :class:`StyleThresholds` fields; unspecified styles keep
        their defaults.

        Raises:
            InvalidInputError: On unknown keys or invalid values
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidInputError(f"Unknown configuration keys: {', '.join(unknown)}")

        kwargs = dict(values)
        if 'style_thresholds' in kwargs:
            styles = dict(DEFAULT_STYLE_THRESHOLDS)
            for name, thresholds in kwargs['style_thresholds'].items():
                try:
                    style = FlightStyle(name)
                except ValueError:
                    raise InvalidInputError(f"Unknown flight style: {name}") from None
                if not isinstance(thresholds, StyleThresholds):
                    try:
                        thresholds = StyleThresholds(**thresholds)
                    except TypeError as e:
                        raise InvalidInputError(f"Bad thresholds for {name}: {e}") from None
                styles[style] = thresholds
            kwargs['style_thresholds'] = MappingProxyType(styles)
        if 'bayesian_low_quality_tiers' in kwargs:
            kwargs['bayesian_low_quality_tiers'] = tuple(kwargs['bayesian_low_quality_tiers'])
        return cls(**kwargs)


DEFAULT_CONFIG = AnalysisConfig()
