# PID Tune Analysis - Diagnostics
# Copyright (C) 2024
# License: GPLv3

"""
Secondary diagnostics: cross-axis coupling and D-term effectiveness.

Cross-axis coupling measures how much a step on one axis shows up in the
gyro of the other axes (bent props, loose motor mounts, asymmetric frames).

D-term effectiveness splits the derivative-term output spectrum into a
functional damping band and a high-frequency noise band.
"""

import logging
from typing import Sequence, Union

import numpy as np

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import (
    AXES,
    AxisPairCoupling,
    CouplingRating,
    CrossAxisCoupling,
    DTermAnalysis,
    DTermEffectiveness,
    DTermRating,
    FlightLog,
    StepEvent,
    Unavailable,
)
from .spectrum import db_to_power, welch_psd

logger = logging.getLogger(__name__)

# Ratio reported when the noise band is empty but the functional band is not
_NOISELESS_RATIO = 10.0


def normalized_correlation(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Absolute zero-lag Pearson correlation of two signals.

    Returns:
        Value in [0, 1]; 0 for fewer than 4 samples or a constant signal
    """
    n = min(len(a), len(b))
    if n < 4:
        return 0.0
    da = np.asarray(a[:n], dtype=float)
    db = np.asarray(b[:n], dtype=float)
    da = da - da.mean()
    db = db - db.mean()
    var_a = np.dot(da, da)
    var_b = np.dot(db, db)
    if var_a == 0 or var_b == 0:
        return 0.0
    return float(abs(np.dot(da, db) / np.sqrt(var_a * var_b)))


def _coupling_rating(correlation: float, config: AnalysisConfig) -> CouplingRating:
    if correlation >= config.coupling_significant_threshold:
        return CouplingRating.SIGNIFICANT
    if correlation >= config.coupling_none_threshold:
        return CouplingRating.MILD
    return CouplingRating.NONE


def analyze_cross_axis_coupling(
    steps: Sequence[StepEvent],
    flight_log: FlightLog,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[CrossAxisCoupling, Unavailable]:
    """
    Rate coupling for every ordered (step axis, other axis) pair.

    For each step the gyro of the step's axis is correlated with the gyro of
    each other axis over the step's response window; correlations are
    averaged per pair.

    Args:
        steps: Detected step events
        flight_log: Parsed flight data
        config: Analysis configuration

    Returns:
        CrossAxisCoupling, or Unavailable with the step count when fewer
        than ``config.coupling_min_steps`` steps are usable
    """
    if len(steps) < config.coupling_min_steps:
        return Unavailable("not enough steps for coupling analysis", len(steps))

    correlations = {(src, aff): [] for src in AXES for aff in AXES if src != aff}
    steps_used = 0
    for step in steps:
        start, end = step.start_index, step.end_index
        if end <= start or end > flight_log.sample_count:
            continue
        steps_used += 1
        source = flight_log.gyro[step.axis].values[start:end]
        for affected in AXES:
            if affected == step.axis:
                continue
            correlations[(step.axis, affected)].append(
                normalized_correlation(source, flight_log.gyro[affected].values[start:end])
            )

    pairs = []
    for (src, aff), values in correlations.items():
        if not values:
            continue
        mean = round(float(np.mean(values)), 3)
        pairs.append(AxisPairCoupling(
            source_axis=src,
            affected_axis=aff,
            correlation=mean,
            rating=_coupling_rating(mean, config),
        ))

    if not pairs:
        return Unavailable("no usable step windows", 0)

    significant = any(p.rating == CouplingRating.SIGNIFICANT for p in pairs)
    if significant:
        logger.info("Significant cross-axis coupling on %s", ", ".join(
            f"{p.source_axis.value}->{p.affected_axis.value}"
            for p in pairs if p.rating == CouplingRating.SIGNIFICANT
        ))
    return CrossAxisCoupling(pairs=tuple(pairs), has_significant_coupling=significant, steps_used=steps_used)


def compute_dterm_effectiveness(
    values: Sequence[float],
    sample_rate: float,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[DTermEffectiveness, Unavailable]:
    """
    Compare D-term energy in the functional band with the noise band.

    Energies are sums of linear power over the Welch spectrum bins.

    Returns:
        DTermEffectiveness, or Unavailable when the series is shorter than
        ``config.dterm_min_samples``
    """
    values = np.asarray(values, dtype=float)
    if len(values) < config.dterm_min_samples:
        return Unavailable("D-term series too short", len(values))

    spectrum = welch_psd(values, sample_rate, config.fft_window_size, config)
    power = db_to_power(spectrum.magnitudes)
    freqs = spectrum.frequencies

    functional_mask = (freqs >= config.dterm_functional_min_hz) & (freqs <= config.dterm_functional_max_hz)
    noise_mask = ~functional_mask & (freqs > config.dterm_noise_min_hz)
    functional = float(np.sum(power[functional_mask]))
    noise = float(np.sum(power[noise_mask]))

    if noise > 0:
        ratio = functional / noise
    else:
        ratio = _NOISELESS_RATIO if functional > 0 else 0.0

    if ratio >= config.dterm_effective_ratio:
        rating = DTermRating.EFFICIENT
    elif ratio >= config.dterm_noisy_ratio:
        rating = DTermRating.BALANCED
    else:
        rating = DTermRating.NOISY

    return DTermEffectiveness(
        functional_energy=functional,
        noise_energy=noise,
        ratio=round(ratio, 2),
        rating=rating,
    )


def analyze_dterm_effectiveness(
    flight_log: FlightLog,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[DTermAnalysis, Unavailable]:
    """D-term effectiveness for all axes; Unavailable when the log has no D-term data."""
    if not flight_log.dterm:
        return Unavailable("no D-term data in log", 0)

    results = {}
    for axis in AXES:
        series = flight_log.dterm.get(axis)
        if series is None:
            results[axis.value] = Unavailable("no D-term data for axis", 0)
        else:
            results[axis.value] = compute_dterm_effectiveness(series.values, flight_log.sample_rate_hz, config)
    return DTermAnalysis(**results)
