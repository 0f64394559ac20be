# PID Tune Analysis - Step Response Analysis
# Copyright (C) 2024
# License: GPLv3

"""
Step input detection and per-step response metrics.

A step is a large, rapid change of the setpoint (a stick snap). For each
detected step a response window is defined, and the gyro trace inside it
is measured for:

- Rise time (10% -> 90% of the converged movement)
- Overshoot percentage
- Settling time (last exit from a +/-2% band around steady state)
- Latency (first gyro movement beyond 5% of the commanded step)
- Ringing count (oscillations after the initial rise)
"""

import logging
from typing import List, Sequence

import numpy as np

from .config import DEFAULT_CONFIG, AnalysisConfig
from .errors import InvalidInputError
from .models import (
    AXES,
    Axis,
    AxisStepProfile,
    FlightLog,
    StepAnalysisResult,
    StepDirection,
    StepEvent,
    StepResponse,
    StepResponseTrace,
)

logger = logging.getLogger(__name__)


def _ms_to_samples(ms: float, sample_rate: float) -> int:
    return int(np.ceil(ms / 1000.0 * sample_rate))


def _holds_value(
    setpoint: np.ndarray,
    start: int,
    target: float,
    hold_samples: int,
    magnitude: float,
    tolerance: float
) -> bool:
    """Check the setpoint stays near ``target`` for ``hold_samples`` samples."""
    end = min(start + hold_samples, len(setpoint))
    # Be lenient at the end of the data
    if end - start < hold_samples * 0.5:
        return True
    return bool(np.all(np.abs(setpoint[start:end] - target) <= abs(magnitude) * tolerance))


def detect_axis_steps(
    setpoint: Sequence[float],
    sample_rate: float,
    axis: Axis = Axis.ROLL,
    min_hold_ms: float = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> List[StepEvent]:
    """
    Detect step inputs in one axis' setpoint.

    Consecutive samples whose derivative exceeds the threshold are grouped
    into one edge. An edge becomes a step when its magnitude is large
    enough, the setpoint holds the new value for ``min_hold_ms`` and the
    previous step's response window ended at least the cooldown earlier,
    so one stick snap is not counted twice.

    Args:
        setpoint: Setpoint samples, deg/s
        sample_rate: Sample rate in Hz
        axis: Axis the setpoint belongs to
        min_hold_ms: Minimum hold duration, defaults to config.step_min_hold_ms
        config: Analysis configuration

    Returns:
        Steps in order of occurrence
    """
    setpoint = np.asarray(setpoint, dtype=float)
    n = len(setpoint)
    if n < 2:
        return []
    if min_hold_ms is None:
        min_hold_ms = config.step_min_hold_ms

    threshold = config.step_derivative_threshold
    relaxed = threshold * config.step_edge_relax_ratio
    cooldown = _ms_to_samples(config.step_cooldown_ms, sample_rate)
    hold = _ms_to_samples(min_hold_ms, sample_rate)
    window = _ms_to_samples(config.step_response_window_ms, sample_rate)

    derivative = np.diff(setpoint) * sample_rate
    candidates = np.flatnonzero(np.abs(derivative) >= threshold)

    steps = []
    last_step_end = -cooldown
    i = 0
    for candidate in candidates:
        if candidate < i:
            continue
        edge_start = int(candidate)
        rising = derivative[edge_start] > 0

        # Extend the edge while the slope stays steep in the same direction
        edge_end = edge_start
        while edge_end < n - 1:
            d = derivative[edge_end]
            if (rising and d > relaxed) or (not rising and d < -relaxed):
                edge_end += 1
            else:
                break

        baseline = setpoint[edge_start]
        settled = setpoint[min(edge_end + 1, n - 1)]
        magnitude = float(settled - baseline)
        i = edge_end + 1

        if abs(magnitude) < config.step_min_magnitude_deg_s:
            continue
        if edge_start - last_step_end < cooldown:
            continue
        if not _holds_value(setpoint, edge_end + 1, settled, hold, magnitude, config.step_hold_tolerance):
            continue

        end_index = min(edge_start + window, n)
        steps.append(StepEvent(
            axis=axis,
            start_index=edge_start,
            end_index=end_index,
            magnitude=magnitude,
            direction=StepDirection.POSITIVE if magnitude > 0 else StepDirection.NEGATIVE,
        ))
        last_step_end = end_index

    return steps


def detect_steps(
    flight_log: FlightLog,
    min_hold_ms: float = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> List[StepEvent]:
    """Detect steps on all axes, largest magnitude first."""
    steps = []
    for axis in AXES:
        steps.extend(detect_axis_steps(
            flight_log.setpoint[axis].values,
            flight_log.sample_rate_hz,
            axis,
            min_hold_ms,
            config,
        ))
    steps.sort(key=lambda s: abs(s.magnitude), reverse=True)
    return steps


def _first_crossing(values: np.ndarray, threshold: float, rising: bool) -> int:
    hits = np.flatnonzero(values >= threshold if rising else values <= threshold)
    return int(hits[0]) if len(hits) else -1


def compute_step_response(
    setpoint: Sequence[float],
    gyro: Sequence[float],
    step: StepEvent,
    sample_rate: float,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> StepResponse:
    """
    Measure the gyro response to one step.

    Metrics are computed against the steady state the gyro actually
    converges to (mean of the last 20% of the window), not the nominal
    setpoint change, since feedforward and rate limiting make them differ.

    Args:
        setpoint: Setpoint samples of the step's axis
        gyro: Gyro samples of the step's axis
        step: Detected step event
        sample_rate: Sample rate in Hz
        config: Analysis configuration

    Returns:
        StepResponse; ``degenerate`` is set when the gyro moved less than
        config.min_movement_deg_s

    Raises:
        InvalidInputError: If the step window does not lie inside the series
    """
    setpoint = np.asarray(setpoint, dtype=float)
    gyro = np.asarray(gyro, dtype=float)
    start, end = step.start_index, step.end_index
    if not 0 <= start < end <= min(len(gyro), len(setpoint)):
        raise InvalidInputError(
            f"Step window [{start}, {end}) outside of {len(gyro)} samples"
        )
    ms_per_sample = 1000.0 / sample_rate
    window_len = end - start
    window_ms = window_len * ms_per_sample

    response = gyro[start:end]
    trace = StepResponseTrace(
        time_ms=np.arange(window_len) * ms_per_sample,
        setpoint=setpoint[start:end],
        gyro=response,
    )

    baseline = float(gyro[start - 1] if start > 0 else gyro[start])
    tail_start = int(window_len * 0.8)
    steady_state = float(np.mean(response[tail_start:])) if window_len > tail_start else baseline
    movement = steady_state - baseline

    if abs(movement) < config.min_movement_deg_s:
        return StepResponse(
            step=step,
            rise_time_ms=window_ms,
            overshoot_percent=0.0,
            settling_time_ms=window_ms,
            latency_ms=window_ms,
            ringing_count=0,
            peak_value=baseline,
            steady_state_value=steady_state,
            degenerate=True,
            trace=trace,
        )

    rising = movement > 0

    moved = np.flatnonzero(np.abs(response - baseline) > config.latency_threshold * abs(step.magnitude))
    latency_ms = moved[0] * ms_per_sample if len(moved) else window_ms

    low_idx = _first_crossing(response, baseline + movement * config.rise_time_low, rising)
    high_idx = _first_crossing(response, baseline + movement * config.rise_time_high, rising)
    if low_idx >= 0 and high_idx >= 0:
        rise_time_ms = (high_idx - low_idx) * ms_per_sample
    else:
        rise_time_ms = window_ms

    peak_value = float(max(baseline, response.max()) if rising else min(baseline, response.min()))
    beyond = peak_value - steady_state if rising else steady_state - peak_value
    overshoot_percent = max(0.0, beyond / abs(movement) * 100)

    # Last sample outside the settling band, scanning back from the end
    outside = np.flatnonzero(np.abs(response - steady_state) > abs(movement) * config.settling_tolerance)
    settling_time_ms = (outside[-1] + 1) * ms_per_sample if len(outside) else 0.0

    # Zero crossings of (gyro - steady state) after the initial rise
    ringing_start = high_idx if high_idx >= 0 else int(window_len * 0.3)
    signs = np.sign(response[ringing_start:] - steady_state)
    signs = signs[signs != 0]
    crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))
    ringing_count = crossings // 2  # one full oscillation is two crossings

    return StepResponse(
        step=step,
        rise_time_ms=float(rise_time_ms),
        overshoot_percent=float(overshoot_percent),
        settling_time_ms=float(settling_time_ms),
        latency_ms=float(latency_ms),
        ringing_count=ringing_count,
        peak_value=peak_value,
        steady_state_value=steady_state,
        trace=trace,
    )


def aggregate_axis_metrics(
    axis: Axis,
    responses: Sequence[StepResponse],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> AxisStepProfile:
    """
    Average the step metrics of one axis.

    Implausible responses (zero rise time, absurd overshoot) are left out of
    the means unless nothing else is available; all responses are kept.
    """
    responses = tuple(responses)
    if not responses:
        return AxisStepProfile(axis=axis)

    valid = [r for r in responses
             if r.rise_time_ms > 0 and r.overshoot_percent < config.max_plausible_overshoot]
    source = valid or responses

    return AxisStepProfile(
        axis=axis,
        responses=responses,
        mean_overshoot=float(np.mean([r.overshoot_percent for r in source])),
        mean_rise_time_ms=float(np.mean([r.rise_time_ms for r in source])),
        mean_settling_time_ms=float(np.mean([r.settling_time_ms for r in source])),
        mean_latency_ms=float(np.mean([r.latency_ms for r in source])),
    )


def analyze_step_responses(
    flight_log: FlightLog,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> StepAnalysisResult:
    """
    Detect steps on every axis and measure each response.

    Returns:
        Per-axis profiles; ``steps_detected`` tells the caller whether there
        was enough stick input to judge the tune
    """
    steps = detect_steps(flight_log, config=config)
    by_axis = {axis: [] for axis in AXES}
    for step in steps:
        by_axis[step.axis].append(compute_step_response(
            flight_log.setpoint[step.axis].values,
            flight_log.gyro[step.axis].values,
            step,
            flight_log.sample_rate_hz,
            config,
        ))

    logger.info("Detected %d steps (roll %d, pitch %d, yaw %d)", len(steps),
                len(by_axis[Axis.ROLL]), len(by_axis[Axis.PITCH]), len(by_axis[Axis.YAW]))
    return StepAnalysisResult(
        steps_detected=len(steps),
        **{axis.value: aggregate_axis_metrics(axis, by_axis[axis], config) for axis in AXES}
    )
