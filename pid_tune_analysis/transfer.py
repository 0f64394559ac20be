# PID Tune Analysis - Transfer Function Estimation
# Copyright (C) 2024
# License: GPLv3

"""
Closed-loop transfer function estimation via Wiener deconvolution.

Estimates H(f) = gyro/setpoint from arbitrary flight data, not only from
stick snaps:

    H(f) = Syx(f) / (Sxx(f) + lambda),   lambda = ratio * mean(Sxx)

Syx is the cross-spectral density of gyro against setpoint and Sxx the
setpoint auto-spectrum, both averaged over 50%-overlapping Hann-windowed
frames. Frames with too little setpoint energy (idle sticks) are skipped.

From H(f) a Bode-style set of metrics is derived, and a synthetic step
response is obtained by inverse FFT of H(f) followed by a cumulative sum.
"""

import logging
from typing import NamedTuple, Sequence, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import fft

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import (
    AXES,
    AxisTransferFunction,
    FlightLog,
    FrequencyDomainMetrics,
    TransferFunction,
    TransferFunctionResult,
    Unavailable,
)
from .spectrum import frequency_bins, hann_window

logger = logging.getLogger(__name__)

_DENOMINATOR_EPS = 1e-20


class SyntheticStep(NamedTuple):
    time_ms: np.ndarray
    response: np.ndarray
    overshoot_percent: float
    rise_time_ms: float


def estimate_axis_transfer_function(
    setpoint: Sequence[float],
    gyro: Sequence[float],
    sample_rate: float,
    window_size: int = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[TransferFunction, Unavailable]:
    """
    Estimate the transfer function of one axis.

    Args:
        setpoint: Setpoint (input) samples, deg/s
        gyro: Gyro (output) samples, deg/s
        sample_rate: Sample rate in Hz
        window_size: Analysis frame size, defaults to config.transfer_function_window_size
        config: Analysis configuration

    Returns:
        TransferFunction, or Unavailable when the input is shorter than one
        frame or no frame carries enough setpoint energy
    """
    if window_size is None:
        window_size = config.transfer_function_window_size
    n = min(len(setpoint), len(gyro))
    if n < window_size:
        return Unavailable("input shorter than one analysis window", n)

    setpoint = np.asarray(setpoint[:n], dtype=float)
    gyro = np.asarray(gyro[:n], dtype=float)

    step = max(1, int(window_size * (1 - config.fft_overlap)))
    sp_frames = sliding_window_view(setpoint, window_size)[::step]
    gyro_frames = sliding_window_view(gyro, window_size)[::step]

    energy = np.mean(sp_frames ** 2, axis=1)
    valid = energy >= config.transfer_function_min_input_energy
    windows_used = int(np.count_nonzero(valid))
    logger.debug("Transfer function: %d of %d windows have enough input energy",
                 windows_used, len(sp_frames))
    if windows_used == 0:
        return Unavailable("insufficient setpoint excitation", 0)

    window = hann_window(window_size)
    x = fft.rfft(sp_frames[valid] * window, axis=1)
    y = fft.rfft(gyro_frames[valid] * window, axis=1)

    sxx = np.mean(np.abs(x) ** 2, axis=0)
    syx = np.mean(y * np.conj(x), axis=0)

    regularization = config.wiener_regularization_ratio * np.mean(sxx)
    h = syx / np.maximum(sxx + regularization, _DENOMINATOR_EPS)

    return TransferFunction(
        frequencies=frequency_bins(window_size, sample_rate),
        magnitude=np.abs(h),
        phase=np.degrees(np.angle(h)),
        windows_used=windows_used,
    )


def synthetic_step_response(
    tf: TransferFunction,
    sample_rate: float,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> SyntheticStep:
    """
    Build a step response from a transfer function.

    The complex spectrum is rebuilt from magnitude and phase, mirrored with
    conjugate symmetry by the inverse real FFT, and the resulting impulse
    response is integrated. Overshoot and 10-90% rise time are measured over
    the first ``config.synthetic_step_samples`` samples.
    """
    num_bins = len(tf.magnitude)
    n = (num_bins - 1) * 2
    if n < 16:
        return SyntheticStep(np.zeros(0), np.zeros(0), 0.0, 0.0)

    h = tf.magnitude * np.exp(1j * np.radians(tf.phase))
    impulse = fft.irfft(h, n=n)
    response = np.cumsum(impulse)

    look_ahead = min(config.synthetic_step_samples, n)
    response = response[:look_ahead]
    dt_ms = 1000.0 / sample_rate
    time_ms = np.arange(look_ahead) * dt_ms

    # Steady state: mean of the last quarter
    steady_state = float(np.mean(response[int(look_ahead * 0.75):]))
    if abs(steady_state) < 1e-10:
        return SyntheticStep(time_ms, response, 0.0, 0.0)

    peak = float(response[np.argmax(np.abs(response))])
    overshoot = max(0.0, (abs(peak) - abs(steady_state)) / abs(steady_state) * 100)

    if steady_state > 0:
        low_hits = np.flatnonzero(response >= config.rise_time_low * steady_state)
        high_hits = np.flatnonzero(response >= config.rise_time_high * steady_state)
    else:
        low_hits = np.flatnonzero(response <= config.rise_time_low * steady_state)
        high_hits = np.flatnonzero(response <= config.rise_time_high * steady_state)

    rise_time_ms = 0.0
    if len(low_hits) and len(high_hits) and high_hits[0] > low_hits[0]:
        rise_time_ms = (high_hits[0] - low_hits[0]) * dt_ms

    return SyntheticStep(time_ms, response, overshoot, rise_time_ms)


def extract_metrics(
    tf: TransferFunction,
    sample_rate: float,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> FrequencyDomainMetrics:
    """
    Derive bandwidth, phase margin, resonance and step estimates from H(f).

    The "DC" gain is the magnitude at the first non-zero frequency bin. The
    -3 dB bandwidth is the first frequency where the gain falls below
    0.707 x DC gain, linearly interpolated between bins; it defaults to the
    top of the analyzed range when never crossed. A peak resonance >= 1
    indicates an underdamped, overshoot-prone loop.
    """
    frequencies, magnitude, phase = tf.frequencies, tf.magnitude, tf.phase

    # One past the last bin at or below the analysis limit
    in_range = np.flatnonzero(frequencies <= config.transfer_function_max_hz)
    max_idx = int(in_range[-1]) + 1 if len(in_range) else len(frequencies)

    dc_gain = float(magnitude[1]) if len(magnitude) > 1 else 1.0
    threshold = 0.707 * dc_gain

    bandwidth = float(frequencies[min(max_idx, len(frequencies) - 1)])
    for i in range(1, max_idx):
        if magnitude[i] < threshold:
            f0, f1 = frequencies[i - 1], frequencies[i]
            m0, m1 = magnitude[i - 1], magnitude[i]
            if m0 != m1:
                bandwidth = float(f0 + (threshold - m0) / (m1 - m0) * (f1 - f0))
            else:
                bandwidth = float(f0)
            break

    bw_idx = int(np.argmin(np.abs(frequencies - bandwidth)))
    phase_margin = 180.0 + float(phase[bw_idx])

    peak_resonance = 0.0
    peak_frequency = 0.0
    if max_idx > 1:
        idx = 1 + int(np.argmax(magnitude[1:max_idx]))
        peak_resonance = float(magnitude[idx])
        peak_frequency = float(frequencies[idx])
    if dc_gain > 0:
        peak_resonance /= dc_gain

    step = synthetic_step_response(tf, sample_rate, config)

    return FrequencyDomainMetrics(
        bandwidth_3db=round(bandwidth, 1),
        phase_margin=round(phase_margin, 1),
        peak_resonance=round(peak_resonance, 3),
        peak_resonance_frequency=round(peak_frequency, 1),
        estimated_overshoot=round(step.overshoot_percent, 1),
        estimated_rise_time_ms=round(step.rise_time_ms, 1),
    )


def estimate_transfer_functions(
    flight_log: FlightLog,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[TransferFunctionResult, Unavailable]:
    """
    Estimate transfer functions and metrics for all three axes.

    Returns:
        TransferFunctionResult with Unavailable entries for axes lacking
        excitation, or Unavailable when no axis could be estimated
    """
    if flight_log.sample_count < config.transfer_function_window_size:
        return Unavailable("flight shorter than one analysis window", flight_log.sample_count)

    results = {}
    for axis in AXES:
        tf = estimate_axis_transfer_function(
            flight_log.setpoint[axis].values,
            flight_log.gyro[axis].values,
            flight_log.sample_rate_hz,
            config=config,
        )
        if tf:
            results[axis.value] = AxisTransferFunction(
                axis=axis,
                transfer_function=tf,
                metrics=extract_metrics(tf, flight_log.sample_rate_hz, config),
            )
        else:
            results[axis.value] = tf

    result = TransferFunctionResult(**results)
    if not result.available:
        return Unavailable("no axis had enough setpoint excitation", 0)
    return result
