# PID Tune Analysis - Throttle Analysis
# Copyright (C) 2024
# License: GPLv3

"""
Throttle-indexed analyses: noise spectrogram and prop wash.

The spectrogram bins gyro samples by throttle level and computes a spectrum
per band, revealing noise that tracks motor RPM (diagonal lines) versus
fixed-frequency resonance (horizontal lines).

Prop wash is low-frequency oscillation when descending through the
aircraft's own turbulence. It is measured as gyro energy in the prop wash
band right after sharp throttle drops, relative to the whole flight.
"""

import logging
from collections import Counter
from typing import List, NamedTuple, Sequence, Union

import numpy as np

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import (
    AXES,
    Axis,
    FlightLog,
    PowerSpectrum,
    PropWashAnalysis,
    PropWashEvent,
    PropWashRating,
    ThrottleBand,
    ThrottleSpectrogram,
    Unavailable,
    normalize_throttle,
)
from .noise import estimate_floor
from .spectrum import db_to_power, trim_spectrum, welch_psd

logger = logging.getLogger(__name__)

_MIN_THROTTLE_SAMPLES = 256
_BASELINE_MIN_SAMPLES = 256
_BASELINE_ENERGY_FLOOR = 1e-10
_FREQUENCY_BUCKET_HZ = 5


def _next_power_of_two(n: int) -> int:
    if n <= 1:
        return 1
    return 1 << (int(n) - 1).bit_length()


def bin_by_throttle(throttle_values: Sequence[float], num_bands: int) -> List[np.ndarray]:
    """
    Group sample indices by normalized throttle level.

    Returns:
        One index array per band; out-of-range throttle is clamped into the
        first or last band
    """
    normalized = normalize_throttle(np.asarray(throttle_values, dtype=float))
    band = np.clip(np.floor(normalized * num_bands).astype(int), 0, num_bands - 1)
    return [np.flatnonzero(band == b) for b in range(num_bands)]


def compute_throttle_spectrogram(
    flight_log: FlightLog,
    num_bands: int = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> ThrottleSpectrogram:
    """
    Compute per-axis gyro spectra for each throttle band.

    Bands with fewer than ``config.spectrogram_min_samples_per_band`` samples
    are reported with their sample count only.

    Args:
        flight_log: Parsed flight data
        num_bands: Number of equal-width throttle bands, defaults to config.spectrogram_bands
        config: Analysis configuration
    """
    if num_bands is None:
        num_bands = config.spectrogram_bands
    min_samples = config.spectrogram_min_samples_per_band

    if flight_log.throttle is None or len(flight_log.throttle) == 0:
        return ThrottleSpectrogram(bands=(), num_bands=num_bands,
                                   min_samples_per_band=min_samples, bands_with_data=0)

    width = 1.0 / num_bands
    bands = []
    for b, indices in enumerate(bin_by_throttle(flight_log.throttle.values, num_bands)):
        if len(indices) < min_samples:
            bands.append(ThrottleBand(
                throttle_min=round(b * width, 2),
                throttle_max=round((b + 1) * width, 2),
                sample_count=len(indices),
            ))
            continue

        window_size = min(config.fft_window_size, _next_power_of_two(len(indices) // 2))
        spectra = {}
        floors = {}
        for axis in AXES:
            samples = flight_log.gyro[axis].values[indices]
            raw = welch_psd(samples, flight_log.sample_rate_hz, window_size, config)
            spectra[axis] = trim_spectrum(raw, config.frequency_min_hz, config.frequency_max_hz)
            floors[axis] = estimate_floor(spectra[axis].magnitudes, config)

        bands.append(ThrottleBand(
            throttle_min=round(b * width, 2),
            throttle_max=round((b + 1) * width, 2),
            sample_count=len(indices),
            spectra=spectra,
            noise_floor_db=floors,
        ))

    bands_with_data = sum(1 for band in bands if band.spectra is not None)
    logger.debug("Throttle spectrogram: %d of %d bands with data", bands_with_data, num_bands)
    return ThrottleSpectrogram(
        bands=tuple(bands),
        num_bands=num_bands,
        min_samples_per_band=min_samples,
        bands_with_data=bands_with_data,
    )


class ThrottleDrop(NamedTuple):
    start_index: int
    end_index: int  # exclusive
    drop_rate: float  # mean derivative, normalized throttle per second
    timestamp_ms: float


def detect_throttle_drops(
    throttle_values: Sequence[float],
    throttle_time: Sequence[float],
    sample_rate: float,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> List[ThrottleDrop]:
    """
    Find sustained throttle drops.

    A drop is a run of samples whose normalized throttle derivative stays
    below ``-config.propwash_throttle_drop_rate`` for at least
    ``config.propwash_min_drop_ms``.
    """
    values = normalize_throttle(np.asarray(throttle_values, dtype=float))
    time = np.asarray(throttle_time, dtype=float)
    if len(values) < 2:
        return []

    min_samples = max(2, int(config.propwash_min_drop_ms / 1000.0 * sample_rate))
    derivative = np.diff(values) * sample_rate
    dropping = derivative < -config.propwash_throttle_drop_rate

    # Run boundaries in derivative indices; derivative k belongs to sample k + 1
    edges = np.diff(np.concatenate(([0], dropping.astype(int), [0])))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)

    drops = []
    for k_start, k_end in zip(starts, ends):
        start, end = int(k_start) + 1, int(k_end) + 1
        if end - start < min_samples:
            continue
        drops.append(ThrottleDrop(
            start_index=start,
            end_index=end,
            drop_rate=float(np.mean(derivative[k_start:k_end])),
            timestamp_ms=float(time[start] * 1000),
        ))
    return drops


def _band_energy(spectrum: PowerSpectrum, min_hz: float, max_hz: float) -> float:
    mask = (spectrum.frequencies >= min_hz) & (spectrum.frequencies <= max_hz)
    return float(np.sum(db_to_power(spectrum.magnitudes[mask])))


def _baseline_energy(values: np.ndarray, sample_rate: float, config: AnalysisConfig) -> float:
    if len(values) < _BASELINE_MIN_SAMPLES:
        return 1.0
    spectrum = welch_psd(values, sample_rate, config.fft_window_size, config)
    energy = _band_energy(spectrum, config.propwash_freq_min_hz, config.propwash_freq_max_hz)
    return max(energy, _BASELINE_ENERGY_FLOOR)


def _rate_prop_wash(mean_severity: float, config: AnalysisConfig) -> PropWashRating:
    if mean_severity < config.propwash_severity_minimal:
        return PropWashRating.MINIMAL
    if mean_severity >= config.propwash_severity_severe:
        return PropWashRating.SEVERE
    return PropWashRating.MODERATE


def analyze_prop_wash(
    flight_log: FlightLog,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[PropWashAnalysis, Unavailable]:
    """
    Measure gyro oscillation after throttle drops.

    Each event's severity is the total prop wash band energy of the three
    axes in the post-drop window divided by the whole-flight energy in the
    same band.

    Returns:
        PropWashAnalysis (``reliable`` is False with fewer than
        ``config.propwash_min_events`` events), or Unavailable without
        throttle data or throttle drops
    """
    throttle = flight_log.throttle
    if throttle is None or len(throttle) < _MIN_THROTTLE_SAMPLES:
        return Unavailable("not enough throttle data", 0 if throttle is None else len(throttle))

    sample_rate = flight_log.sample_rate_hz
    drops = detect_throttle_drops(throttle.values, throttle.time, sample_rate, config)
    if not drops:
        return Unavailable("no throttle drops detected", 0)

    window_samples = int(config.propwash_window_ms / 1000.0 * sample_rate)
    baseline = sum(_baseline_energy(flight_log.gyro[axis].values, sample_rate, config) for axis in AXES)
    band = (config.propwash_freq_min_hz, config.propwash_freq_max_hz)

    events = []
    for drop in drops:
        start = drop.end_index
        end = min(start + window_samples, flight_log.sample_count)
        if end - start < config.propwash_min_window_samples:
            continue

        axis_energy = {}
        peak_frequency = 0.0
        strongest = 0.0
        for axis in AXES:
            spectrum = trim_spectrum(
                welch_psd(flight_log.gyro[axis].values[start:end], sample_rate, config.fft_window_size, config),
                *band
            )
            energy = _band_energy(spectrum, *band)
            axis_energy[axis] = energy
            if energy > strongest and len(spectrum):
                strongest = energy
                peak_frequency = float(spectrum.frequencies[np.argmax(spectrum.magnitudes)])

        events.append(PropWashEvent(
            start_index=drop.start_index,
            timestamp_ms=drop.timestamp_ms,
            throttle_drop_rate=drop.drop_rate,
            duration_ms=(end - start) / sample_rate * 1000,
            peak_frequency_hz=peak_frequency,
            severity_ratio=sum(axis_energy.values()) / baseline,
            axis_energy=axis_energy,
        ))

    if not events:
        return Unavailable("no throttle drop with a long enough post-drop window", len(drops))

    mean_severity = float(np.mean([e.severity_ratio for e in events]))

    totals = {axis: sum(e.axis_energy[axis] for e in events) for axis in AXES}
    # Ties go to the first axis in roll, pitch, yaw order
    worst_axis = max(AXES, key=lambda axis: (totals[axis], -AXES.index(axis)))

    buckets = Counter(
        round(e.peak_frequency_hz / _FREQUENCY_BUCKET_HZ) * _FREQUENCY_BUCKET_HZ for e in events
    )
    dominant_frequency = float(buckets.most_common(1)[0][0])

    logger.info("Prop wash: %d events, mean severity %.2f, worst axis %s",
                len(events), mean_severity, worst_axis.value)
    return PropWashAnalysis(
        events=tuple(events),
        mean_severity=mean_severity,
        worst_axis=worst_axis,
        dominant_frequency_hz=dominant_frequency,
        rating=_rate_prop_wash(mean_severity, config),
        reliable=len(events) >= config.propwash_min_events,
    )
