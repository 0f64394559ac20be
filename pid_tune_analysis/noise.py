# PID Tune Analysis - Noise Profiling
# Copyright (C) 2024
# License: GPLv3

"""
Noise floor estimation, resonance peak detection and peak classification.

Consumes spectra from :mod:`pid_tune_analysis.spectrum` and produces one
:class:`AxisNoiseProfile` per axis plus an overall noise level.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence

import numpy as np

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import (
    AXES,
    AnalysisSegment,
    AxisNoiseProfile,
    FlightLog,
    NoiseLevel,
    NoisePeak,
    NoiseProfile,
    PeakType,
    PowerSpectrum,
)
from .spectrum import average_spectra, trim_spectrum, welch_psd

logger = logging.getLogger(__name__)


class DetectedPeak(NamedTuple):
    """Unclassified spectral peak."""
    frequency: float
    amplitude: float  # prominence above the local floor, dB
    bin_index: int


def estimate_floor(
    magnitudes: Sequence[float],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> float:
    """
    Estimate the noise floor as a low percentile of the magnitudes.

    A lower percentile is robust against a handful of strong peaks.

    Returns:
        Noise floor in dB (the dB floor for an empty spectrum)
    """
    magnitudes = np.asarray(magnitudes, dtype=float)
    if len(magnitudes) == 0:
        return config.db_floor
    ordered = np.sort(magnitudes)
    idx = int(len(ordered) * config.noise_floor_percentile)
    return float(ordered[max(0, idx)])


def local_floor(
    magnitudes: Sequence[float],
    bin_index: int,
    window_bins: int = DEFAULT_CONFIG.peak_local_window_bins,
    exclusion_bins: int = DEFAULT_CONFIG.peak_exclusion_bins
) -> float:
    """
    Median magnitude around ``bin_index``.

    The ``exclusion_bins`` nearest bins on either side are left out so a
    peak does not raise its own floor estimate.
    """
    magnitudes = np.asarray(magnitudes, dtype=float)
    start = max(0, bin_index - window_bins)
    end = min(len(magnitudes), bin_index + window_bins + 1)

    indices = np.arange(start, end)
    values = magnitudes[indices[np.abs(indices - bin_index) > exclusion_bins]]
    if len(values) == 0:
        return float(magnitudes[bin_index])
    return float(np.sort(values)[len(values) // 2])


def detect_peaks(
    spectrum: PowerSpectrum,
    prominence_db: float = DEFAULT_CONFIG.peak_prominence_db,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> List[DetectedPeak]:
    """
    Find strict local maxima that rise at least ``prominence_db`` above
    their local noise floor.

    Returns:
        Peaks sorted by prominence, strongest first
    """
    magnitudes = spectrum.magnitudes
    if len(magnitudes) < 3:
        return []

    interior = magnitudes[1:-1]
    is_max = (interior > magnitudes[:-2]) & (interior > magnitudes[2:])

    peaks = []
    for i in np.flatnonzero(is_max) + 1:
        floor = local_floor(magnitudes, i, config.peak_local_window_bins, config.peak_exclusion_bins)
        prominence = magnitudes[i] - floor
        if prominence >= prominence_db:
            peaks.append(DetectedPeak(float(spectrum.frequencies[i]), float(prominence), int(i)))

    peaks.sort(key=lambda p: p.amplitude, reverse=True)
    return peaks


def _harmonic_tolerance(expected_hz: float, config: AnalysisConfig) -> float:
    return max(config.motor_harmonic_tolerance_min_hz,
               expected_hz * config.motor_harmonic_tolerance_ratio)


def _near_harmonic(frequency: float, fundamental: float, config: AnalysisConfig) -> bool:
    multiple = round(frequency / fundamental)
    expected = fundamental * multiple
    return multiple >= 1 and abs(frequency - expected) < _harmonic_tolerance(expected, config)


def is_motor_harmonic(
    frequency: float,
    all_peaks: Sequence,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> bool:
    """
    Check whether ``frequency`` belongs to a series of equally spaced peaks
    (e.g. 150, 300, 450 Hz) built on some fundamental.
    """
    if len(all_peaks) < config.motor_harmonic_min_peaks:
        return False

    peak_freqs = sorted(p.frequency for p in all_peaks)
    for fundamental in peak_freqs:
        if fundamental < config.motor_fundamental_min_hz:
            continue
        count = sum(1 for f in peak_freqs if _near_harmonic(f, fundamental, config))
        if count >= config.motor_harmonic_min_peaks and _near_harmonic(frequency, fundamental, config):
            return True
    return False


def classify_peak(
    frequency: float,
    all_peaks: Sequence,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> PeakType:
    """
    Classify a peak by its likely source.

    The motor harmonic pattern is checked before the frequency bands.
    """
    if is_motor_harmonic(frequency, all_peaks, config):
        return PeakType.MOTOR_HARMONIC
    if config.frame_resonance_min_hz <= frequency <= config.frame_resonance_max_hz:
        return PeakType.FRAME_RESONANCE
    if frequency > config.electrical_noise_min_hz:
        return PeakType.ELECTRICAL
    return PeakType.UNKNOWN


def analyze_axis_noise(
    spectra: List[PowerSpectrum],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> AxisNoiseProfile:
    """
    Build the noise profile of one axis from one or more segment spectra.

    Multiple spectra are averaged first for a more robust estimate.
    """
    if not spectra:
        return AxisNoiseProfile(spectrum=PowerSpectrum.empty(), noise_floor_db=config.db_floor)

    averaged = average_spectra(spectra, config)
    raw_peaks = detect_peaks(averaged, config.peak_prominence_db, config)
    peaks = tuple(
        NoisePeak(frequency=p.frequency, amplitude=p.amplitude,
                  type=classify_peak(p.frequency, raw_peaks, config))
        for p in raw_peaks
    )
    return AxisNoiseProfile(
        spectrum=averaged,
        noise_floor_db=estimate_floor(averaged.magnitudes, config),
        peaks=peaks,
    )


def overall_level(
    roll: AxisNoiseProfile,
    pitch: AxisNoiseProfile,
    yaw: AxisNoiseProfile,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> NoiseLevel:
    """
    Rate the overall noise level from the worse of the roll and pitch floors.

    Yaw is excluded since it is inherently noisier.
    """
    worst = max(roll.noise_floor_db, pitch.noise_floor_db)
    if worst > config.noise_level_high_db:
        return NoiseLevel.HIGH
    if worst > config.noise_level_medium_db:
        return NoiseLevel.MEDIUM
    return NoiseLevel.LOW


def build_noise_profile(
    roll: AxisNoiseProfile,
    pitch: AxisNoiseProfile,
    yaw: AxisNoiseProfile,
    segments_used: int = 0,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> NoiseProfile:
    return NoiseProfile(
        roll=roll,
        pitch=pitch,
        yaw=yaw,
        overall_level=overall_level(roll, pitch, yaw, config),
        segments_used=segments_used,
    )


def analyze_noise(
    flight_log: FlightLog,
    segments: Optional[Sequence[AnalysisSegment]] = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> NoiseProfile:
    """
    Compute the gyro noise profile of a flight.

    Uses up to ``config.max_noise_segments`` of the supplied segments; when
    none of them is usable the whole flight is analyzed as one segment.

    Args:
        flight_log: Parsed flight data
        segments: Analysis-worthy slices chosen by the caller
        config: Analysis configuration

    Returns:
        NoiseProfile; ``segments_used`` is 0 when the whole flight was used
    """
    bounds = []
    for seg in list(segments or [])[:config.max_noise_segments]:
        start = max(0, seg.start_index)
        end = min(flight_log.sample_count, seg.end_index)
        if end - start < config.min_fft_size:
            logger.debug("Skipping segment %d-%d: too short", seg.start_index, seg.end_index)
            continue
        bounds.append((start, end))

    segments_used = len(bounds)
    if not bounds and flight_log.sample_count >= config.min_fft_size:
        bounds = [(0, flight_log.sample_count)]

    profiles = {}
    for axis in AXES:
        gyro = flight_log.gyro[axis].values
        spectra = []
        for start, end in bounds:
            spectrum = welch_psd(gyro[start:end], flight_log.sample_rate_hz, config.fft_window_size, config)
            spectra.append(trim_spectrum(spectrum, config.frequency_min_hz, config.frequency_max_hz))
        profiles[axis.value] = analyze_axis_noise(spectra, config)

    profile = build_noise_profile(segments_used=segments_used, config=config, **profiles)
    logger.info("Noise level %s (roll floor %.1f dB, pitch floor %.1f dB)",
                profile.overall_level.value, profile.roll.noise_floor_db, profile.pitch.noise_floor_db)
    return profile
