# PID Tune Analysis - Spectral Estimation
# Copyright (C) 2024
# License: GPLv3

"""
Windowed FFT, Welch power spectral density and spectrum trimming.

Magnitudes are reported in dB of the one-sided amplitude spectrum
(``|X| / N``). Numeric zero maps to the configured dB floor (-240 dB)
instead of -inf.
"""

import logging
from typing import List, Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import fft

from .config import DEFAULT_CONFIG, AnalysisConfig
from .errors import InvalidInputError
from .models import PowerSpectrum

logger = logging.getLogger(__name__)

# Amplitudes at or below this are treated as zero
_AMPLITUDE_EPS = 1e-12


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def largest_power_of_two(n: int) -> int:
    """Largest power of two <= n (1 for n < 2)."""
    if n < 2:
        return 1
    return 1 << (int(n).bit_length() - 1)


def hann_window(n: int) -> np.ndarray:
    """Symmetric Hann window, w(n) = 0.5 * (1 - cos(2*pi*n / (N-1)))."""
    return np.hanning(n)


def magnitude_to_db(amplitude: np.ndarray, floor_db: float = DEFAULT_CONFIG.db_floor) -> np.ndarray:
    """Convert linear amplitudes to dB, mapping numeric zero to ``floor_db``."""
    amplitude = np.asarray(amplitude, dtype=float)
    out = np.full(amplitude.shape, floor_db)
    mask = amplitude > _AMPLITUDE_EPS
    out[mask] = 20 * np.log10(amplitude[mask])
    return out


def power_to_db(power: np.ndarray, floor_db: float = DEFAULT_CONFIG.db_floor) -> np.ndarray:
    """Convert linear power (amplitude squared) to dB on the same scale as amplitudes."""
    power = np.asarray(power, dtype=float)
    out = np.full(power.shape, floor_db)
    mask = power > _AMPLITUDE_EPS ** 2
    out[mask] = 10 * np.log10(power[mask])
    return out


def db_to_power(magnitudes_db: np.ndarray) -> np.ndarray:
    return np.power(10.0, np.asarray(magnitudes_db, dtype=float) / 10)


def frequency_bins(n: int, sample_rate: float) -> np.ndarray:
    """Frequencies of the N/2+1 one-sided bins of an N-point FFT."""
    return np.arange(n // 2 + 1) * (sample_rate / n)


def _check_fft_size(n: int) -> None:
    if not is_power_of_two(n):
        raise InvalidInputError(f"FFT size must be a power of 2, got {n}")


def _check_sample_rate(sample_rate: float) -> None:
    if not sample_rate or sample_rate <= 0:
        raise InvalidInputError(f"Sample rate must be positive, got {sample_rate}")


def _amplitude_spectra(frames: np.ndarray, apply_window: bool) -> np.ndarray:
    """One-sided |FFT|/N of each row of ``frames``."""
    n = frames.shape[-1]
    if apply_window:
        frames = frames * hann_window(n)
    return np.abs(fft.rfft(frames, axis=-1)) / n


def windowed_spectrum(
    segment: Sequence[float],
    sample_rate: float,
    apply_window: bool = True,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> PowerSpectrum:
    """
    Compute the magnitude spectrum (in dB) of one signal segment.

    The Hann window trades a wider mainlobe for ~13 dB better sidelobe
    suppression than a rectangular window.

    Args:
        segment: Time-domain samples (length must be a power of 2)
        sample_rate: Sample rate in Hz
        apply_window: Whether to apply a Hann window
        config: Analysis configuration

    Returns:
        PowerSpectrum with N/2+1 bins spaced sample_rate/N apart

    Raises:
        InvalidInputError: If the length is zero or not a power of 2
    """
    segment = np.asarray(segment, dtype=float)
    _check_fft_size(len(segment))
    _check_sample_rate(sample_rate)

    amplitude = _amplitude_spectra(segment, apply_window)
    return PowerSpectrum(
        frequencies=frequency_bins(len(segment), sample_rate),
        magnitudes=magnitude_to_db(amplitude, config.db_floor),
    )


def welch_psd(
    signal: Sequence[float],
    sample_rate: float,
    window_size: int = None,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> PowerSpectrum:
    """
    Compute the power spectrum of a signal using Welch's method.

    The signal is split into overlapping Hann-windowed frames whose spectra
    are averaged in the linear power domain before converting back to dB.
    Averaging dB values directly would bias the estimate low.

    When the signal is shorter than ``window_size`` a single frame of the
    largest power-of-two length that fits is used instead.

    Args:
        signal: Full time-domain signal
        sample_rate: Sample rate in Hz
        window_size: FFT frame size (power of 2), defaults to config.fft_window_size
        config: Analysis configuration

    Returns:
        Averaged PowerSpectrum

    Raises:
        InvalidInputError: If window_size is not a power of 2, or the signal
            is too short for even a min_fft_size frame
    """
    signal = np.asarray(signal, dtype=float)
    if window_size is None:
        window_size = config.fft_window_size
    _check_fft_size(window_size)
    _check_sample_rate(sample_rate)

    if len(signal) < window_size:
        smaller = largest_power_of_two(len(signal))
        if smaller < config.min_fft_size:
            raise InvalidInputError(f"Signal too short for FFT: {len(signal)} samples")
        logger.debug("Signal of %d samples shorter than window %d, using %d",
                     len(signal), window_size, smaller)
        return windowed_spectrum(signal[:smaller], sample_rate, True, config)

    step = max(1, int(window_size * (1 - config.fft_overlap)))
    frames = sliding_window_view(signal, window_size)[::step]

    power = np.mean(_amplitude_spectra(frames, True) ** 2, axis=0)
    return PowerSpectrum(
        frequencies=frequency_bins(window_size, sample_rate),
        magnitudes=power_to_db(power, config.db_floor),
    )


def trim_spectrum(
    spectrum: PowerSpectrum,
    min_hz: float = DEFAULT_CONFIG.frequency_min_hz,
    max_hz: float = DEFAULT_CONFIG.frequency_max_hz
) -> PowerSpectrum:
    """
    Keep only the bins with min_hz <= frequency <= max_hz.

    An empty spectrum is returned when no bin falls in range.
    """
    mask = (spectrum.frequencies >= min_hz) & (spectrum.frequencies <= max_hz)
    return PowerSpectrum(
        frequencies=spectrum.frequencies[mask],
        magnitudes=spectrum.magnitudes[mask],
    )


def average_spectra(
    spectra: List[PowerSpectrum],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> PowerSpectrum:
    """
    Average several spectra in the linear power domain.

    Spectra computed on a different frequency grid than the largest one
    (e.g. from a short segment that fell back to a smaller FFT) are dropped.

    Raises:
        InvalidInputError: If ``spectra`` is empty
    """
    if not spectra:
        raise InvalidInputError("Cannot average an empty list of spectra")
    if len(spectra) == 1:
        return spectra[0]

    reference = max(spectra, key=len)
    matching = [
        s for s in spectra
        if len(s) == len(reference) and np.allclose(s.frequencies, reference.frequencies)
    ]
    if len(matching) < len(spectra):
        logger.warning("Dropped %d spectra with a mismatched frequency grid",
                       len(spectra) - len(matching))

    power = np.mean([db_to_power(s.magnitudes) for s in matching], axis=0)
    return PowerSpectrum(
        frequencies=reference.frequencies,
        magnitudes=power_to_db(power, config.db_floor),
    )
