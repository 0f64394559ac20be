# PID Tune Analysis - Plotter
# Copyright (C) 2024
# License: GPLv3

"""
Plotting functions for noise spectra, Bode plots and step responses.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

import numpy as np

from .models import AXES, Axis, FlightAnalysisResult, NoiseProfile, StepAnalysisResult, TransferFunctionResult

if TYPE_CHECKING:
    from matplotlib.figure import Figure

logger = logging.getLogger(__name__)

# Colors for each axis
COLORS = {
    Axis.ROLL: '#1f77b4',   # Blue
    Axis.PITCH: '#ff7f0e',  # Orange
    Axis.YAW: '#2ca02c',    # Green
}


def _pyplot():
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        raise ImportError(
            "matplotlib is required for plotting. "
            "Install it with: pip install matplotlib"
        ) from None
    return plt


def _finish(fig: "Figure", save_path: Optional[Union[str, Path]], show: bool) -> "Figure":
    plt = _pyplot()
    fig.tight_layout()
    if save_path:
        fig.savefig(str(save_path), dpi=150, bbox_inches='tight')
        logger.info("Figure saved to: %s", save_path)
    if show:
        plt.show()
    return fig


def plot_noise_profile(
    noise: NoiseProfile,
    axes: Optional[List[Axis]] = None,
    save_path: Optional[Union[str, Path]] = None,
    show: bool = True,
    figsize: tuple = (12, 6)
) -> "Figure":
    """
    Plot the gyro spectrum of each axis with its noise floor and peaks.

    Args:
        noise: NoiseProfile to plot
        axes: Axes to plot, all by default
        save_path: Path to save the figure. If None, figure is not saved.
        show: Whether to display the figure interactively.
        figsize: Figure size as (width, height) tuple.

    Returns:
        matplotlib Figure object
    """
    plt = _pyplot()
    axes = list(axes or AXES)

    fig, ax = plt.subplots(figsize=figsize)
    for axis in axes:
        profile = noise[axis]
        color = COLORS[axis]
        if len(profile.spectrum) == 0:
            continue
        ax.plot(profile.spectrum.frequencies, profile.spectrum.magnitudes,
                color=color, linewidth=1, label=axis.value.upper())
        ax.axhline(y=profile.noise_floor_db, color=color, linestyle='--', alpha=0.5)
        for peak in profile.peaks:
            idx = int(np.argmin(np.abs(profile.spectrum.frequencies - peak.frequency)))
            ax.plot(peak.frequency, profile.spectrum.magnitudes[idx], 'v', color=color)
            ax.annotate(f"{peak.frequency:.0f} Hz\n{peak.type.value}",
                        (peak.frequency, profile.spectrum.magnitudes[idx]),
                        textcoords='offset points', xytext=(0, 8), ha='center', fontsize=7)

    ax.set_xlabel('Frequency (Hz)')
    ax.set_ylabel('Magnitude (dB)')
    ax.set_title(f'Gyro Noise ({noise.overall_level.value})')
    ax.grid(True, alpha=0.3)
    ax.legend()
    return _finish(fig, save_path, show)


def plot_transfer_function(
    transfer_functions: TransferFunctionResult,
    axes: Optional[List[Axis]] = None,
    max_hz: float = 500.0,
    save_path: Optional[Union[str, Path]] = None,
    show: bool = True,
    figsize: tuple = (12, 8)
) -> Optional["Figure"]:
    """
    Bode plot (magnitude in dB and phase) of the estimated transfer functions.

    Axes without an estimate are skipped; None is returned when no axis
    has one.
    """
    plt = _pyplot()
    axes = [axis for axis in (axes or AXES) if transfer_functions[axis]]
    if not axes:
        logger.info("No transfer function to plot")
        return None

    fig, (ax_mag, ax_phase) = plt.subplots(2, 1, figsize=figsize, sharex=True)
    for axis in axes:
        result = transfer_functions[axis]
        tf = result.transfer_function
        mask = (tf.frequencies > 0) & (tf.frequencies <= max_hz)
        color = COLORS[axis]
        ax_mag.plot(tf.frequencies[mask], 20 * np.log10(np.maximum(tf.magnitude[mask], 1e-12)),
                    color=color, label=f'{axis.value.upper()} (BW {result.metrics.bandwidth_3db:.0f} Hz)')
        ax_phase.plot(tf.frequencies[mask], tf.phase[mask], color=color)
        ax_mag.axvline(x=result.metrics.bandwidth_3db, color=color, linestyle=':', alpha=0.5)

    ax_mag.axhline(y=-3, color='gray', linestyle='--', alpha=0.5)
    ax_mag.set_ylabel('Magnitude (dB)')
    ax_mag.set_title('Closed-Loop Transfer Function')
    ax_mag.grid(True, alpha=0.3)
    ax_mag.legend()
    ax_phase.set_ylabel('Phase (deg)')
    ax_phase.set_xlabel('Frequency (Hz)')
    ax_phase.grid(True, alpha=0.3)
    return _finish(fig, save_path, show)


def plot_step_responses(
    steps: StepAnalysisResult,
    axes: Optional[List[Axis]] = None,
    save_path: Optional[Union[str, Path]] = None,
    show: bool = True,
    figsize: tuple = (15, 5)
) -> Optional["Figure"]:
    """
    Overlay the normalized gyro trace of every detected step, per axis.

    Each trace is scaled so the step's start is 0 and its steady state 1.
    """
    plt = _pyplot()
    axes = [axis for axis in (axes or AXES) if steps[axis].step_count > 0]
    if not axes:
        logger.info("No step responses to plot")
        return None

    fig, ax_list = plt.subplots(1, len(axes), figsize=figsize, squeeze=False)
    for ax, axis in zip(ax_list[0], axes):
        profile = steps[axis]
        color = COLORS[axis]
        for response in profile.responses:
            if response.trace is None or response.degenerate or len(response.trace.gyro) == 0:
                continue
            baseline = response.trace.gyro[0]
            span = response.steady_state_value - baseline
            if span == 0:
                continue
            ax.plot(response.trace.time_ms, (response.trace.gyro - baseline) / span,
                    color=color, alpha=0.4, linewidth=1)

        ax.axhline(y=1.0, color='gray', linestyle='--', alpha=0.5)
        ax.axhline(y=0.0, color='gray', linestyle='-', alpha=0.3)
        ax.set_xlabel('Time (ms)')
        ax.set_ylabel('Response')
        ax.set_title(f'{axis.value.upper()} Step Response')
        ax.grid(True, alpha=0.3)
        ax.text(0.98, 0.05,
                f"Steps: {profile.step_count}\n"
                f"Rise Time: {profile.mean_rise_time_ms:.1f} ms\n"
                f"Overshoot: {profile.mean_overshoot:.1f}%",
                transform=ax.transAxes, fontsize=9, ha='right', va='bottom',
                bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.5))
    return _finish(fig, save_path, show)


def plot_analysis(
    result: FlightAnalysisResult,
    save_dir: Optional[Union[str, Path]] = None,
    show: bool = True
) -> List["Figure"]:
    """
    Produce every available plot for one analysis result.

    Figures are saved as ``<stem>_log<N>_<kind>.png`` when ``save_dir`` is given.
    """
    stem = Path(result.file_path).stem if result.file_path else 'flight'

    def target(kind):
        if save_dir is None:
            return None
        return Path(save_dir) / f"{stem}_log{result.log_index}_{kind}.png"

    figures = [plot_noise_profile(result.noise, save_path=target('noise'), show=show)]
    if result.transfer_functions:
        figures.append(plot_transfer_function(
            result.transfer_functions, save_path=target('bode'), show=show))
    figures.append(plot_step_responses(result.steps, save_path=target('steps'), show=show))
    return [fig for fig in figures if fig is not None]
