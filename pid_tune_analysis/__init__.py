# PID Tune Analysis Library
# A Python library for analyzing blackbox flight logs for PID and filter tuning
# Based on orangebox library
#
# Copyright (C) 2024
# License: GPLv3

"""
PID Tune Analysis Library

This library analyzes Betaflight blackbox log (BBL) files and turns
gyro, setpoint and throttle traces into tuning diagnostics.

Features:
- Parse BBL files using orangebox
- Welch power spectra, noise floor and resonance peak classification
- Closed-loop transfer function estimation (Wiener deconvolution)
- Step detection with rise time, overshoot, settling, latency and ringing
- Bayesian P/D gain suggestions from the tuning history
- Cross-axis coupling, D-term effectiveness, prop wash and
  throttle-indexed spectrogram diagnostics
- Generate spectrum, Bode and step response plots
"""

from .analyzer import TuneAnalyzer
from .config import DEFAULT_CONFIG, AnalysisConfig, StyleThresholds
from .errors import InvalidInputError, TuneAnalysisError
from .models import (
    AXES,
    Axis,
    FlightAnalysisResult,
    FlightLog,
    FlightStyle,
    PIDGains,
    TimeSeries,
    TuningRecord,
    Unavailable,
)
from .noise import analyze_noise
from .optimizer import optimize_with_history
from .spectrum import welch_psd, windowed_spectrum
from .step_response import analyze_step_responses
from .transfer import estimate_transfer_functions

__version__ = "0.1.0"
__all__ = [
    "TuneAnalyzer",
    "AnalysisConfig",
    "StyleThresholds",
    "DEFAULT_CONFIG",
    "TuneAnalysisError",
    "InvalidInputError",
    "AXES",
    "Axis",
    "FlightAnalysisResult",
    "FlightLog",
    "FlightStyle",
    "PIDGains",
    "TimeSeries",
    "TuningRecord",
    "Unavailable",
    "analyze_noise",
    "analyze_step_responses",
    "estimate_transfer_functions",
    "optimize_with_history",
    "welch_psd",
    "windowed_spectrum",
]
