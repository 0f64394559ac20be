# PID Tune Analysis - Errors
# Copyright (C) 2024
# License: GPLv3

"""
Exceptions raised for malformed caller input.

Insufficient data is never signalled with an exception; see
:class:`pid_tune_analysis.models.Unavailable`.
"""


class TuneAnalysisError(Exception):
    """Base class for all errors raised by this library."""


class InvalidInputError(TuneAnalysisError, ValueError):
    """Input that no analysis can be computed from (bad FFT size, bad config, ...)."""
