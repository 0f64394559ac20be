# PID Tune Analysis - Main Analyzer
# Copyright (C) 2024
# License: GPLv3

"""
Main analyzer class that orchestrates BBL parsing and every analysis
component.
"""

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .config import DEFAULT_CONFIG, AnalysisConfig
from .diagnostics import analyze_cross_axis_coupling, analyze_dterm_effectiveness
from .models import (
    AnalysisSegment,
    FlightAnalysisResult,
    FlightLog,
    FlightStyle,
    TuningRecord,
)
from .noise import analyze_noise
from .optimizer import optimize_with_history
from .parser import get_log_count, parse_all_logs, parse_bbl_file
from .step_response import analyze_step_responses
from .throttle import analyze_prop_wash, compute_throttle_spectrogram
from .transfer import estimate_transfer_functions

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

STAGES = (
    'noise',
    'transfer_function',
    'steps',
    'diagnostics',
    'optimization',
)


class TuneAnalyzer:
    """
    Runs the complete tuning analysis of a flight log.

    Components run one after another in a fixed order; the optional
    progress callback is called between components with the name of the
    finished stage, the number of finished stages and the total.

    Example usage:
        analyzer = TuneAnalyzer(flight_style=FlightStyle.BALANCED)
        results = analyzer.analyze("flight.bbl")

        for result in results:
            print(result.summary())
    """

    def __init__(
        self,
        config: AnalysisConfig = DEFAULT_CONFIG,
        flight_style: FlightStyle = FlightStyle.BALANCED
    ):
        """
        Initialize the analyzer.

        Args:
            config: Analysis thresholds and hyperparameters
            flight_style: Flying style the optimizer targets
        """
        self.config = config
        self.flight_style = FlightStyle(flight_style)

    def analyze(
        self,
        file_path: Union[str, Path],
        log_index: Optional[int] = None,
        history: Sequence[TuningRecord] = (),
        on_progress: Optional[ProgressCallback] = None
    ) -> List[FlightAnalysisResult]:
        """
        Analyze a BBL file.

        Args:
            file_path: Path to the BBL file
            log_index: Specific log index to analyze (1-based).
                      If None, analyzes all logs in the file.
            history: Past tuning sessions for the gain optimizer
            on_progress: Called between analysis stages

        Returns:
            List of FlightAnalysisResult objects, one per analyzed log
        """
        file_path = str(file_path)

        if log_index is not None:
            logs = [parse_bbl_file(file_path, log_index=log_index)]
        else:
            logs = parse_all_logs(file_path)

        results = []
        for flight_log in logs:
            if flight_log.sample_count < self.config.min_fft_size:
                logger.warning("Skipping log %d: only %d samples",
                               flight_log.log_index, flight_log.sample_count)
                continue
            results.append(self.analyze_log(
                flight_log, history=history, on_progress=on_progress, file_path=file_path
            ))
        return results

    def analyze_log(
        self,
        flight_log: FlightLog,
        segments: Optional[Sequence[AnalysisSegment]] = None,
        history: Sequence[TuningRecord] = (),
        on_progress: Optional[ProgressCallback] = None,
        file_path: Optional[str] = None
    ) -> FlightAnalysisResult:
        """
        Analyze one parsed flight log.

        Args:
            flight_log: Parsed flight data
            segments: Analysis-worthy slices for noise profiling; the whole
                      flight is used when None
            history: Past tuning sessions for the gain optimizer
            on_progress: Called between analysis stages
            file_path: Source file, for the summary only

        Returns:
            FlightAnalysisResult with every component's output
        """
        config = self.config
        done = [0]

        def stage(name, func, *args, **kwargs):
            start = time.perf_counter()
            value = func(*args, **kwargs)
            logger.debug("%s took %.1f ms", name, (time.perf_counter() - start) * 1000)
            return value

        def finished(name):
            done[0] += 1
            if on_progress is not None:
                on_progress(name, done[0], len(STAGES))

        noise = stage('noise', analyze_noise, flight_log, segments, config)
        spectrogram = None
        if flight_log.throttle is not None:
            spectrogram = stage('spectrogram', compute_throttle_spectrogram, flight_log, config=config)
        finished('noise')

        transfer_functions = stage('transfer_function', estimate_transfer_functions, flight_log, config)
        finished('transfer_function')

        steps = stage('steps', analyze_step_responses, flight_log, config)
        finished('steps')

        step_events = [r.step for _, profile in steps for r in profile.responses]
        coupling = stage('coupling', analyze_cross_axis_coupling, step_events, flight_log, config)
        dterm = stage('dterm', analyze_dterm_effectiveness, flight_log, config)
        prop_wash = stage('prop_wash', analyze_prop_wash, flight_log, config)
        finished('diagnostics')

        optimization = stage('optimization', optimize_with_history, history, self.flight_style, config)
        finished('optimization')

        return FlightAnalysisResult(
            log_index=flight_log.log_index,
            sample_rate_hz=flight_log.sample_rate_hz,
            duration_seconds=flight_log.duration_seconds,
            sample_count=flight_log.sample_count,
            noise=noise,
            steps=steps,
            transfer_functions=transfer_functions,
            optimization=optimization,
            coupling=coupling,
            dterm=dterm,
            prop_wash=prop_wash,
            spectrogram=spectrogram,
            file_path=file_path,
        )

    @staticmethod
    def get_log_count(file_path: Union[str, Path]) -> int:
        """
        Get the number of logs in a BBL file.

        Args:
            file_path: Path to the BBL file

        Returns:
            Number of logs in the file
        """
        return get_log_count(str(file_path))
