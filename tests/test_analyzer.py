# PID Tune Analysis - Analyzer Tests
# Copyright (C) 2024
# License: GPLv3

"""
Integration tests for the TuneAnalyzer pipeline on synthetic flights.
"""

import unittest
from unittest.mock import patch

import numpy as np
from scipy.signal import lfilter

from pid_tune_analysis.analyzer import STAGES, TuneAnalyzer
from pid_tune_analysis.models import (
    Axis,
    AxisMetricsSummary,
    FlightAnalysisResult,
    FlightLog,
    FlightStyle,
    PIDGains,
    TuningRecord,
    Unavailable,
)

SAMPLE_RATE = 4000.0


def synthetic_flight(n=16384, log_index=1):
    """Three roll stick snaps tracked by a first-order loop, mid throttle."""
    np.random.seed(42)
    setpoint = np.zeros(n)
    setpoint[2000:6000] = 300.0
    setpoint[10000:] = 300.0
    alpha = 1 - np.exp(-1 / (SAMPLE_RATE * 0.01))
    roll = lfilter([alpha], [1, alpha - 1], setpoint) + np.random.randn(n) * 0.5
    return FlightLog.from_arrays(
        SAMPLE_RATE,
        gyro=[roll, np.random.randn(n), np.random.randn(n)],
        setpoint=[setpoint, np.zeros(n), np.zeros(n)],
        throttle=np.full(n, 1500.0),
        pid_gains={axis: PIDGains(p=45, i=80, d=30) for axis in Axis},
        log_index=log_index,
    )


def history():
    return [
        TuningRecord(gains={Axis.ROLL: PIDGains(p=p, d=d)},
                     metrics={Axis.ROLL: AxisMetricsSummary(overshoot, 30.0, 120.0)})
        for p, d, overshoot in ((40, 25, 25.0), (55, 30, 12.0), (70, 40, 18.0))
    ]


class TestAnalyzeLog(unittest.TestCase):
    """Tests for analyzing a parsed flight."""

    def setUp(self):
        self.flight = synthetic_flight()
        self.analyzer = TuneAnalyzer(flight_style=FlightStyle.BALANCED)

    def test_complete_result(self):
        """Test every component contributes to the result."""
        result = self.analyzer.analyze_log(self.flight)
        self.assertIsInstance(result, FlightAnalysisResult)
        self.assertEqual(result.sample_count, 16384)
        self.assertEqual(result.steps.steps_detected, 3)
        self.assertEqual(result.steps.roll.step_count, 3)
        self.assertTrue(result.transfer_functions)
        self.assertTrue(result.transfer_functions.roll)
        self.assertTrue(result.coupling)
        self.assertEqual(result.spectrogram.bands_with_data, 1)
        self.assertIsInstance(result.dterm, Unavailable)
        self.assertIsInstance(result.prop_wash, Unavailable)
        self.assertFalse(result.optimization.used_bayesian)

    def test_progress_reported_per_stage(self):
        """Test the progress callback sees every stage in order."""
        calls = []
        self.analyzer.analyze_log(self.flight, on_progress=lambda *args: calls.append(args))
        self.assertEqual([c[0] for c in calls], list(STAGES))
        self.assertEqual([c[1] for c in calls], [1, 2, 3, 4, 5])
        self.assertTrue(all(c[2] == 5 for c in calls))

    def test_history_enables_optimizer(self):
        """Test three past sessions produce gain suggestions."""
        result = self.analyzer.analyze_log(self.flight, history=history())
        self.assertTrue(result.optimization.used_bayesian)
        self.assertTrue(result.optimization.roll)
        self.assertIn("Suggested: P=", result.summary())

    def test_summary(self):
        """Test the summary lists each axis."""
        summary = self.analyzer.analyze_log(self.flight, file_path='flight.bbl').summary()
        self.assertIn("flight.bbl (Log #1)", summary)
        self.assertIn("Steps Detected: 3", summary)
        for name in ("ROLL", "PITCH", "YAW"):
            self.assertIn(name, summary)
        self.assertIn("Optimizer: not run", summary)


class TestAnalyzeFile(unittest.TestCase):
    """Tests for analyzing BBL files."""

    @patch('pid_tune_analysis.analyzer.parse_all_logs')
    def test_all_logs(self, mock_parse_all):
        """Test every parsed log is analyzed and tiny logs are skipped."""
        tiny = FlightLog.from_arrays(SAMPLE_RATE, gyro=[np.zeros(10)] * 3, setpoint=[np.zeros(10)] * 3,
                                     log_index=2)
        mock_parse_all.return_value = [synthetic_flight(), tiny]
        with self.assertLogs('pid_tune_analysis.analyzer', level='WARNING'):
            results = TuneAnalyzer().analyze('flight.bbl')
        mock_parse_all.assert_called_once_with('flight.bbl')
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].file_path, 'flight.bbl')

    @patch('pid_tune_analysis.analyzer.parse_bbl_file')
    def test_single_log(self, mock_parse):
        """Test a specific log index is parsed on its own."""
        mock_parse.return_value = synthetic_flight(log_index=2)
        results = TuneAnalyzer().analyze('flight.bbl', log_index=2)
        mock_parse.assert_called_once_with('flight.bbl', log_index=2)
        self.assertEqual(results[0].log_index, 2)


if __name__ == '__main__':
    unittest.main()
