# PID Tune Analysis - Model and Configuration Tests
# Copyright (C) 2024
# License: GPLv3

"""
Unit tests for data models and analysis configuration.
"""

import unittest

import numpy as np

from pid_tune_analysis.config import DEFAULT_CONFIG, AnalysisConfig, StyleThresholds
from pid_tune_analysis.errors import InvalidInputError, TuneAnalysisError
from pid_tune_analysis.models import (
    Axis,
    FlightLog,
    FlightStyle,
    PIDGains,
    TimeSeries,
    Unavailable,
    normalize_throttle,
)


class TestModels(unittest.TestCase):
    """Tests for input and result models."""

    def test_unavailable_is_falsy(self):
        """Test Unavailable results evaluate as False and keep their count."""
        result = Unavailable("not enough samples", 42)
        self.assertFalse(result)
        self.assertEqual(result.count, 42)

    def test_time_series_length_mismatch(self):
        """Test time and values must have the same length."""
        with self.assertRaises(InvalidInputError):
            TimeSeries(time=[0.0, 1.0], values=[1.0])

    def test_time_series_is_read_only(self):
        """Test series arrays are copies and cannot be modified."""
        source = np.zeros(4)
        series = TimeSeries.from_values(source, 2.0)
        source[0] = 5.0
        self.assertEqual(series.values[0], 0.0)
        np.testing.assert_array_equal(series.time, [0.0, 0.5, 1.0, 1.5])
        with self.assertRaises(ValueError):
            series.values[0] = 1.0

    def test_flight_log_validation(self):
        """Test bad sample rates and mismatched series are rejected."""
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(0, gyro=[np.zeros(4)] * 3, setpoint=[np.zeros(4)] * 3)
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(1000.0, gyro=[np.zeros(4)] * 3, setpoint=[np.zeros(5)] * 3)
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(1000.0, gyro=[np.zeros(4)] * 2, setpoint=[np.zeros(4)] * 2)

    def test_flight_log_lengths_across_channels(self):
        """Test every axis, throttle and D-term must match the roll length."""
        gyro = [np.zeros(4096)] * 3
        setpoint = [np.zeros(4096)] * 3
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(4000.0, gyro=gyro, setpoint=setpoint, throttle=np.full(5096, 1500.0))
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(4000.0, gyro=[np.zeros(4096), np.zeros(4096), np.zeros(8)],
                                  setpoint=[np.zeros(4096), np.zeros(4096), np.zeros(8)])
        with self.assertRaises(InvalidInputError):
            FlightLog.from_arrays(4000.0, gyro=gyro, setpoint=setpoint,
                                  dterm=[np.zeros(4096), np.zeros(4096), np.zeros(100)])
        flight = FlightLog.from_arrays(4000.0, gyro=gyro, setpoint=setpoint,
                                       throttle=np.full(4096, 1500.0), dterm=[np.zeros(4096)] * 3)
        self.assertEqual(flight.sample_count, 4096)

    def test_flight_log_properties(self):
        """Test sample count, duration and default gains."""
        flight = FlightLog.from_arrays(1000.0, gyro=[np.zeros(2000)] * 3, setpoint=[np.zeros(2000)] * 3)
        self.assertEqual(flight.sample_count, 2000)
        self.assertAlmostEqual(flight.duration_seconds, 2.0)
        self.assertEqual(flight.pid_gains[Axis.YAW], PIDGains())

    def test_pid_gains_str(self):
        """Test PIDGains string representation."""
        self.assertEqual(str(PIDGains(p=45, i=80, d=30)), "P=45, I=80, D=30, F=0.0, D_min=0.0")

    def test_normalize_throttle(self):
        """Test the four raw throttle conventions."""
        np.testing.assert_array_almost_equal(
            normalize_throttle(np.array([1500.0, 500.0, 50.0, 0.5])), [0.5, 0.5, 0.5, 0.5]
        )
        self.assertEqual(normalize_throttle(2000), 1.0)
        self.assertIsInstance(normalize_throttle(1500), float)

    def test_axis_is_string(self):
        """Test Axis values compare equal to their names."""
        self.assertEqual(Axis('pitch'), Axis.PITCH)
        self.assertEqual(Axis.ROLL, 'roll')


class TestConfig(unittest.TestCase):
    """Tests for AnalysisConfig."""

    def test_defaults(self):
        """Test a few documented defaults."""
        self.assertEqual(DEFAULT_CONFIG.fft_window_size, 4096)
        self.assertEqual(DEFAULT_CONFIG.bayesian_min_history, 3)
        self.assertEqual(DEFAULT_CONFIG.thresholds_for('balanced').overshoot_max, 25)

    def test_replace_validates(self):
        """Test replace returns a validated copy."""
        config = DEFAULT_CONFIG.replace(fft_window_size=2048)
        self.assertEqual(config.fft_window_size, 2048)
        self.assertEqual(DEFAULT_CONFIG.fft_window_size, 4096)
        with self.assertRaises(InvalidInputError):
            DEFAULT_CONFIG.replace(fft_window_size=1000)
        with self.assertRaises(InvalidInputError):
            DEFAULT_CONFIG.replace(fft_overlap=1.0)
        with self.assertRaises(InvalidInputError):
            DEFAULT_CONFIG.replace(p_gain_min=200.0)

    def test_from_dict(self):
        """Test building a config from plain values."""
        config = AnalysisConfig.from_dict({
            'fft_window_size': 8192,
            'bayesian_low_quality_tiers': ['poor'],
            'style_thresholds': {'smooth': {
                'overshoot_ideal': 2, 'overshoot_max': 10, 'settling_max_ms': 300,
                'ringing_max': 1, 'moderate_overshoot': 6, 'sluggish_rise_ms': 150,
            }},
        })
        self.assertEqual(config.fft_window_size, 8192)
        self.assertEqual(config.bayesian_low_quality_tiers, ('poor',))
        self.assertEqual(config.thresholds_for(FlightStyle.SMOOTH).sluggish_rise_ms, 150)
        self.assertIsInstance(config.thresholds_for(FlightStyle.AGGRESSIVE), StyleThresholds)

    def test_from_dict_errors(self):
        """Test unknown keys, styles and threshold fields are rejected."""
        with self.assertRaises(InvalidInputError):
            AnalysisConfig.from_dict({'no_such_key': 1})
        with self.assertRaises(InvalidInputError):
            AnalysisConfig.from_dict({'style_thresholds': {'freestyle': {}}})
        with self.assertRaises(InvalidInputError):
            AnalysisConfig.from_dict({'style_thresholds': {'smooth': {'overshoot_ideal': 1}}})

    def test_error_hierarchy(self):
        """Test input errors are both library errors and ValueErrors."""
        self.assertTrue(issubclass(InvalidInputError, TuneAnalysisError))
        self.assertTrue(issubclass(InvalidInputError, ValueError))


if __name__ == '__main__':
    unittest.main()
