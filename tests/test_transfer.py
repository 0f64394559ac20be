# PID Tune Analysis - Transfer Function Tests
# Copyright (C) 2024
# License: GPLv3

"""
Unit tests for Wiener-deconvolution transfer function estimation.
"""

import unittest

import numpy as np

from pid_tune_analysis.models import FlightLog, TransferFunction, TransferFunctionResult, Unavailable
from pid_tune_analysis.spectrum import frequency_bins
from pid_tune_analysis.transfer import (
    estimate_axis_transfer_function,
    estimate_transfer_functions,
    extract_metrics,
    synthetic_step_response,
)

SAMPLE_RATE = 4000.0


def analytic_tf(response):
    freqs = frequency_bins(2048, SAMPLE_RATE)
    h = response(freqs)
    return TransferFunction(frequencies=freqs, magnitude=np.abs(h), phase=np.degrees(np.angle(h)))


def first_order(fc):
    return lambda f: 1.0 / (1.0 + 1j * f / fc)


def second_order(fn, zeta):
    def response(f):
        s = 2j * np.pi * f
        wn = 2 * np.pi * fn
        return wn ** 2 / (s ** 2 + 2 * zeta * wn * s + wn ** 2)
    return response


class TestEstimation(unittest.TestCase):
    """Tests for transfer function estimation from time series."""

    def setUp(self):
        np.random.seed(42)
        self.setpoint = np.random.randn(32768) * 100

    def test_pure_gain(self):
        """Test gyro = 0.95 x setpoint gives magnitude 0.95 +/- 0.3 across 10-200 Hz."""
        tf = estimate_axis_transfer_function(self.setpoint, 0.95 * self.setpoint, SAMPLE_RATE)
        self.assertTrue(tf)
        band = (tf.frequencies >= 10) & (tf.frequencies <= 200)
        close = np.abs(tf.magnitude[band] - 0.95) <= 0.3
        self.assertGreaterEqual(np.mean(close), 0.8)
        self.assertLess(np.max(np.abs(tf.phase[band])), 1.0)
        self.assertEqual(tf.windows_used, 31)

    def test_bin_layout(self):
        """Test the estimate has window/2+1 bins."""
        tf = estimate_axis_transfer_function(self.setpoint, self.setpoint, SAMPLE_RATE)
        self.assertEqual(len(tf.frequencies), 1025)
        self.assertAlmostEqual(tf.frequencies[1], SAMPLE_RATE / 2048)

    def test_zero_input_unavailable(self):
        """Test zero setpoint energy returns an unavailable result."""
        zeros = np.zeros(10000)
        result = estimate_axis_transfer_function(zeros, zeros, SAMPLE_RATE)
        self.assertFalse(result)
        self.assertIsInstance(result, Unavailable)
        self.assertEqual(result.count, 0)

    def test_short_input_unavailable(self):
        """Test input shorter than one window returns an unavailable result with the sample count."""
        result = estimate_axis_transfer_function(self.setpoint[:1000], self.setpoint[:1000], SAMPLE_RATE)
        self.assertIsInstance(result, Unavailable)
        self.assertEqual(result.count, 1000)

    def test_idle_windows_skipped(self):
        """Test windows without stick input are left out of the average."""
        setpoint = self.setpoint.copy()
        setpoint[:16384] = 0.0
        tf = estimate_axis_transfer_function(setpoint, 0.95 * setpoint, SAMPLE_RATE)
        self.assertLess(tf.windows_used, 31)
        band = (tf.frequencies >= 10) & (tf.frequencies <= 200)
        self.assertGreaterEqual(np.mean(np.abs(tf.magnitude[band] - 0.95) <= 0.3), 0.8)

    def test_deterministic(self):
        """Test identical input gives bit-identical output."""
        gyro = 0.8 * self.setpoint
        first = estimate_axis_transfer_function(self.setpoint, gyro, SAMPLE_RATE)
        second = estimate_axis_transfer_function(self.setpoint, gyro, SAMPLE_RATE)
        np.testing.assert_array_equal(first.magnitude, second.magnitude)
        np.testing.assert_array_equal(first.phase, second.phase)


class TestMetrics(unittest.TestCase):
    """Tests for frequency-domain metrics."""

    def test_first_order_bandwidth_and_phase_margin(self):
        """Test a 50 Hz first-order low pass."""
        metrics = extract_metrics(analytic_tf(first_order(50.0)), SAMPLE_RATE)
        self.assertLess(abs(metrics.bandwidth_3db - 50.0), 1.0)
        self.assertLess(abs(metrics.phase_margin - 135.0), 2.0)
        self.assertAlmostEqual(metrics.peak_resonance, 1.0)
        self.assertLess(metrics.estimated_overshoot, 5.0)

    def test_flat_response_bandwidth_defaults_to_range_top(self):
        """Test a response that never drops reports the top of the analysis range."""
        metrics = extract_metrics(analytic_tf(lambda f: np.ones_like(f, dtype=complex)), SAMPLE_RATE)
        self.assertGreaterEqual(metrics.bandwidth_3db, 500.0)
        self.assertEqual(metrics.phase_margin, 180.0)
        self.assertEqual(metrics.estimated_overshoot, 0.0)

    def test_resonant_response(self):
        """Test an underdamped loop shows a resonance peak and overshoot."""
        metrics = extract_metrics(analytic_tf(second_order(60.0, 0.2)), SAMPLE_RATE)
        self.assertGreater(metrics.peak_resonance, 1.5)
        self.assertLess(abs(metrics.peak_resonance_frequency - 57.6), 5.0)
        self.assertGreater(metrics.estimated_overshoot, 20.0)


class TestSyntheticStep(unittest.TestCase):
    """Tests for the synthetic step response."""

    def test_first_order_rise_time(self):
        """Test the 10-90% rise time of a first-order loop is about 2.2 time constants."""
        step = synthetic_step_response(analytic_tf(first_order(50.0)), SAMPLE_RATE)
        tau_ms = 1000.0 / (2 * np.pi * 50.0)
        self.assertLess(abs(step.rise_time_ms - 2.2 * tau_ms), 3.0)
        self.assertEqual(len(step.response), 500)
        self.assertLess(abs(np.mean(step.response[-100:]) - 1.0), 0.1)

    def test_tiny_spectrum(self):
        """Test a transfer function too small for an inverse FFT gives an empty step."""
        tf = TransferFunction(frequencies=[0.0, 1.0], magnitude=[1.0, 1.0], phase=[0.0, 0.0])
        step = synthetic_step_response(tf, SAMPLE_RATE)
        self.assertEqual(len(step.response), 0)
        self.assertEqual(step.overshoot_percent, 0.0)


class TestFlightTransferFunctions(unittest.TestCase):
    """Tests for per-flight transfer function estimation."""

    def test_all_axes(self):
        """Test each excited axis gets a transfer function and metrics."""
        np.random.seed(42)
        setpoint = [np.random.randn(16384) * 100 for _ in range(3)]
        gyro = [0.9 * s for s in setpoint]
        flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=gyro, setpoint=setpoint)
        result = estimate_transfer_functions(flight)
        self.assertIsInstance(result, TransferFunctionResult)
        self.assertTrue(result.available)
        for axis, axis_tf in result:
            self.assertEqual(axis_tf.axis, axis)
            self.assertGreater(axis_tf.metrics.bandwidth_3db, 0)

    def test_idle_axis_unavailable(self):
        """Test an axis without stick input is unavailable while others are estimated."""
        np.random.seed(42)
        n = 16384
        setpoint = [np.random.randn(n) * 100, np.zeros(n), np.zeros(n)]
        flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=setpoint, setpoint=setpoint)
        result = estimate_transfer_functions(flight)
        self.assertTrue(result.roll)
        self.assertFalse(result.pitch)
        self.assertFalse(result.yaw)

    def test_no_input_unavailable(self):
        """Test a flight without any stick input has no transfer functions."""
        n = 16384
        flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=[np.zeros(n)] * 3, setpoint=[np.zeros(n)] * 3)
        self.assertIsInstance(estimate_transfer_functions(flight), Unavailable)

    def test_short_flight_unavailable(self):
        """Test a flight shorter than one window reports its sample count."""
        n = 1000
        flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=[np.ones(n)] * 3, setpoint=[np.ones(n)] * 3)
        result = estimate_transfer_functions(flight)
        self.assertIsInstance(result, Unavailable)
        self.assertEqual(result.count, 1000)


if __name__ == '__main__':
    unittest.main()
