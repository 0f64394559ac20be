# PID Tune Analysis - Diagnostics Tests
# Copyright (C) 2024
# License: GPLv3

"""
Unit tests for cross-axis coupling and D-term effectiveness.
"""

import unittest

import numpy as np

from pid_tune_analysis.diagnostics import (
    analyze_cross_axis_coupling,
    analyze_dterm_effectiveness,
    compute_dterm_effectiveness,
    normalized_correlation,
)
from pid_tune_analysis.models import (
    Axis,
    CouplingRating,
    CrossAxisCoupling,
    DTermRating,
    FlightLog,
    StepDirection,
    StepEvent,
    Unavailable,
)

SAMPLE_RATE = 4000.0


def roll_step(start, length=1200):
    return StepEvent(Axis.ROLL, start, start + length, 300.0, StepDirection.POSITIVE)


class TestCorrelation(unittest.TestCase):
    """Tests for normalized correlation."""

    def test_identical_and_inverted(self):
        """Test identical and sign-flipped signals correlate fully."""
        a = np.sin(np.linspace(0, 10, 100))
        self.assertAlmostEqual(normalized_correlation(a, a), 1.0)
        self.assertAlmostEqual(normalized_correlation(a, -a), 1.0)

    def test_degenerate_inputs(self):
        """Test short or constant signals give zero."""
        self.assertEqual(normalized_correlation([1, 2, 3], [1, 2, 3]), 0.0)
        self.assertEqual(normalized_correlation(np.ones(10), np.arange(10)), 0.0)


class TestCoupling(unittest.TestCase):
    """Tests for cross-axis coupling."""

    def setUp(self):
        np.random.seed(42)
        n = 10000
        roll = np.random.randn(n) * 100
        pitch = 0.5 * roll + np.random.randn(n) * 5
        yaw = np.random.randn(n) * 100
        self.flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=[roll, pitch, yaw], setpoint=[np.zeros(n)] * 3)

    def test_coupled_pair_is_significant(self):
        """Test a pitch gyro following roll is rated significant."""
        result = analyze_cross_axis_coupling([roll_step(1000), roll_step(5000)], self.flight)
        self.assertIsInstance(result, CrossAxisCoupling)
        self.assertTrue(result.has_significant_coupling)
        self.assertEqual(result.steps_used, 2)
        ratings = {(p.source_axis, p.affected_axis): p.rating for p in result.pairs}
        self.assertEqual(len(ratings), 2)
        self.assertEqual(ratings[(Axis.ROLL, Axis.PITCH)], CouplingRating.SIGNIFICANT)
        self.assertEqual(ratings[(Axis.ROLL, Axis.YAW)], CouplingRating.NONE)

    def test_correlations_rounded(self):
        """Test pair correlations are rounded to three decimals."""
        result = analyze_cross_axis_coupling([roll_step(1000), roll_step(5000)], self.flight)
        for pair in result.pairs:
            self.assertEqual(pair.correlation, round(pair.correlation, 3))

    def test_single_step_unavailable(self):
        """Test one step is not enough."""
        result = analyze_cross_axis_coupling([roll_step(1000)], self.flight)
        self.assertIsInstance(result, Unavailable)
        self.assertEqual(result.count, 1)

    def test_out_of_range_steps_unavailable(self):
        """Test steps outside the log are skipped."""
        result = analyze_cross_axis_coupling([roll_step(9500), roll_step(9900)], self.flight)
        self.assertIsInstance(result, Unavailable)


class TestDTermEffectiveness(unittest.TestCase):
    """Tests for D-term effectiveness."""

    def setUp(self):
        self.t = np.arange(8192) / SAMPLE_RATE

    def tone(self, freq, amplitude=1.0):
        return amplitude * np.sin(2 * np.pi * freq * self.t)

    def test_low_frequency_is_efficient(self):
        """Test a D-term reacting at 50 Hz is efficient."""
        result = compute_dterm_effectiveness(self.tone(50), SAMPLE_RATE)
        self.assertEqual(result.rating, DTermRating.EFFICIENT)

    def test_high_frequency_is_noisy(self):
        """Test a D-term dominated by 400 Hz noise is noisy."""
        result = compute_dterm_effectiveness(self.tone(400), SAMPLE_RATE)
        self.assertEqual(result.rating, DTermRating.NOISY)

    def test_mixed_is_balanced(self):
        """Test comparable functional and noise energy is balanced."""
        result = compute_dterm_effectiveness(self.tone(50, 10.0) + self.tone(400, 7.0), SAMPLE_RATE)
        self.assertEqual(result.rating, DTermRating.BALANCED)
        self.assertAlmostEqual(result.ratio, 100 / 49, delta=0.1)

    def test_short_series_unavailable(self):
        """Test fewer than 256 samples is unavailable."""
        result = compute_dterm_effectiveness(np.ones(100), SAMPLE_RATE)
        self.assertIsInstance(result, Unavailable)
        self.assertEqual(result.count, 100)

    def test_flight_without_dterm(self):
        """Test a log without D-term data is unavailable."""
        n = 8192
        flight = FlightLog.from_arrays(SAMPLE_RATE, gyro=[np.zeros(n)] * 3, setpoint=[np.zeros(n)] * 3)
        self.assertIsInstance(analyze_dterm_effectiveness(flight), Unavailable)

    def test_flight_with_dterm(self):
        """Test each axis is rated when D-term data is present."""
        n = 8192
        flight = FlightLog.from_arrays(
            SAMPLE_RATE,
            gyro=[np.zeros(n)] * 3,
            setpoint=[np.zeros(n)] * 3,
            dterm=[self.tone(50), self.tone(400), self.tone(50)],
        )
        result = analyze_dterm_effectiveness(flight)
        self.assertEqual(result.roll.rating, DTermRating.EFFICIENT)
        self.assertEqual(result[Axis.PITCH].rating, DTermRating.NOISY)


if __name__ == '__main__':
    unittest.main()
