# PID Tune Analysis - Bayesian Gain Optimizer
# Copyright (C) 2024
# License: GPLv3

"""
Bayesian optimization of P/D gains across flights.

Every trial is a full physical flight, so sample efficiency matters. A
Gaussian process maps (P, D) gains to a scalar objective computed from
step-response metrics of past tunings; the next gains are the point of a
safety-bounded grid with the largest Expected Improvement.

Requires at least ``config.bayesian_min_history`` observations per axis.
"""

import logging
from typing import Dict, List, Sequence, Tuple, Union

import numpy as np
from scipy.linalg import solve_triangular

from .config import DEFAULT_CONFIG, AnalysisConfig
from .models import (
    AXES,
    Axis,
    AxisOptimizationResult,
    BayesianObservation,
    BayesianOptimizationResult,
    Confidence,
    FlightStyle,
    GainPoint,
    ObjectiveMetrics,
    TuningRecord,
    Unavailable,
)

logger = logging.getLogger(__name__)

_VARIANCE_FLOOR = 1e-10
_CHOLESKY_DIAGONAL_FLOOR = 1e-10


def compute_objective(
    metrics: ObjectiveMetrics,
    flight_style: FlightStyle = FlightStyle.BALANCED,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> float:
    """
    Scalar objective from step metrics (lower is better, 0 at the ideal).

    Each term is a weighted squared ratio against the style's thresholds;
    overshoot only counts above the style's ideal overshoot.
    """
    thresholds = config.thresholds_for(flight_style)
    overshoot = max(0.0, metrics.overshoot - thresholds.overshoot_ideal) / thresholds.overshoot_max
    rise = metrics.rise_time_ms / thresholds.sluggish_rise_ms
    settling = metrics.settling_time_ms / thresholds.settling_max_ms
    return (config.bayesian_weight_overshoot * overshoot ** 2
            + config.bayesian_weight_rise_time * rise ** 2
            + config.bayesian_weight_settling * settling ** 2)


def extract_observations(
    history: Sequence[TuningRecord],
    flight_style: FlightStyle = FlightStyle.BALANCED,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Dict[Axis, List[BayesianObservation]]:
    """
    Turn completed tuning records into per-axis observations.

    Records without metrics are ignored, as are axes that never produced
    step metrics (mean overshoot and rise time both zero).
    """
    observations = {axis: [] for axis in AXES}
    for record in history:
        if record.metrics is None:
            continue
        for axis in AXES:
            summary = record.metrics.get(axis)
            gains = record.gains.get(axis)
            if summary is None or gains is None:
                continue
            if summary.mean_overshoot == 0 and summary.mean_rise_time_ms == 0:
                continue
            metrics = ObjectiveMetrics(
                overshoot=summary.mean_overshoot,
                rise_time_ms=summary.mean_rise_time_ms,
                settling_time_ms=summary.mean_settling_time_ms,
            )
            observations[axis].append(BayesianObservation(
                gains=GainPoint(p=gains.p, d=gains.d),
                metrics=metrics,
                objective_value=compute_objective(metrics, flight_style, config),
                data_quality_tier=record.quality_tier,
            ))
    return observations


def rbf_kernel(
    x1: np.ndarray,
    x2: np.ndarray,
    length_scales: np.ndarray,
    signal_variance: float
) -> np.ndarray:
    """
    Squared-exponential kernel matrix between the rows of ``x1`` and ``x2``.

    Distances are standardized per dimension by ``length_scales``.
    """
    x1 = np.atleast_2d(np.asarray(x1, dtype=float)) / length_scales
    x2 = np.atleast_2d(np.asarray(x2, dtype=float)) / length_scales
    sq_dist = np.sum((x1[:, None, :] - x2[None, :, :]) ** 2, axis=-1)
    return signal_variance * np.exp(-0.5 * sq_dist)


def cholesky_decomposition(a: np.ndarray) -> np.ndarray:
    """
    Lower-triangular L with L @ L.T == a for a symmetric positive-definite a.

    Diagonal entries are sqrt(max(value, 1e-10)) so rounding on a nearly
    singular matrix cannot produce NaN.
    """
    a = np.asarray(a, dtype=float)
    n = a.shape[0]
    lower = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1):
            s = a[i, j] - np.dot(lower[i, :j], lower[j, :j])
            if i == j:
                lower[i, j] = np.sqrt(max(s, _CHOLESKY_DIAGONAL_FLOOR))
            else:
                lower[i, j] = s / lower[j, j]
    return lower


class GaussianProcess:
    """
    Gaussian-process regression with a squared-exponential kernel.

    A fixed noise variance is added to the kernel diagonal before
    factorization; pilots often repeat gain settings, which makes rows of
    the kernel matrix nearly identical.
    """

    def __init__(
        self,
        length_scales: Sequence[float],
        signal_variance: float = DEFAULT_CONFIG.bayesian_signal_variance,
        noise_variance: float = DEFAULT_CONFIG.bayesian_noise_variance
    ):
        self.length_scales = np.asarray(length_scales, dtype=float)
        self.signal_variance = signal_variance
        self.noise_variance = noise_variance
        self._x = None
        self._lower = None
        self._alpha = None

    def fit(self, x: np.ndarray, y: np.ndarray) -> "GaussianProcess":
        self._x = np.atleast_2d(np.asarray(x, dtype=float))
        y = np.asarray(y, dtype=float)
        kernel = rbf_kernel(self._x, self._x, self.length_scales, self.signal_variance)
        kernel[np.diag_indices_from(kernel)] += self.noise_variance
        self._lower = cholesky_decomposition(kernel)
        # alpha = K^-1 y via two triangular solves
        self._alpha = solve_triangular(
            self._lower.T, solve_triangular(self._lower, y, lower=True), lower=False
        )
        return self

    def predict(self, x_star: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Posterior mean and variance at each row of ``x_star``.

        Returns:
            Tuple of (mean, variance) arrays
        """
        x_star = np.atleast_2d(np.asarray(x_star, dtype=float))
        if self._x is None:
            return np.zeros(len(x_star)), np.full(len(x_star), self.signal_variance)
        k_star = rbf_kernel(x_star, self._x, self.length_scales, self.signal_variance)
        mean = k_star @ self._alpha
        v = solve_triangular(self._lower, k_star.T, lower=True)
        variance = np.maximum(self.signal_variance - np.sum(v ** 2, axis=0), _VARIANCE_FLOOR)
        return mean, variance


def normal_cdf(x):
    """Standard normal CDF, Abramowitz-Stegun polynomial approximation."""
    x = np.asarray(x, dtype=float)
    t = 1.0 / (1.0 + 0.2316419 * np.abs(x))
    poly = t * (0.31938153 + t * (-0.356563782 + t * (1.781477937
                + t * (-1.821255978 + t * 1.330274429))))
    tail = 0.3989422804014327 * np.exp(-0.5 * x * x) * poly
    return np.where(x >= 0, 1.0 - tail, tail)


def normal_pdf(x):
    x = np.asarray(x, dtype=float)
    return np.exp(-0.5 * x * x) / np.sqrt(2 * np.pi)


def expected_improvement(mean, variance, f_best: float, xi: float = 0.0):
    """
    Expected Improvement for minimization.

    EI = (f_best - mu - xi) * Phi(Z) + sigma * phi(Z), Z = (f_best - mu - xi) / sigma
    """
    mean = np.asarray(mean, dtype=float)
    sigma = np.sqrt(np.asarray(variance, dtype=float))
    improvement = f_best - mean - xi
    safe_sigma = np.where(sigma < 1e-10, 1.0, sigma)
    z = improvement / safe_sigma
    ei = improvement * normal_cdf(z) + sigma * normal_pdf(z)
    return np.where(sigma < 1e-10, np.maximum(0.0, f_best - mean), ei)


def estimate_length_scales(
    observations: Sequence[BayesianObservation],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> np.ndarray:
    """
    Per-dimension length scales: a fraction of the observed gain range,
    never below the grid step (all-equal gains would give zero).
    """
    p = [o.gains.p for o in observations]
    d = [o.gains.d for o in observations]
    return np.array([
        max((max(p) - min(p)) * config.bayesian_length_scale_factor, config.bayesian_p_step),
        max((max(d) - min(d)) * config.bayesian_length_scale_factor, config.bayesian_d_step),
    ])


def gain_grid(config: AnalysisConfig = DEFAULT_CONFIG) -> np.ndarray:
    """All (P, D) candidates of the safety-bounded search rectangle, P-major."""
    p = np.arange(config.p_gain_min, config.p_gain_max + config.bayesian_p_step / 2, config.bayesian_p_step)
    d = np.arange(config.d_gain_min, config.d_gain_max + config.bayesian_d_step / 2, config.bayesian_d_step)
    pp, dd = np.meshgrid(p, d, indexing='ij')
    return np.column_stack([pp.ravel(), dd.ravel()])


def _confidence(count: int, best_ei: float, config: AnalysisConfig) -> Confidence:
    if count >= config.confidence_high_min_observations and best_ei > config.confidence_high_min_ei:
        return Confidence.HIGH
    if count >= config.confidence_medium_min_observations and best_ei > config.confidence_medium_min_ei:
        return Confidence.MEDIUM
    return Confidence.LOW


def optimize_axis(
    observations: Sequence[BayesianObservation],
    config: AnalysisConfig = DEFAULT_CONFIG
) -> Union[AxisOptimizationResult, Unavailable]:
    """
    Suggest the next P/D gains for one axis.

    Observations from low-quality flights have their objective inflated so
    the surrogate leans away from them without discarding them. The grid
    is scanned exhaustively since it is small and EI can be non-convex.

    Returns:
        AxisOptimizationResult, or Unavailable with the observation count
        when there are too few observations
    """
    n = len(observations)
    if n < config.bayesian_min_history:
        return Unavailable("not enough observations", n)

    x = np.array([[o.gains.p, o.gains.d] for o in observations], dtype=float)
    weights = np.array([
        1.0 / config.bayesian_poor_quality_weight
        if o.data_quality_tier in config.bayesian_low_quality_tiers else 1.0
        for o in observations
    ])
    y = np.array([o.objective_value for o in observations], dtype=float) * weights

    gp = GaussianProcess(
        estimate_length_scales(observations, config),
        config.bayesian_signal_variance,
        config.bayesian_noise_variance,
    ).fit(x, y)

    grid = gain_grid(config)
    mean, variance = gp.predict(grid)
    ei = expected_improvement(mean, variance, float(np.min(y)), config.bayesian_exploration_weight)

    best = int(np.argmax(ei))
    best_ei = float(ei[best])
    logger.debug("Best EI %.4g at P=%g D=%g from %d observations",
                 best_ei, grid[best, 0], grid[best, 1], n)

    return AxisOptimizationResult(
        suggested_p=float(grid[best, 0]),
        suggested_d=float(grid[best, 1]),
        expected_improvement=best_ei,
        confidence=_confidence(n, best_ei, config),
        predicted_objective=float(mean[best]),
        observation_count=n,
    )


def optimize_with_history(
    history: Sequence[TuningRecord],
    flight_style: FlightStyle = FlightStyle.BALANCED,
    config: AnalysisConfig = DEFAULT_CONFIG
) -> BayesianOptimizationResult:
    """
    Run the optimizer for all axes from the tuning history.

    Returns:
        Result with ``used_bayesian`` False (and the usable session count)
        when the history is too short or no axis has enough observations
    """
    usable = [r for r in history if r.metrics is not None]
    if len(usable) < config.bayesian_min_history:
        logger.info("Skipping gain optimization: %d usable sessions", len(usable))
        return BayesianOptimizationResult(history_sessions_used=len(usable), used_bayesian=False)

    observations = extract_observations(usable, flight_style, config)
    results = {axis.value: optimize_axis(observations[axis], config) for axis in AXES}
    return BayesianOptimizationResult(
        history_sessions_used=len(usable),
        used_bayesian=any(bool(r) for r in results.values()),
        **results
    )
