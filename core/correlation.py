"""Correlation statistics for metric series."""

import math
from typing import Sequence, Tuple

import numpy as np

VERY_WEAK = "very_weak"
WEAK = "weak"
MODERATE = "moderate"
STRONG = "strong"
VERY_STRONG = "very_strong"

POSITIVE = "positive"
NEGATIVE = "negative"
NON_LINEAR = "non_linear"
LAGGED = "lagged"

METRIC1_TO_METRIC2 = "metric1_to_metric2"
METRIC2_TO_METRIC1 = "metric2_to_metric1"
BIDIRECTIONAL = "bidirectional"
NO_CAUSALITY = "no_causality"
COMMON_CAUSE = "common_cause"

_STRENGTH_BUCKETS = ((0.8, VERY_STRONG), (0.6, STRONG), (0.4, MODERATE), (0.2, WEAK))


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"series lengths differ: {a.size} != {b.size}")

    n = a.size
    if n == 0:
        return 0.0

    numerator = n * np.dot(a, b) - a.sum() * b.sum()
    variance_product = (n * np.dot(a, a) - a.sum() ** 2) * (n * np.dot(b, b) - b.sum() ** 2)
    if variance_product <= 0:
        return 0.0
    return float(np.clip(numerator / math.sqrt(variance_product), -1.0, 1.0))


def to_ranks(values: Sequence[float]) -> np.ndarray:
    """Ordinal ranks 1..n; ties keep their original order."""
    order = np.argsort(np.asarray(values, dtype=float), kind="stable")
    ranks = np.empty(len(order), dtype=float)
    ranks[order] = np.arange(1, len(order) + 1)
    return ranks


def spearman_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    return pearson_correlation(to_ranks(x), to_ranks(y))


def t_cdf(t: float) -> float:
    """Closed-form approximation of the t-distribution CDF."""
    return 0.5 + 0.5 * math.copysign(1.0, t) * math.sqrt(1 - math.exp(-2 * t * t / math.pi))


def p_value(r: float, n: int) -> float:
    if n <= 2:
        return 1.0
    if abs(r) >= 1.0:
        return 0.0
    t = r * math.sqrt((n - 2) / (1 - r * r))
    return min(1.0, max(0.0, 2 * (1 - t_cdf(abs(t)))))


def confidence_interval(r: float, n: int, z_critical: float = 1.96) -> Tuple[float, float]:
    """95% interval via the Fisher z-transform."""
    if n <= 3:
        return (-1.0, 1.0)
    clipped = min(max(r, -0.999999), 0.999999)
    z = math.atanh(clipped)
    se = 1 / math.sqrt(n - 3)
    return (math.tanh(z - z_critical * se), math.tanh(z + z_critical * se))


def correlation_strength(r: float) -> str:
    magnitude = abs(r)
    for threshold, label in _STRENGTH_BUCKETS:
        if magnitude >= threshold:
            return label
    return VERY_WEAK


def correlation_type(x: Sequence[float], y: Sequence[float], r: float) -> str:
    if r > 0:
        return POSITIVE
    if r < 0:
        return NEGATIVE
    if abs(spearman_correlation(x, y)) > abs(r) + 0.2:
        return NON_LINEAR
    return POSITIVE


def causality_direction(values1: Sequence[float], values2: Sequence[float]) -> str:
    """Lead-lag comparison of the two lag-1 cross-correlations."""
    n = min(len(values1), len(values2))
    a = list(values1[:n])
    b = list(values2[:n])
    if n < 3:
        return NO_CAUSALITY

    forward = abs(pearson_correlation(a[:-1], b[1:]))
    backward = abs(pearson_correlation(b[:-1], a[1:]))

    if forward > backward + 0.1:
        return METRIC1_TO_METRIC2
    if backward > forward + 0.1:
        return METRIC2_TO_METRIC1
    if forward > 0.3 and backward > 0.3:
        return BIDIRECTIONAL
    return NO_CAUSALITY
