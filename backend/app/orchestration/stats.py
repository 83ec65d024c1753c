"""
Small statistics helpers for A/B test analysis.

Normal approximations throughout; no scipy dependency. The ``*_summary``
variants take (count, mean, variance) so callers holding running tallies
never need the raw samples.
"""

import math


def mean(xs: list[float]) -> float:
    if not xs:
        return float("nan")
    return sum(xs) / len(xs)


def var(xs: list[float]) -> float:
    """Sample variance (n - 1)."""
    if len(xs) < 2:
        return 0.0
    m = mean(xs)
    return sum((x - m) ** 2 for x in xs) / (len(xs) - 1)


def normal_cdf(x: float) -> float:
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def two_sided_p(z: float) -> float:
    return 2.0 * (1.0 - normal_cdf(abs(z)))


def welch_t_test_summary(n_a: int, mean_a: float, var_a: float, n_b: int, mean_b: float, var_b: float) -> float:
    """Two-sided p-value of Welch's t-test, normal approximation for the statistic."""
    if n_a < 2 or n_b < 2:
        return 1.0
    denom = var_a / n_a + var_b / n_b
    # Both samples constant: identical means are indistinguishable, different means are certain.
    if denom == 0:
        return 1.0 if mean_a == mean_b else 0.0
    return two_sided_p((mean_a - mean_b) / math.sqrt(denom))


def welch_t_test(a: list[float], b: list[float]) -> float:
    if len(a) < 2 or len(b) < 2:
        return 1.0
    return welch_t_test_summary(len(a), mean(a), var(a), len(b), mean(b), var(b))


def two_proportion_z_test(successes_a: int, n_a: int, successes_b: int, n_b: int) -> float:
    """Two-sided p-value for H0: p_a == p_b using the pooled proportion."""
    if n_a == 0 or n_b == 0:
        return 1.0
    p_a, p_b = successes_a / n_a, successes_b / n_b
    pooled = (successes_a + successes_b) / (n_a + n_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n_a + 1 / n_b))
    if se == 0:
        return 1.0 if p_a == p_b else 0.0
    return two_sided_p((p_a - p_b) / se)


def proportion_interval(successes: int, n: int, z: float = 1.96) -> tuple[float, float]:
    """Normal-approximation interval for a proportion, clipped to [0, 1]."""
    if n == 0:
        return 0.0, 0.0
    p = successes / n
    half = z * math.sqrt(p * (1 - p) / n)
    return max(0.0, p - half), min(1.0, p + half)


def mean_interval_summary(n: int, m: float, variance: float, z: float = 1.96) -> tuple[float, float]:
    if n == 0:
        return 0.0, 0.0
    half = z * math.sqrt(variance / n)
    return m - half, m + half


def percentile(values: list[float], p: float) -> float:
    """Nearest-rank percentile: the ``ceil(p/100 * n)``-th smallest value."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, math.ceil(p / 100 * len(ordered)) - 1)
    return ordered[min(index, len(ordered) - 1)]
