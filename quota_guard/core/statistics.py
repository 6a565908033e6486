"""
Robust statistics for budget inference.

Medians and median absolute deviation are used throughout because a single
stale or rolled-over sample must not drag the estimate.
"""

import math
from typing import List, Sequence


def compute_exact_percentile(values: Sequence[float], percentile: float) -> float:
    """Compute exact percentile using linear interpolation.

    Uses the same method as numpy.percentile with interpolation='linear'
    for deterministic results. The 50th percentile is the usual median,
    averaging the two middle values of an even-length input.

    Args:
        values: Numeric values
        percentile: Percentile to compute (0-100)

    Returns:
        Exact percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    position = (percentile / 100.0) * (n - 1)
    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)


def median(values: Sequence[float]) -> float:
    """Median of the values, 0 for an empty input."""
    if not values:
        return 0.0
    return compute_exact_percentile(values, 50)


def variance(values: Sequence[float]) -> float:
    """Population variance of the values, 0 for an empty input."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def coefficient_of_variation(median_value: float, variance_value: float) -> float:
    """Spread relative to the median; infinite when the median is zero."""
    if median_value == 0:
        return math.inf
    return math.sqrt(variance_value) / median_value


def filter_outliers_mad(values: Sequence[float], threshold: float = 3.0) -> List[float]:
    """Drop values further than ``threshold`` median absolute deviations from the median.

    With fewer than three values there is nothing to compare against, so the
    input is returned unchanged. When the MAD is zero (most values identical)
    only exact matches to the median are kept, falling back to the full
    input if that would leave nothing.

    Args:
        values: Candidate samples
        threshold: Allowed deviation in multiples of the MAD

    Returns:
        Retained samples, in input order
    """
    if len(values) < 3:
        return list(values)

    center = median(values)
    mad = median([abs(v - center) for v in values])

    if mad == 0:
        exact = [v for v in values if v == center]
        return exact if exact else list(values)

    limit = threshold * mad
    return [v for v in values if abs(v - center) <= limit]


def round_to_nearest(value: float, step: float) -> float:
    """Round half away from zero to the nearest multiple of ``step``."""
    if step <= 0:
        return value
    scaled = value / step
    return math.copysign(math.floor(abs(scaled) + 0.5), scaled) * step
