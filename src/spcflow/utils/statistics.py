"""Statistical functions for SPC control limit calculations.

This module provides functions for:
- Value transforms (ratios with a defined sentinel for non-finite results)
- Moving-range screening and sigma estimation (mean and median moving range)
- Pooled and weighted estimators for subgrouped data
- Sigma band construction (+/- 1, 2, 3 sigma) and least-squares trend lines
"""

import math
from dataclasses import astuple, dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .constants import (
    MEDIAN_MR_D2,
    MEDIAN_MR_D4,
    MR_SPAN,
    get_D4,
    get_d2,
)

# Value substituted wherever a ratio is not a finite number.
NON_FINITE_SENTINEL = 0.0


@dataclass(frozen=True)
class SigmaBands:
    """Control limits at one, two and three sigma either side of the centre.

    Attributes:
        ll99: Centre - 3 sigma
        ll95: Centre - 2 sigma
        ll68: Centre - 1 sigma
        ul68: Centre + 1 sigma
        ul95: Centre + 2 sigma
        ul99: Centre + 3 sigma
    """
    ll99: float
    ll95: float
    ll68: float
    ul68: float
    ul95: float
    ul99: float

    def transform(self, func: Callable[[float], float]) -> "SigmaBands":
        """Apply a monotone transform to every band."""
        return SigmaBands(*(func(v) for v in astuple(self)))


def as_float_array(values: Optional[Sequence[float]]) -> np.ndarray:
    """Coerce a sequence to a float64 array (None becomes an empty array)."""
    if values is None:
        return np.empty(0, dtype=np.float64)
    return np.asarray(values, dtype=np.float64)


def safe_ratio(
    numerators: Sequence[float],
    denominators: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Divide numerators by denominators, replacing non-finite results with 0.

    Without denominators the numerators are returned as a new array, with the
    same substitution applied.

    Examples:
        >>> safe_ratio([1.0, 2.0], [2.0, 0.0]).tolist()
        [0.5, 0.0]
    """
    num = as_float_array(numerators)
    if denominators is None:
        ratio = num.copy()
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            ratio = num / as_float_array(denominators)
    ratio[~np.isfinite(ratio)] = NON_FINITE_SENTINEL
    return ratio


def nan_mean(values: np.ndarray) -> float:
    """Mean of an array, NaN when empty."""
    if values.size == 0:
        return math.nan
    return float(np.mean(values))


def nan_median(values: np.ndarray) -> float:
    """Median of an array, NaN when empty."""
    if values.size == 0:
        return math.nan
    return float(np.median(values))


def moving_ranges(values: Sequence[float]) -> np.ndarray:
    """Absolute differences between consecutive values (length n - 1)."""
    arr = as_float_array(values)
    if arr.size < MR_SPAN:
        return np.empty(0, dtype=np.float64)
    return np.abs(np.diff(arr))


def screen_moving_ranges(
    ranges: np.ndarray,
    limit_factor: float,
    use_median: bool = False,
) -> np.ndarray:
    """Drop moving ranges above ``limit_factor`` times their mean (or median).

    A single pass: the threshold is computed once from all ranges and is not
    refined after excluding the excursions.

    Examples:
        >>> screen_moving_ranges(np.array([1.0, 1.0, 1.0, 20.0]), 3.267).tolist()
        [1.0, 1.0, 1.0]
    """
    if ranges.size == 0:
        return ranges
    centre = float(np.median(ranges)) if use_median else float(np.mean(ranges))
    return ranges[ranges <= limit_factor * centre]


def estimate_sigma_moving_range(values: Sequence[float], screen: bool = True) -> float:
    """Estimate process sigma for individuals using the mean moving range.

    sigma = MR-bar / d2, with d2 = 1.128 for span 2. When ``screen`` is set,
    moving ranges above D4 * MR-bar (D4 = 3.267) are excluded first.

    Returns:
        Estimated sigma, or NaN when there are fewer than two values

    Examples:
        >>> round(estimate_sigma_moving_range([10, 12, 11, 13, 10]), 3)
        1.773
    """
    ranges = moving_ranges(values)
    if screen:
        ranges = screen_moving_ranges(ranges, get_D4(MR_SPAN))
    mr_bar = nan_mean(ranges)
    return mr_bar / get_d2(MR_SPAN)


def estimate_sigma_median_moving_range(
    values: Sequence[float], screen: bool = True
) -> float:
    """Estimate process sigma from the median moving range.

    sigma = median(MR) / 0.954. Screening excludes ranges above
    3.865 * median(MR).
    """
    ranges = moving_ranges(values)
    if screen:
        ranges = screen_moving_ranges(ranges, MEDIAN_MR_D4, use_median=True)
    return nan_median(ranges) / MEDIAN_MR_D2


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    """Weighted mean, NaN when the weights sum to zero."""
    v = as_float_array(values)
    w = as_float_array(weights)
    total = float(np.sum(w))
    if v.size == 0 or total == 0:
        return math.nan
    return float(np.sum(v * w)) / total


def pooled_standard_deviation(
    std_devs: Sequence[float], counts: Sequence[float]
) -> float:
    """Pool per-group standard deviations weighted by degrees of freedom.

    sd = sqrt(sum((n_i - 1) * s_i^2) / sum(n_i - 1))

    Examples:
        >>> pooled_standard_deviation([2.0, 2.0], [5, 10])
        2.0
    """
    s = as_float_array(std_devs)
    dof = as_float_array(counts) - 1.0
    total = float(np.sum(dof))
    if s.size == 0 or total <= 0:
        return math.nan
    return math.sqrt(float(np.sum(dof * s ** 2)) / total)


def calculate_sigma_bands(
    center_line: float,
    sigma: float,
    lower_bound: Optional[float] = None,
    upper_bound: Optional[float] = None,
) -> SigmaBands:
    """Calculate +/- 1, 2 and 3 sigma bands around a centre line.

    Bands are clipped to ``[lower_bound, upper_bound]`` when given, for
    charts whose statistic cannot leave a natural domain (counts >= 0,
    proportions <= 1). NaN inputs produce NaN bands.

    Examples:
        >>> bands = calculate_sigma_bands(100.0, 2.0)
        >>> bands.ul68, bands.ul99
        (102.0, 106.0)
    """
    def clip(value: float) -> float:
        if lower_bound is not None and value < lower_bound:
            return lower_bound
        if upper_bound is not None and value > upper_bound:
            return upper_bound
        return value

    return SigmaBands(
        ll99=clip(center_line - 3 * sigma),
        ll95=clip(center_line - 2 * sigma),
        ll68=clip(center_line - sigma),
        ul68=clip(center_line + sigma),
        ul95=clip(center_line + 2 * sigma),
        ul99=clip(center_line + 3 * sigma),
    )


def calculate_trend_line(values: Sequence[float]) -> np.ndarray:
    """Least-squares straight line through the values against their position.

    Non-finite values are left out of the fit but the line still covers every
    position. Fewer than two finite points have no slope, so the values are
    returned as-is.

    Examples:
        >>> calculate_trend_line([1.0, 3.0, 2.0, 4.0]).round(2).tolist()
        [1.3, 2.1, 2.9, 3.7]
    """
    y = as_float_array(values)
    x = np.arange(y.size, dtype=np.float64)
    finite = np.isfinite(y)
    if np.count_nonzero(finite) < 2:
        return y.copy()
    xf = x[finite]
    yf = y[finite]
    x_mean = float(np.mean(xf))
    y_mean = float(np.mean(yf))
    slope = float(np.sum((xf - x_mean) * (yf - y_mean))) / float(np.sum((xf - x_mean) ** 2))
    intercept = y_mean - slope * x_mean
    return intercept + slope * x
