"""Utilities for spcflow statistical process control calculations."""

from .constants import (
    SpcConstants,
    get_constants,
    get_d2,
    get_c4,
    get_D4,
    get_A3,
)

from .statistics import (
    SigmaBands,
    safe_ratio,
    moving_ranges,
    screen_moving_ranges,
    estimate_sigma_moving_range,
    estimate_sigma_median_moving_range,
    weighted_mean,
    pooled_standard_deviation,
    calculate_sigma_bands,
    calculate_trend_line,
)

__all__ = [
    # Constants
    "SpcConstants",
    "get_constants",
    "get_d2",
    "get_c4",
    "get_D4",
    "get_A3",
    # Data classes
    "SigmaBands",
    # Transforms
    "safe_ratio",
    "moving_ranges",
    "screen_moving_ranges",
    # Sigma estimation
    "estimate_sigma_moving_range",
    "estimate_sigma_median_moving_range",
    "weighted_mean",
    "pooled_standard_deviation",
    # Limits
    "calculate_sigma_bands",
    "calculate_trend_line",
]
