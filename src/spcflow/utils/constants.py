"""Statistical constants for SPC control chart calculations.

Constants from ASTM E2587 and NIST Engineering Statistics Handbook.
These constants convert dispersion statistics (ranges, moving ranges,
standard deviations) into estimates of process sigma. They are looked up,
never re-derived at runtime.
"""

import math
from dataclasses import dataclass
from typing import Dict


# Individuals charts use moving ranges of span 2.
MR_SPAN = 2

# Median moving range: sigma = median(MR) / 0.954, upper limit 3.865 * median(MR).
MEDIAN_MR_D2 = 0.954
MEDIAN_MR_D4 = 3.865

# Power transform for time-between-events (t) charts: y = x ** (1 / 3.6).
T_CHART_EXPONENT = 3.6


@dataclass(frozen=True)
class SpcConstants:
    """Statistical constants for a given subgroup size.

    Attributes:
        n: Subgroup size
        d2: Average range factor (sigma from R-bar)
        c4: Standard deviation bias correction (sigma from S-bar)
        D4: Upper control limit factor for range charts
    """
    n: int
    d2: float
    c4: float
    D4: float


_CONSTANTS_TABLE: Dict[int, SpcConstants] = {
    2: SpcConstants(n=2, d2=1.128, c4=0.7979, D4=3.267),
    3: SpcConstants(n=3, d2=1.693, c4=0.8862, D4=2.574),
    4: SpcConstants(n=4, d2=2.059, c4=0.9213, D4=2.282),
    5: SpcConstants(n=5, d2=2.326, c4=0.9400, D4=2.114),
    6: SpcConstants(n=6, d2=2.534, c4=0.9515, D4=2.004),
    7: SpcConstants(n=7, d2=2.704, c4=0.9594, D4=1.924),
    8: SpcConstants(n=8, d2=2.847, c4=0.9650, D4=1.864),
    9: SpcConstants(n=9, d2=2.970, c4=0.9693, D4=1.816),
    10: SpcConstants(n=10, d2=3.078, c4=0.9727, D4=1.777),
    11: SpcConstants(n=11, d2=3.173, c4=0.9754, D4=1.744),
    12: SpcConstants(n=12, d2=3.258, c4=0.9776, D4=1.717),
    13: SpcConstants(n=13, d2=3.336, c4=0.9794, D4=1.693),
    14: SpcConstants(n=14, d2=3.407, c4=0.9810, D4=1.672),
    15: SpcConstants(n=15, d2=3.472, c4=0.9823, D4=1.653),
    16: SpcConstants(n=16, d2=3.532, c4=0.9835, D4=1.637),
    17: SpcConstants(n=17, d2=3.588, c4=0.9845, D4=1.622),
    18: SpcConstants(n=18, d2=3.640, c4=0.9854, D4=1.608),
    19: SpcConstants(n=19, d2=3.689, c4=0.9862, D4=1.597),
    20: SpcConstants(n=20, d2=3.735, c4=0.9869, D4=1.585),
    21: SpcConstants(n=21, d2=3.778, c4=0.9876, D4=1.575),
    22: SpcConstants(n=22, d2=3.819, c4=0.9882, D4=1.566),
    23: SpcConstants(n=23, d2=3.858, c4=0.9887, D4=1.557),
    24: SpcConstants(n=24, d2=3.895, c4=0.9892, D4=1.548),
    25: SpcConstants(n=25, d2=3.931, c4=0.9896, D4=1.541),
}

MIN_TABLE_SIZE = min(_CONSTANTS_TABLE)
MAX_TABLE_SIZE = max(_CONSTANTS_TABLE)


def get_constants(subgroup_size: int) -> SpcConstants:
    """Get SPC constants for a given subgroup size.

    Args:
        subgroup_size: The subgroup size (n), must be between 2 and 25

    Returns:
        SpcConstants for the given n

    Raises:
        ValueError: If subgroup_size is outside the table

    Examples:
        >>> get_constants(5).d2
        2.326
    """
    if subgroup_size < MIN_TABLE_SIZE or subgroup_size > MAX_TABLE_SIZE:
        raise ValueError(
            f"Subgroup size must be between {MIN_TABLE_SIZE} and "
            f"{MAX_TABLE_SIZE}, got {subgroup_size}"
        )

    return _CONSTANTS_TABLE[subgroup_size]


def get_d2(subgroup_size: int) -> float:
    """Get the d2 constant (average range / sigma) for a subgroup size."""
    return get_constants(subgroup_size).d2


def get_c4(subgroup_size: int) -> float:
    """Get the c4 bias-correction constant for a subgroup size.

    Sizes above the table use the standard approximation
    c4 ~= 4(n - 1) / (4n - 3), which agrees with the table to four
    decimals at n = 25.

    Raises:
        ValueError: If subgroup_size is below 2

    Examples:
        >>> get_c4(10)
        0.9727
    """
    if subgroup_size > MAX_TABLE_SIZE:
        return 4.0 * (subgroup_size - 1) / (4.0 * subgroup_size - 3.0)
    return get_constants(subgroup_size).c4


def get_D4(subgroup_size: int) -> float:
    """Get the D4 range-chart upper limit factor for a subgroup size.

    For moving ranges (n=2) this is 3.267, which also serves as the
    screening factor for gross moving-range excursions.
    """
    return get_constants(subgroup_size).D4


def get_A3(subgroup_size: int) -> float:
    """Get the A3 factor (3 / (c4 * sqrt(n))) for a subgroup size.

    Like get_c4, sizes above the table are supported.
    """
    return 3.0 / (get_c4(subgroup_size) * math.sqrt(subgroup_size))
