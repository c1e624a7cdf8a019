"""Control limit calculation for the supported chart types.

A chart type selects three things: the value transform (ratio, raw value,
moving range or power transform), the centre-line estimator (mean, median or
weighted mean) and the dispersion estimator (moving range, pooled standard
deviation, binomial, Poisson or geometric variance). Each ``ChartType`` member
is described by a ``ChartSpec`` in a registry that is checked at import time.

Calculation is per subgroup: ``calculate_limits`` receives the slice of a
sequence that shares one set of limits and broadcasts the centre line and
+/- 1, 2, 3 sigma bounds across it. Subgroup results are joined with
``LimitResult.concatenate``.
"""

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Callable, Iterable

import numpy as np

from spcflow.core.exceptions import CalculationDomainError, ValidationError
from spcflow.utils.constants import MR_SPAN, T_CHART_EXPONENT, get_D4, get_c4
from spcflow.utils.statistics import (
    SigmaBands,
    as_float_array,
    calculate_sigma_bands,
    calculate_trend_line,
    estimate_sigma_median_moving_range,
    estimate_sigma_moving_range,
    moving_ranges,
    nan_mean,
    nan_median,
    pooled_standard_deviation,
    safe_ratio,
    screen_moving_ranges,
    weighted_mean,
)

BOUND_FIELDS = ("ll99", "ll95", "ll68", "ul68", "ul95", "ul99")

_NAN_BANDS = SigmaBands(*([math.nan] * len(BOUND_FIELDS)))


class ChartType(str, Enum):
    """Supported chart models."""
    I = "i"
    I_M = "i_m"
    I_MM = "i_mm"
    MR = "mr"
    RUN = "run"
    C = "c"
    P = "p"
    PP = "pp"
    U = "u"
    UP = "up"
    XBAR = "xbar"
    S = "s"
    G = "g"
    T = "t"


def _frozen(values, dtype=np.float64) -> np.ndarray:
    arr = np.array(values, dtype=dtype)
    arr.flags.writeable = False
    return arr


def _frozen_optional(values) -> np.ndarray | None:
    if values is None:
        return None
    return _frozen(values)


@dataclass(frozen=True, eq=False)
class LimitInputs:
    """Inputs for one subgroup.

    Attributes:
        numerators: Raw values, counts or group means
        denominators: Sample sizes for ratio charts, group sizes for xbar/s
        dispersions: Per-group standard deviations for xbar/s
        outliers_in_limits: Keep gross moving-range excursions in the estimate
        subset_points: Local positions used for estimation (empty = all)
    """
    numerators: np.ndarray
    denominators: np.ndarray | None = None
    dispersions: np.ndarray | None = None
    outliers_in_limits: bool = False
    subset_points: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "numerators", _frozen(as_float_array(self.numerators)))
        object.__setattr__(self, "denominators", _frozen_optional(self.denominators))
        object.__setattr__(self, "dispersions", _frozen_optional(self.dispersions))
        object.__setattr__(self, "subset_points", tuple(int(i) for i in self.subset_points))

    def __len__(self) -> int:
        return int(self.numerators.size)

    def estimation_basis(self) -> "LimitInputs":
        """Restrict the inputs to ``subset_points``.

        Positions outside the subgroup are ignored. When nothing remains the
        full inputs are returned.
        """
        n = len(self)
        keep = sorted({i for i in self.subset_points if 0 <= i < n})
        if not keep or len(keep) == n:
            return self

        def pick(arr: np.ndarray | None) -> np.ndarray | None:
            return None if arr is None else arr[keep]

        return LimitInputs(
            numerators=self.numerators[keep],
            denominators=pick(self.denominators),
            dispersions=pick(self.dispersions),
            outliers_in_limits=self.outliers_in_limits,
        )


@dataclass(frozen=True, eq=False)
class LimitResult:
    """Per-point control limits for one or more subgroups.

    All arrays are read-only and share one length. Bounds that do not apply
    (run charts, a single point) are NaN. Optional arrays are None when the
    chart type does not produce them.
    """
    positions: np.ndarray
    values: np.ndarray
    numerators: np.ndarray
    targets: np.ndarray
    ll99: np.ndarray
    ll95: np.ndarray
    ll68: np.ndarray
    ul68: np.ndarray
    ul95: np.ndarray
    ul99: np.ndarray
    trend_line: np.ndarray
    denominators: np.ndarray | None = None
    count: np.ndarray | None = None
    alt_targets: np.ndarray | None = None
    speclimits_lower: np.ndarray | None = None
    speclimits_upper: np.ndarray | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            dtype = np.int64 if f.name == "positions" else np.float64
            if not isinstance(value, np.ndarray) or value.flags.writeable or value.dtype != dtype:
                object.__setattr__(self, f.name, _frozen(value, dtype))
        n = self.positions.size
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and value.size != n:
                raise ValueError(
                    f"LimitResult field '{f.name}' has length {value.size}, expected {n}"
                )

    def __len__(self) -> int:
        return int(self.positions.size)

    @classmethod
    def empty(cls) -> "LimitResult":
        """A result with no points."""
        empty = np.empty(0)
        return cls(
            positions=np.empty(0, dtype=np.int64),
            values=empty,
            numerators=empty,
            targets=empty,
            trend_line=empty,
            **{name: empty for name in BOUND_FIELDS},
        )

    @classmethod
    def concatenate(cls, results: Iterable["LimitResult"]) -> "LimitResult":
        """Join subgroup results in order and renumber positions 0..n-1.

        An optional field stays None only if it is None in every part; parts
        missing it contribute NaN.
        """
        parts = list(results)
        if not parts:
            return cls.empty()
        if len(parts) == 1:
            part = parts[0]
            return replace(part, positions=np.arange(len(part), dtype=np.int64))

        merged: dict[str, np.ndarray | None] = {}
        for f in fields(cls):
            if f.name == "positions":
                continue
            arrays = [getattr(p, f.name) for p in parts]
            if all(a is None for a in arrays):
                merged[f.name] = None
                continue
            merged[f.name] = np.concatenate([
                a if a is not None else np.full(len(p), math.nan)
                for a, p in zip(arrays, parts)
            ])
        total = sum(len(p) for p in parts)
        return cls(positions=np.arange(total, dtype=np.int64), **merged)

    def scaled(
        self,
        multiplier: float,
        include_alt_targets: bool = False,
        include_speclimits: bool = False,
    ) -> "LimitResult":
        """Multiply values, targets, bounds and the trend line by ``multiplier``."""
        if multiplier == 1:
            return self
        names = ["values", "targets", "trend_line", *BOUND_FIELDS]
        if include_alt_targets:
            names.append("alt_targets")
        if include_speclimits:
            names.extend(["speclimits_lower", "speclimits_upper"])
        changes = {
            name: getattr(self, name) * multiplier
            for name in names
            if getattr(self, name) is not None
        }
        return replace(self, **changes)

    def truncated(
        self,
        lower: float | None = None,
        upper: float | None = None,
    ) -> "LimitResult":
        """Clip values, targets, bounds, trend line and overlays to [lower, upper]."""
        if lower is None and upper is None:
            return self
        names = [
            "values", "targets", "trend_line", *BOUND_FIELDS,
            "alt_targets", "speclimits_lower", "speclimits_upper",
        ]
        low = -np.inf if lower is None else lower
        high = np.inf if upper is None else upper
        changes = {
            name: np.clip(getattr(self, name), low, high)
            for name in names
            if getattr(self, name) is not None
        }
        return replace(self, **changes)

    def with_overlays(
        self,
        alt_targets=None,
        speclimits_lower=None,
        speclimits_upper=None,
    ) -> "LimitResult":
        """Attach externally supplied alternative targets and specification limits."""
        return replace(
            self,
            alt_targets=_frozen_optional(alt_targets),
            speclimits_lower=_frozen_optional(speclimits_lower),
            speclimits_upper=_frozen_optional(speclimits_upper),
        )

    def bounds(self, name: str) -> np.ndarray:
        """Look up a bound array by field name."""
        if name not in BOUND_FIELDS:
            raise KeyError(name)
        return getattr(self, name)


@dataclass(frozen=True)
class LimitEstimate:
    """Centre line and sigma bands estimated for one subgroup."""
    target: float
    bands: SigmaBands


@dataclass(frozen=True)
class ChartSpec:
    """How one chart type transforms values and estimates its limits.

    Attributes:
        chart_type: The chart type described
        description: Human-readable name
        transform: Inputs -> plotted values (one per point)
        estimate: Estimation inputs -> centre line and sigma bands
        requires_denominators: Inputs must carry denominators
        requires_dispersions: Inputs must carry per-group standard deviations
        has_control_limits: False for charts that only plot a centre line
        non_negative: Numerators must not be negative
        proportion: Values are proportions (eligible for percentage labels)
        has_count: Denominators are reported as per-point counts
    """
    chart_type: ChartType
    description: str
    transform: Callable[[LimitInputs], np.ndarray]
    estimate: Callable[[LimitInputs], LimitEstimate]
    requires_denominators: bool = False
    requires_dispersions: bool = False
    has_control_limits: bool = True
    non_negative: bool = False
    proportion: bool = False
    has_count: bool = False
    required_inputs: tuple[str, ...] = field(init=False)

    def __post_init__(self) -> None:
        required = []
        if self.requires_denominators:
            required.append("denominators")
        if self.requires_dispersions:
            required.append("dispersions")
        object.__setattr__(self, "required_inputs", tuple(required))

    def validate(self, inputs: LimitInputs) -> None:
        """Check the inputs carry what this chart type needs.

        Raises:
            ValidationError: If a required input is missing or misaligned
        """
        n = len(inputs)
        for name in self.required_inputs:
            arr = getattr(inputs, name)
            if arr is None:
                raise ValidationError(
                    f"Chart type '{self.chart_type.value}' requires {name}"
                )
        for name in ("denominators", "dispersions"):
            arr = getattr(inputs, name)
            if arr is not None and arr.size != n:
                raise ValidationError(
                    f"{name} has length {arr.size}, expected {n}"
                )


# Value transforms

def _ratio_values(inputs: LimitInputs) -> np.ndarray:
    return safe_ratio(inputs.numerators, inputs.denominators)


def _raw_values(inputs: LimitInputs) -> np.ndarray:
    return safe_ratio(inputs.numerators)


def _dispersion_values(inputs: LimitInputs) -> np.ndarray:
    return safe_ratio(inputs.dispersions)


def _moving_range_values(inputs: LimitInputs) -> np.ndarray:
    ranges = moving_ranges(_ratio_values(inputs))
    return np.concatenate([[math.nan], ranges])[:len(inputs)]


def _power_transform(inputs: LimitInputs) -> np.ndarray:
    with np.errstate(invalid="ignore"):
        return safe_ratio(np.power(inputs.numerators, 1.0 / T_CHART_EXPONENT))


# Estimators

def _screen(inputs: LimitInputs) -> bool:
    return not inputs.outliers_in_limits


def _individuals(centre: Callable[[np.ndarray], float]) -> Callable[[LimitInputs], LimitEstimate]:
    def estimate(inputs: LimitInputs) -> LimitEstimate:
        values = _ratio_values(inputs)
        cl = centre(values)
        sigma = estimate_sigma_moving_range(values, screen=_screen(inputs))
        return LimitEstimate(cl, calculate_sigma_bands(cl, sigma))
    return estimate


def _estimate_i_mm(inputs: LimitInputs) -> LimitEstimate:
    values = _ratio_values(inputs)
    cl = nan_median(values)
    sigma = estimate_sigma_median_moving_range(values, screen=_screen(inputs))
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma))


def _estimate_mr(inputs: LimitInputs) -> LimitEstimate:
    ranges = moving_ranges(_ratio_values(inputs))
    if _screen(inputs):
        ranges = screen_moving_ranges(ranges, get_D4(MR_SPAN))
    cl = nan_mean(ranges)
    # Upper 3 sigma limit lands on D4 * MR-bar
    sigma = cl * (get_D4(MR_SPAN) - 1) / 3
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, lower_bound=0.0))


def _estimate_run(inputs: LimitInputs) -> LimitEstimate:
    return LimitEstimate(nan_median(_ratio_values(inputs)), _NAN_BANDS)


def _estimate_c(inputs: LimitInputs) -> LimitEstimate:
    cl = nan_mean(_raw_values(inputs))
    sigma = math.sqrt(cl) if cl >= 0 else math.nan
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, lower_bound=0.0))


def _pooled_ratio(inputs: LimitInputs) -> tuple[float, float]:
    """Overall ratio sum(num) / sum(den) and the average denominator."""
    den = inputs.denominators
    total = float(np.sum(den))
    if den.size == 0 or total == 0:
        return math.nan, math.nan
    return float(np.sum(inputs.numerators)) / total, float(np.mean(den))


def _binomial_sd(p: float, n) -> np.ndarray | float:
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt(p * (1 - p) / n)


def _poisson_sd(u: float, n) -> np.ndarray | float:
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt(u / n)


def _laney_ratio(inputs: LimitInputs, per_point_sd: Callable) -> float:
    """MR-based inflation factor of the z-scores (Laney's sigma_z)."""
    centre, _ = _pooled_ratio(inputs)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (_ratio_values(inputs) - centre) / per_point_sd(centre, inputs.denominators)
    z[~np.isfinite(z)] = 0.0
    return estimate_sigma_moving_range(z, screen=_screen(inputs))


def _estimate_p(inputs: LimitInputs) -> LimitEstimate:
    cl, n_bar = _pooled_ratio(inputs)
    sigma = float(_binomial_sd(cl, n_bar))
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, 0.0, 1.0))


def _estimate_pp(inputs: LimitInputs) -> LimitEstimate:
    cl, n_bar = _pooled_ratio(inputs)
    sigma = float(_binomial_sd(cl, n_bar)) * _laney_ratio(inputs, _binomial_sd)
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, 0.0, 1.0))


def _estimate_u(inputs: LimitInputs) -> LimitEstimate:
    cl, n_bar = _pooled_ratio(inputs)
    sigma = float(_poisson_sd(cl, n_bar))
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, lower_bound=0.0))


def _estimate_up(inputs: LimitInputs) -> LimitEstimate:
    cl, n_bar = _pooled_ratio(inputs)
    sigma = float(_poisson_sd(cl, n_bar)) * _laney_ratio(inputs, _poisson_sd)
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, lower_bound=0.0))


def _c4_for_average(sizes: np.ndarray) -> tuple[float, float]:
    """c4 for the rounded average group size, and the average itself."""
    n_bar = nan_mean(sizes)
    if math.isnan(n_bar):
        return math.nan, n_bar
    return get_c4(max(2, int(round(n_bar)))), n_bar


def _estimate_xbar(inputs: LimitInputs) -> LimitEstimate:
    cl = weighted_mean(inputs.numerators, inputs.denominators)
    sd = pooled_standard_deviation(inputs.dispersions, inputs.denominators)
    c4, n_bar = _c4_for_average(inputs.denominators)
    sigma = sd / (c4 * math.sqrt(n_bar)) if n_bar > 0 else math.nan
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma))


def _estimate_s(inputs: LimitInputs) -> LimitEstimate:
    cl = pooled_standard_deviation(inputs.dispersions, inputs.denominators)
    c4, _ = _c4_for_average(inputs.denominators)
    sigma = cl * math.sqrt(1 - c4 ** 2) / c4
    return LimitEstimate(cl, calculate_sigma_bands(cl, sigma, lower_bound=0.0))


def _estimate_g(inputs: LimitInputs) -> LimitEstimate:
    values = _raw_values(inputs)
    mean = nan_mean(values)
    sigma = math.sqrt(mean * (mean + 1)) if mean >= 0 else math.nan
    return LimitEstimate(
        nan_median(values),
        calculate_sigma_bands(mean, sigma, lower_bound=0.0),
    )


def _estimate_t(inputs: LimitInputs) -> LimitEstimate:
    transformed = _power_transform(inputs)
    cl = nan_mean(transformed)
    sigma = estimate_sigma_moving_range(transformed, screen=_screen(inputs))
    bands = calculate_sigma_bands(cl, sigma, lower_bound=0.0)
    return LimitEstimate(
        cl ** T_CHART_EXPONENT,
        bands.transform(lambda v: v ** T_CHART_EXPONENT),
    )


_CHART_SPECS: dict[ChartType, ChartSpec] = {
    spec.chart_type: spec
    for spec in (
        ChartSpec(ChartType.I, "Individuals", _ratio_values, _individuals(nan_mean)),
        ChartSpec(ChartType.I_M, "Individuals (median centre)", _ratio_values,
                  _individuals(nan_median)),
        ChartSpec(ChartType.I_MM, "Individuals (median moving range)", _ratio_values,
                  _estimate_i_mm),
        ChartSpec(ChartType.MR, "Moving range", _moving_range_values, _estimate_mr),
        ChartSpec(ChartType.RUN, "Run chart", _ratio_values, _estimate_run,
                  has_control_limits=False),
        ChartSpec(ChartType.C, "Counts", _raw_values, _estimate_c, non_negative=True),
        ChartSpec(ChartType.P, "Proportions", _ratio_values, _estimate_p,
                  requires_denominators=True, non_negative=True, proportion=True),
        ChartSpec(ChartType.PP, "Proportions (Laney)", _ratio_values, _estimate_pp,
                  requires_denominators=True, non_negative=True, proportion=True),
        ChartSpec(ChartType.U, "Rates", _ratio_values, _estimate_u,
                  requires_denominators=True, non_negative=True),
        ChartSpec(ChartType.UP, "Rates (Laney)", _ratio_values, _estimate_up,
                  requires_denominators=True, non_negative=True),
        ChartSpec(ChartType.XBAR, "Sample means", _raw_values, _estimate_xbar,
                  requires_denominators=True, requires_dispersions=True, has_count=True),
        ChartSpec(ChartType.S, "Sample standard deviations", _dispersion_values, _estimate_s,
                  requires_denominators=True, requires_dispersions=True, has_count=True),
        ChartSpec(ChartType.G, "Counts between events", _raw_values, _estimate_g,
                  non_negative=True),
        ChartSpec(ChartType.T, "Time between events", _raw_values, _estimate_t,
                  non_negative=True),
    )
}

_unregistered = set(ChartType) - set(_CHART_SPECS)
if _unregistered:
    raise RuntimeError(f"Chart types without a ChartSpec: {sorted(t.value for t in _unregistered)}")


def get_chart_spec(chart_type: ChartType | str) -> ChartSpec:
    """Resolve a chart type selector to its ChartSpec.

    Raises:
        CalculationDomainError: If the selector is not a known chart type
    """
    try:
        resolved = ChartType(chart_type)
    except ValueError:
        raise CalculationDomainError(f"Unknown chart type: {chart_type!r}") from None
    return _CHART_SPECS[resolved]


def calculate_limits(chart_type: ChartType | str, inputs: LimitInputs) -> LimitResult:
    """Calculate control limits for one subgroup.

    Args:
        chart_type: Chart model selector
        inputs: The subgroup's numerators and, where needed, denominators
            and dispersions

    Returns:
        LimitResult with one entry per input point. Targets and bounds are
        constant across the subgroup.

    Raises:
        CalculationDomainError: If chart_type is unknown
        ValidationError: If a required input is missing

    Example:
        >>> result = calculate_limits(ChartType.I, LimitInputs([10, 12, 11, 13, 10]))
        >>> round(float(result.ul99[0]), 2)
        16.52
    """
    spec = get_chart_spec(chart_type)
    spec.validate(inputs)
    n = len(inputs)
    if n == 0:
        return LimitResult.empty()

    values = spec.transform(inputs)
    estimate = spec.estimate(inputs.estimation_basis())

    def broadcast(value: float) -> np.ndarray:
        return np.full(n, value, dtype=np.float64)

    return LimitResult(
        positions=np.arange(n, dtype=np.int64),
        values=values,
        numerators=inputs.numerators,
        denominators=inputs.denominators,
        targets=broadcast(estimate.target),
        trend_line=calculate_trend_line(values),
        count=inputs.denominators if spec.has_count else None,
        **{name: broadcast(getattr(estimate.bands, name)) for name in BOUND_FIELDS},
    )
