"""Outlier rules for SPC signal detection.

Four rules classify every point of a value series as ``none``, ``lower`` or
``upper``. Each rule is a standalone class following the OutlierRule protocol
and runs in a single left-to-right pass. Run-based rules keep a running sum
over a sliding window (add the incoming term, subtract the leaving one) and
backfill the points of the run when it triggers. Overlapping backfills are
written immediately, so the most recently evaluated trigger wins.

References:
    - Lloyd S. Nelson, "The Shewhart Control Chart - Tests for Special Causes" (1984)
    - NHS England, "Making Data Count" (2019)
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Protocol

import numpy as np

from spcflow.core.engine.chart_settings import (
    ImprovementDirection,
    LimitSelection,
    OutlierSettings,
    ProcessFlagType,
)
from spcflow.core.engine.control_limits import LimitResult
from spcflow.core.engine.sequence import Subgroup
from spcflow.core.exceptions import CalculationDomainError


class Direction(str, Enum):
    """Per-point outlier classification."""
    NONE = "none"
    LOWER = "lower"
    UPPER = "upper"


class OutlierRuleName(str, Enum):
    """Supported outlier rules."""
    ASTRONOMICAL = "astronomical"
    SHIFT = "shift"
    TREND = "trend"
    TWO_IN_THREE = "two_in_three"


def _signs(values: np.ndarray) -> np.ndarray:
    """Sign of each value as an int array, with NaN treated as 0."""
    signs = np.sign(values)
    signs[np.isnan(signs)] = 0
    return signs.astype(np.int64)


def _nan_array(n: int) -> np.ndarray:
    return np.full(n, np.nan)


@dataclass(frozen=True, eq=False)
class RuleInputs:
    """Value series and bounds handed to a rule.

    Attributes:
        values: Plotted values
        targets: Centre line per point (Shift)
        lower: Lower bound per point (Astronomical, TwoInThree)
        upper: Upper bound per point (Astronomical, TwoInThree)
        n: Run length (Shift, Trend)
        highlight_series: Backfill the two preceding points (TwoInThree)
    """
    values: np.ndarray
    targets: np.ndarray | None = None
    lower: np.ndarray | None = None
    upper: np.ndarray | None = None
    n: int = 0
    highlight_series: bool = False

    def __post_init__(self) -> None:
        for name in ("values", "targets", "lower", "upper"):
            arr = getattr(self, name)
            if arr is not None:
                object.__setattr__(self, name, np.asarray(arr, dtype=np.float64))

    def __len__(self) -> int:
        return int(self.values.size)

    def for_subgroup(self, subgroup: Subgroup) -> "RuleInputs":
        """Slice every series to one subgroup."""
        window = subgroup.as_slice()

        def cut(arr: np.ndarray | None) -> np.ndarray | None:
            return None if arr is None else arr[window]

        return replace(
            self,
            values=self.values[window],
            targets=cut(self.targets),
            lower=cut(self.lower),
            upper=cut(self.upper),
        )


class OutlierRule(Protocol):
    """Protocol for outlier rule implementations."""

    @property
    def rule_name(self) -> OutlierRuleName:
        """Rule identifier."""
        ...

    @property
    def needs_control_limits(self) -> bool:
        """True if the rule compares values against bounds."""
        ...

    def check(self, inputs: RuleInputs) -> list[Direction]:
        """Classify every point of the series.

        Args:
            inputs: Values and the bounds this rule reads

        Returns:
            One Direction per value
        """
        ...


class AstronomicalRule:
    """A single point beyond its lower or upper bound.

    The bound pair is chosen by the caller (3 sigma by default, or
    specification limits). NaN bounds never flag.
    """

    rule_name = OutlierRuleName.ASTRONOMICAL
    needs_control_limits = True

    def check(self, inputs: RuleInputs) -> list[Direction]:
        """Compare each value with its own bounds."""
        n = len(inputs)
        lower = inputs.lower if inputs.lower is not None else _nan_array(n)
        upper = inputs.upper if inputs.upper is not None else _nan_array(n)
        flags = [Direction.NONE] * n
        for i, value in enumerate(inputs.values):
            if value < lower[i]:
                flags[i] = Direction.LOWER
            elif value > upper[i]:
                flags[i] = Direction.UPPER
        return flags


class ShiftRule:
    """A run of n consecutive points on the same side of the centre line.

    Indicates a shift in the process mean. A point exactly on the centre line
    breaks the run.
    """

    rule_name = OutlierRuleName.SHIFT
    needs_control_limits = False

    def check(self, inputs: RuleInputs) -> list[Direction]:
        """Running signed sum over a window of width n."""
        run_length = inputs.n
        if inputs.targets is None:
            raise ValueError("Shift rule requires targets")
        if run_length < 1:
            raise ValueError(f"Shift run length must be positive, got {run_length}")
        signs = _signs(inputs.values - inputs.targets)
        return _running_sum_flags(signs, run_length, run_length, run_length - 1)


class TrendRule:
    """A run of n points each strictly above (or below) its predecessor.

    Indicates drift such as tool wear or gradual degradation. n points make
    n - 1 steps, so the window covers n - 1 step directions.
    """

    rule_name = OutlierRuleName.TREND
    needs_control_limits = False

    def check(self, inputs: RuleInputs) -> list[Direction]:
        """Running sum of step directions over a window of width n - 1."""
        run_length = inputs.n
        if run_length < 2:
            raise ValueError(f"Trend run length must be at least 2, got {run_length}")
        steps = np.zeros(len(inputs), dtype=np.int64)
        if len(inputs) > 1:
            steps[1:] = _signs(np.diff(inputs.values))
        width = run_length - 1
        return _running_sum_flags(steps, width, width, width)


class TwoInThreeRule:
    """Two of three consecutive points beyond the same bound.

    The bound pair defaults to 2 sigma. With highlight_series set, the two
    points preceding a trigger take its direction as well.
    """

    rule_name = OutlierRuleName.TWO_IN_THREE
    needs_control_limits = True
    window = 3
    threshold = 2

    def check(self, inputs: RuleInputs) -> list[Direction]:
        """Running sum of beyond-bound indicators over a window of width 3."""
        n = len(inputs)
        lower = inputs.lower if inputs.lower is not None else _nan_array(n)
        upper = inputs.upper if inputs.upper is not None else _nan_array(n)
        beyond = np.where(
            inputs.values > upper, 1, np.where(inputs.values < lower, -1, 0)
        ).astype(np.int64)
        backfill = self.window - 1 if inputs.highlight_series else 0
        return _running_sum_flags(beyond, self.window, self.threshold, backfill)


def _running_sum_flags(
    terms: np.ndarray,
    width: int,
    threshold: int,
    backfill: int,
) -> list[Direction]:
    """Flag points where |sum of the last ``width`` terms| reaches ``threshold``.

    The triggering point and the ``backfill`` points before it take the
    trigger's direction, overwriting earlier flags.
    """
    terms = [int(t) for t in terms]
    flags = [Direction.NONE] * len(terms)
    running = 0
    for i, term in enumerate(terms):
        running += term
        if i >= width:
            running -= terms[i - width]
        if abs(running) >= threshold:
            direction = Direction.UPPER if running > 0 else Direction.LOWER
            for j in range(max(0, i - backfill), i + 1):
                flags[j] = direction
    return flags


class OutlierRuleLibrary:
    """Registry of the outlier rules.

    Provides a central lookup for the four rules and a method to run one by
    name.
    """

    def __init__(self):
        """Initialize the library with all four rules."""
        self._rules: dict[OutlierRuleName, OutlierRule] = {}
        for rule in (AstronomicalRule(), ShiftRule(), TrendRule(), TwoInThreeRule()):
            self._rules[rule.rule_name] = rule

    def get_rule(self, rule_name: OutlierRuleName | str) -> OutlierRule:
        """Get a rule by name.

        Raises:
            CalculationDomainError: If the name is not a known rule
        """
        try:
            return self._rules[OutlierRuleName(rule_name)]
        except ValueError:
            raise CalculationDomainError(f"Unknown outlier rule: {rule_name!r}") from None

    def detect(self, rule_name: OutlierRuleName | str, inputs: RuleInputs) -> list[Direction]:
        """Run one rule over a series."""
        return self.get_rule(rule_name).check(inputs)


_LIBRARY = OutlierRuleLibrary()


def detect_outliers(rule_name: OutlierRuleName | str, inputs: RuleInputs) -> list[Direction]:
    """Run one rule over a series. Pure; safe to call from worker processes."""
    return _LIBRARY.detect(rule_name, inputs)


def select_bounds(
    limits: LimitResult,
    selection: LimitSelection,
) -> tuple[np.ndarray, np.ndarray]:
    """Lower and upper bound arrays for a limit selection.

    Missing specification limits are NaN and never flag.
    """
    if selection == LimitSelection.SPECIFICATION:
        n = len(limits)
        lower = limits.speclimits_lower if limits.speclimits_lower is not None else _nan_array(n)
        upper = limits.speclimits_upper if limits.speclimits_upper is not None else _nan_array(n)
        return lower, upper
    suffix = {
        LimitSelection.ONE_SIGMA: "68",
        LimitSelection.TWO_SIGMA: "95",
        LimitSelection.THREE_SIGMA: "99",
    }[LimitSelection(selection)]
    return limits.bounds(f"ll{suffix}"), limits.bounds(f"ul{suffix}")


def build_rule_inputs(
    settings: OutlierSettings,
    limits: LimitResult,
    has_control_limits: bool,
) -> dict[OutlierRuleName, RuleInputs]:
    """Inputs for every enabled rule over the whole sequence.

    Bound-based rules are skipped for charts without control limits unless
    they compare against specification limits.
    """
    def bounds_available(selection: LimitSelection) -> bool:
        return has_control_limits or selection == LimitSelection.SPECIFICATION

    enabled: dict[OutlierRuleName, RuleInputs] = {}
    if settings.astronomical and bounds_available(settings.astronomical_limit):
        lower, upper = select_bounds(limits, settings.astronomical_limit)
        enabled[OutlierRuleName.ASTRONOMICAL] = RuleInputs(
            limits.values, lower=lower, upper=upper
        )
    if settings.two_in_three and bounds_available(settings.two_in_three_limit):
        lower, upper = select_bounds(limits, settings.two_in_three_limit)
        enabled[OutlierRuleName.TWO_IN_THREE] = RuleInputs(
            limits.values,
            lower=lower,
            upper=upper,
            highlight_series=settings.two_in_three_highlight_series,
        )
    if settings.trend:
        enabled[OutlierRuleName.TREND] = RuleInputs(limits.values, n=settings.trend_n)
    if settings.shift:
        enabled[OutlierRuleName.SHIFT] = RuleInputs(
            limits.values, targets=limits.targets, n=settings.shift_n
        )
    return enabled


# Meaning of an upper/lower flag for each improvement direction
_FLAG_MEANING = {
    ImprovementDirection.INCREASE: {
        Direction.UPPER: ProcessFlagType.IMPROVEMENT,
        Direction.LOWER: ProcessFlagType.DETERIORATION,
    },
    ImprovementDirection.DECREASE: {
        Direction.UPPER: ProcessFlagType.DETERIORATION,
        Direction.LOWER: ProcessFlagType.IMPROVEMENT,
    },
}


def check_flag_direction(
    flags: list[Direction],
    improvement_direction: ImprovementDirection | str,
    process_flag_type: ProcessFlagType | str,
) -> list[Direction]:
    """Drop flags whose meaning does not match the requested flag type.

    With ``both`` every flag is kept. Otherwise a flag survives only when it
    is an improvement (or deterioration) for the improvement direction. A
    neutral direction gives every flag a neutral meaning, so nothing survives.

    Examples:
        >>> check_flag_direction([Direction.UPPER, Direction.LOWER], "increase", "improvement")
        [<Direction.UPPER: 'upper'>, <Direction.NONE: 'none'>]
    """
    flag_type = ProcessFlagType(process_flag_type)
    if flag_type == ProcessFlagType.BOTH:
        return list(flags)
    meanings = _FLAG_MEANING.get(ImprovementDirection(improvement_direction), {})
    return [
        flag if meanings.get(flag) == flag_type else Direction.NONE
        for flag in flags
    ]


@dataclass(frozen=True)
class OutlierFlags:
    """Per-point flags for the four rules.

    Rules that did not run are all ``none``.
    """
    astpoint: tuple[Direction, ...]
    shift: tuple[Direction, ...]
    trend: tuple[Direction, ...]
    two_in_three: tuple[Direction, ...]

    @classmethod
    def none(cls, n: int) -> "OutlierFlags":
        blank = (Direction.NONE,) * n
        return cls(astpoint=blank, shift=blank, trend=blank, two_in_three=blank)

    @classmethod
    def from_rule_results(
        cls,
        n: int,
        results: dict[OutlierRuleName, list[Direction]],
    ) -> "OutlierFlags":
        blank = (Direction.NONE,) * n

        def pick(rule_name: OutlierRuleName) -> tuple[Direction, ...]:
            flags = results.get(rule_name)
            return blank if flags is None else tuple(flags)

        return cls(
            astpoint=pick(OutlierRuleName.ASTRONOMICAL),
            shift=pick(OutlierRuleName.SHIFT),
            trend=pick(OutlierRuleName.TREND),
            two_in_three=pick(OutlierRuleName.TWO_IN_THREE),
        )

    def __len__(self) -> int:
        return len(self.astpoint)

    def any_at(self, position: int) -> bool:
        """True if any rule flagged the position."""
        return any(
            flags[position] != Direction.NONE
            for flags in (self.astpoint, self.shift, self.trend, self.two_in_three)
        )
