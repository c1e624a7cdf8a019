"""Ordered measurement sequences and their subgroup boundaries.

A ``Sequence`` holds the validated, contiguous points one update cycle works
on. ``Sequence.from_rows`` builds one from raw row mappings, excluding rows
that cannot be charted and recording each exclusion as a warning.
"""

import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np

from spcflow.core.engine.control_limits import ChartType, get_chart_spec
from spcflow.core.exceptions import RowInvalid


def _readonly(values) -> np.ndarray | None:
    if values is None:
        return None
    arr = np.array(values, dtype=np.float64)
    arr.flags.writeable = False
    return arr


def _is_number(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True, eq=False)
class Sequence:
    """Validated points for one update cycle, positions 0..n-1.

    Attributes:
        labels: Display label per point
        numerators: Value, count or group mean per point
        denominators: Sample size per point, when the chart uses one
        dispersions: Per-group standard deviation (xbar and s charts)
        alt_targets: Alternative target overlay, carried through unchanged
        speclimits_lower: Lower specification limit overlay
        speclimits_upper: Upper specification limit overlay
        grouping_indexes: Positions after which a new subgroup starts
        warnings: Messages for rows excluded upstream
        validation_error: Structural failure reported by the input builder
    """
    labels: tuple[str, ...]
    numerators: np.ndarray
    denominators: np.ndarray | None = None
    dispersions: np.ndarray | None = None
    alt_targets: np.ndarray | None = None
    speclimits_lower: np.ndarray | None = None
    speclimits_upper: np.ndarray | None = None
    grouping_indexes: tuple[int, ...] = ()
    warnings: tuple[str, ...] = ()
    validation_error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))
        for name in (
            "numerators", "denominators", "dispersions",
            "alt_targets", "speclimits_lower", "speclimits_upper",
        ):
            object.__setattr__(self, name, _readonly(getattr(self, name)))
        object.__setattr__(self, "grouping_indexes", tuple(int(i) for i in self.grouping_indexes))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    def __len__(self) -> int:
        return int(self.numerators.size)

    @property
    def warning_message(self) -> str:
        """All exclusion warnings, one per line."""
        return "\n".join(self.warnings)

    def array_length_mismatches(self) -> list[str]:
        """Names of per-point fields whose length differs from the numerators."""
        n = len(self)
        mismatched = []
        if len(self.labels) != n:
            mismatched.append("labels")
        for name in (
            "denominators", "dispersions",
            "alt_targets", "speclimits_lower", "speclimits_upper",
        ):
            arr = getattr(self, name)
            if arr is not None and arr.size != n:
                mismatched.append(name)
        return mismatched

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[Mapping[str, Any]],
        chart_type: ChartType | str,
    ) -> "Sequence":
        """Build a sequence from row mappings, excluding rows that cannot be charted.

        Recognised keys: ``label``, ``numerator``, ``denominator``, ``sd``,
        ``group``, ``alt_target``, ``speclimit_lower``, ``speclimit_upper``.
        A change in ``group`` between consecutive kept rows starts a new
        subgroup.

        Args:
            rows: Raw rows in display order
            chart_type: Chart type the rows will be plotted on

        Returns:
            Sequence of the kept rows, with one warning per excluded row

        Raises:
            CalculationDomainError: If chart_type is unknown
        """
        spec = get_chart_spec(chart_type)
        rows = list(rows)

        labels: list[str] = []
        numerators: list[float] = []
        denominators: list[float] = []
        dispersions: list[float] = []
        overlays: dict[str, list[float]] = {
            "alt_target": [], "speclimit_lower": [], "speclimit_upper": [],
        }
        groups: list[Any] = []
        warnings: list[str] = []

        for index, row in enumerate(rows):
            label = row.get("label")
            label = f"Row {index + 1}" if label is None else str(label)
            reason = _row_invalid_reason(row, spec)
            if reason is not None:
                warnings.append(RowInvalid(label, reason).message)
                continue

            labels.append(label)
            numerators.append(float(row["numerator"]))
            if _is_number(row.get("denominator")):
                denominators.append(float(row["denominator"]))
            if _is_number(row.get("sd")):
                dispersions.append(float(row["sd"]))
            for key, values in overlays.items():
                value = row.get(key)
                values.append(float(value) if _is_number(value) else math.nan)
            groups.append(row.get("group"))

        kept = len(labels)
        grouping_indexes = tuple(
            i - 1 for i in range(1, kept) if groups[i] != groups[i - 1]
        )

        def overlay(key: str) -> list[float] | None:
            values = overlays[key]
            return values if any(not math.isnan(v) for v in values) else None

        return cls(
            labels=tuple(labels),
            numerators=numerators,
            # Denominators are kept only when every kept row has one
            denominators=denominators if kept and len(denominators) == kept else None,
            dispersions=dispersions if kept and len(dispersions) == kept else None,
            alt_targets=overlay("alt_target"),
            speclimits_lower=overlay("speclimit_lower"),
            speclimits_upper=overlay("speclimit_upper"),
            grouping_indexes=grouping_indexes,
            warnings=tuple(warnings),
        )


def _row_invalid_reason(row: Mapping[str, Any], spec) -> str | None:
    """Why a row cannot be charted, or None if it can."""
    numerator = row.get("numerator")
    if numerator is None:
        return "numerator missing"
    if not _is_number(numerator):
        return "numerator not a finite number"
    if spec.non_negative and float(numerator) < 0:
        return "numerator negative"

    denominator = row.get("denominator")
    if spec.requires_denominators:
        if denominator is None:
            return "denominator missing"
        if not _is_number(denominator):
            return "denominator not a finite number"
        if float(denominator) <= 0:
            return "denominator not positive"
        if spec.proportion and float(numerator) > float(denominator):
            return "numerator greater than denominator"
    elif denominator is not None and _is_number(denominator) and float(denominator) <= 0:
        return "denominator not positive"

    if spec.requires_dispersions:
        sd = row.get("sd")
        if sd is None:
            return "SD missing"
        if not _is_number(sd):
            return "SD not a finite number"
        if float(sd) < 0:
            return "SD negative"
    return None


@dataclass(frozen=True)
class Subgroup:
    """Half-open position range [start, end) sharing one set of limits."""
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start

    def as_slice(self) -> slice:
        return slice(self.start, self.end)


def build_subgroups(
    length: int,
    split_indexes: Iterable[int] = (),
    grouping_indexes: Iterable[int] = (),
) -> list[Subgroup]:
    """Split positions 0..length-1 into subgroups.

    A break index ``i`` ends a subgroup after position ``i``. Manual splits
    and grouping breaks are merged with the sequence end, deduplicated and
    sorted. Indexes outside ``[0, length - 1)`` are ignored.

    Examples:
        >>> build_subgroups(6, split_indexes=[2], grouping_indexes=[2, 4])
        [Subgroup(start=0, end=3), Subgroup(start=3, end=5), Subgroup(start=5, end=6)]
    """
    if length <= 0:
        return []
    breaks = {
        int(i) for i in (*split_indexes, *grouping_indexes)
        if 0 <= int(i) < length - 1
    }
    boundaries = [-1, *sorted(breaks), length - 1]
    return [
        Subgroup(start=a + 1, end=b + 1)
        for a, b in zip(boundaries, boundaries[1:])
    ]
