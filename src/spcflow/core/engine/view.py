"""Render-ready records built from one cycle's limits and flags."""

import math
from dataclasses import dataclass, field

import numpy as np

from spcflow.core.engine.chart_settings import LineSettings
from spcflow.core.engine.control_limits import BOUND_FIELDS, LimitResult
from spcflow.core.engine.outlier_rules import Direction, OutlierFlags
from spcflow.core.engine.sequence import Sequence, Subgroup


def _plain(value) -> float | None:
    """Float for finite values, None otherwise."""
    if value is None:
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _at(arr: np.ndarray | None, i: int) -> float | None:
    return None if arr is None else _plain(arr[i])


@dataclass(frozen=True)
class PointRecord:
    """Everything a renderer needs for one point. Non-finite numbers are None."""
    position: int
    label: str
    value: float | None
    numerator: float | None
    denominator: float | None
    target: float | None
    alt_target: float | None
    ll99: float | None
    ll95: float | None
    ll68: float | None
    ul68: float | None
    ul95: float | None
    ul99: float | None
    speclimit_lower: float | None
    speclimit_upper: float | None
    trend_line: float | None
    count: float | None
    astpoint: Direction
    shift: Direction
    trend: Direction
    two_in_three: Direction

    @property
    def flagged(self) -> bool:
        return any(
            flag != Direction.NONE
            for flag in (self.astpoint, self.shift, self.trend, self.two_in_three)
        )


@dataclass(frozen=True)
class LineSeries:
    """One line overlay as (position, value) pairs.

    A pair with a None value is a gap: the line is not drawn across it.
    """
    name: str
    points: tuple[tuple[int, float | None], ...]


@dataclass(frozen=True)
class ViewModel:
    """Per-point records, line overlays and a position -> label lookup."""
    points: tuple[PointRecord, ...]
    lines: tuple[LineSeries, ...]
    tick_labels: tuple[tuple[int, str], ...]
    _labels: dict[int, str] = field(repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.points)

    def label_for(self, position: int) -> str | None:
        """Label at a position, None if there is no such point."""
        return self._labels.get(position)

    def line(self, name: str) -> LineSeries | None:
        for series in self.lines:
            if series.name == name:
                return series
        return None


def _line_names(limits: LimitResult, settings: LineSettings) -> list[tuple[str, np.ndarray]]:
    names: list[tuple[str, np.ndarray | None]] = []
    if settings.show_target:
        names.append(("targets", limits.targets))
    if settings.show_alt_target:
        names.append(("alt_targets", limits.alt_targets))
    shown = {"99": settings.show_99, "95": settings.show_95, "68": settings.show_68}
    for name in BOUND_FIELDS:
        if shown[name[-2:]]:
            names.append((name, limits.bounds(name)))
    if settings.show_specification:
        names.append(("speclimits_lower", limits.speclimits_lower))
        names.append(("speclimits_upper", limits.speclimits_upper))
    if settings.show_trend:
        names.append(("trend_line", limits.trend_line))
    return [(name, arr) for name, arr in names if arr is not None]


def _build_line(
    name: str,
    values: np.ndarray,
    subgroups: list[Subgroup],
    join_rebaselines: bool,
) -> LineSeries:
    points: list[tuple[int, float | None]] = []
    for k, subgroup in enumerate(subgroups):
        if k > 0 and not join_rebaselines:
            # Gap between the last point of one subgroup and the first of the next
            points.append((subgroup.start, None))
        points.extend(
            (i, _plain(values[i])) for i in range(subgroup.start, subgroup.end)
        )
    return LineSeries(name=name, points=tuple(points))


def build_view(
    sequence: Sequence,
    limits: LimitResult,
    flags: OutlierFlags,
    subgroups: list[Subgroup],
    line_settings: LineSettings,
) -> ViewModel:
    """Materialise per-point records and line overlays for a cycle."""
    records = tuple(
        PointRecord(
            position=i,
            label=sequence.labels[i],
            value=_at(limits.values, i),
            numerator=_at(limits.numerators, i),
            denominator=_at(limits.denominators, i),
            target=_at(limits.targets, i),
            alt_target=_at(limits.alt_targets, i),
            ll99=_at(limits.ll99, i),
            ll95=_at(limits.ll95, i),
            ll68=_at(limits.ll68, i),
            ul68=_at(limits.ul68, i),
            ul95=_at(limits.ul95, i),
            ul99=_at(limits.ul99, i),
            speclimit_lower=_at(limits.speclimits_lower, i),
            speclimit_upper=_at(limits.speclimits_upper, i),
            trend_line=_at(limits.trend_line, i),
            count=_at(limits.count, i),
            astpoint=flags.astpoint[i],
            shift=flags.shift[i],
            trend=flags.trend[i],
            two_in_three=flags.two_in_three[i],
        )
        for i in range(len(limits))
    )

    lines: list[LineSeries] = []
    if line_settings.show_main:
        lines.append(LineSeries(
            name="values",
            points=tuple((i, _plain(v)) for i, v in enumerate(limits.values)),
        ))
    lines.extend(
        _build_line(name, values, subgroups, line_settings.join_rebaselines)
        for name, values in _line_names(limits, line_settings)
    )

    labels = {record.position: record.label for record in records}
    return ViewModel(
        points=records,
        lines=tuple(lines),
        tick_labels=tuple(labels.items()),
        _labels=labels,
    )
