"""Pydantic models for chart settings.

Settings are grouped into named categories. The engine reads ``spc``,
``outliers`` and ``lines``; the remaining categories are presentation options
that are only hashed to decide which render stages must run.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import Self

from spcflow.core.engine.control_limits import ChartType, get_chart_spec


class LimitSelection(str, Enum):
    """Which bound pair an outlier rule compares against."""

    ONE_SIGMA = "1 Sigma"
    TWO_SIGMA = "2 Sigma"
    THREE_SIGMA = "3 Sigma"
    SPECIFICATION = "Specification"


class ImprovementDirection(str, Enum):
    INCREASE = "increase"
    NEUTRAL = "neutral"
    DECREASE = "decrease"


class ProcessFlagType(str, Enum):
    BOTH = "both"
    IMPROVEMENT = "improvement"
    DETERIORATION = "deterioration"


class SpcSettings(BaseModel):
    """Chart model and value scaling.

    Attributes:
        chart_type: Chart model used for limit calculation
        outliers_in_limits: Keep gross moving-range excursions in sigma estimates
        multiplier: Unit multiplier applied to values, targets and bounds
        perc_labels: Show proportions as percentages ("Automatic" does so for p charts)
        ll_truncate: Lower clip for plotted values and limits
        ul_truncate: Upper clip for plotted values and limits
        multiplier_alt_target: Also scale the alternative target overlay
        multiplier_specification: Also scale the specification limit overlays
        subset_points: Positions used to estimate limits (empty = all)
    """

    model_config = ConfigDict(frozen=True)

    chart_type: ChartType = ChartType.I
    outliers_in_limits: bool = False
    multiplier: float = Field(default=1.0, gt=0)
    perc_labels: Literal["Automatic", "Yes", "No"] = "Automatic"
    ll_truncate: float | None = None
    ul_truncate: float | None = None
    multiplier_alt_target: bool = False
    multiplier_specification: bool = False
    subset_points: tuple[int, ...] = ()

    @model_validator(mode="after")
    def validate_truncation(self) -> Self:
        """Validate that the truncation range is not inverted."""
        if (
            self.ll_truncate is not None
            and self.ul_truncate is not None
            and self.ll_truncate > self.ul_truncate
        ):
            raise ValueError("ll_truncate cannot exceed ul_truncate")
        return self


class OutlierSettings(BaseModel):
    """Which outlier rules run and how their flags are filtered."""

    model_config = ConfigDict(frozen=True)

    astronomical: bool = False
    astronomical_limit: LimitSelection = LimitSelection.THREE_SIGMA
    two_in_three: bool = False
    two_in_three_limit: LimitSelection = LimitSelection.TWO_SIGMA
    two_in_three_highlight_series: bool = False
    shift: bool = False
    shift_n: int = Field(default=7, ge=2)
    trend: bool = False
    trend_n: int = Field(default=5, ge=3)
    improvement_direction: ImprovementDirection = ImprovementDirection.INCREASE
    process_flag_type: ProcessFlagType = ProcessFlagType.BOTH


class LineSettings(BaseModel):
    """Which line series the view exposes."""

    model_config = ConfigDict(frozen=True)

    show_main: bool = True
    show_target: bool = True
    show_alt_target: bool = True
    show_specification: bool = False
    show_trend: bool = False
    show_99: bool = True
    show_95: bool = True
    show_68: bool = False
    join_rebaselines: bool = False


class PresentationSettings(BaseModel):
    """Presentation options the engine does not interpret."""

    model_config = ConfigDict(extra="allow", frozen=True)


class ChartSettings(BaseModel):
    """All settings categories for one chart."""

    model_config = ConfigDict(frozen=True)

    spc: SpcSettings = Field(default_factory=SpcSettings)
    outliers: OutlierSettings = Field(default_factory=OutlierSettings)
    lines: LineSettings = Field(default_factory=LineSettings)
    scatter: PresentationSettings = Field(default_factory=PresentationSettings)
    x_axis: PresentationSettings = Field(default_factory=PresentationSettings)
    y_axis: PresentationSettings = Field(default_factory=PresentationSettings)
    canvas: PresentationSettings = Field(default_factory=PresentationSettings)
    labels: PresentationSettings = Field(default_factory=PresentationSettings)
    nhs_icons: PresentationSettings = Field(default_factory=PresentationSettings)
    summary_table: PresentationSettings = Field(default_factory=PresentationSettings)
    download: PresentationSettings = Field(default_factory=PresentationSettings)

    def categories(self) -> dict[str, BaseModel]:
        """Category name -> settings model, in declaration order."""
        return {name: getattr(self, name) for name in type(self).model_fields}

    @property
    def derived_multiplier(self) -> float:
        """Unit multiplier after applying percentage labels to proportion charts."""
        multiplier = self.spc.multiplier
        if self.spc.perc_labels != "No" and get_chart_spec(self.spc.chart_type).proportion:
            multiplier *= 100
        return multiplier
