"""Unit tests for chart settings models."""

import pytest
from pydantic import ValidationError

from spcflow.core.engine.chart_settings import (
    ChartSettings,
    ImprovementDirection,
    LimitSelection,
    LineSettings,
    OutlierSettings,
    ProcessFlagType,
    SpcSettings,
)
from spcflow.core.engine.control_limits import ChartType


class TestSpcSettings:
    """Test chart model settings."""

    def test_defaults(self):
        settings = SpcSettings()
        assert settings.chart_type == ChartType.I
        assert settings.multiplier == 1.0
        assert settings.perc_labels == "Automatic"
        assert settings.subset_points == ()

    def test_chart_type_from_string(self):
        assert SpcSettings(chart_type="xbar").chart_type == ChartType.XBAR

    def test_unknown_chart_type_rejected(self):
        with pytest.raises(ValidationError):
            SpcSettings(chart_type="r")

    def test_multiplier_must_be_positive(self):
        with pytest.raises(ValidationError):
            SpcSettings(multiplier=0)

    def test_inverted_truncation_rejected(self):
        with pytest.raises(ValidationError, match="ll_truncate cannot exceed ul_truncate"):
            SpcSettings(ll_truncate=10, ul_truncate=5)

    def test_one_sided_truncation(self):
        assert SpcSettings(ll_truncate=0).ul_truncate is None

    def test_frozen(self):
        settings = SpcSettings()
        with pytest.raises(ValidationError):
            settings.multiplier = 2


class TestOutlierSettings:
    """Test outlier rule settings."""

    def test_defaults(self):
        settings = OutlierSettings()
        assert not any((settings.astronomical, settings.shift, settings.trend, settings.two_in_three))
        assert settings.astronomical_limit == LimitSelection.THREE_SIGMA
        assert settings.two_in_three_limit == LimitSelection.TWO_SIGMA
        assert settings.shift_n == 7
        assert settings.trend_n == 5
        assert settings.improvement_direction == ImprovementDirection.INCREASE
        assert settings.process_flag_type == ProcessFlagType.BOTH

    def test_limit_selection_by_label(self):
        assert OutlierSettings(astronomical_limit="Specification").astronomical_limit == (
            LimitSelection.SPECIFICATION
        )

    @pytest.mark.parametrize("field,value", [("shift_n", 1), ("trend_n", 2)])
    def test_run_lengths_bounded(self, field, value):
        with pytest.raises(ValidationError):
            OutlierSettings(**{field: value})


class TestChartSettings:
    """Test the category container."""

    def test_categories(self):
        assert list(ChartSettings().categories()) == [
            "spc", "outliers", "lines", "scatter", "x_axis", "y_axis",
            "canvas", "labels", "nhs_icons", "summary_table", "download",
        ]

    def test_presentation_categories_keep_extra_options(self):
        settings = ChartSettings(x_axis={"xlimit_colour": "black"})
        assert settings.x_axis.model_extra == {"xlimit_colour": "black"}

    def test_line_defaults(self):
        lines = LineSettings()
        assert lines.show_main and lines.show_99 and lines.show_95
        assert not lines.show_68
        assert not lines.join_rebaselines

    @pytest.mark.parametrize(
        "chart_type,perc_labels,expected",
        [
            ("p", "Automatic", 100.0),
            ("pp", "Yes", 100.0),
            ("p", "No", 1.0),
            ("i", "Automatic", 1.0),
            ("u", "Yes", 1.0),
        ],
    )
    def test_derived_multiplier(self, chart_type, perc_labels, expected):
        settings = ChartSettings(spc=SpcSettings(chart_type=chart_type, perc_labels=perc_labels))
        assert settings.derived_multiplier == expected

    def test_derived_multiplier_combines_user_multiplier(self):
        settings = ChartSettings(spc=SpcSettings(chart_type="p", multiplier=2))
        assert settings.derived_multiplier == 200.0
