"""Unit tests for the SPC Engine update cycle."""

import numpy as np
import pytest
import structlog

from spcflow.core.engine.change_detection import RenderStage
from spcflow.core.engine.chart_settings import (
    ChartSettings,
    LineSettings,
    OutlierSettings,
    SpcSettings,
)
from spcflow.core.engine.control_limits import calculate_limits
from spcflow.core.engine.outlier_rules import Direction, detect_outliers
from spcflow.core.engine.sequence import Sequence
from spcflow.core.engine.spc_engine import CycleState, SPCEngine, Viewport
from spcflow.core.exceptions import CalculationDomainError


class ReentrantOffloader:
    """Offloader stand-in that calls back into the engine mid-cycle."""

    def __init__(self, engine_ref: list, sequence, settings, viewport):
        self._engine_ref = engine_ref
        self._args = (sequence, settings, viewport)

    def calculate_limits(self, chart_type, inputs):
        self._engine_ref[0].update(*self._args)
        return calculate_limits(chart_type, inputs)

    def detect_outliers(self, rule_name, inputs):
        return detect_outliers(rule_name, inputs)


@pytest.fixture
def spike_sequence() -> Sequence:
    """Stable values with one gross excursion at position 9."""
    values = [10, 11, 10, 11, 10, 11, 10, 11, 10, 40]
    return Sequence(labels=tuple(f"S{i}" for i in range(10)), numerators=values)


# =============================================================================
# Successful cycles
# =============================================================================

class TestUpdateCycle:
    """Test complete update cycles."""

    def test_first_cycle(self, engine, individuals_sequence, default_settings, viewport):
        assert engine.is_first_run
        result = engine.update(individuals_sequence, default_settings, viewport)

        assert result.status is True
        assert result.error is None
        assert result.flags.limits_need_recalc
        assert result.flags.render_needed == frozenset({RenderStage.ALL})
        assert len(result.view) == 10
        assert len(result.limits) == 10
        assert engine.last_state == CycleState.DONE
        assert not engine.is_first_run
        assert result.processing_time_ms >= 0

    def test_viewport_as_tuple(self, engine, individuals_sequence, default_settings):
        assert engine.update(individuals_sequence, default_settings, (640, 480)).status

    def test_identical_cycle_reuses_results(
        self, engine, individuals_sequence, default_settings, viewport
    ):
        first = engine.update(individuals_sequence, default_settings, viewport)
        second = engine.update(individuals_sequence, default_settings, viewport)

        assert not second.flags.limits_need_recalc
        assert not second.flags.outliers_need_recalc
        assert second.flags.render_needed == frozenset()
        assert second.limits is first.limits
        assert second.outliers is first.outliers
        assert second.view is first.view

    def test_resize_reuses_limits(self, engine, individuals_sequence, default_settings, viewport):
        first = engine.update(individuals_sequence, default_settings, viewport)
        second = engine.update(individuals_sequence, default_settings, Viewport(300, 200))

        assert second.flags.resize_only
        assert second.limits is first.limits
        assert second.flags.needs_render(RenderStage.X_AXIS)

    def test_data_change_recomputes(self, engine, individuals_sequence, default_settings, viewport):
        first = engine.update(individuals_sequence, default_settings, viewport)
        changed = Sequence(
            labels=individuals_sequence.labels,
            numerators=[*individuals_sequence.numerators[:-1], 30.0],
        )
        second = engine.update(changed, default_settings, viewport)

        assert second.flags.data_changed
        assert second.limits is not first.limits
        assert second.limits.values[-1] == 30.0

    def test_dispersion_change_recomputes(self, engine, viewport):
        settings = ChartSettings(spc=SpcSettings(chart_type="xbar"))
        means = [10.0, 10.2, 9.8, 10.1, 9.9]

        def lots(sd):
            return Sequence(
                labels=tuple(f"L{i}" for i in range(5)),
                numerators=means,
                denominators=[5] * 5,
                dispersions=[sd] * 5,
            )

        engine.update(lots(1.0), settings, viewport)
        second = engine.update(lots(5.0), settings, viewport)
        fresh = SPCEngine().update(lots(5.0), settings, viewport)

        assert second.flags.limits_need_recalc
        np.testing.assert_allclose(second.limits.ul99, fresh.limits.ul99)

    def test_overlay_change_recomputes(self, engine, viewport, default_settings):
        def with_upper(limit):
            return Sequence(
                labels=("a", "b", "c"),
                numerators=[1.0, 2.0, 3.0],
                speclimits_upper=[limit] * 3,
            )

        engine.update(with_upper(5.0), default_settings, viewport)
        second = engine.update(with_upper(9.0), default_settings, viewport)

        assert second.flags.data_changed
        assert second.limits.speclimits_upper.tolist() == [9.0, 9.0, 9.0]
        assert second.view.points[0].speclimit_upper == 9.0

    def test_label_boundary_change_rebuilds_view(self, engine, default_settings, viewport):
        engine.update(Sequence(labels=("ab", "c"), numerators=[1.0, 2.0]), default_settings, viewport)
        second = engine.update(
            Sequence(labels=("a", "bc"), numerators=[1.0, 2.0]), default_settings, viewport
        )

        assert second.flags.data_changed
        assert second.view.label_for(0) == "a"

    def test_outlier_settings_change_keeps_limits(
        self, engine, spike_sequence, default_settings, viewport
    ):
        first = engine.update(spike_sequence, default_settings, viewport)
        settings = ChartSettings(outliers=OutlierSettings(astronomical=True))
        second = engine.update(spike_sequence, settings, viewport)

        assert second.limits is first.limits
        assert second.outliers is not first.outliers
        assert second.outliers.astpoint[9] == Direction.UPPER
        assert second.view.points[9].flagged

    def test_spc_settings_change_recomputes_limits(
        self, engine, individuals_sequence, default_settings, viewport
    ):
        first = engine.update(individuals_sequence, default_settings, viewport)
        settings = ChartSettings(spc=SpcSettings(multiplier=2))
        second = engine.update(individuals_sequence, settings, viewport)

        assert second.limits is not first.limits
        np.testing.assert_allclose(second.limits.values, first.limits.values * 2)
        np.testing.assert_allclose(second.limits.ul99, first.limits.ul99 * 2)

    def test_line_settings_change_rebuilds_view_only(
        self, engine, individuals_sequence, default_settings, viewport
    ):
        first = engine.update(individuals_sequence, default_settings, viewport)
        settings = ChartSettings(lines=LineSettings(show_trend=True))
        second = engine.update(individuals_sequence, settings, viewport)

        assert second.limits is first.limits
        assert second.view is not first.view
        assert second.view.line("trend_line") is not None
        assert first.view.line("trend_line") is None

    def test_warnings_surface(self, engine, default_settings, viewport):
        rows = [
            {"label": "a", "numerator": 1},
            {"label": "b", "numerator": None},
            {"label": "c", "numerator": 3},
        ]
        result = engine.update(Sequence.from_rows(rows, "i"), default_settings, viewport)
        assert result.status
        assert result.warning == "b removed due to: numerator missing."


# =============================================================================
# Subgroups, scaling and truncation
# =============================================================================

class TestLimitAssembly:
    """Test how per-subgroup limits are combined."""

    def test_split_indexes_rebaseline(self, engine, default_settings, viewport):
        sequence = Sequence(labels=tuple("abcdef"), numerators=[1, 2, 1, 10, 11, 10])
        result = engine.update(sequence, default_settings, viewport, split_indexes=[2])

        targets = result.limits.targets
        assert targets[0] == targets[2]
        assert targets[3] == targets[5]
        assert targets[0] != targets[3]

    def test_grouping_indexes_rebaseline(self, engine, default_settings, viewport):
        sequence = Sequence(
            labels=tuple("abcd"),
            numerators=[1, 1, 5, 5],
            grouping_indexes=(1,),
        )
        result = engine.update(sequence, default_settings, viewport)
        assert result.limits.targets.tolist() == [1.0, 1.0, 5.0, 5.0]

    def test_split_change_is_a_data_change(self, engine, individuals_sequence, default_settings, viewport):
        engine.update(individuals_sequence, default_settings, viewport)
        result = engine.update(individuals_sequence, default_settings, viewport, split_indexes=[4])
        assert result.flags.data_changed
        assert result.flags.limits_need_recalc

    def test_subset_points_are_global_positions(self, engine, viewport):
        sequence = Sequence(labels=tuple("abcdef"), numerators=[1, 1, 1, 9, 9, 20])
        settings = ChartSettings(spc=SpcSettings(subset_points=(3, 4)))
        result = engine.update(sequence, settings, viewport, split_indexes=[2])

        # Second subgroup estimated from positions 3 and 4 only
        assert result.limits.targets[5] == 9.0
        # First subgroup has no subset points and uses all of them
        assert result.limits.targets[0] == 1.0

    def test_proportions_as_percentages(self, engine, proportion_sequence, viewport):
        settings = ChartSettings(spc=SpcSettings(chart_type="p"))
        result = engine.update(proportion_sequence, settings, viewport)
        assert result.limits.values[0] == pytest.approx(12.0)
        assert result.limits.numerators[0] == 12.0

    def test_truncation(self, engine, individuals_sequence, viewport):
        settings = ChartSettings(spc=SpcSettings(ll_truncate=10.5, ul_truncate=13))
        result = engine.update(individuals_sequence, settings, viewport)
        assert result.limits.values.min() == 10.5
        assert result.limits.values.max() == 13.0
        assert result.limits.ul99.max() <= 13.0

    def test_overlays_carried_through(self, engine, viewport):
        sequence = Sequence(
            labels=("a", "b", "c"),
            numerators=[1.0, 2.0, 3.0],
            speclimits_upper=[2.5, 2.5, 2.5],
        )
        settings = ChartSettings(
            outliers=OutlierSettings(astronomical=True, astronomical_limit="Specification")
        )
        result = engine.update(sequence, settings, viewport)
        assert result.limits.speclimits_upper.tolist() == [2.5, 2.5, 2.5]
        assert result.outliers.astpoint == (Direction.NONE, Direction.NONE, Direction.UPPER)

    def test_improvement_direction_filter(self, engine, spike_sequence, viewport):
        settings = ChartSettings(
            outliers=OutlierSettings(
                astronomical=True,
                improvement_direction="decrease",
                process_flag_type="improvement",
            )
        )
        result = engine.update(spike_sequence, settings, viewport)
        # An upward spike is a deterioration when lower is better
        assert result.outliers.astpoint[9] == Direction.NONE

    def test_run_chart_skips_bound_rules(self, engine, spike_sequence, viewport):
        settings = ChartSettings(
            spc=SpcSettings(chart_type="run"),
            outliers=OutlierSettings(astronomical=True, trend=True, trend_n=3),
        )
        result = engine.update(spike_sequence, settings, viewport)
        assert set(result.outliers.astpoint) == {Direction.NONE}


# =============================================================================
# View
# =============================================================================

class TestView:
    """Test render-ready output."""

    def test_label_lookup(self, engine, individuals_sequence, default_settings, viewport):
        view = engine.update(individuals_sequence, default_settings, viewport).view
        assert view.label_for(0) == "P1"
        assert view.label_for(9) == "P10"
        assert view.label_for(10) is None
        assert view.tick_labels[1] == (1, "P2")

    def test_non_finite_values_are_none(self, engine, individuals_sequence, viewport):
        settings = ChartSettings(spc=SpcSettings(chart_type="mr"))
        view = engine.update(individuals_sequence, settings, viewport).view
        assert view.points[0].value is None
        assert view.points[1].value == 2.0

    def test_limit_lines_break_at_rebaselines(self, engine, default_settings, viewport):
        sequence = Sequence(labels=tuple("abcd"), numerators=[1, 2, 5, 6])
        view = engine.update(sequence, default_settings, viewport, split_indexes=[1]).view

        ul99 = view.line("ul99").points
        assert (2, None) in ul99
        assert len(ul99) == 5
        # The value line stays continuous
        assert [p for p in view.line("values").points if p[1] is None] == []

    def test_join_rebaselines(self, engine, viewport):
        sequence = Sequence(labels=tuple("abcd"), numerators=[1, 2, 5, 6])
        settings = ChartSettings(lines=LineSettings(join_rebaselines=True))
        view = engine.update(sequence, settings, viewport, split_indexes=[1]).view
        assert all(value is not None for _, value in view.line("ul99").points)

    def test_hidden_lines(self, engine, individuals_sequence, viewport):
        settings = ChartSettings(lines=LineSettings(show_95=False, show_68=True))
        view = engine.update(individuals_sequence, settings, viewport).view
        assert view.line("ul95") is None
        assert view.line("ll68") is not None
        assert view.line("speclimits_upper") is None


# =============================================================================
# Failures
# =============================================================================

class TestValidationFailures:
    """Test that failed cycles leave retained results untouched."""

    def test_empty_sequence(self, engine, default_settings, viewport):
        result = engine.update(Sequence(labels=(), numerators=[]), default_settings, viewport)
        assert result.status is False
        assert result.error == "Sequence has no valid points"
        assert result.error_type == "ValidationError"
        assert engine.last_state == CycleState.ERROR
        assert engine.is_first_run

    def test_failure_retains_previous_results(
        self, engine, individuals_sequence, default_settings, viewport
    ):
        good = engine.update(individuals_sequence, default_settings, viewport)
        bad = engine.update(Sequence(labels=(), numerators=[]), default_settings, viewport)

        assert bad.status is False
        assert bad.view is good.view
        assert bad.limits is good.limits
        assert engine.limits is good.limits

        again = engine.update(individuals_sequence, default_settings, viewport)
        assert again.status
        assert not again.flags.limits_need_recalc

    def test_upstream_validation_error(self, engine, default_settings, viewport):
        sequence = Sequence(labels=("a",), numerators=[1.0], validation_error="No numerators column")
        result = engine.update(sequence, default_settings, viewport)
        assert result.error == "No numerators column"

    def test_length_mismatch(self, engine, default_settings, viewport):
        sequence = Sequence(labels=("a",), numerators=[1.0, 2.0])
        result = engine.update(sequence, default_settings, viewport)
        assert not result.status
        assert "labels" in result.error

    def test_missing_denominators(self, engine, individuals_sequence, viewport):
        settings = ChartSettings(spc=SpcSettings(chart_type="p"))
        result = engine.update(individuals_sequence, settings, viewport)
        assert not result.status
        assert result.error == "Chart type 'p' requires denominators"

    def test_negative_viewport(self, engine, individuals_sequence, default_settings):
        result = engine.update(individuals_sequence, default_settings, Viewport(-1, 100))
        assert not result.status
        assert "must not be negative" in result.error

    def test_unknown_chart_type_raises(self, engine, individuals_sequence, viewport):
        settings = ChartSettings.model_construct(
            spc=SpcSettings.model_construct(chart_type="zz")
        )
        with pytest.raises(CalculationDomainError):
            engine.update(individuals_sequence, settings, viewport)
        assert engine.last_state == CycleState.ERROR

    def test_not_reentrant(self, individuals_sequence, default_settings, viewport):
        engine_ref: list = []
        offloader = ReentrantOffloader(engine_ref, individuals_sequence, default_settings, viewport)
        engine = SPCEngine(offloader=offloader)
        engine_ref.append(engine)

        with pytest.raises(RuntimeError, match="not reentrant"):
            engine.update(individuals_sequence, default_settings, viewport)

        # The guard is released after the failed cycle
        assert SPCEngine().update(individuals_sequence, default_settings, viewport).status
        assert not engine._running


# =============================================================================
# Log context
# =============================================================================

class ContextRecordingOffloader:
    """Offloader stand-in that records the bound log context of each call."""

    def __init__(self):
        self.contexts: list[dict] = []

    def calculate_limits(self, chart_type, inputs):
        self.contexts.append(structlog.contextvars.get_contextvars())
        return calculate_limits(chart_type, inputs)

    def detect_outliers(self, rule_name, inputs):
        return detect_outliers(rule_name, inputs)


class TestLogContext:
    """Test the cycle id bound while a cycle runs."""

    def test_cycle_bound_during_calculation(self, individuals_sequence, default_settings, viewport):
        offloader = ContextRecordingOffloader()
        engine = SPCEngine(offloader=offloader)
        engine.update(individuals_sequence, default_settings, viewport)
        engine.update(individuals_sequence, ChartSettings(spc=SpcSettings(multiplier=2)), viewport)

        assert [context["cycle"] for context in offloader.contexts] == [1, 2]
        assert engine.cycle_count == 2
        assert "cycle" not in structlog.contextvars.get_contextvars()

    def test_failed_cycles_counted(self, engine, default_settings, viewport):
        engine.update(Sequence(labels=(), numerators=[]), default_settings, viewport)
        assert engine.cycle_count == 1
        assert "cycle" not in structlog.contextvars.get_contextvars()
