"""SPC Engine orchestrator for running update cycles over a sequence.

This module provides the main SPCEngine class that coordinates one update
cycle: input validation, change detection, control limit calculation,
outlier detection and view construction. Results from the previous cycle are
retained and reused whenever the change flags allow it.
"""

import structlog
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from spcflow.core.engine.change_detection import (
    ChangeFlags,
    DataState,
    SettingsState,
    compute_change_flags,
    create_data_state,
    create_settings_state,
)
from spcflow.core.engine.chart_settings import ChartSettings
from spcflow.core.engine.control_limits import (
    LimitInputs,
    LimitResult,
    calculate_limits,
    get_chart_spec,
)
from spcflow.core.engine.outlier_rules import (
    OutlierFlags,
    build_rule_inputs,
    check_flag_direction,
    detect_outliers,
)
from spcflow.core.engine.sequence import Sequence, Subgroup, build_subgroups
from spcflow.core.engine.view import ViewModel, build_view
from spcflow.core.exceptions import CalculationDomainError, ValidationError

if TYPE_CHECKING:
    from spcflow.core.offload.manager import CalculationOffloader

logger = structlog.get_logger(__name__)


class CycleState(str, Enum):
    """Where an update cycle is, or where the last one ended."""
    IDLE = "idle"
    VALIDATING_INPUT = "validating_input"
    ERROR = "error"
    RECOMPUTING_LIMITS = "recomputing_limits"
    RECOMPUTING_OUTLIERS = "recomputing_outliers"
    BUILDING_VIEW = "building_view"
    DONE = "done"


@dataclass(frozen=True)
class Viewport:
    """Drawing area size in pixels."""
    width: float
    height: float


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one update cycle.

    Attributes:
        status: True if the cycle completed
        error: Validation failure message, None on success
        error_type: Exception class name of the failure
        warning: Row exclusion messages, one per line
        flags: What changed and what was recomputed
        view: Render-ready records (the previous view after a failure)
        limits: Control limits in effect after the cycle
        outliers: Outlier flags in effect after the cycle
        processing_time_ms: Time taken by the cycle in milliseconds
    """
    status: bool
    error: str | None = None
    error_type: str | None = None
    warning: str = ""
    flags: ChangeFlags | None = None
    view: ViewModel | None = None
    limits: LimitResult | None = None
    outliers: OutlierFlags | None = None
    processing_time_ms: float = 0.0


class SPCEngine:
    """Main SPC update engine.

    Orchestrates one update cycle:
    1. Validates the sequence, settings and viewport
    2. Builds subgroups from manual splits and grouping breaks
    3. Compares snapshots with the previous cycle to decide what to redo
    4. Recalculates control limits per subgroup, then scales, truncates and
       attaches overlays
    5. Re-runs the enabled outlier rules per subgroup and filters flags by
       improvement direction
    6. Builds render-ready records

    A failed validation leaves every retained result untouched. The engine is
    not reentrant.

    Args:
        offloader: Optional initialised offloader used for limit and outlier
            calculations; the caller owns its lifecycle
    """

    def __init__(self, offloader: "CalculationOffloader | None" = None):
        self._offloader = offloader
        self._state = CycleState.IDLE
        self._running = False
        self._first_run = True
        self._cycles = 0

        self._prev_data: DataState | None = None
        self._prev_settings: SettingsState | None = None
        self._limits: LimitResult | None = None
        self._outliers: OutlierFlags | None = None
        self._subgroups: list[Subgroup] = []
        self._view: ViewModel | None = None

    @property
    def last_state(self) -> CycleState:
        return self._state

    @property
    def limits(self) -> LimitResult | None:
        return self._limits

    @property
    def outliers(self) -> OutlierFlags | None:
        return self._outliers

    @property
    def view(self) -> ViewModel | None:
        return self._view

    @property
    def is_first_run(self) -> bool:
        return self._first_run

    @property
    def cycle_count(self) -> int:
        """Update calls so far, including failed ones. Bound to logs as ``cycle``."""
        return self._cycles

    def update(
        self,
        sequence: Sequence,
        settings: ChartSettings,
        viewport: Viewport | tuple[float, float],
        split_indexes: Iterable[int] = (),
    ) -> CycleResult:
        """Run one update cycle.

        Args:
            sequence: Validated points for this cycle
            settings: Chart settings
            viewport: Drawing area size
            split_indexes: Manual rebaseline positions (a segment ends after each)

        Returns:
            CycleResult. Validation failures are reported with status False.

        Raises:
            RuntimeError: If called while a cycle is already running
            CalculationDomainError: If the chart type or a rule is unknown

        Example:
            >>> engine = SPCEngine()
            >>> result = engine.update(sequence, ChartSettings(), Viewport(800, 600))
            >>> result.status, result.flags.limits_need_recalc
            (True, True)
        """
        if self._running:
            raise RuntimeError("SPCEngine.update is not reentrant")
        self._running = True
        self._cycles += 1
        try:
            with structlog.contextvars.bound_contextvars(cycle=self._cycles):
                return self._run_cycle(sequence, settings, viewport, tuple(split_indexes))
        finally:
            self._running = False

    def _run_cycle(
        self,
        sequence: Sequence,
        settings: ChartSettings,
        viewport: Viewport | tuple[float, float],
        split_indexes: tuple[int, ...],
    ) -> CycleResult:
        start_time = time.perf_counter()
        if not isinstance(viewport, Viewport):
            viewport = Viewport(*viewport)
        logger.debug("cycle_started", points=len(sequence), splits=len(split_indexes))

        # Step 1: Validate before touching any retained state
        self._state = CycleState.VALIDATING_INPUT
        try:
            self._validate(sequence, settings, viewport)
        except ValidationError as exc:
            self._state = CycleState.ERROR
            logger.warning("cycle_validation_failed", error=str(exc))
            return CycleResult(
                status=False,
                error=str(exc),
                error_type=type(exc).__name__,
                view=self._view,
                limits=self._limits,
                outliers=self._outliers,
                processing_time_ms=(time.perf_counter() - start_time) * 1000,
            )
        except CalculationDomainError:
            self._state = CycleState.ERROR
            logger.error("cycle_unknown_chart_type", chart_type=str(settings.spc.chart_type))
            raise

        # Step 2: Subgroups and change detection
        subgroups = build_subgroups(len(sequence), split_indexes, sequence.grouping_indexes)
        data_state = create_data_state(
            sequence.numerators,
            sequence.denominators,
            sequence.labels,
            (*split_indexes, *sequence.grouping_indexes),
            viewport.width,
            viewport.height,
            dispersions=sequence.dispersions,
            overlays=(
                sequence.alt_targets,
                sequence.speclimits_lower,
                sequence.speclimits_upper,
            ),
        )
        settings_state = create_settings_state(settings)
        flags = compute_change_flags(
            self._prev_data,
            data_state,
            self._prev_settings,
            settings_state,
            self._first_run,
        )

        try:
            # Step 3: Control limits
            limits = self._limits
            if flags.limits_need_recalc or limits is None:
                self._state = CycleState.RECOMPUTING_LIMITS
                limits = self._compute_limits(sequence, settings, subgroups)
            else:
                logger.debug("limits_reused", points=len(limits))
            limits_recomputed = limits is not self._limits

            # Step 4: Outlier flags
            outliers = self._outliers
            if flags.outliers_need_recalc or limits_recomputed or outliers is None:
                self._state = CycleState.RECOMPUTING_OUTLIERS
                outliers = self._compute_outliers(limits, settings, subgroups)
            outliers_recomputed = outliers is not self._outliers
        except CalculationDomainError:
            self._state = CycleState.ERROR
            logger.error("cycle_calculation_failed", chart_type=settings.spc.chart_type.value)
            raise

        # Step 5: View
        self._state = CycleState.BUILDING_VIEW
        view = self._view
        if view is None or outliers_recomputed or "lines" in flags.settings_changed:
            view = build_view(sequence, limits, outliers, subgroups, settings.lines)

        # Commit the cycle
        self._prev_data = data_state
        self._prev_settings = settings_state
        self._limits = limits
        self._outliers = outliers
        self._subgroups = subgroups
        self._view = view
        self._first_run = False
        self._state = CycleState.DONE

        warning = sequence.warning_message
        if warning:
            logger.warning("rows_excluded", count=len(sequence.warnings))

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "cycle_complete",
            points=len(sequence),
            subgroups=len(subgroups),
            limits_recomputed=limits_recomputed,
            outliers_recomputed=outliers_recomputed,
            render=sorted(stage.value for stage in flags.render_needed),
            processing_time_ms=processing_time_ms,
        )
        return CycleResult(
            status=True,
            warning=warning,
            flags=flags,
            view=view,
            limits=limits,
            outliers=outliers,
            processing_time_ms=processing_time_ms,
        )

    def _validate(
        self,
        sequence: Sequence,
        settings: ChartSettings,
        viewport: Viewport,
    ) -> None:
        """Validate the cycle inputs.

        Raises:
            ValidationError: On any structural failure
        """
        if sequence.validation_error:
            raise ValidationError(sequence.validation_error)
        if len(sequence) == 0:
            raise ValidationError("Sequence has no valid points")

        mismatched = sequence.array_length_mismatches()
        if mismatched:
            raise ValidationError(
                f"Array lengths do not match numerators: {', '.join(mismatched)}"
            )

        spec = get_chart_spec(settings.spc.chart_type)
        for name in spec.required_inputs:
            if getattr(sequence, name) is None:
                raise ValidationError(
                    f"Chart type '{spec.chart_type.value}' requires {name}"
                )

        if viewport.width < 0 or viewport.height < 0:
            raise ValidationError(
                f"Viewport size must not be negative, got {viewport.width}x{viewport.height}"
            )

    def _compute_limits(
        self,
        sequence: Sequence,
        settings: ChartSettings,
        subgroups: list[Subgroup],
    ) -> LimitResult:
        """Calculate limits per subgroup, join them and apply scaling and truncation."""
        spc = settings.spc
        calculate = self._offloader.calculate_limits if self._offloader else calculate_limits
        subset = set(spc.subset_points)

        def cut(arr):
            return None if arr is None else arr[subgroup.as_slice()]

        parts = []
        for subgroup in subgroups:
            inputs = LimitInputs(
                numerators=cut(sequence.numerators),
                denominators=cut(sequence.denominators),
                dispersions=cut(sequence.dispersions),
                outliers_in_limits=spc.outliers_in_limits,
                # Global positions become local; a subgroup without any uses all points
                subset_points=tuple(
                    sorted(i - subgroup.start for i in subset if subgroup.start <= i < subgroup.end)
                ),
            )
            parts.append(calculate(spc.chart_type, inputs))

        limits = LimitResult.concatenate(parts).with_overlays(
            sequence.alt_targets,
            sequence.speclimits_lower,
            sequence.speclimits_upper,
        )
        limits = limits.scaled(
            settings.derived_multiplier,
            include_alt_targets=spc.multiplier_alt_target,
            include_speclimits=spc.multiplier_specification,
        )
        return limits.truncated(spc.ll_truncate, spc.ul_truncate)

    def _compute_outliers(
        self,
        limits: LimitResult,
        settings: ChartSettings,
        subgroups: list[Subgroup],
    ) -> OutlierFlags:
        """Run the enabled rules per subgroup and filter by improvement direction."""
        outlier_settings = settings.outliers
        spec = get_chart_spec(settings.spc.chart_type)
        detect = self._offloader.detect_outliers if self._offloader else detect_outliers

        results = {}
        for rule_name, inputs in build_rule_inputs(
            outlier_settings, limits, spec.has_control_limits
        ).items():
            flags = []
            for subgroup in subgroups:
                flags.extend(detect(rule_name, inputs.for_subgroup(subgroup)))
            results[rule_name] = check_flag_direction(
                flags,
                outlier_settings.improvement_direction,
                outlier_settings.process_flag_type,
            )
        return OutlierFlags.from_rule_results(len(limits), results)
