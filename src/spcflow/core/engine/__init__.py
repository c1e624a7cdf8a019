"""SPC Engine - control limits, outlier rules and incremental update cycles."""

from .change_detection import (
    ChangeFlags,
    DataState,
    RenderStage,
    SettingsState,
    compute_change_flags,
    create_data_state,
    create_settings_state,
    detect_data_changes,
    detect_settings_changes,
    hash_sequence,
    hash_settings_category,
)
from .chart_settings import (
    ChartSettings,
    ImprovementDirection,
    LimitSelection,
    LineSettings,
    OutlierSettings,
    ProcessFlagType,
    SpcSettings,
)
from .control_limits import (
    ChartSpec,
    ChartType,
    LimitInputs,
    LimitResult,
    calculate_limits,
    get_chart_spec,
)
from .outlier_rules import (
    AstronomicalRule,
    Direction,
    OutlierFlags,
    OutlierRuleLibrary,
    OutlierRuleName,
    RuleInputs,
    ShiftRule,
    TrendRule,
    TwoInThreeRule,
    check_flag_direction,
    detect_outliers,
)
from .sequence import Sequence, Subgroup, build_subgroups
from .spc_engine import CycleResult, CycleState, SPCEngine, Viewport
from .view import LineSeries, PointRecord, ViewModel, build_view

__all__ = [
    # SPC Engine
    "SPCEngine",
    "CycleResult",
    "CycleState",
    "Viewport",
    # Input
    "Sequence",
    "Subgroup",
    "build_subgroups",
    # Settings
    "ChartSettings",
    "SpcSettings",
    "OutlierSettings",
    "LineSettings",
    "LimitSelection",
    "ImprovementDirection",
    "ProcessFlagType",
    # Control Limits
    "ChartType",
    "ChartSpec",
    "LimitInputs",
    "LimitResult",
    "calculate_limits",
    "get_chart_spec",
    # Outlier Rules
    "OutlierRuleLibrary",
    "OutlierRuleName",
    "AstronomicalRule",
    "ShiftRule",
    "TrendRule",
    "TwoInThreeRule",
    "RuleInputs",
    "OutlierFlags",
    "Direction",
    "detect_outliers",
    "check_flag_direction",
    # Change Detection
    "ChangeFlags",
    "DataState",
    "SettingsState",
    "RenderStage",
    "hash_sequence",
    "hash_settings_category",
    "create_data_state",
    "create_settings_state",
    "detect_data_changes",
    "detect_settings_changes",
    "compute_change_flags",
    # View
    "ViewModel",
    "PointRecord",
    "LineSeries",
    "build_view",
]
