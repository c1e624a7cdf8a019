"""Change detection between update cycles.

Each cycle takes a snapshot of its inputs: hashes of the data arrays, the
viewport size and one hash per settings category. Comparing the snapshot with
the previous cycle's decides whether limits and outliers must be recomputed
and which render stages must run.

Numbers are canonicalised to six decimal places before hashing, so values
that differ by less than 1e-6 read as unchanged.
"""

import json
import math
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
_UINT32_MASK = 0xFFFFFFFF
# Unit separator hashed between elements so ["ab", "c"] != ["a", "bc"]
ELEMENT_SEPARATOR = "\x1f"

EMPTY_HASH = "empty"
NULL_HASH = "null"


class RenderStage(str, Enum):
    """Render stages a cycle may request. ALL stands for every stage."""
    DOTS = "dots"
    LINES = "lines"
    ICONS = "icons"
    X_AXIS = "x_axis"
    Y_AXIS = "y_axis"
    VALUE_LABELS = "value_labels"
    LINE_LABELS = "line_labels"
    SUMMARY_TABLE = "summary_table"
    DOWNLOAD_BUTTON = "download_button"
    ALL = "all"


SETTINGS_RENDER_STAGES: dict[str, frozenset[RenderStage]] = {
    "spc": frozenset({RenderStage.DOTS, RenderStage.LINES, RenderStage.ICONS}),
    "lines": frozenset({RenderStage.LINES, RenderStage.LINE_LABELS}),
    "scatter": frozenset({RenderStage.DOTS}),
    "outliers": frozenset({RenderStage.DOTS, RenderStage.LINES, RenderStage.ICONS}),
    "x_axis": frozenset({RenderStage.X_AXIS}),
    "y_axis": frozenset({RenderStage.Y_AXIS}),
    "canvas": frozenset({RenderStage.ALL}),
    "labels": frozenset({RenderStage.VALUE_LABELS}),
    "nhs_icons": frozenset({RenderStage.ICONS}),
    "summary_table": frozenset({RenderStage.SUMMARY_TABLE}),
    "download": frozenset({RenderStage.DOWNLOAD_BUTTON}),
}

DATA_RENDER_STAGES = frozenset({
    RenderStage.DOTS,
    RenderStage.LINES,
    RenderStage.ICONS,
    RenderStage.X_AXIS,
    RenderStage.Y_AXIS,
    RenderStage.VALUE_LABELS,
    RenderStage.LINE_LABELS,
})

VIEWPORT_RENDER_STAGES = frozenset({RenderStage.X_AXIS, RenderStage.Y_AXIS})

RESIZE_RENDER_STAGES = frozenset({RenderStage.DOTS, RenderStage.LINES})

# Categories whose changes force recomputation even with unchanged data
LIMIT_RECALC_CATEGORIES = frozenset({"spc"})
OUTLIER_RECALC_CATEGORIES = frozenset({"outliers"})


def canonicalize(value: Any) -> str:
    """Deterministic string form of a value for hashing.

    Examples:
        >>> canonicalize(1.0000004)
        '1.000000'
        >>> canonicalize({"b": [1, None], "a": True})
        '{a:true,b:[1.000000,null]}'
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, numbers.Real):
        number = float(value)
        if math.isnan(number):
            return "NaN"
        if math.isinf(number):
            return "Inf" if number > 0 else "-Inf"
        return f"{number:.6f}"
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        items = ",".join(
            f"{key}:{canonicalize(value[key])}" for key in sorted(value, key=str)
        )
        return "{" + items + "}"
    if isinstance(value, Iterable):
        return "[" + ",".join(canonicalize(item) for item in value) + "]"
    return str(value)


def hash_sequence(values: Iterable[Any] | None) -> str:
    """FNV-1a 32-bit hash over the canonical form of each element.

    A separator is hashed between consecutive elements, so moving characters
    across an element boundary changes the digest.

    Args:
        values: Elements to hash, in order

    Returns:
        Lower-case hex digest, or "empty" for None or an empty input

    Examples:
        >>> hash_sequence([1.0000001, 2]) == hash_sequence([1.0000004, 2])
        True
        >>> hash_sequence([])
        'empty'
    """
    if values is None:
        return EMPTY_HASH
    digest = FNV_OFFSET_BASIS
    seen = False
    for value in values:
        text = canonicalize(value)
        if seen:
            text = ELEMENT_SEPARATOR + text
        seen = True
        for char in text:
            digest ^= ord(char)
            digest = (digest * FNV_PRIME) & _UINT32_MASK
    if not seen:
        return EMPTY_HASH
    return format(digest, "x")


def hash_settings_category(settings: BaseModel | Mapping[str, Any] | None) -> str:
    """Hash one settings category.

    Keys are sorted and callables skipped; each remaining entry is serialised
    as ``key:json`` before hashing.
    """
    if settings is None:
        return NULL_HASH
    if isinstance(settings, BaseModel):
        settings = settings.model_dump(mode="json")
    pairs = [
        f"{key}:{json.dumps(settings[key], sort_keys=True, default=str)}"
        for key in sorted(settings)
        if not callable(settings[key])
    ]
    return hash_sequence(pairs)


@dataclass(frozen=True)
class DataState:
    """Snapshot of one cycle's data and viewport."""
    numerators_hash: str
    denominators_hash: str | None
    labels_hash: str
    length: int
    break_indexes_hash: str
    viewport_width: float
    viewport_height: float
    dispersions_hash: str | None = None
    overlays_hash: str = NULL_HASH


@dataclass(frozen=True)
class SettingsState:
    """One hash per settings category."""
    category_hashes: Mapping[str, str]


@dataclass(frozen=True)
class ChangeFlags:
    """What changed since the previous cycle and what must be redone."""
    data_changed: bool
    settings_changed: frozenset[str]
    limits_need_recalc: bool
    outliers_need_recalc: bool
    render_needed: frozenset[RenderStage]
    resize_only: bool
    viewport_changed: bool

    def needs_render(self, stage: RenderStage) -> bool:
        return RenderStage.ALL in self.render_needed or stage in self.render_needed


def create_data_state(
    numerators: Iterable[float] | None,
    denominators: Iterable[float] | None,
    labels: Iterable[str] | None,
    break_indexes: Iterable[int] | None,
    viewport_width: float,
    viewport_height: float,
    dispersions: Iterable[float] | None = None,
    overlays: Iterable[Iterable[float] | None] = (),
) -> DataState:
    """Snapshot the data arrays and viewport for comparison.

    Break indexes are hashed as a sorted, deduplicated set. Overlay series
    (alternative targets, specification limits) are hashed together, with a
    missing series distinct from an empty one.
    """
    numerators = list(numerators) if numerators is not None else None
    overlay_hashes = [
        hash_sequence(series) if series is not None else NULL_HASH for series in overlays
    ]
    return DataState(
        numerators_hash=hash_sequence(numerators),
        denominators_hash=hash_sequence(denominators) if denominators is not None else None,
        labels_hash=hash_sequence(labels) if labels is not None else NULL_HASH,
        length=len(numerators) if numerators is not None else 0,
        break_indexes_hash=hash_sequence(sorted(set(break_indexes or ()))),
        viewport_width=viewport_width,
        viewport_height=viewport_height,
        dispersions_hash=hash_sequence(dispersions) if dispersions is not None else None,
        overlays_hash=hash_sequence(overlay_hashes) if overlay_hashes else NULL_HASH,
    )


def create_settings_state(settings: BaseModel | Mapping[str, Any]) -> SettingsState:
    """Hash every settings category."""
    if isinstance(settings, BaseModel):
        categories = {name: getattr(settings, name) for name in type(settings).model_fields}
    else:
        categories = dict(settings)
    return SettingsState(
        category_hashes={
            name: hash_settings_category(value) for name, value in categories.items()
        }
    )


def detect_data_changes(
    prev: DataState | None,
    current: DataState,
) -> tuple[bool, bool, bool]:
    """Compare two data snapshots.

    Returns:
        Tuple of (data_changed, resize_only, viewport_changed)
    """
    if prev is None:
        return True, False, True

    viewport_changed = (
        prev.viewport_width != current.viewport_width
        or prev.viewport_height != current.viewport_height
    )
    data_changed = (
        prev.numerators_hash != current.numerators_hash
        or prev.denominators_hash != current.denominators_hash
        or prev.dispersions_hash != current.dispersions_hash
        or prev.overlays_hash != current.overlays_hash
        or prev.labels_hash != current.labels_hash
        or prev.length != current.length
        or prev.break_indexes_hash != current.break_indexes_hash
    )
    return data_changed, viewport_changed and not data_changed, viewport_changed


def detect_settings_changes(
    prev: SettingsState | None,
    current: SettingsState,
) -> frozenset[str]:
    """Names of the categories whose hash differs (all of them without a previous state)."""
    if prev is None:
        return frozenset(current.category_hashes)
    return frozenset(
        category
        for category, digest in current.category_hashes.items()
        if prev.category_hashes.get(category) != digest
    )


def compute_change_flags(
    prev_data: DataState | None,
    current_data: DataState,
    prev_settings: SettingsState | None,
    current_settings: SettingsState,
    is_first_run: bool,
) -> ChangeFlags:
    """Decide what to recompute and re-render this cycle.

    Args:
        prev_data: Previous cycle's data snapshot (None before the first cycle)
        current_data: This cycle's data snapshot
        prev_settings: Previous cycle's settings snapshot
        current_settings: This cycle's settings snapshot
        is_first_run: True until a cycle has completed

    Returns:
        ChangeFlags for this cycle. The first run recomputes everything and
        requests the ALL render stage.
    """
    data_changed, resize_only, viewport_changed = detect_data_changes(prev_data, current_data)
    settings_changed = detect_settings_changes(prev_settings, current_settings)

    if is_first_run:
        return ChangeFlags(
            data_changed=True,
            settings_changed=settings_changed,
            limits_need_recalc=True,
            outliers_need_recalc=True,
            render_needed=frozenset({RenderStage.ALL}),
            resize_only=False,
            viewport_changed=True,
        )

    render: set[RenderStage] = set()
    limits_need_recalc = False
    outliers_need_recalc = False

    if data_changed:
        limits_need_recalc = True
        outliers_need_recalc = True
        render |= DATA_RENDER_STAGES

    for category in settings_changed:
        if category in LIMIT_RECALC_CATEGORIES:
            limits_need_recalc = True
            outliers_need_recalc = True
        if category in OUTLIER_RECALC_CATEGORIES:
            outliers_need_recalc = True
        render |= SETTINGS_RENDER_STAGES.get(category, frozenset())

    if viewport_changed:
        render |= VIEWPORT_RENDER_STAGES

    if resize_only and not limits_need_recalc:
        render |= RESIZE_RENDER_STAGES

    return ChangeFlags(
        data_changed=data_changed,
        settings_changed=settings_changed,
        limits_need_recalc=limits_need_recalc,
        outliers_need_recalc=outliers_need_recalc,
        render_needed=frozenset(render),
        resize_only=resize_only,
        viewport_changed=viewport_changed,
    )
