"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Generator

import pytest

from spcflow.core.config import Settings, get_settings
from spcflow.core.engine.chart_settings import ChartSettings
from spcflow.core.engine.sequence import Sequence
from spcflow.core.engine.spc_engine import SPCEngine, Viewport


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    """Make every test read SPCFLOW_ settings afresh."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def individuals_values() -> list[float]:
    """Ten stable individual measurements."""
    return [10.0, 12.0, 11.0, 13.0, 10.0, 11.0, 12.0, 14.0, 11.0, 10.0]


@pytest.fixture
def individuals_sequence(individuals_values: list[float]) -> Sequence:
    """Sequence of the individual measurements labelled P1..P10."""
    return Sequence(
        labels=tuple(f"P{i + 1}" for i in range(len(individuals_values))),
        numerators=individuals_values,
    )


@pytest.fixture
def proportion_sequence() -> Sequence:
    """Weekly defect counts out of varying sample sizes."""
    return Sequence(
        labels=("W1", "W2", "W3", "W4", "W5", "W6"),
        numerators=[12, 15, 9, 14, 11, 13],
        denominators=[100, 120, 90, 110, 100, 105],
    )


@pytest.fixture
def default_settings() -> ChartSettings:
    return ChartSettings()


@pytest.fixture
def viewport() -> Viewport:
    return Viewport(800, 600)


@pytest.fixture
def engine() -> SPCEngine:
    """Engine calculating synchronously."""
    return SPCEngine()


@pytest.fixture
def thread_settings() -> Settings:
    """Offload settings using a thread pool that offloads every call."""
    return Settings(
        offload_executor="thread",
        offload_max_workers=2,
        offload_min_points=0,
        offload_timeout_seconds=2.0,
    )
