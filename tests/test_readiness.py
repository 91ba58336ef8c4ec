"""Tests for readiness scoring and capping."""

from __future__ import annotations

import pytest

from loadcast.models import LoadState
from loadcast.policy import ReadinessPolicy
from loadcast.services.readiness import capped_readiness, readiness_band, readiness_score, state_readiness

POLICY = ReadinessPolicy()


def test_ideal_state_scores_full():
    state = LoadState(chronic=60.0, acute=52.0)
    assert state.balance == pytest.approx(8.0)
    assert state_readiness(state, 60.0, POLICY) == pytest.approx(1.0)


def test_deep_fatigue_scores_low():
    tired = LoadState(chronic=40.0, acute=80.0)
    fresh = LoadState(chronic=40.0, acute=32.0)
    assert state_readiness(tired, 60.0, POLICY) < state_readiness(fresh, 60.0, POLICY)
    assert state_readiness(tired, 60.0, POLICY) < 0.25


def test_fitness_component_saturates():
    low = state_readiness(LoadState(30.0, 22.0), 60.0, POLICY)
    high = state_readiness(LoadState(90.0, 82.0), 60.0, POLICY)
    assert high > low
    assert high == pytest.approx(1.0)


def test_zero_demand_counts_as_fit():
    assert state_readiness(LoadState(8.0, 0.0), 0.0, POLICY) == pytest.approx(1.0)


def test_readiness_score_blend():
    assert readiness_score(1.0, 1.0, POLICY) == 100.0
    assert readiness_score(0.0, 0.0, POLICY) == 0.0
    assert readiness_score(1.0, 0.0, POLICY) == 55.0
    assert readiness_score(0.0, 1.0, POLICY) == 45.0


def test_capped_readiness():
    assert capped_readiness(87.6, 65) == (65, True)
    assert capped_readiness(50.4, 65) == (50, False)
    assert capped_readiness(65.0, 65) == (65, False)


def test_readiness_bands():
    assert readiness_band(70, POLICY) == "green"
    assert readiness_band(69, POLICY) == "amber"
    assert readiness_band(50, POLICY) == "amber"
    assert readiness_band(49, POLICY) == "red"
