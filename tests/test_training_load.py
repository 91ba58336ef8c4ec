"""Tests for chronic/acute load tracking, monotony and strain."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from loadcast.models import ActivityCategory, ActivityLoadSample, LoadState
from loadcast.policy import BoundaryPolicy, LoadDecayPolicy
from loadcast.services.training_load import (
    actual_series,
    advance,
    compute_weekly_metrics,
    daily_totals,
    overtraining_risk,
    project_series,
    state_before,
    step_week,
    steady_state_weekly_load,
    weekly_rollup,
)

DECAY = LoadDecayPolicy()
MONDAY = date(2024, 1, 1)


def test_decay_alphas():
    assert DECAY.chronic_alpha == pytest.approx(0.023528, abs=1e-6)
    assert DECAY.acute_alpha == pytest.approx(0.133122, abs=1e-6)


def test_advance_from_zero():
    state = advance(LoadState(), 100.0, DECAY)
    assert state.chronic == pytest.approx(100.0 * DECAY.chronic_alpha)
    assert state.acute == pytest.approx(100.0 * DECAY.acute_alpha)
    # Acute reacts faster, so one hard day pushes balance negative
    assert state.balance < 0


def test_rest_day_decays_state():
    state = advance(LoadState(chronic=50.0, acute=50.0), 0.0, DECAY)
    assert state.chronic < 50.0
    assert state.acute < state.chronic


def test_daily_totals_sums_same_day():
    samples = [
        ActivityLoadSample(MONDAY, 40.0, ActivityCategory.RUN),
        ActivityLoadSample(MONDAY, 25.0, ActivityCategory.BIKE),
        ActivityLoadSample(MONDAY + timedelta(days=1), 10.0),
    ]
    totals = daily_totals(samples)
    assert totals[MONDAY] == 65.0
    assert totals[MONDAY + timedelta(days=1)] == 10.0


def test_state_before_empty_history():
    assert state_before({}, MONDAY, DECAY) == LoadState()


def test_state_before_decays_missing_days():
    totals = {MONDAY: 100.0}
    state = state_before(totals, MONDAY + timedelta(days=3), DECAY)
    expected = advance(advance(advance(LoadState(), 100.0, DECAY), 0.0, DECAY), 0.0, DECAY)
    assert state.chronic == pytest.approx(expected.chronic)
    assert state.acute == pytest.approx(expected.acute)


def test_project_series_one_point_per_day():
    points = project_series(LoadState(), MONDAY, [10.0] * 10, DECAY)
    assert len(points) == 10
    assert points[0].day == MONDAY
    assert points[-1].day == MONDAY + timedelta(days=9)
    assert all(p.balance == pytest.approx(p.chronic - p.acute) for p in points)


def test_project_series_zero_load_keeps_zero_state():
    points = project_series(LoadState(), MONDAY, [0.0] * 5, DECAY)
    assert all(p.chronic == 0.0 and p.acute == 0.0 for p in points)


def test_actual_series_empty_when_end_before_start():
    assert actual_series((), MONDAY, MONDAY - timedelta(days=1), DECAY) == []


def test_actual_series_fills_gaps_with_zero():
    samples = (ActivityLoadSample(MONDAY, 50.0), ActivityLoadSample(MONDAY + timedelta(days=2), 30.0))
    points = actual_series(samples, MONDAY, MONDAY + timedelta(days=3), DECAY)
    assert [p.load for p in points] == [50.0, 0.0, 30.0, 0.0]


def test_step_week_matches_daily_iteration():
    weights = (0.0, 0.18, 0.12, 0.18, 0.07, 0.28, 0.17)
    start = LoadState(chronic=40.0, acute=55.0)
    closed = step_week(start, 350.0, weights, DECAY)
    state = start
    for w in weights:
        state = advance(state, 350.0 * w, DECAY)
    assert closed.chronic == pytest.approx(state.chronic)
    assert closed.acute == pytest.approx(state.acute)


def test_steady_state_weekly_load():
    assert steady_state_weekly_load(50.0) == 350.0


def test_weekly_metrics_uniform():
    # Zero variance means monotony is undefined; reported as 0
    metrics = compute_weekly_metrics([50.0] * 7)
    assert metrics.session_count == 7
    assert metrics.total_load == 350.0
    assert metrics.monotony == 0.0
    assert metrics.strain == 0.0


def test_weekly_metrics_varied():
    daily = [0.0, 60.0, 40.0, 60.0, 20.0, 90.0, 50.0]
    metrics = compute_weekly_metrics(daily)
    assert metrics.session_count == 6
    assert metrics.total_load == 320.0
    assert metrics.monotony > 0
    assert metrics.strain == pytest.approx(320.0 * metrics.monotony)
    assert metrics.peak_day_load == 90.0


def test_weekly_metrics_empty():
    metrics = compute_weekly_metrics([])
    assert metrics.total_load == 0
    assert metrics.monotony == 0


def test_overtraining_risk_levels():
    limits = BoundaryPolicy()
    assert overtraining_risk(3.0, 100.0, limits) == "high"
    assert overtraining_risk(1.0, 2500.0, limits) == "high"
    assert overtraining_risk(2.1, 100.0, limits) == "moderate"
    assert overtraining_risk(1.0, 100.0, limits) == "low"


def test_weekly_rollup_groups_calendar_weeks():
    points = project_series(LoadState(), MONDAY, [10.0] * 7 + [20.0] * 7, DECAY)
    rollup = weekly_rollup(points)
    assert len(rollup) == 2
    assert list(rollup["load"]) == [70.0, 140.0]
    assert rollup["chronic"].iloc[-1] == pytest.approx(points[-1].chronic)


def test_weekly_rollup_empty():
    rollup = weekly_rollup([])
    assert list(rollup.columns) == ["week", "load", "chronic", "acute", "balance"]
    assert rollup.empty
