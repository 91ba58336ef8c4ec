"""Tests for the receding-horizon solver and periodization helpers."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

import pytest

from loadcast.models import (
    ActivityCategory,
    CompletionProbabilityTarget,
    FinishTimeTarget,
    Goal,
    LoadState,
    OptimizationStyle,
    PriorityTier,
    ProfileMetrics,
)
from loadcast.policy import DEFAULT_POLICY
from loadcast.services.boundary import day_checks, safe_limits, violations
from loadcast.services.capability import estimate_capabilities
from loadcast.services.feasibility import goal_demand
from loadcast.services.solver import (
    FallbackTier,
    PlanningContext,
    RecedingHorizonSolver,
    SolverPhase,
    heuristic_plan,
    phase_for_week,
    plan_weeks,
    solve,
    week_day_weights,
    weekday_shares,
    worse_tier,
)
from loadcast.services.training_load import project_series

MONDAY = date(2024, 1, 1)
PATTERN = DEFAULT_POLICY.periodization.day_pattern


def _goal(goal_id, days_out, priority=PriorityTier.A, targets=None):
    targets = targets or (CompletionProbabilityTarget("finish", 0.85),)
    return Goal(goal_id, goal_id, MONDAY + timedelta(days=days_out), priority, ActivityCategory.RUN, tuple(targets))


def _context(goals, weeks, style=OptimizationStyle.BALANCED, initial=LoadState(40.0, 40.0), previous=280.0):
    limits = safe_limits(style, DEFAULT_POLICY.boundary)
    return PlanningContext(
        goals=tuple(goals),
        start=MONDAY,
        weeks=weeks,
        initial=initial,
        previous_week_load=previous,
        lead_in=(),
        limits=limits,
        safe_limits=limits,
        demands={g.goal_id: goal_demand(g, DEFAULT_POLICY.demand) for g in goals},
        capabilities=estimate_capabilities([], [g.category for g in goals], MONDAY, ProfileMetrics(), DEFAULT_POLICY.capability),
        shares=weekday_shares(PATTERN),
        policy=DEFAULT_POLICY,
    )


def test_phase_for_week():
    assert phase_for_week(4, 12) == "Recovery"
    assert phase_for_week(1, 12) == "Base"
    assert phase_for_week(6, 12) == "Build"
    assert phase_for_week(10, 12) == "Peak"
    assert phase_for_week(19, 20) == "Taper"


def test_weekday_shares_sum_to_one():
    shares = weekday_shares(PATTERN)
    assert sum(shares) == pytest.approx(1.0)
    assert shares[0] == 0.0


def test_weekday_shares_respect_rest_days():
    shares = weekday_shares(PATTERN, rest_days=(5, 6))
    assert shares[5] == 0.0 and shares[6] == 0.0
    assert sum(shares) == pytest.approx(1.0)


def test_weekday_shares_session_limits():
    capped = weekday_shares(PATTERN, max_sessions=3)
    assert sum(1 for s in capped if s > 0) == 3
    filled = weekday_shares(PATTERN, min_sessions=7)
    assert sum(1 for s in filled if s > 0) == 7
    assert sum(filled) == pytest.approx(1.0)


def test_week_day_weights_rotate_with_start_day():
    shares = weekday_shares(PATTERN)
    wednesday = MONDAY + timedelta(days=2)
    weights = week_day_weights(shares, wednesday)
    assert weights[0] == shares[2]
    assert weights[-1] == shares[1]


def test_plan_weeks():
    assert plan_weeks(MONDAY, MONDAY) == 1
    assert plan_weeks(MONDAY, MONDAY + timedelta(days=6)) == 1
    assert plan_weeks(MONDAY, MONDAY + timedelta(days=7)) == 2


def test_worse_tier():
    assert worse_tier(FallbackTier.FULL_LATTICE, FallbackTier.HEURISTIC) is FallbackTier.HEURISTIC
    assert worse_tier(FallbackTier.CAP_BASELINE, FallbackTier.REDUCED_LATTICE) is FallbackTier.CAP_BASELINE


def test_heuristic_respects_ramp_cap():
    ctx = _context([_goal("hm", 84, targets=(FinishTimeTarget("t", 21097.0, 5400.0),))], weeks=12)
    loads, capped = heuristic_plan(ctx)
    assert capped
    prev = ctx.previous_week_load
    for load in loads:
        assert load <= ctx.limits.ramp_ceiling(prev) + 1e-9
        prev = load


def test_heuristic_tapers_into_goal():
    ctx = _context([_goal("5k", 27)], weeks=4, previous=200.0)
    loads, _ = heuristic_plan(ctx)
    assert loads[-1] < loads[-2]


def test_state_machine_transitions():
    ctx = _context([_goal("a", 20)], weeks=3)
    solver = RecedingHorizonSolver(ctx, OptimizationStyle.BALANCED)
    assert solver.state.phase is SolverPhase.IDLE

    state, action = solver.advance()
    assert state.phase is SolverPhase.SOLVING and state.week == 0
    assert action is None

    state, action = solver.advance()
    assert state.phase is SolverPhase.COMMITTED and state.week == 0
    assert action is not None and action.week == 0
    assert solver.weekly_loads == []

    state, action = solver.advance()
    assert state.phase is SolverPhase.SOLVING and state.week == 1
    assert solver.weekly_loads == [pytest.approx(solver.decisions[0].load)]

    result = solver.run()
    assert solver.state.phase is SolverPhase.DONE
    assert len(result.weekly_loads) == 3
    assert len(result.daily_loads) == 21
    # Terminal state is absorbing
    assert solver.advance() == (solver.state, None)


def test_solver_is_deterministic():
    goals = [_goal("a", 55), _goal("b", 30, PriorityTier.B)]
    first = solve(_context(goals, weeks=8), OptimizationStyle.BALANCED)
    second = solve(_context(goals, weeks=8), OptimizationStyle.BALANCED)
    assert first.weekly_loads == second.weekly_loads
    assert [d.decided_by for d in first.decisions] == [d.decided_by for d in second.decisions]


def test_committed_loads_respect_hard_ramp():
    ctx = _context([_goal("a", 80, targets=(FinishTimeTarget("t", 21097.0, 5400.0),))], weeks=12)
    result = solve(ctx, OptimizationStyle.BALANCED)
    prev = ctx.previous_week_load
    for load in result.weekly_loads:
        assert load <= ctx.limits.ramp_ceiling(prev) + 1e-6
        prev = load


def test_budget_never_exceeded_with_many_goals():
    goals = [_goal(f"g{i:02d}", 30 + 30 * i, PriorityTier.B if i % 2 else PriorityTier.A) for i in range(10)]
    ctx = _context(goals, weeks=52)
    result = solve(ctx, OptimizationStyle.BALANCED)
    profile = DEFAULT_POLICY.solver_profile(OptimizationStyle.BALANCED)
    assert result.evaluations <= profile.budget
    assert result.budget == profile.budget
    assert len(result.weekly_loads) == 52
    assert result.worst_tier is not FallbackTier.FULL_LATTICE
    assert result.decisions[0].tier is FallbackTier.FULL_LATTICE


def test_decisions_record_tie_break_stage():
    ctx = _context([_goal("a", 40)], weeks=6, style=OptimizationStyle.CONSERVATIVE)
    result = solve(ctx, OptimizationStyle.CONSERVATIVE)
    stages = {"objective", "closest_to_previous", "earliest_goal_date", "candidate_id",
              "only_feasible_candidate", "heuristic", "cap_baseline"}
    assert all(d.decided_by in stages for d in result.decisions)


def test_single_day_weeks_break_no_hard_cap():
    decay = DEFAULT_POLICY.decay
    lead_in = project_series(LoadState(40.0, 40.0), MONDAY - timedelta(days=14), [40.0] * 14, decay)
    ctx = _context([_goal("a", 60, targets=(FinishTimeTarget("t", 21097.0, 5400.0),))], weeks=9)
    ctx = replace(
        ctx,
        lead_in=tuple(lead_in),
        shares=weekday_shares(PATTERN, rest_days=(0, 1, 2, 3, 4, 5), min_sessions=1),
    )
    result = solve(ctx, OptimizationStyle.BALANCED)
    points = project_series(ctx.initial, MONDAY, list(result.daily_loads), decay)
    broken = [
        (c.day, cap) for c in day_checks(points, ctx.limits, lead_in)
        for cap in violations(c, ctx.limits)[0]
    ]
    assert broken == []
    assert sum(result.weekly_loads) > 0
    assert all(load == 0.0 for i, load in enumerate(result.daily_loads) if i % 7 != 6)
