"""Tests for goal/plan aggregation and conflict detection."""

from __future__ import annotations

from datetime import date

import pytest

from loadcast.models import ActivityCategory, CompletionProbabilityTarget, FinishTimeTarget, Goal, PriorityTier
from loadcast.policy import DEFAULT_POLICY, TierWeights
from loadcast.services.aggregation import (
    ConflictLedger,
    detect_conflicts,
    evaluate_goal,
    normalized_target_weights,
    plan_score,
    tier_scores,
)
from loadcast.services.satisfaction import GoalState


def _goal(goal_id, priority=PriorityTier.A, day=date(2024, 4, 1), targets=None, weight=1.0):
    targets = targets or (CompletionProbabilityTarget(f"{goal_id}-finish", 0.9),)
    return Goal(goal_id, goal_id, day, priority, ActivityCategory.RUN, tuple(targets), weight)


def test_target_weights_equal_when_unset():
    targets = (CompletionProbabilityTarget("a", 0.9), CompletionProbabilityTarget("b", 0.8))
    assert normalized_target_weights(targets) == [0.5, 0.5]


def test_target_weights_share_remainder():
    targets = (CompletionProbabilityTarget("a", 0.9, weight=0.6), CompletionProbabilityTarget("b", 0.8))
    assert normalized_target_weights(targets) == pytest.approx([0.6, 0.4])


def test_target_weights_rescaled_when_all_explicit():
    targets = (CompletionProbabilityTarget("a", 0.9, weight=0.2), CompletionProbabilityTarget("b", 0.8, weight=0.2))
    assert normalized_target_weights(targets) == pytest.approx([0.5, 0.5])


def test_evaluate_goal_is_weighted_mean():
    goal = _goal("a", targets=(
        CompletionProbabilityTarget("easy", 0.5),
        CompletionProbabilityTarget("hard", 0.999),
    ))
    state = GoalState(capability=None, chronic=60.0, balance=5.0, demand_chronic=60.0)
    result = evaluate_goal(goal, state, DEFAULT_POLICY)
    by_id = {t.target_id: t.satisfaction for t in result.targets}
    assert by_id["easy"] == 1.0
    assert by_id["hard"] < 1.0
    assert result.score == pytest.approx(0.5 * by_id["easy"] + 0.5 * by_id["hard"])


def test_tier_scores_use_goal_weights():
    goals = (_goal("a1", weight=3.0), _goal("a2", weight=1.0), _goal("c", PriorityTier.C))
    tiers = tier_scores(goals, {"a1": 1.0, "a2": 0.0, "c": 0.5})
    assert tiers[PriorityTier.A] == pytest.approx(0.75)
    assert tiers[PriorityTier.C] == 0.5
    assert PriorityTier.B not in tiers


def test_plan_score_renormalizes_present_tiers():
    goals = (_goal("a"), _goal("c", PriorityTier.C))
    score = plan_score(goals, {"a": 1.0, "c": 0.0}, TierWeights())
    assert score == pytest.approx(0.6 / 0.7)


def test_plan_score_single_tier():
    assert plan_score((_goal("b", PriorityTier.B),), {"b": 0.42}, TierWeights()) == pytest.approx(0.42)


def test_conflict_resolved_by_priority():
    a = _goal("a", PriorityTier.A, date(2024, 6, 1))
    c = _goal("c", PriorityTier.C, date(2024, 3, 1))
    solo = {"a": {"a": 0.95, "c": 0.9}, "c": {"a": 0.4, "c": 0.92}}
    ledger = detect_conflicts((a, c), solo, materiality=0.05)
    assert len(ledger) == 1
    record = ledger.between("c", "a")
    assert record.winner == "a"
    assert record.reason == "priority"
    assert record.delta_b_on_a == pytest.approx(0.55)


def test_conflict_resolved_by_safety_cap():
    early = _goal("early", day=date(2024, 3, 1))
    late = _goal("late", day=date(2024, 6, 1))
    solo = {"early": {"early": 0.9, "late": 0.3}, "late": {"early": 0.3, "late": 0.9}}
    ledger = detect_conflicts((early, late), solo, 0.05, cap_limited={"early"})
    assert ledger.records[0].winner == "late"
    assert ledger.records[0].reason == "hard_safety_constraint"


def test_conflict_resolved_by_event_date():
    early = _goal("early", day=date(2024, 3, 1))
    late = _goal("late", day=date(2024, 6, 1))
    solo = {"early": {"early": 0.9, "late": 0.3}, "late": {"early": 0.3, "late": 0.9}}
    ledger = detect_conflicts((early, late), solo, 0.05)
    assert ledger.records[0].winner == "early"
    assert ledger.records[0].reason == "event_date"


def test_immaterial_tradeoff_not_recorded():
    a = _goal("a")
    b = _goal("b", PriorityTier.B)
    solo = {"a": {"a": 0.9, "b": 0.88}, "b": {"a": 0.87, "b": 0.9}}
    assert len(detect_conflicts((a, b), solo, 0.05)) == 0


def test_ledger_lookup():
    ledger = ConflictLedger()
    assert ledger.between("x", "y") is None
    solo = {"x": {"x": 1.0, "y": 0.0}, "y": {"x": 0.0, "y": 1.0}}
    ledger = detect_conflicts((_goal("x"), _goal("y", PriorityTier.B)), solo, 0.05)
    assert ledger.between("y", "x") is ledger.records[0]
    assert ledger.for_goal("y") == ledger.records
    assert ledger.for_goal("z") == []


def test_finish_target_goal_without_capability_raises():
    goal = _goal("a", targets=(FinishTimeTarget("t", 10000.0, 2400.0),))
    state = GoalState(capability=None, chronic=60.0, balance=0.0, demand_chronic=60.0)
    with pytest.raises(ValueError):
        evaluate_goal(goal, state, DEFAULT_POLICY)
