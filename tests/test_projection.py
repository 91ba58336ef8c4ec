"""End-to-end tests for the projection pipeline."""

from __future__ import annotations

import logging
from datetime import date, timedelta

import pytest

from loadcast.config import Settings
from loadcast.models import BoundaryLevel
from loadcast.services.projection import build_projection, project_from_payload
from loadcast.validators import ProjectionValidationError, validate_request

SETTINGS = Settings()
START = date(2024, 1, 1)
PATTERN = [0.0, 50.0, 40.0, 55.0, 30.0, 80.0, 60.0]


def _iso(d):
    return d.isoformat()


def _history(weeks=8, end=START):
    first = end - timedelta(days=7 * weeks)
    return [
        {"day": _iso(first + timedelta(days=i)), "load": PATTERN[i % 7], "category": "run"}
        for i in range(7 * weeks)
    ]


def _evidence():
    # Efforts on a critical speed of 3.8 m/s with 180 m of reserve
    durations = [180, 600, 1500, 2400, 3600]
    return [
        {
            "category": "run",
            "duration_seconds": t,
            "output": 3.8 + 180.0 / t,
            "recorded_on": _iso(START - timedelta(days=5 + 5 * i)),
        }
        for i, t in enumerate(durations)
    ]


def _half_goal(goal_id="spring-half", priority="A", days_out=84):
    return {
        "goal_id": goal_id,
        "name": "Half marathon",
        "target_date": _iso(START + timedelta(days=days_out)),
        "priority": priority,
        "category": "run",
        "targets": [
            {"kind": "finish_time", "target_id": "finish", "distance_m": 21097.0, "target_seconds": 6300},
            {"kind": "completion_probability", "target_id": "complete", "target_probability": 0.9},
        ],
    }


def _payload(goals=None, days=91, **overrides):
    payload = {
        "goals": goals or [_half_goal()],
        "window": {"start": _iso(START), "end": _iso(START + timedelta(days=days - 1))},
        "history": _history(),
        "evidence": _evidence(),
        "profile": {"weight_kg": 64},
    }
    payload.update(overrides)
    return payload


def _reversed(payload):
    flipped = dict(payload)
    flipped["goals"] = [dict(g, targets=list(reversed(g["targets"]))) for g in reversed(payload["goals"])]
    flipped["history"] = list(reversed(payload["history"]))
    flipped["evidence"] = list(reversed(payload["evidence"]))
    return flipped


def test_projection_shape():
    out = project_from_payload(_payload(), SETTINGS)
    assert len(out.timeline) == 91
    assert out.timeline[0].day == START
    assert out.timeline[-1].day == START + timedelta(days=90)
    assert len(out.weeks) == 13
    assert out.weeks[0].week_start == START
    assert len(out.input_digest) == 64
    assert out.policy_version == SETTINGS.policy_version
    assert out.mode == "safe_default"
    assert out.as_of == START - timedelta(days=1)
    assert [g.goal_id for g in out.goals] == ["spring-half"]
    assert 0.0 <= out.plan_score <= 1.0
    assert out.diagnostics.candidates_evaluated <= out.diagnostics.budget


def test_schedule_band_brackets_schedule():
    out = project_from_payload(_payload(), SETTINGS)
    for week in out.weeks:
        assert week.scheduled_low <= week.scheduled_load <= week.scheduled_high


def test_readiness_never_exceeds_ceiling():
    out = project_from_payload(_payload(), SETTINGS)
    for r in out.readiness:
        assert 0 <= r.readiness <= r.readiness_ceiling
        assert r.readiness_ceiling == out.feasibility[0].readiness_cap
    assert out.plan_readiness <= out.plan_readiness_ceiling


def test_projection_is_deterministic():
    first = project_from_payload(_payload(), SETTINGS)
    second = project_from_payload(_payload(), SETTINGS)
    assert first.to_json() == second.to_json()


def test_input_order_does_not_change_output():
    goals = [_half_goal(), _half_goal("tune-up", "B", days_out=42)]
    payload = _payload(goals)
    forward = project_from_payload(payload, SETTINGS)
    backward = project_from_payload(_reversed(payload), SETTINGS)
    assert forward.input_digest == backward.input_digest
    assert forward.to_json() == backward.to_json()


def test_to_dict_is_json_ready():
    data = project_from_payload(_payload(), SETTINGS).to_dict()
    assert data["window_start"] == "2024-01-01"
    assert data["active_caps"]["enforcement"]["ramp"] == "hard"
    assert data["diagnostics"]["fallback_tier"] in ("full_lattice", "reduced_lattice", "heuristic", "cap_baseline")


def _marathon_payload(**overrides):
    goal = {
        "goal_id": "marathon",
        "name": "Marathon",
        "target_date": _iso(START + timedelta(days=14)),
        "priority": "A",
        "category": "run",
        "targets": [{"kind": "finish_time", "target_id": "finish", "distance_m": 42195.0, "target_seconds": 10800}],
    }
    evidence = [{"category": "run", "duration_seconds": 180, "output": 4.5, "recorded_on": _iso(START - timedelta(days=3))}]
    return _payload([goal], days=21, history=[], evidence=evidence, **overrides)


def test_impossible_goal_is_flagged_and_capped():
    out = project_from_payload(_marathon_payload(), SETTINGS)
    feasibility = out.feasibility[0]
    assert feasibility.band in ("infeasible", "nearly_impossible")
    readiness = out.readiness[0]
    assert readiness.readiness_ceiling <= 50
    assert readiness.readiness <= readiness.readiness_ceiling
    assert any(flag.startswith("goal_") for flag in out.risk_flags)


def test_disabled_readiness_cap_keeps_safe_readiness_for_impossible_goal():
    plan = {
        "mode": "risk_accepted",
        "risk_acceptance": {"affirmed": True, "accepted_on": _iso(START)},
        "constraint_policy": {"readiness_cap": "disabled"},
    }
    out = project_from_payload(_marathon_payload(plan=plan), SETTINGS)
    readiness = out.readiness[0]
    assert readiness.readiness_ceiling == 100
    assert out.plan_readiness_ceiling == 100
    assert readiness.safe_mode_readiness <= 40
    assert readiness.safe_mode_readiness <= out.feasibility[0].readiness_cap
    assert "goal_infeasible:marathon" in out.risk_flags


def test_risk_accepted_mode_lifts_readiness_ceiling():
    plan = {
        "mode": "risk_accepted",
        "risk_acceptance": {"affirmed": True, "accepted_on": _iso(START)},
        "constraint_policy": {"readiness_cap": "disabled", "ramp": "soft"},
    }
    out = project_from_payload(_payload(plan=plan), SETTINGS)
    assert out.mode == "risk_accepted"
    assert out.plan_readiness_ceiling == 100
    assert all(r.readiness_ceiling == 100 for r in out.readiness)
    assert all(r.safe_mode_readiness <= out.feasibility[0].readiness_cap for r in out.readiness)
    assert "risk_accepted_mode" in out.risk_flags
    assert "cap_disabled:readiness_cap" in out.risk_flags
    assert "cap_softened:ramp" in out.risk_flags
    enforcement = out.to_dict()["active_caps"]["enforcement"]
    assert enforcement["readiness_cap"] == "disabled"
    assert enforcement["ramp"] == "soft"


def test_safe_mode_keeps_readiness_cap_hard():
    out = project_from_payload(_payload(), SETTINGS)
    assert out.to_dict()["active_caps"]["enforcement"]["readiness_cap"] == "hard"
    assert "risk_accepted_mode" not in out.risk_flags


def test_conflicts_resolved_by_priority():
    five_k = {
        "goal_id": "club-5k",
        "name": "Club 5k",
        "target_date": _iso(START + timedelta(days=18)),
        "priority": "C",
        "category": "run",
        "targets": [{"kind": "completion_probability", "target_id": "complete", "target_probability": 0.8}],
    }
    joint = project_from_payload(_payload([_half_goal(), five_k]), SETTINGS)
    solo = project_from_payload(_payload([_half_goal()]), SETTINGS)
    assert {g.goal_id for g in joint.goals} == {"spring-half", "club-5k"}
    assert len(joint.conflicts) == 1
    conflict = joint.conflicts[0]
    assert {conflict.goal_a, conflict.goal_b} == {"spring-half", "club-5k"}
    assert conflict.reason == "priority"
    assert conflict.winner == "spring-half"
    half_joint = next(g.score for g in joint.goals if g.goal_id == "spring-half")
    assert half_joint == pytest.approx(solo.goals[0].score, abs=0.05)


def _tightened_readiness(constraint):
    out = project_from_payload(_payload(plan={"constraint_policy": constraint}), SETTINGS)
    return out.plan_readiness, {r.goal_id: r.readiness for r in out.readiness}


@pytest.mark.parametrize(
    "constraint",
    [
        {"ramp_pct": 6.0},
        {"ramp_pct": 5.0},
        {"ramp_pct": 4.0},
        {"max_consecutive_high_days": 2},
        {"max_consecutive_high_days": 1},
        {"fatigue_floor_value": -25},
        {"fatigue_floor_value": -15},
    ],
)
def test_tightening_a_cap_never_raises_readiness(constraint):
    baseline = project_from_payload(_payload(), SETTINGS)
    plan_readiness, by_goal = _tightened_readiness(constraint)
    assert plan_readiness <= baseline.plan_readiness
    for r in baseline.readiness:
        assert by_goal[r.goal_id] <= r.readiness


def test_schedule_stays_inside_hard_caps():
    out = project_from_payload(_payload(), SETTINGS)
    assert all(day.boundary.level is not BoundaryLevel.EXCEEDED for day in out.timeline)
    assert out.boundary_summary.level is not BoundaryLevel.EXCEEDED


def test_single_training_day_schedule_stays_inside_hard_caps():
    plan = {"hard_rest_days": [0, 1, 2, 3, 4, 5], "min_sessions_per_week": 1}
    out = project_from_payload(_payload(plan=plan), SETTINGS)
    exceeded = [day.day for day in out.timeline if day.boundary.level is BoundaryLevel.EXCEEDED]
    assert exceeded == []
    assert out.boundary_summary.level is not BoundaryLevel.EXCEEDED
    assert out.safe_mode_boundary_summary.level is not BoundaryLevel.EXCEEDED


def test_actual_path_and_adherence_inside_window():
    in_window = [
        {"day": _iso(START + timedelta(days=i)), "load": PATTERN[i], "category": "run"}
        for i in range(7)
    ]
    window = {"start": _iso(START), "end": _iso(START + timedelta(days=55)), "as_of": _iso(START + timedelta(days=6))}
    out = project_from_payload(_payload(history=_history() + in_window, window=window), SETTINGS)
    assert out.as_of == START + timedelta(days=6)
    assert out.timeline[0].actual is not None
    assert out.timeline[0].adherence is not None
    assert out.timeline[6].actual_boundary is not None
    assert out.timeline[7].actual is None
    assert out.timeline[7].adherence is None
    assert len(out.weekly_adherence) == 1
    assert out.weeks[0].actual_load == pytest.approx(sum(PATTERN))


def test_validation_errors_propagate():
    with pytest.raises(ProjectionValidationError) as exc:
        project_from_payload(_payload(plan={"mode": "risk_accepted"}), SETTINGS)
    assert exc.value.codes == ["risk_acceptance_required"]


def test_build_projection_accepts_validated_request():
    request = validate_request(_payload(), SETTINGS)
    assert build_projection(request, settings=SETTINGS).to_json() == project_from_payload(_payload(), SETTINGS).to_json()


def test_projection_logs_summary(caplog):
    with caplog.at_level(logging.INFO, logger="loadcast.services.projection"):
        project_from_payload(_payload(), SETTINGS)
    records = [r for r in caplog.records if r.getMessage() == "projection built"]
    assert len(records) == 1
    assert records[0].ctx_goals == 1


def test_project_from_payload_configures_package_logging():
    project_from_payload(_payload(), Settings(log_level="WARNING"))
    package = logging.getLogger("loadcast")
    assert package.level == logging.WARNING
    assert any(getattr(h, "loadcast_handler", False) for h in package.handlers)
    project_from_payload(_payload(), SETTINGS)
    assert package.level == logging.INFO
