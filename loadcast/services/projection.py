"""Projection assembly: the engine's single entry point.

``build_projection`` runs the whole pipeline over a validated request:
canonicalize, estimate capability, classify feasibility, solve the weekly
schedule, build the Ideal/Scheduled/Actual paths, score goals and
readiness, classify safety boundaries and adherence, and package the
result with its diagnostics.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import date, timedelta

from loadcast.config import Settings, get_settings
from loadcast.logging_config import get_logger, log_context, setup_logging
from loadcast.models import (
    SAFETY_CAPS,
    BoundaryLevel,
    BoundaryState,
    CapabilityModel,
    CapEnforcement,
    ConflictRecord,
    GoalEvaluation,
    GoalFeasibility,
    LoadPoint,
    ProjectionRequest,
)
from loadcast.policy import PolicyTables, get_policy
from loadcast.services.adherence import AdherencePoint, WeeklyAdherence, score_days, weekly_adherence
from loadcast.services.aggregation import detect_conflicts, plan_score
from loadcast.services.boundary import CapLimits, classify_series, effective_limits, safe_limits, worst_state
from loadcast.services.canonical import canonical_digest, canonicalize_request, finite_or_clamp, to_plain
from loadcast.services.capability import estimate_capabilities
from loadcast.services.feasibility import PlanFeasibility, classify_goal, classify_plan, goal_demand
from loadcast.services.readiness import capped_readiness, readiness_band, readiness_score
from loadcast.services.solver import (
    FallbackTier,
    GoalScorer,
    PlanningContext,
    RecedingHorizonSolver,
    WeekDecision,
    daily_loads_for,
    goal_states_from_points,
    heuristic_plan,
    phase_for_week,
    plan_weeks,
    weekday_shares,
)
from loadcast.services.training_load import (
    actual_series,
    compute_weekly_metrics,
    daily_totals,
    overtraining_risk,
    project_series,
    state_before,
    weekly_rollup,
)
from loadcast.validators import validate_request

logger = get_logger(__name__)

UNCERTAINTY_SPREAD = 0.25


@dataclass(frozen=True)
class TimelineDay:
    day: date
    ideal: LoadPoint
    scheduled: LoadPoint
    actual: LoadPoint | None
    boundary: BoundaryState
    safe_mode_boundary: BoundaryState
    actual_boundary: BoundaryState | None
    adherence: AdherencePoint | None


@dataclass(frozen=True)
class WeekSummary:
    week: int
    week_start: date
    phase: str
    ideal_load: float
    scheduled_load: float
    scheduled_low: float
    scheduled_high: float
    actual_load: float | None
    chronic_end: float
    acute_end: float
    monotony: float
    strain: float
    overtraining_risk: str


@dataclass(frozen=True)
class CalendarWeek:
    week: str
    load: float
    chronic: float
    acute: float
    balance: float


@dataclass(frozen=True)
class GoalReadiness:
    goal_id: str
    state_readiness: float
    attainment: float
    uncapped: float
    readiness: int
    readiness_ceiling: int
    cap_applied: bool
    safe_mode_readiness: int
    band: str


@dataclass(frozen=True)
class ActiveCaps:
    """Enforcement and resolved value of every cap for this run."""
    enforcement: dict[str, CapEnforcement]
    ramp_pct: float
    max_consecutive_high_days: int
    fatigue_floor: float
    monotony_max: float
    strain_max: float


@dataclass(frozen=True)
class SolverDiagnostics:
    candidates_evaluated: int
    budget: int
    fallback_tier: FallbackTier
    decisions: tuple[WeekDecision, ...]
    active_constraints: tuple[str, ...]
    numeric_flags: tuple[str, ...]


@dataclass(frozen=True)
class ProjectionOutput:
    policy_version: str
    input_digest: str
    window_start: date
    window_end: date
    timezone: str
    as_of: date
    mode: str
    optimization_style: str
    timeline: tuple[TimelineDay, ...]
    weeks: tuple[WeekSummary, ...]
    calendar_weeks: tuple[CalendarWeek, ...]
    goals: tuple[GoalEvaluation, ...]
    plan_score: float
    feasibility: tuple[GoalFeasibility, ...]
    plan_feasibility: PlanFeasibility
    readiness: tuple[GoalReadiness, ...]
    plan_readiness: int
    plan_readiness_ceiling: int
    capabilities: tuple[CapabilityModel, ...]
    conflicts: tuple[ConflictRecord, ...]
    boundary_summary: BoundaryState
    safe_mode_boundary_summary: BoundaryState
    weekly_adherence: tuple[WeeklyAdherence, ...]
    active_caps: ActiveCaps
    risk_flags: tuple[str, ...]
    diagnostics: SolverDiagnostics

    def to_dict(self, places: int = 4) -> dict:
        return to_plain(self, places)

    def to_json(self, places: int = 4) -> str:
        return json.dumps(self.to_dict(places), sort_keys=True, separators=(",", ":"))


def _as_of(request: ProjectionRequest) -> date:
    window = request.window
    if window.as_of is not None:
        return min(window.as_of, window.end)
    in_window = [s.day for s in request.history if window.start <= s.day <= window.end]
    return max(in_window) if in_window else window.start - timedelta(days=1)


def _history_coverage(totals: dict[date, float], start: date) -> float:
    """Share of the last six weeks with recorded load, saturating at half."""
    recent = [d for d, v in totals.items() if start - timedelta(days=42) <= d < start and v > 0]
    return min(1.0, len(recent) / 21.0)


def _active_caps(request: ProjectionRequest, limits: CapLimits) -> ActiveCaps:
    enforcement = {cap: limits.enforcement[cap] for cap in SAFETY_CAPS}
    enforcement["readiness_cap"] = (
        request.plan.constraint_policy.readiness_cap if request.plan.is_risk_accepted else CapEnforcement.HARD
    )
    return ActiveCaps(
        enforcement=enforcement,
        ramp_pct=limits.ramp_pct,
        max_consecutive_high_days=limits.max_consecutive_high_days,
        fatigue_floor=limits.fatigue_floor,
        monotony_max=limits.monotony_max,
        strain_max=limits.strain_max,
    )


def _risk_flags(
    request: ProjectionRequest,
    feasibility: dict[str, GoalFeasibility],
    safe_exceeded: BoundaryState,
    capabilities: dict,
    worst_tier: FallbackTier,
    readiness_uncapped: bool,
) -> list[str]:
    flags: list[str] = []
    plan = request.plan
    if plan.is_risk_accepted:
        flags.append("risk_accepted_mode")
        for cap in SAFETY_CAPS + ("readiness_cap",):
            enforcement = plan.constraint_policy.enforcement(cap)
            if enforcement is CapEnforcement.SOFT:
                flags.append(f"cap_softened:{cap}")
            elif enforcement is CapEnforcement.DISABLED:
                flags.append(f"cap_disabled:{cap}")
    if readiness_uncapped:
        flags.append("readiness_above_safe_cap")
    if safe_exceeded.level is BoundaryLevel.EXCEEDED:
        flags.append("safe_mode_boundary_exceeded")
        flags.extend(f"safe_mode:{r}" for r in safe_exceeded.reasons)
    for goal in request.goals:
        band = feasibility[goal.goal_id].band
        if band != "feasible":
            flags.append(f"goal_{band}:{goal.goal_id}")
    for category, model in sorted(capabilities.items(), key=lambda kv: kv[0].value):
        if model.method == "prior":
            flags.append(f"low_confidence_capability:{category.value}")
    if worst_tier is not FallbackTier.FULL_LATTICE:
        flags.append(f"solver_fallback:{worst_tier.value}")
    return flags


def _default_cap_readiness(ctx: PlanningContext, request: ProjectionRequest, policy: PolicyTables) -> dict[str, float]:
    """Uncapped readiness per goal when the style's default caps are in force."""
    default = safe_limits(request.plan.optimization_style, policy.boundary)
    loose = replace(ctx, limits=default, safe_limits=default)
    result = RecedingHorizonSolver(loose, request.plan.optimization_style).run()
    points = project_series(ctx.initial, ctx.start, list(result.daily_loads), policy.decay)
    snapshot = GoalScorer(loose).evaluate(goal_states_from_points(request.goals, ctx.initial, ctx.start, points))
    return {
        g.goal_id: readiness_score(
            min(1.0, max(0.0, snapshot.state_readiness[g.goal_id])),
            min(1.0, max(0.0, snapshot.goal_scores[g.goal_id])),
            policy.readiness,
        )
        for g in request.goals
    }


def build_projection(
    request: ProjectionRequest,
    policy: PolicyTables | None = None,
    settings: Settings | None = None,
) -> ProjectionOutput:
    """Run the full projection pipeline over an already validated request."""
    settings = settings or get_settings()
    policy = policy or get_policy(settings.policy_version)
    places = settings.decimal_places

    request = canonicalize_request(request, places)
    digest = canonical_digest(request, policy.version)
    window = request.window
    start = window.start
    as_of = _as_of(request)
    numeric_flags: list[str] = []

    # -- realized load before the window --
    totals = daily_totals(request.history)
    initial = state_before(totals, start, policy.decay)
    previous_week_load = sum(totals.get(start - timedelta(days=i), 0.0) for i in range(1, 8))
    lead_in = actual_series(request.history, start - timedelta(days=14), start - timedelta(days=1), policy.decay)

    # -- capability and demand --
    reference = as_of if as_of >= start else start - timedelta(days=1)
    capabilities = estimate_capabilities(
        request.evidence, [g.category for g in request.goals], reference, request.profile, policy.capability,
    )
    demands = {g.goal_id: goal_demand(g, policy.demand) for g in request.goals}

    limits = effective_limits(request.plan, policy.boundary)
    safe = safe_limits(request.plan.optimization_style, policy.boundary, request.plan.constraint_policy)
    shares = weekday_shares(
        policy.periodization.day_pattern,
        request.plan.hard_rest_days,
        request.plan.min_sessions_per_week,
        request.plan.max_sessions_per_week,
    )
    last_day = max([window.end] + [g.target_date for g in request.goals])
    ctx = PlanningContext(
        goals=request.goals,
        start=start,
        weeks=plan_weeks(start, last_day),
        initial=initial,
        previous_week_load=previous_week_load,
        lead_in=tuple(lead_in),
        limits=limits,
        safe_limits=safe,
        demands=demands,
        capabilities=capabilities,
        shares=shares,
        policy=policy,
    )

    # -- feasibility (always judged against safe-mode caps) --
    coverage = _history_coverage(totals, start)
    feasibility: dict[str, GoalFeasibility] = {}
    for goal in request.goals:
        cap = capabilities.get(goal.category)
        confidence = cap.confidence if cap is not None else coverage
        feasibility[goal.goal_id] = classify_goal(
            goal, start, initial, previous_week_load, cap, confidence, safe, ctx.weights(0), policy,
        )
    plan_feasibility = classify_plan(request.goals, feasibility, policy)

    # -- schedule, ideal and actual paths --
    result = RecedingHorizonSolver(ctx, request.plan.optimization_style).run()
    scheduled_points = project_series(initial, start, list(result.daily_loads), policy.decay)
    ideal_weekly, _ = heuristic_plan(ctx, limits=safe, deload=True)
    ideal_points = project_series(initial, start, daily_loads_for(ctx, ideal_weekly), policy.decay)
    actual_points = actual_series(request.history, start, min(as_of, window.end), policy.decay)

    # -- scores and readiness --
    scorer = GoalScorer(ctx)
    snapshot = scorer.evaluate(goal_states_from_points(request.goals, initial, start, scheduled_points))
    readiness_disabled = (
        request.plan.is_risk_accepted
        and request.plan.constraint_policy.readiness_cap is CapEnforcement.DISABLED
    )
    # Tightened safe caps never read higher than the default caps would
    tightened = not request.plan.is_risk_accepted and safe != safe_limits(request.plan.optimization_style, policy.boundary)
    default_readiness = _default_cap_readiness(ctx, request, policy) if tightened else {}
    readiness: list[GoalReadiness] = []
    for goal in request.goals:
        f = feasibility[goal.goal_id]
        state_score = finite_or_clamp(snapshot.state_readiness[goal.goal_id], 0.0, 1.0, numeric_flags, f"readiness:{goal.goal_id}")
        attainment = finite_or_clamp(snapshot.goal_scores[goal.goal_id], 0.0, 1.0, numeric_flags, f"score:{goal.goal_id}")
        uncapped = readiness_score(state_score, attainment, policy.readiness)
        if goal.goal_id in default_readiness:
            uncapped = min(uncapped, default_readiness[goal.goal_id])
        ceiling = 100 if readiness_disabled else f.readiness_cap
        value, applied = capped_readiness(uncapped, ceiling)
        safe_value, _ = capped_readiness(uncapped, f.readiness_cap)
        readiness.append(GoalReadiness(
            goal_id=goal.goal_id,
            state_readiness=state_score,
            attainment=attainment,
            uncapped=uncapped,
            readiness=value,
            readiness_ceiling=ceiling,
            cap_applied=applied,
            safe_mode_readiness=safe_value,
            band=readiness_band(value, policy.readiness),
        ))
    by_goal = {r.goal_id: r.uncapped for r in readiness}
    plan_ceiling = 100 if readiness_disabled else plan_feasibility.readiness_cap
    plan_readiness, _ = capped_readiness(plan_score(request.goals, by_goal, policy.tiers), plan_ceiling)

    # -- conflicts from solo plans --
    conflicts = []
    if len(request.goals) > 1:
        solo: dict[str, dict[str, float]] = {}
        cap_limited: set[str] = set()
        for goal in request.goals:
            loads, capped = heuristic_plan(ctx, goals=(goal,))
            if capped:
                cap_limited.add(goal.goal_id)
            points = project_series(initial, start, daily_loads_for(ctx, loads), policy.decay)
            solo[goal.goal_id] = scorer.evaluate(goal_states_from_points(request.goals, initial, start, points)).goal_scores
        conflicts = detect_conflicts(request.goals, solo, policy.conflicts.materiality, cap_limited).records

    # -- boundaries and adherence inside the window --
    window_days = window.days
    boundaries = classify_series(scheduled_points, limits, safe, lead_in)[:window_days]
    actual_boundaries = classify_series(actual_points, limits, safe, lead_in) if actual_points else []
    adherence_days = len(actual_points)
    adherence_points = score_days(
        [p.day for p in actual_points],
        [p.load for p in actual_points],
        [p.load for p in scheduled_points[:adherence_days]],
        [p.load for p in ideal_points[:adherence_days]],
        policy.adherence,
    )
    weekly = weekly_adherence(
        adherence_points,
        [p.load for p in actual_points],
        [p.load for p in scheduled_points[:adherence_days]],
        policy.adherence,
    )

    timeline = []
    for i in range(window_days):
        realized = i < adherence_days
        timeline.append(TimelineDay(
            day=start + timedelta(days=i),
            ideal=ideal_points[i],
            scheduled=scheduled_points[i],
            actual=actual_points[i] if realized else None,
            boundary=boundaries[i].state,
            safe_mode_boundary=boundaries[i].safe_mode_state,
            actual_boundary=actual_boundaries[i].state if realized else None,
            adherence=adherence_points[i] if realized else None,
        ))

    # -- weekly summary with an uncertainty band on the schedule --
    confidences = [c.confidence for c in capabilities.values()] or [coverage]
    spread = UNCERTAINTY_SPREAD * (1.0 - sum(confidences) / len(confidences))
    weeks = []
    for w, load in enumerate(result.weekly_loads):
        week_start = ctx.week_start(w)
        if week_start > window.end:
            break
        realized = [p.load for p in actual_points if week_start <= p.day < week_start + timedelta(days=7)]
        days = scheduled_points[7 * w: 7 * w + 7]
        metrics = compute_weekly_metrics([p.load for p in days])
        weeks.append(WeekSummary(
            week=w + 1,
            week_start=week_start,
            phase=phase_for_week(w + 1, ctx.weeks),
            ideal_load=ideal_weekly[w],
            scheduled_load=load,
            scheduled_low=load * (1.0 - spread),
            scheduled_high=load * (1.0 + spread),
            actual_load=sum(realized) if realized else None,
            chronic_end=days[-1].chronic,
            acute_end=days[-1].acute,
            monotony=metrics.monotony,
            strain=metrics.strain,
            overtraining_risk=overtraining_risk(metrics.monotony, metrics.strain, policy.boundary),
        ))
    rollup = weekly_rollup(scheduled_points[:window_days])
    calendar_weeks = [
        CalendarWeek(
            week=row.week,
            load=float(row.load),
            chronic=float(row.chronic),
            acute=float(row.acute),
            balance=float(row.balance),
        )
        for row in rollup.itertuples(index=False)
    ]

    boundary_summary = worst_state([b.state for b in boundaries])
    safe_summary = worst_state([b.safe_mode_state for b in boundaries])
    flags = _risk_flags(
        request, feasibility, safe_summary, capabilities, result.worst_tier,
        readiness_disabled and any(r.uncapped > r.safe_mode_readiness for r in readiness),
    )
    active = sorted({c for d in result.decisions for c in d.active_constraints})

    output = ProjectionOutput(
        policy_version=policy.version,
        input_digest=digest,
        window_start=start,
        window_end=window.end,
        timezone=window.timezone,
        as_of=as_of,
        mode=request.plan.mode.value,
        optimization_style=request.plan.optimization_style.value,
        timeline=tuple(timeline),
        weeks=tuple(weeks),
        calendar_weeks=tuple(calendar_weeks),
        goals=tuple(snapshot.evaluations[g.goal_id] for g in request.goals),
        plan_score=snapshot.plan_score,
        feasibility=tuple(feasibility[g.goal_id] for g in request.goals),
        plan_feasibility=plan_feasibility,
        readiness=tuple(readiness),
        plan_readiness=plan_readiness,
        plan_readiness_ceiling=plan_ceiling,
        capabilities=tuple(capabilities[c] for c in sorted(capabilities, key=lambda c: c.value)),
        conflicts=tuple(conflicts),
        boundary_summary=boundary_summary,
        safe_mode_boundary_summary=safe_summary,
        weekly_adherence=tuple(weekly),
        active_caps=_active_caps(request, limits),
        risk_flags=tuple(flags),
        diagnostics=SolverDiagnostics(
            candidates_evaluated=result.evaluations,
            budget=result.budget,
            fallback_tier=result.worst_tier,
            decisions=result.decisions,
            active_constraints=tuple(active),
            numeric_flags=tuple(numeric_flags),
        ),
    )
    logger.info(
        "projection built",
        extra=log_context(
            digest=digest[:12],
            goals=len(request.goals),
            plan_band=plan_feasibility.band,
            fallback_tier=result.worst_tier.value,
            evaluations=result.evaluations,
        ),
    )
    return output


def project_from_payload(
    payload: dict,
    settings: Settings | None = None,
    policy: PolicyTables | None = None,
) -> ProjectionOutput:
    """Validate a raw payload and build its projection."""
    settings = settings or get_settings()
    setup_logging(settings)
    policy = policy or get_policy(settings.policy_version)
    request = validate_request(payload, settings, policy)
    return build_projection(request, policy, settings)
