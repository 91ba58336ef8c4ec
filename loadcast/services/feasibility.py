"""Goal demand, Goal Difficulty Index and feasibility bands.

GDI = 0.45 * performance gap + 0.35 * load gap + 0.20 * timeline pressure,
plus an additive data-sparsity penalty, each sub-score normalized to [0, 1].
Bands are contiguous ranges of the index; each carries the readiness cap
applied in safe mode.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date

from loadcast.models import (
    CapabilityModel,
    CompletionProbabilityTarget,
    FinishTimeTarget,
    Goal,
    GoalFeasibility,
    LoadState,
    PaceTarget,
    PowerTarget,
    PriorityTier,
    SplitTarget,
)
from loadcast.policy import DemandPolicy, LoadDecayPolicy, PolicyTables
from loadcast.services.boundary import CapLimits
from loadcast.services.capability import growth_factor
from loadcast.services.training_load import step_week

MAX_SIMULATED_WEEKS = 104


@dataclass(frozen=True)
class GoalDemand:
    required_chronic: float
    tier: str            # low | medium | high
    distance_km: float | None


def _distance_km(goal: Goal) -> float | None:
    distances = [
        t.distance_m for t in goal.targets
        if isinstance(t, (FinishTimeTarget, SplitTarget, PaceTarget)) and t.distance_m
    ]
    return max(distances) / 1000.0 if distances else None


def _pace_boost(kph: float, policy: DemandPolicy) -> float:
    return min(policy.pace_boost_max, max(0.0, (kph - policy.pace_pivot_kph) * policy.pace_boost_per_kph))


def goal_demand(goal: Goal, policy: DemandPolicy) -> GoalDemand:
    """Chronic load a goal asks for, derived from its targets."""
    demands = [policy.base_ctl]
    km = _distance_km(goal)
    for target in goal.targets:
        if isinstance(target, (FinishTimeTarget, SplitTarget)):
            kph = (target.distance_m / 1000.0) / (target.target_seconds / 3600.0)
            base = policy.base_ctl + policy.distance_log_coefficient * math.log1p(target.distance_m / 1000.0)
            demands.append(base + _pace_boost(kph, policy))
        elif isinstance(target, PaceTarget):
            kph = 3600.0 / target.target_seconds_per_km
            if target.distance_m:
                base = policy.base_ctl + policy.distance_log_coefficient * math.log1p(target.distance_m / 1000.0)
            else:
                base = policy.pace_threshold_ctl
            demands.append(base + _pace_boost(kph, policy))
        elif isinstance(target, PowerTarget):
            demands.append(policy.power_threshold_ctl)
        elif isinstance(target, CompletionProbabilityTarget) and km:
            demands.append(policy.base_ctl + policy.distance_log_coefficient * math.log1p(km))

    if km is not None and km >= policy.high_demand_km:
        tier = "high"
    elif (km is not None and km >= policy.medium_demand_km) or any(isinstance(t, PowerTarget) for t in goal.targets):
        tier = "medium"
    else:
        tier = "low"
    return GoalDemand(required_chronic=max(demands), tier=tier, distance_km=km)


def prep_weeks_for_tier(tier: str, policy: DemandPolicy) -> int:
    return {"low": policy.min_prep_weeks_low, "medium": policy.min_prep_weeks_medium, "high": policy.min_prep_weeks_high}[tier]


def taper_weeks_for_tier(tier: str, policy: DemandPolicy) -> int:
    return {"low": policy.taper_weeks_low, "medium": policy.taper_weeks_medium, "high": policy.taper_weeks_high}[tier]


def max_ramp_trajectory(
    state: LoadState,
    previous_week: float,
    weeks: int,
    limits: CapLimits,
    day_weights: tuple[float, ...],
    decay: LoadDecayPolicy,
) -> list[LoadState]:
    """States after each week when every week loads right up to the ramp ceiling."""
    out = []
    load = previous_week
    for _ in range(weeks):
        load = limits.ramp_ceiling(load)
        state = step_week(state, load, day_weights, decay)
        out.append(state)
    return out


def achievable_chronic(
    state: LoadState,
    previous_week: float,
    days: int,
    limits: CapLimits,
    day_weights: tuple[float, ...],
    decay: LoadDecayPolicy,
) -> float:
    """Highest chronic load reachable in ``days`` without breaching the ramp cap."""
    weeks = max(0, days // 7)
    trajectory = max_ramp_trajectory(state, previous_week, weeks, limits, day_weights, decay)
    return trajectory[-1].chronic if trajectory else state.chronic


def weeks_to_reach(
    required: float,
    state: LoadState,
    previous_week: float,
    limits: CapLimits,
    day_weights: tuple[float, ...],
    decay: LoadDecayPolicy,
) -> int:
    if state.chronic >= required:
        return 0
    trajectory = max_ramp_trajectory(state, previous_week, MAX_SIMULATED_WEEKS, limits, day_weights, decay)
    for week, s in enumerate(trajectory, start=1):
        if s.chronic >= required:
            return week
    return MAX_SIMULATED_WEEKS


def performance_gap(
    goal: Goal,
    capability: CapabilityModel | None,
    growth: float,
    scale: float,
) -> float:
    """Normalized shortfall of best-case capability against the hardest target."""
    if capability is None:
        return 0.0
    best = capability.scaled(growth)
    worst = 0.0
    for target in goal.targets:
        if isinstance(target, (FinishTimeTarget, SplitTarget)):
            ratio = best.duration_for_distance(target.distance_m) / target.target_seconds
        elif isinstance(target, PaceTarget):
            if target.distance_m:
                pace = best.duration_for_distance(target.distance_m) / (target.distance_m / 1000.0)
            else:
                pace = 1000.0 / best.predict_output(3600.0)
            ratio = pace / target.target_seconds_per_km
        elif isinstance(target, PowerTarget):
            ratio = target.target_watts / best.predict_output(target.duration_seconds)
        else:
            continue
        if not math.isfinite(ratio):
            return 1.0
        worst = max(worst, min(1.0, max(0.0, (ratio - 1.0) / scale)))
    return worst


def classify_goal(
    goal: Goal,
    as_of: date,
    state: LoadState,
    previous_week: float,
    capability: CapabilityModel | None,
    data_confidence: float,
    limits: CapLimits,
    day_weights: tuple[float, ...],
    policy: PolicyTables,
) -> GoalFeasibility:
    """Difficulty index and band for one goal."""
    fp = policy.feasibility
    demand = goal_demand(goal, policy.demand)
    days_available = max(0, (goal.target_date - as_of).days)

    achievable = achievable_chronic(state, previous_week, days_available, limits, day_weights, policy.decay)
    growth = growth_factor(state.chronic, achievable, policy.capability)
    perf = performance_gap(goal, capability, growth, fp.performance_gap_scale)

    required = demand.required_chronic
    shortfall = max(0.0, required - achievable) / required if required > 0 else 0.0
    load = min(1.0, shortfall / fp.load_gap_scale)

    ramp_days = 7 * weeks_to_reach(required, state, previous_week, limits, day_weights, policy.decay)
    deficit = min(1.0, max(0.0, (required - state.chronic) / required)) if required > 0 else 0.0
    tier_days = 7 * prep_weeks_for_tier(demand.tier, policy.demand) * deficit
    min_safe_days = max(policy.demand.min_prep_floor_days, ramp_days, tier_days)
    timeline = min(1.0, max(0.0, 1.0 - days_available / min_safe_days))

    sparsity = fp.sparsity_max * (1.0 - min(1.0, max(0.0, data_confidence)))
    gdi = fp.performance_weight * perf + fp.load_weight * load + fp.timeline_weight * timeline + sparsity
    row = fp.band_for(gdi)
    return GoalFeasibility(
        goal_id=goal.goal_id,
        gdi=gdi,
        band=row.band,
        performance_gap=perf,
        load_gap=load,
        timeline_pressure=timeline,
        sparsity_penalty=sparsity,
        required_chronic=required,
        achievable_chronic=achievable,
        readiness_cap=row.readiness_cap,
    )


@dataclass(frozen=True)
class PlanFeasibility:
    gdi: float
    band: str
    readiness_cap: int
    floor_goal_id: str | None


def classify_plan(goals: tuple[Goal, ...], per_goal: dict[str, GoalFeasibility], policy: PolicyTables) -> PlanFeasibility:
    """Priority-weighted GDI, floored by the worst goal of the highest tier present."""
    by_tier: dict[PriorityTier, float] = {}
    for tier in PriorityTier:
        members = [g for g in goals if g.priority is tier]
        if members:
            total = sum(g.weight for g in members)
            by_tier[tier] = sum(g.weight * per_goal[g.goal_id].gdi for g in members) / total
    weights = policy.tiers.normalized(set(by_tier))
    mean_gdi = sum(weights[t] * v for t, v in by_tier.items())

    top_tier = min(by_tier, key=lambda t: t.value)
    top = [per_goal[g.goal_id] for g in goals if g.priority is top_tier]
    worst = max(top, key=lambda f: (f.gdi, f.goal_id))
    gdi = max(mean_gdi, worst.gdi)
    bands = policy.feasibility
    # Never milder than the floor goal's own band
    row = max(bands.band_for(gdi), bands.row_named(worst.band), key=lambda r: bands.severity(r.band))
    return PlanFeasibility(
        gdi=gdi,
        band=row.band,
        readiness_cap=row.readiness_cap,
        floor_goal_id=worst.goal_id if worst.gdi >= mean_gdi else None,
    )
