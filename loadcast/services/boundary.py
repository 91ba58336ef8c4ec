"""Safety-boundary classification of daily load trajectories.

Per day the trailing 7 days are checked against four families of caps:
weekly ramp, consecutive high-load days, fatigue balance, and weekly
monotony/strain. Hard violations give ``exceeded`` with one reason per
violated check; proximity to a caution threshold gives ``caution``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from loadcast.models import (
    SAFETY_CAPS,
    BoundaryLevel,
    BoundaryState,
    CapEnforcement,
    ConstraintPolicy,
    LoadPoint,
    OptimizationStyle,
    PlanConfiguration,
)
from loadcast.policy import BoundaryPolicy
from loadcast.services.training_load import compute_weekly_metrics

REASON_CODES = {
    "ramp": "ramp_rate_exceeded",
    "consecutive_high_load_days": "consecutive_high_load_days_exceeded",
    "fatigue_floor": "fatigue_floor_breached",
    "monotony": "monotony_exceeded",
    "strain": "strain_exceeded",
}
NEAR_BOUNDARY = "near_boundary"


@dataclass(frozen=True)
class CapLimits:
    """Resolved numeric caps for one run, with per-cap enforcement."""
    ramp_pct: float
    ramp_allowance: float
    caution_fraction: float
    high_load_floor: float
    high_load_chronic_multiple: float
    max_consecutive_high_days: int
    fatigue_floor: float
    fatigue_caution_floor: float
    monotony_max: float
    monotony_caution: float
    strain_max: float
    strain_caution: float
    enforcement: dict[str, CapEnforcement]

    def is_enforced(self, cap: str) -> bool:
        return self.enforcement.get(cap, CapEnforcement.HARD) is not CapEnforcement.DISABLED

    def is_hard(self, cap: str) -> bool:
        return self.enforcement.get(cap, CapEnforcement.HARD) is CapEnforcement.HARD

    def ramp_ceiling(self, previous_week: float) -> float:
        return ramp_ceiling(previous_week, self.ramp_pct, self.ramp_allowance)

    def ramp_caution_ceiling(self, previous_week: float) -> float:
        f = self.caution_fraction
        return ramp_ceiling(previous_week, self.ramp_pct * f, self.ramp_allowance * f)


def ramp_ceiling(previous_week: float, pct: float, allowance: float) -> float:
    """Highest weekly load allowed after a week of ``previous_week``."""
    return max(0.0, previous_week) * (1.0 + pct / 100.0) + allowance


def safe_limits(style: OptimizationStyle, policy: BoundaryPolicy, constraint: ConstraintPolicy | None = None) -> CapLimits:
    """Safe-mode caps: policy defaults, tightened (never loosened) by overrides."""
    ramp = policy.ramp_pct[style]
    streak = policy.max_consecutive_high_days
    floor = policy.fatigue_floor
    monotony = policy.monotony_max
    strain = policy.strain_max
    if constraint is not None:
        if constraint.ramp_pct is not None:
            ramp = min(ramp, constraint.ramp_pct)
        if constraint.max_consecutive_high_days is not None:
            streak = min(streak, constraint.max_consecutive_high_days)
        if constraint.fatigue_floor_value is not None:
            floor = max(floor, constraint.fatigue_floor_value)
        if constraint.monotony_max is not None:
            monotony = min(monotony, constraint.monotony_max)
        if constraint.strain_max is not None:
            strain = min(strain, constraint.strain_max)
    return _limits(policy, ramp, streak, floor, monotony, strain, {cap: CapEnforcement.HARD for cap in SAFETY_CAPS})


def effective_limits(plan: PlanConfiguration, policy: BoundaryPolicy) -> CapLimits:
    """Caps as configured for this plan, including risk-mode relaxations."""
    constraint = plan.constraint_policy
    if not plan.is_risk_accepted:
        return safe_limits(plan.optimization_style, policy, constraint)
    ramp = constraint.ramp_pct if constraint.ramp_pct is not None else policy.ramp_pct[plan.optimization_style]
    streak = constraint.max_consecutive_high_days or policy.max_consecutive_high_days
    floor = constraint.fatigue_floor_value if constraint.fatigue_floor_value is not None else policy.fatigue_floor
    monotony = constraint.monotony_max or policy.monotony_max
    strain = constraint.strain_max or policy.strain_max
    enforcement = {cap: constraint.enforcement(cap) for cap in SAFETY_CAPS}
    return _limits(policy, ramp, streak, floor, monotony, strain, enforcement)


def _limits(policy: BoundaryPolicy, ramp, streak, floor, monotony, strain, enforcement) -> CapLimits:
    f = policy.caution_fraction
    return CapLimits(
        ramp_pct=ramp,
        ramp_allowance=policy.ramp_allowance,
        caution_fraction=f,
        high_load_floor=policy.high_load_floor,
        high_load_chronic_multiple=policy.high_load_chronic_multiple,
        max_consecutive_high_days=streak,
        fatigue_floor=floor,
        # Caution floor keeps the policy's distance to the hard floor
        fatigue_caution_floor=floor - (policy.fatigue_floor - policy.fatigue_caution_floor),
        monotony_max=monotony,
        monotony_caution=monotony * (policy.monotony_caution / policy.monotony_max),
        strain_max=strain,
        strain_caution=strain * (policy.strain_caution / policy.strain_max),
        enforcement=enforcement,
    )


def is_high_load_day(load: float, chronic_before: float, limits: CapLimits) -> bool:
    return load >= max(limits.high_load_floor, limits.high_load_chronic_multiple * chronic_before)


@dataclass(frozen=True)
class DayChecks:
    """Raw per-day quantities the caps are compared against."""
    day: date
    week_load: float
    previous_week_load: float | None
    high_load_streak: int
    balance: float
    monotony: float
    strain: float


def day_checks(
    points: list[LoadPoint],
    limits: CapLimits,
    lead_in: list[LoadPoint] | None = None,
) -> list[DayChecks]:
    """Trailing-window quantities for every point.

    ``lead_in`` supplies days before the first point (typically realized
    history) so windows at the start of a series are complete.
    """
    lead_in = lead_in or []
    series = list(lead_in) + list(points)
    offset = len(lead_in)
    out: list[DayChecks] = []
    streak = 0
    for i, point in enumerate(series):
        chronic_before = series[i - 1].chronic if i > 0 else 0.0
        streak = streak + 1 if is_high_load_day(point.load, chronic_before, limits) else 0
        if i < offset:
            continue
        window = [p.load for p in series[max(0, i - 6): i + 1]]
        previous = [p.load for p in series[max(0, i - 13): max(0, i - 6)]]
        metrics = compute_weekly_metrics(window) if len(window) == 7 else None
        out.append(DayChecks(
            day=point.day,
            week_load=sum(window),
            previous_week_load=sum(previous) if len(previous) == 7 else None,
            high_load_streak=streak,
            balance=point.balance,
            monotony=metrics.monotony if metrics else 0.0,
            strain=metrics.strain if metrics else 0.0,
        ))
    return out


def violations(check: DayChecks, limits: CapLimits) -> tuple[list[str], list[str]]:
    """(hard-violated caps, caution-level caps) for one day, ignoring enforcement."""
    hard: list[str] = []
    caution: list[str] = []
    if check.previous_week_load is not None:
        if check.week_load > limits.ramp_ceiling(check.previous_week_load) + 1e-9:
            hard.append("ramp")
        elif check.week_load > limits.ramp_caution_ceiling(check.previous_week_load) + 1e-9:
            caution.append("ramp")
    if check.high_load_streak > limits.max_consecutive_high_days:
        hard.append("consecutive_high_load_days")
    elif check.high_load_streak == limits.max_consecutive_high_days:
        caution.append("consecutive_high_load_days")
    if check.balance < limits.fatigue_floor:
        hard.append("fatigue_floor")
    elif check.balance < limits.fatigue_caution_floor:
        caution.append("fatigue_floor")
    if check.monotony > limits.monotony_max:
        hard.append("monotony")
    elif check.monotony > limits.monotony_caution:
        caution.append("monotony")
    if check.strain > limits.strain_max:
        hard.append("strain")
    elif check.strain > limits.strain_caution:
        caution.append("strain")
    return hard, caution


def classify_check(check: DayChecks, limits: CapLimits) -> BoundaryState:
    """Boundary state for one day under the given caps and their enforcement.

    Soft caps demote a hard breach to caution; disabled caps are skipped.
    """
    hard, caution = violations(check, limits)
    exceeded = [REASON_CODES[c] for c in hard if limits.is_hard(c)]
    if exceeded:
        return BoundaryState(BoundaryLevel.EXCEEDED, tuple(exceeded))
    near = [c for c in hard + caution if limits.is_enforced(c)]
    if near:
        return BoundaryState(BoundaryLevel.CAUTION, (NEAR_BOUNDARY,))
    return BoundaryState(BoundaryLevel.SAFE, ())


@dataclass(frozen=True)
class DayBoundary:
    day: date
    state: BoundaryState           # under the plan's configured caps
    safe_mode_state: BoundaryState  # under unmodified safe-mode caps


def classify_series(
    points: list[LoadPoint],
    effective: CapLimits,
    safe: CapLimits,
    lead_in: list[LoadPoint] | None = None,
) -> list[DayBoundary]:
    """Classify every point under both the configured and the safe-mode caps."""
    checks_effective = day_checks(points, effective, lead_in)
    checks_safe = day_checks(points, safe, lead_in)
    return [
        DayBoundary(day=ce.day, state=classify_check(ce, effective), safe_mode_state=classify_check(cs, safe))
        for ce, cs in zip(checks_effective, checks_safe)
    ]


_SEVERITY = {BoundaryLevel.SAFE: 0, BoundaryLevel.CAUTION: 1, BoundaryLevel.EXCEEDED: 2}


def worst_state(states: list[BoundaryState]) -> BoundaryState:
    """Most severe level with the union of its reasons, in first-seen order."""
    if not states:
        return BoundaryState(BoundaryLevel.SAFE, ())
    level = max((s.level for s in states), key=_SEVERITY.__getitem__)
    reasons: list[str] = []
    for s in states:
        if s.level is level:
            for r in s.reasons:
                if r not in reasons:
                    reasons.append(r)
    return BoundaryState(level, tuple(reasons))
