"""Per-target satisfaction scoring.

Every target kind maps a gap (in the target's own units, positive when the
target is not met) and a tolerance onto the same C1-continuous curve:
exactly 1 once the target is met, quadratic decay inside the tolerance
band, then a rational tail that approaches but never reaches 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from loadcast.models import (
    CapabilityModel,
    CompletionProbabilityTarget,
    FinishTimeTarget,
    GoalTarget,
    PaceTarget,
    PowerTarget,
    SplitTarget,
    TargetEvaluation,
    target_kind,
)
from loadcast.policy import CapabilityPolicy, SatisfactionPolicy
from loadcast.services.capability import fatigue_factor

FATIGUE_RATIONALE_BALANCE = -10.0
LOAD_BASE_RATIONALE_RATIO = 0.8


@dataclass(frozen=True)
class GoalState:
    """Projected athlete state on a goal date."""
    capability: CapabilityModel | None
    chronic: float
    balance: float
    demand_chronic: float


def satisfaction_curve(gap: float, tolerance: float) -> float:
    u = gap / tolerance
    if u <= 0:
        return 1.0
    if u <= 1:
        return 1.0 - 0.5 * u * u
    x = u - 1.0
    return 0.5 / (1.0 + 2.0 * x + 4.0 * x * x)


def _logistic(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


# --- projected values per kind ---

def _finish_time(target: FinishTimeTarget, cap: CapabilityModel) -> tuple[float, float, float]:
    projected = cap.duration_for_distance(target.distance_m)
    return projected, target.target_seconds, projected - target.target_seconds


def _pace(target: PaceTarget, cap: CapabilityModel) -> tuple[float, float, float]:
    if target.distance_m:
        seconds = cap.duration_for_distance(target.distance_m)
        projected = seconds / (target.distance_m / 1000.0)
    else:
        # Pace sustainable for one hour
        projected = 1000.0 / cap.predict_output(3600.0)
    return projected, target.target_seconds_per_km, projected - target.target_seconds_per_km


def _power(target: PowerTarget, cap: CapabilityModel) -> tuple[float, float, float]:
    projected = cap.predict_output(target.duration_seconds)
    return projected, target.target_watts, target.target_watts - projected


def _split(target: SplitTarget, cap: CapabilityModel) -> tuple[float, float, float]:
    projected = cap.duration_for_distance(target.distance_m)
    return projected, target.target_seconds, projected - target.target_seconds


_PERFORMANCE = {
    FinishTimeTarget: _finish_time,
    PaceTarget: _pace,
    PowerTarget: _power,
    SplitTarget: _split,
}

_RELATIVE_TOLERANCE = {
    FinishTimeTarget: lambda p: p.finish_time_tolerance,
    PaceTarget: lambda p: p.pace_tolerance,
    PowerTarget: lambda p: p.power_tolerance,
    SplitTarget: lambda p: p.split_tolerance,
}


def default_tolerance(target: GoalTarget, target_value: float, policy: SatisfactionPolicy) -> float:
    if target.tolerance is not None:
        return target.tolerance
    if isinstance(target, CompletionProbabilityTarget):
        return policy.completion_probability_tolerance
    return max(1e-6, _RELATIVE_TOLERANCE[type(target)](policy) * target_value)


def capability_margin(targets: tuple[GoalTarget, ...], cap: CapabilityModel | None) -> float:
    """Mean relative margin of capability over the performance targets (positive = ahead)."""
    if cap is None:
        return 0.0
    margins = []
    for target in targets:
        fn = _PERFORMANCE.get(type(target))
        if fn is None:
            continue
        _, target_value, gap = fn(target, cap)
        if math.isfinite(gap) and target_value > 0:
            margins.append(-gap / target_value)
    if not margins:
        return 0.0
    return sum(margins) / len(margins)


def completion_likelihood(
    state: GoalState,
    margin: float,
    policy: SatisfactionPolicy,
    capability_policy: CapabilityPolicy,
) -> float:
    """Probability of completing the goal event from load base, capability margin and fatigue."""
    load_ratio = min(1.5, state.chronic / state.demand_chronic) if state.demand_chronic > 0 else 1.0
    bounded = min(policy.capability_margin_limit, max(-policy.capability_margin_limit, margin))
    combined = (load_ratio - policy.load_ratio_pivot) + bounded
    return fatigue_factor(state.balance, capability_policy) * _logistic(policy.likelihood_slope * combined)


def evaluate_target(
    target: GoalTarget,
    state: GoalState,
    siblings: tuple[GoalTarget, ...],
    policy: SatisfactionPolicy,
    capability_policy: CapabilityPolicy,
) -> TargetEvaluation:
    """Score one target against the projected state on its goal date."""
    codes: list[str] = []
    if isinstance(target, CompletionProbabilityTarget):
        margin = capability_margin(siblings, state.capability)
        projected = completion_likelihood(state, margin, policy, capability_policy)
        target_value = target.target_probability
        gap = target_value - projected
        if gap > 0:
            if margin < 0:
                codes.append("insufficient_capability_margin")
            if state.demand_chronic > 0 and state.chronic / state.demand_chronic < LOAD_BASE_RATIONALE_RATIO:
                codes.append("insufficient_load_base")
    else:
        if state.capability is None:
            raise ValueError(f"{target_kind(target)} target requires a capability model")
        projected, target_value, gap = _PERFORMANCE[type(target)](target, state.capability)
        if gap > 0:
            codes.append("insufficient_capability_margin")
        if state.capability.method == "prior":
            codes.append("low_confidence_capability")

    if gap > 0 and state.balance < FATIGUE_RATIONALE_BALANCE:
        codes.append("fatigue_state_unfavorable")
    if gap <= 0:
        codes.append("target_met")

    tolerance = default_tolerance(target, target_value, policy)
    score = satisfaction_curve(gap, tolerance) if math.isfinite(gap) else 0.5 / (1.0 + 1e12)
    return TargetEvaluation(
        target_id=target.target_id,
        kind=target_kind(target),
        satisfaction=score,
        unmet_gap=gap,
        projected_value=projected,
        target_value=target_value,
        rationale_codes=tuple(codes),
    )
