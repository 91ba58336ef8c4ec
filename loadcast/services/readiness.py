from __future__ import annotations

from loadcast.models import LoadState
from loadcast.policy import ReadinessPolicy


def state_readiness(state: LoadState, demand_chronic: float, policy: ReadinessPolicy) -> float:
    """Load-state readiness in [0, 1] from form, fitness and fatigue signals."""
    form = 1.0 - min(1.0, abs(state.balance - policy.target_balance) / policy.form_tolerance)
    fitness = min(1.0, state.chronic / demand_chronic) if demand_chronic > 0 else 1.0
    overflow = max(0.0, state.acute - state.chronic) / max(1.0, state.chronic)
    fatigue = 1.0 - min(1.0, overflow / policy.fatigue_overflow_scale)
    total = policy.form_weight + policy.fitness_weight + policy.fatigue_weight
    return (policy.form_weight * form + policy.fitness_weight * fitness + policy.fatigue_weight * fatigue) / total


def readiness_score(state_score: float, attainment: float, policy: ReadinessPolicy) -> float:
    # 0-100, uncapped
    blended = policy.state_weight * state_score + policy.attainment_weight * attainment
    return round(100.0 * min(1.0, max(0.0, blended)), 2)


def capped_readiness(score: float, ceiling: int) -> tuple[int, bool]:
    """Apply the readiness ceiling; returns (readiness, cap_applied)."""
    value = int(round(score))
    if value > ceiling:
        return ceiling, True
    return value, False


def readiness_band(score: float, policy: ReadinessPolicy) -> str:
    if score >= policy.green_min:
        return "green"
    if score >= policy.amber_min:
        return "amber"
    return "red"
