"""Versioned numeric policy tables.

Every tunable constant of the engine lives here, grouped by the component
that reads it. Components receive a ``PolicyTables`` instance explicitly so
alternate tables can be exercised in tests without touching module state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from loadcast.models import OptimizationStyle, PriorityTier


class UnknownPolicyError(KeyError):
    """Raised when a policy version is not registered."""


@dataclass(frozen=True)
class LoadDecayPolicy:
    chronic_days: float = 42.0
    acute_days: float = 7.0

    @property
    def chronic_alpha(self) -> float:
        return 1.0 - math.exp(-1.0 / self.chronic_days)

    @property
    def acute_alpha(self) -> float:
        return 1.0 - math.exp(-1.0 / self.acute_days)


@dataclass(frozen=True)
class TierWeights:
    a: float = 0.6
    b: float = 0.3
    c: float = 0.1

    def weight_for(self, tier: PriorityTier) -> float:
        return {PriorityTier.A: self.a, PriorityTier.B: self.b, PriorityTier.C: self.c}[tier]

    def normalized(self, tiers: set[PriorityTier] | frozenset[PriorityTier]) -> dict[PriorityTier, float]:
        """Tier weights re-normalized over the tiers actually present."""
        total = sum(self.weight_for(t) for t in tiers)
        if total <= 0:
            return {}
        return {t: self.weight_for(t) / total for t in sorted(tiers)}


@dataclass(frozen=True)
class ObjectiveWeights:
    goal: float = 1.0
    readiness: float = 0.3
    risk: float = 0.5
    volatility: float = 0.1
    churn: float = 0.05
    monotony: float = 0.05
    strain: float = 0.05


@dataclass(frozen=True)
class SatisfactionPolicy:
    # Relative tolerance as a fraction of the target value
    finish_time_tolerance: float = 0.02
    pace_tolerance: float = 0.02
    power_tolerance: float = 0.03
    split_tolerance: float = 0.03
    # Absolute tolerance in probability units
    completion_probability_tolerance: float = 0.05
    likelihood_slope: float = 8.0
    load_ratio_pivot: float = 0.6
    capability_margin_limit: float = 0.5


@dataclass(frozen=True)
class CapabilityPolicy:
    recency_window_days: int = 120
    recency_half_life_days: float = 42.0
    short_band_max_s: float = 300.0
    medium_band_max_s: float = 1200.0
    outlier_mad_multiple: float = 3.5
    mad_scale: float = 1.4826
    low_confidence_threshold: float = 0.4

    # Priors
    prior_power_w_per_kg: float = 2.5
    prior_w_prime_j: float = 12000.0
    prior_run_speed_ms: float = 3.0
    prior_run_d_prime_m: float = 200.0
    prior_swim_speed_ms: float = 0.9
    prior_swim_d_prime_m: float = 30.0
    default_weight_kg: float = 70.0
    prior_reference_weight_kg: float = 70.0
    prior_reference_lthr_bpm: float = 170.0
    prior_lthr_exponent: float = 0.5
    prior_lthr_floor: float = 0.92
    prior_lthr_ceiling: float = 1.08

    # Forward projection
    growth_exponent: float = 0.1
    growth_floor: float = 0.9
    growth_ceiling: float = 1.08
    fatigue_penalty_per_unit: float = 0.005
    fatigue_penalty_max: float = 0.15


@dataclass(frozen=True)
class DemandPolicy:
    """Chronic-load demand implied by a goal's targets."""

    base_ctl: float = 28.0
    distance_log_coefficient: float = 13.0
    pace_pivot_kph: float = 9.5
    pace_boost_per_kph: float = 3.2
    pace_boost_max: float = 24.0
    power_threshold_ctl: float = 60.0
    pace_threshold_ctl: float = 56.0
    medium_demand_km: float = 10.0
    high_demand_km: float = 30.0
    # Minimum safe preparation per demand tier
    min_prep_weeks_low: int = 6
    min_prep_weeks_medium: int = 8
    min_prep_weeks_high: int = 12
    min_prep_floor_days: int = 14
    # Taper length in weeks per demand tier
    taper_weeks_low: int = 1
    taper_weeks_medium: int = 2
    taper_weeks_high: int = 3


@dataclass(frozen=True)
class FeasibilityBandRow:
    band: str
    upper: float
    readiness_cap: int


@dataclass(frozen=True)
class FeasibilityPolicy:
    performance_weight: float = 0.45
    load_weight: float = 0.35
    timeline_weight: float = 0.20
    sparsity_max: float = 0.15
    performance_gap_scale: float = 0.15
    load_gap_scale: float = 0.5
    bands: tuple[FeasibilityBandRow, ...] = (
        FeasibilityBandRow("feasible", 0.30, 100),
        FeasibilityBandRow("stretch", 0.50, 85),
        FeasibilityBandRow("aggressive", 0.70, 65),
        FeasibilityBandRow("nearly_impossible", 0.85, 50),
        FeasibilityBandRow("infeasible", math.inf, 40),
    )

    def band_for(self, gdi: float) -> FeasibilityBandRow:
        for row in self.bands:
            if gdi < row.upper:
                return row
        return self.bands[-1]

    def row_named(self, band: str) -> FeasibilityBandRow:
        for row in self.bands:
            if row.band == band:
                return row
        raise KeyError(band)

    def severity(self, band: str) -> int:
        return [row.band for row in self.bands].index(band)


@dataclass(frozen=True)
class BoundaryPolicy:
    ramp_pct: dict[OptimizationStyle, float] = field(default_factory=lambda: {
        OptimizationStyle.CONSERVATIVE: 5.0,
        OptimizationStyle.BALANCED: 7.0,
        OptimizationStyle.OUTCOME_FIRST: 10.0,
    })
    ramp_allowance: float = 35.0
    caution_fraction: float = 0.75
    high_load_floor: float = 60.0
    high_load_chronic_multiple: float = 1.25
    max_consecutive_high_days: int = 3
    fatigue_floor: float = -30.0
    fatigue_caution_floor: float = -20.0
    monotony_max: float = 2.5
    monotony_caution: float = 2.0
    strain_max: float = 2000.0
    strain_caution: float = 1500.0


@dataclass(frozen=True)
class SolverProfile:
    horizon_weeks: int
    lattice_size: int
    reduced_lattice_size: int
    budget: int
    lattice_floor_ratio: float = 0.5


@dataclass(frozen=True)
class PeriodizationPolicy:
    event_multiplier: float = 0.62
    recovery_multiplier: float = 0.72
    taper_multipliers: tuple[float, ...] = (0.7, 0.8, 0.88)
    deload_multiplier: float = 0.82
    deload_every_weeks: int = 4
    maintenance_fraction: float = 0.75
    # Share of the weekly load per weekday, Monday first
    day_pattern: tuple[float, ...] = (0.0, 0.18, 0.12, 0.18, 0.07, 0.28, 0.17)


@dataclass(frozen=True)
class ReadinessPolicy:
    state_weight: float = 0.55
    attainment_weight: float = 0.45
    target_balance: float = 8.0
    form_tolerance: float = 20.0
    fatigue_overflow_scale: float = 0.4
    form_weight: float = 0.5
    fitness_weight: float = 0.3
    fatigue_weight: float = 0.2
    green_min: int = 70
    amber_min: int = 50


@dataclass(frozen=True)
class AdherencePolicy:
    realized_weight: float = 0.7
    schedule_weight: float = 0.3
    smoothing_load: float = 5.0
    # Ratio at which the score reaches zero
    zero_ratio: float = 3.0
    on_track_min: int = 85
    slight_miss_min: int = 65


@dataclass(frozen=True)
class ConflictPolicy:
    materiality: float = 0.05


@dataclass(frozen=True)
class PolicyTables:
    version: str
    decay: LoadDecayPolicy = field(default_factory=LoadDecayPolicy)
    tiers: TierWeights = field(default_factory=TierWeights)
    objective: ObjectiveWeights = field(default_factory=ObjectiveWeights)
    satisfaction: SatisfactionPolicy = field(default_factory=SatisfactionPolicy)
    capability: CapabilityPolicy = field(default_factory=CapabilityPolicy)
    demand: DemandPolicy = field(default_factory=DemandPolicy)
    feasibility: FeasibilityPolicy = field(default_factory=FeasibilityPolicy)
    boundary: BoundaryPolicy = field(default_factory=BoundaryPolicy)
    periodization: PeriodizationPolicy = field(default_factory=PeriodizationPolicy)
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    adherence: AdherencePolicy = field(default_factory=AdherencePolicy)
    conflicts: ConflictPolicy = field(default_factory=ConflictPolicy)
    solver_profiles: dict[OptimizationStyle, SolverProfile] = field(default_factory=lambda: {
        OptimizationStyle.CONSERVATIVE: SolverProfile(horizon_weeks=2, lattice_size=5, reduced_lattice_size=3, budget=120),
        OptimizationStyle.BALANCED: SolverProfile(horizon_weeks=3, lattice_size=7, reduced_lattice_size=3, budget=240),
        OptimizationStyle.OUTCOME_FIRST: SolverProfile(horizon_weeks=4, lattice_size=9, reduced_lattice_size=5, budget=400),
    })

    def solver_profile(self, style: OptimizationStyle) -> SolverProfile:
        return self.solver_profiles[style]


DEFAULT_POLICY = PolicyTables(version="2024.1")

POLICIES: dict[str, PolicyTables] = {
    DEFAULT_POLICY.version: DEFAULT_POLICY,
}


def get_policy(version: str | None = None) -> PolicyTables:
    """Look up a registered policy table set; ``None`` returns the default."""
    if version is None:
        return DEFAULT_POLICY
    try:
        return POLICIES[version]
    except KeyError:
        raise UnknownPolicyError(f"unknown policy version: {version}") from None
