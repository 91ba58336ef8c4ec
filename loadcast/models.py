"""Domain value types for the projection engine.

All types are frozen dataclasses; the engine never mutates its inputs and
every result is a fresh value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Union


class PriorityTier(str, Enum):
    A = "A"
    B = "B"
    C = "C"


class ActivityCategory(str, Enum):
    BIKE = "bike"
    RUN = "run"
    SWIM = "swim"
    OTHER = "other"

    @property
    def is_power_based(self) -> bool:
        return self is ActivityCategory.BIKE

    @property
    def is_speed_based(self) -> bool:
        return self in (ActivityCategory.RUN, ActivityCategory.SWIM)


class PlanMode(str, Enum):
    SAFE_DEFAULT = "safe_default"
    RISK_ACCEPTED = "risk_accepted"


class OptimizationStyle(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    OUTCOME_FIRST = "outcome_first"


class CapEnforcement(str, Enum):
    HARD = "hard"
    SOFT = "soft"
    DISABLED = "disabled"


class BoundaryLevel(str, Enum):
    SAFE = "safe"
    CAUTION = "caution"
    EXCEEDED = "exceeded"


# ---------------------------------------------------------------------------
# Goal targets (one dataclass per kind)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FinishTimeTarget:
    target_id: str
    distance_m: float
    target_seconds: float
    tolerance: float | None = None
    weight: float | None = None


@dataclass(frozen=True)
class PaceTarget:
    target_id: str
    target_seconds_per_km: float
    distance_m: float | None = None
    tolerance: float | None = None
    weight: float | None = None


@dataclass(frozen=True)
class PowerTarget:
    target_id: str
    target_watts: float
    duration_seconds: float
    tolerance: float | None = None
    weight: float | None = None


@dataclass(frozen=True)
class SplitTarget:
    target_id: str
    split_id: str
    distance_m: float
    target_seconds: float
    tolerance: float | None = None
    weight: float | None = None


@dataclass(frozen=True)
class CompletionProbabilityTarget:
    target_id: str
    target_probability: float
    tolerance: float | None = None
    weight: float | None = None


GoalTarget = Union[FinishTimeTarget, PaceTarget, PowerTarget, SplitTarget, CompletionProbabilityTarget]

TARGET_KIND: dict[type, str] = {
    FinishTimeTarget: "finish_time",
    PaceTarget: "pace",
    PowerTarget: "power",
    SplitTarget: "split",
    CompletionProbabilityTarget: "completion_probability",
}

# Canonical ordering of kinds within a goal
TARGET_KIND_ORDER: dict[type, int] = {cls: i for i, cls in enumerate(TARGET_KIND)}


def target_kind(target: GoalTarget) -> str:
    return TARGET_KIND[type(target)]


@dataclass(frozen=True)
class Goal:
    goal_id: str
    name: str
    target_date: date
    priority: PriorityTier
    category: ActivityCategory
    targets: tuple[GoalTarget, ...]
    weight: float = 1.0


# ---------------------------------------------------------------------------
# History, evidence and profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActivityLoadSample:
    day: date
    load: float
    category: ActivityCategory = ActivityCategory.OTHER


@dataclass(frozen=True)
class EffortEvidence:
    category: ActivityCategory
    duration_seconds: float
    output: float          # watts for power categories, m/s for speed categories
    recorded_on: date


@dataclass(frozen=True)
class ProfileMetrics:
    weight_kg: float | None = None
    lthr_bpm: float | None = None


# ---------------------------------------------------------------------------
# Plan configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RiskAcceptance:
    affirmed: bool
    accepted_on: date | None = None
    note: str = ""


@dataclass(frozen=True)
class ConstraintPolicy:
    """Per-cap enforcement plus optional numeric overrides.

    Overrides that tighten a cap are always honoured; loosening requires
    risk-accepted mode.
    """

    ramp: CapEnforcement = CapEnforcement.HARD
    consecutive_high_load_days: CapEnforcement = CapEnforcement.HARD
    fatigue_floor: CapEnforcement = CapEnforcement.HARD
    monotony: CapEnforcement = CapEnforcement.HARD
    strain: CapEnforcement = CapEnforcement.HARD
    readiness_cap: CapEnforcement = CapEnforcement.HARD
    ramp_pct: float | None = None
    max_consecutive_high_days: int | None = None
    fatigue_floor_value: float | None = None
    monotony_max: float | None = None
    strain_max: float | None = None

    def enforcement(self, cap: str) -> CapEnforcement:
        return getattr(self, cap)

    def relaxed_caps(self) -> list[str]:
        return [cap for cap in SAFETY_CAPS + ("readiness_cap",) if self.enforcement(cap) is not CapEnforcement.HARD]


SAFETY_CAPS: tuple[str, ...] = ("ramp", "consecutive_high_load_days", "fatigue_floor", "monotony", "strain")


@dataclass(frozen=True)
class PlanConfiguration:
    mode: PlanMode = PlanMode.SAFE_DEFAULT
    risk_acceptance: RiskAcceptance | None = None
    optimization_style: OptimizationStyle = OptimizationStyle.BALANCED
    constraint_policy: ConstraintPolicy = field(default_factory=ConstraintPolicy)
    hard_rest_days: tuple[int, ...] = ()       # weekday indices, Monday = 0
    min_sessions_per_week: int = 0
    max_sessions_per_week: int = 7

    @property
    def is_risk_accepted(self) -> bool:
        return self.mode is PlanMode.RISK_ACCEPTED


@dataclass(frozen=True)
class ProjectionWindow:
    start: date
    end: date
    timezone: str = "UTC"
    as_of: date | None = None

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class ProjectionRequest:
    goals: tuple[Goal, ...]
    plan: PlanConfiguration
    window: ProjectionWindow
    history: tuple[ActivityLoadSample, ...] = ()
    evidence: tuple[EffortEvidence, ...] = ()
    profile: ProfileMetrics = field(default_factory=ProfileMetrics)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadState:
    chronic: float = 0.0
    acute: float = 0.0

    @property
    def balance(self) -> float:
        return self.chronic - self.acute


@dataclass(frozen=True)
class LoadPoint:
    day: date
    chronic: float
    acute: float
    balance: float
    load: float


@dataclass(frozen=True)
class BoundaryState:
    level: BoundaryLevel
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class CapabilityModel:
    category: ActivityCategory
    asymptotic_output: float     # CP in watts or CS in m/s
    capacity: float              # W' in joules or D' in metres
    fit_quality: float
    recency_score: float
    confidence: float
    method: str                  # "fitted" | "prior"
    evidence_used: int = 0
    evidence_rejected: int = 0
    bands_covered: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()

    def predict_output(self, duration_seconds: float) -> float:
        """Sustainable output (W or m/s) for an effort of the given duration."""
        t = max(duration_seconds, 1.0)
        return self.asymptotic_output + self.capacity / t

    def duration_for_distance(self, distance_m: float) -> float:
        """Best achievable time over a distance on the distance-time model."""
        if self.asymptotic_output <= 0:
            return float("inf")
        cs = self.asymptotic_output
        return max((distance_m - self.capacity) / cs, distance_m / (2.0 * cs))

    def scaled(self, factor: float) -> "CapabilityModel":
        return CapabilityModel(
            category=self.category,
            asymptotic_output=self.asymptotic_output * factor,
            capacity=self.capacity * factor,
            fit_quality=self.fit_quality,
            recency_score=self.recency_score,
            confidence=self.confidence,
            method=self.method,
            evidence_used=self.evidence_used,
            evidence_rejected=self.evidence_rejected,
            bands_covered=self.bands_covered,
            flags=self.flags,
        )


@dataclass(frozen=True)
class TargetEvaluation:
    target_id: str
    kind: str
    satisfaction: float
    unmet_gap: float
    projected_value: float
    target_value: float
    rationale_codes: tuple[str, ...] = ()


@dataclass(frozen=True)
class GoalEvaluation:
    goal_id: str
    score: float
    targets: tuple[TargetEvaluation, ...]


@dataclass(frozen=True)
class ConflictRecord:
    goal_a: str
    goal_b: str
    delta_a_on_b: float    # loss in B's score when planning for A alone
    delta_b_on_a: float    # loss in A's score when planning for B alone
    winner: str
    reason: str            # priority | hard_safety_constraint | event_date


@dataclass(frozen=True)
class GoalFeasibility:
    goal_id: str
    gdi: float
    band: str
    performance_gap: float
    load_gap: float
    timeline_pressure: float
    sparsity_penalty: float
    required_chronic: float
    achievable_chronic: float
    readiness_cap: int
