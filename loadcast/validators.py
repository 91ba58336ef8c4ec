"""Pydantic validation models for the projection request payload.

Field-level checks run inside pydantic; cross-field checks run afterwards so
every problem in a request is reported together. Any failure raises
``ProjectionValidationError`` before computation starts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from loadcast.config import Settings, get_settings
from loadcast.models import (
    ActivityCategory,
    ActivityLoadSample,
    CapEnforcement,
    CompletionProbabilityTarget,
    ConstraintPolicy,
    EffortEvidence,
    FinishTimeTarget,
    Goal,
    OptimizationStyle,
    PaceTarget,
    PlanConfiguration,
    PlanMode,
    PowerTarget,
    PriorityTier,
    ProfileMetrics,
    ProjectionRequest,
    ProjectionWindow,
    RiskAcceptance,
    SplitTarget,
)
from loadcast.policy import PolicyTables, get_policy

_BOUND_ERRORS = {
    "greater_than",
    "greater_than_equal",
    "less_than",
    "less_than_equal",
    "finite_number",
    "too_short",
    "too_long",
}

# Older plan payloads name the gentlest profile "sustainable"
_STYLE_ALIASES = {"sustainable": "conservative"}


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    code: str
    message: str


class ProjectionValidationError(ValueError):
    """Raised when a projection request is rejected before computation."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        summary = "; ".join(f"{i.field}: {i.code}" for i in self.issues)
        super().__init__(f"invalid projection request ({summary})")

    @property
    def codes(self) -> list[str]:
        return [i.code for i in self.issues]


class _Strict(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)


# --- Targets ---

class _TargetBase(_Strict):
    target_id: str = Field(min_length=1, max_length=80)
    tolerance: Optional[float] = Field(default=None, gt=0)
    weight: Optional[float] = Field(default=None, gt=0, le=1)


class FinishTimeTargetInput(_TargetBase):
    kind: Literal["finish_time"]
    distance_m: float = Field(gt=0, le=1_000_000)
    target_seconds: float = Field(gt=0, le=7 * 86400)

    def to_domain(self) -> FinishTimeTarget:
        return FinishTimeTarget(self.target_id, self.distance_m, self.target_seconds, self.tolerance, self.weight)


class PaceTargetInput(_TargetBase):
    kind: Literal["pace"]
    target_seconds_per_km: float = Field(gt=30, le=3600)
    distance_m: Optional[float] = Field(default=None, gt=0, le=1_000_000)

    def to_domain(self) -> PaceTarget:
        return PaceTarget(self.target_id, self.target_seconds_per_km, self.distance_m, self.tolerance, self.weight)


class PowerTargetInput(_TargetBase):
    kind: Literal["power"]
    target_watts: float = Field(gt=0, le=2500)
    duration_seconds: float = Field(gt=0, le=86400)

    def to_domain(self) -> PowerTarget:
        return PowerTarget(self.target_id, self.target_watts, self.duration_seconds, self.tolerance, self.weight)


class SplitTargetInput(_TargetBase):
    kind: Literal["split"]
    split_id: str = Field(min_length=1, max_length=80)
    distance_m: float = Field(gt=0, le=1_000_000)
    target_seconds: float = Field(gt=0, le=7 * 86400)

    def to_domain(self) -> SplitTarget:
        return SplitTarget(self.target_id, self.split_id, self.distance_m, self.target_seconds, self.tolerance, self.weight)


class CompletionProbabilityTargetInput(_TargetBase):
    kind: Literal["completion_probability"]
    target_probability: float = Field(gt=0, le=1)
    tolerance: Optional[float] = Field(default=None, gt=0, le=1)

    def to_domain(self) -> CompletionProbabilityTarget:
        return CompletionProbabilityTarget(self.target_id, self.target_probability, self.tolerance, self.weight)


TargetInput = Annotated[
    Union[
        FinishTimeTargetInput,
        PaceTargetInput,
        PowerTargetInput,
        SplitTargetInput,
        CompletionProbabilityTargetInput,
    ],
    Field(discriminator="kind"),
]

_SPEED_ONLY_KINDS = {"finish_time", "pace", "split"}


class GoalInput(_Strict):
    goal_id: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=140)
    target_date: date
    priority: PriorityTier
    category: ActivityCategory
    weight: float = Field(default=1.0, gt=0, le=100)
    targets: list[TargetInput]

    @field_validator("targets")
    @classmethod
    def at_least_one_target(cls, v):
        if not v:
            raise PydanticCustomError("goal_has_no_targets", "goal must declare at least one target")
        return v

    def to_domain(self) -> Goal:
        return Goal(
            goal_id=self.goal_id,
            name=self.name,
            target_date=self.target_date,
            priority=self.priority,
            category=self.category,
            targets=tuple(t.to_domain() for t in self.targets),
            weight=self.weight,
        )


# --- Plan configuration ---

class RiskAcceptanceInput(_Strict):
    affirmed: bool
    accepted_on: Optional[date] = None
    note: str = Field(default="", max_length=2000)


class ConstraintPolicyInput(_Strict):
    ramp: CapEnforcement = CapEnforcement.HARD
    consecutive_high_load_days: CapEnforcement = CapEnforcement.HARD
    fatigue_floor: CapEnforcement = CapEnforcement.HARD
    monotony: CapEnforcement = CapEnforcement.HARD
    strain: CapEnforcement = CapEnforcement.HARD
    readiness_cap: CapEnforcement = CapEnforcement.HARD
    ramp_pct: Optional[float] = Field(default=None, gt=0, le=50)
    max_consecutive_high_days: Optional[int] = Field(default=None, ge=1, le=7)
    fatigue_floor_value: Optional[float] = Field(default=None, ge=-100, lt=0)
    monotony_max: Optional[float] = Field(default=None, gt=0, le=10)
    strain_max: Optional[float] = Field(default=None, gt=0, le=20000)

    def to_domain(self) -> ConstraintPolicy:
        return ConstraintPolicy(**self.model_dump())


class PlanConfigurationInput(_Strict):
    mode: PlanMode = PlanMode.SAFE_DEFAULT
    risk_acceptance: Optional[RiskAcceptanceInput] = None
    optimization_style: OptimizationStyle = OptimizationStyle.BALANCED
    constraint_policy: ConstraintPolicyInput = Field(default_factory=ConstraintPolicyInput)
    hard_rest_days: list[int] = Field(default_factory=list)
    min_sessions_per_week: int = Field(default=0, ge=0, le=7)
    max_sessions_per_week: int = Field(default=7, ge=1, le=7)

    @field_validator("optimization_style", mode="before")
    @classmethod
    def style_alias(cls, v):
        if isinstance(v, str):
            return _STYLE_ALIASES.get(v, v)
        return v

    @field_validator("hard_rest_days")
    @classmethod
    def valid_weekdays(cls, v):
        for day in v:
            if day < 0 or day > 6:
                raise PydanticCustomError("invalid_weekday", "rest days must be weekday indices 0-6")
        return sorted(set(v))

    def to_domain(self) -> PlanConfiguration:
        acceptance = None
        if self.risk_acceptance is not None:
            acceptance = RiskAcceptance(
                affirmed=self.risk_acceptance.affirmed,
                accepted_on=self.risk_acceptance.accepted_on,
                note=self.risk_acceptance.note,
            )
        return PlanConfiguration(
            mode=self.mode,
            risk_acceptance=acceptance,
            optimization_style=self.optimization_style,
            constraint_policy=self.constraint_policy.to_domain(),
            hard_rest_days=tuple(self.hard_rest_days),
            min_sessions_per_week=self.min_sessions_per_week,
            max_sessions_per_week=self.max_sessions_per_week,
        )


# --- History, evidence, profile, window ---

class LoadSampleInput(_Strict):
    day: date
    load: float = Field(ge=0, le=2000)
    category: ActivityCategory = ActivityCategory.OTHER


class EffortEvidenceInput(_Strict):
    category: ActivityCategory
    duration_seconds: float = Field(gt=0, le=86400)
    output: float = Field(gt=0, le=3000)
    recorded_on: date


class ProfileMetricsInput(_Strict):
    weight_kg: Optional[float] = Field(default=None, ge=25, le=250)
    lthr_bpm: Optional[float] = Field(default=None, ge=80, le=230)


class WindowInput(_Strict):
    start: date
    end: date
    timezone: str = Field(default="UTC", min_length=1, max_length=64)
    as_of: Optional[date] = None


class ProjectionRequestInput(_Strict):
    goals: list[GoalInput]
    plan: PlanConfigurationInput = Field(default_factory=PlanConfigurationInput)
    window: WindowInput
    history: list[LoadSampleInput] = Field(default_factory=list)
    evidence: list[EffortEvidenceInput] = Field(default_factory=list)
    profile: ProfileMetricsInput = Field(default_factory=ProfileMetricsInput)


# ---------------------------------------------------------------------------
# Cross-field rules
# ---------------------------------------------------------------------------

def _loosened_caps(policy: ConstraintPolicy, plan: PlanConfigurationInput, tables: PolicyTables) -> list[str]:
    """Names of caps whose numeric override is looser than the policy default."""
    limits = tables.boundary
    loosened = []
    if policy.ramp_pct is not None and policy.ramp_pct > limits.ramp_pct[plan.optimization_style]:
        loosened.append("ramp")
    if policy.max_consecutive_high_days is not None and policy.max_consecutive_high_days > limits.max_consecutive_high_days:
        loosened.append("consecutive_high_load_days")
    if policy.fatigue_floor_value is not None and policy.fatigue_floor_value < limits.fatigue_floor:
        loosened.append("fatigue_floor")
    if policy.monotony_max is not None and policy.monotony_max > limits.monotony_max:
        loosened.append("monotony")
    if policy.strain_max is not None and policy.strain_max > limits.strain_max:
        loosened.append("strain")
    return loosened


def _plan_issues(plan: PlanConfigurationInput, tables: PolicyTables) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if plan.mode is PlanMode.RISK_ACCEPTED and (plan.risk_acceptance is None or not plan.risk_acceptance.affirmed):
        issues.append(ValidationIssue(
            "plan.risk_acceptance", "risk_acceptance_required",
            "risk_accepted mode requires an explicitly affirmed acceptance record",
        ))

    constraint = plan.constraint_policy.to_domain()
    if plan.mode is PlanMode.SAFE_DEFAULT:
        relaxed = constraint.relaxed_caps() + _loosened_caps(constraint, plan, tables)
        for cap in relaxed:
            issues.append(ValidationIssue(
                f"plan.constraint_policy.{cap}", "override_requires_risk_acceptance",
                f"relaxing the {cap} cap is only allowed in risk_accepted mode",
            ))

    available = 7 - len(plan.hard_rest_days)
    if available == 0:
        issues.append(ValidationIssue("plan.hard_rest_days", "no_training_days", "every weekday is marked as hard rest"))
    if plan.min_sessions_per_week > plan.max_sessions_per_week:
        issues.append(ValidationIssue(
            "plan.min_sessions_per_week", "min_sessions_exceeds_max",
            "minimum sessions per week exceeds the maximum",
        ))
    if plan.min_sessions_per_week > available:
        issues.append(ValidationIssue(
            "plan.min_sessions_per_week", "min_sessions_exceeds_available_days",
            f"{plan.min_sessions_per_week} sessions requested but only {available} days are available",
        ))
    return issues


def _goal_issues(goals: list[GoalInput], window: WindowInput, settings: Settings) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not goals:
        issues.append(ValidationIssue("goals", "no_goals", "at least one goal is required"))
    if len(goals) > settings.max_goals:
        issues.append(ValidationIssue("goals", "too_many_goals", f"at most {settings.max_goals} goals are supported"))

    seen: set[str] = set()
    for i, goal in enumerate(goals):
        prefix = f"goals.{i}"
        if goal.goal_id in seen:
            issues.append(ValidationIssue(f"{prefix}.goal_id", "duplicate_goal_id", f"goal id {goal.goal_id!r} repeats"))
        seen.add(goal.goal_id)

        if goal.target_date < window.start:
            issues.append(ValidationIssue(f"{prefix}.target_date", "goal_before_window", "goal date precedes the window start"))

        target_ids: set[str] = set()
        explicit = 0.0
        for j, target in enumerate(goal.targets):
            if target.target_id in target_ids:
                issues.append(ValidationIssue(f"{prefix}.targets.{j}.target_id", "duplicate_target_id", "target id repeats within goal"))
            target_ids.add(target.target_id)
            if target.weight is not None:
                explicit += target.weight
            kind_ok = True
            if target.kind in _SPEED_ONLY_KINDS and not goal.category.is_speed_based:
                kind_ok = False
            if target.kind == "power" and not goal.category.is_power_based:
                kind_ok = False
            if not kind_ok:
                issues.append(ValidationIssue(
                    f"{prefix}.targets.{j}.kind", "target_kind_category_mismatch",
                    f"{target.kind} targets are not supported for {goal.category.value} goals",
                ))
        if explicit > 1.0 + 1e-9:
            issues.append(ValidationIssue(f"{prefix}.targets", "target_weights_exceed_one", "explicit target weights sum above 1"))
    return issues


def _window_issues(window: WindowInput, settings: Settings) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if window.end < window.start:
        issues.append(ValidationIssue("window.end", "window_end_before_start", "window ends before it starts"))
    elif (window.end - window.start).days + 1 > settings.max_window_days:
        issues.append(ValidationIssue("window.end", "window_too_long", f"window exceeds {settings.max_window_days} days"))
    return issues


def _history_issues(history: list[LoadSampleInput], window: WindowInput, settings: Settings) -> list[ValidationIssue]:
    if not history:
        return []
    earliest = min(range(len(history)), key=lambda i: history[i].day)
    if (window.start - history[earliest].day).days > settings.max_history_days:
        return [ValidationIssue(
            f"history.{earliest}.day", "history_too_long",
            f"history reaches more than {settings.max_history_days} days before the window",
        )]
    return []


def _pydantic_issues(exc: ValidationError) -> list[ValidationIssue]:
    issues = []
    for err in exc.errors():
        code = err["type"]
        if code in _BOUND_ERRORS:
            code = "out_of_bounds"
        field = ".".join(str(part) for part in err["loc"])
        issues.append(ValidationIssue(field, code, err["msg"]))
    return issues


def validate_request(
    payload: dict,
    settings: Settings | None = None,
    policy: PolicyTables | None = None,
) -> ProjectionRequest:
    """Validate a raw request payload and convert it into domain values."""
    settings = settings or get_settings()
    policy = policy or get_policy(settings.policy_version)
    try:
        model = ProjectionRequestInput.model_validate(payload)
    except ValidationError as exc:
        raise ProjectionValidationError(_pydantic_issues(exc)) from exc

    issues = (
        _window_issues(model.window, settings)
        + _goal_issues(model.goals, model.window, settings)
        + _history_issues(model.history, model.window, settings)
        + _plan_issues(model.plan, policy)
    )
    if issues:
        raise ProjectionValidationError(issues)

    return ProjectionRequest(
        goals=tuple(g.to_domain() for g in model.goals),
        plan=model.plan.to_domain(),
        window=ProjectionWindow(
            start=model.window.start,
            end=model.window.end,
            timezone=model.window.timezone,
            as_of=model.window.as_of,
        ),
        history=tuple(
            ActivityLoadSample(day=s.day, load=s.load, category=s.category) for s in model.history
        ),
        evidence=tuple(
            EffortEvidence(category=e.category, duration_seconds=e.duration_seconds, output=e.output, recorded_on=e.recorded_on)
            for e in model.evidence
        ),
        profile=ProfileMetrics(weight_kg=model.profile.weight_kg, lthr_bpm=model.profile.lthr_bpm),
    )


