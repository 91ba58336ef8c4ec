"""Constrained receding-horizon solver for weekly training load.

Each week a fixed lattice of candidate weekly loads is scored by rolling the
load state forward through a short horizon (later horizon weeks follow the
periodization heuristic) and on to every goal date. Only the first week of
the winning candidate is committed before the next week is solved.

The run is an explicit state machine::

    IDLE -> SOLVING(0) -> COMMITTED(0) -> SOLVING(1) -> ... -> DONE

Candidate evaluations are counted against a per-profile budget. When the
budget runs short the solver degrades through a fixed chain: full lattice,
reduced lattice, single-pass heuristic, cap-only baseline.

A candidate answers for every day whose trailing seven-day window holds its
loads, so hard caps are judged over its own week and the six days after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum

from loadcast.logging_config import get_logger, log_context
from loadcast.models import (
    ActivityCategory,
    CapabilityModel,
    Goal,
    GoalEvaluation,
    LoadPoint,
    LoadState,
    OptimizationStyle,
)
from loadcast.policy import PeriodizationPolicy, PolicyTables, SolverProfile
from loadcast.services.aggregation import evaluate_goal, plan_score
from loadcast.services.boundary import CapLimits, REASON_CODES, day_checks, ramp_ceiling, violations
from loadcast.services.capability import project_capability
from loadcast.services.feasibility import GoalDemand, taper_weeks_for_tier
from loadcast.services.readiness import state_readiness
from loadcast.services.satisfaction import GoalState
from loadcast.services.training_load import advance, project_series, steady_state_weekly_load, step_week

logger = get_logger(__name__)

TIE_BREAK_STAGES = ("objective", "closest_to_previous", "earliest_goal_date", "candidate_id")

# The committed week plus the six days whose trailing window still holds it
JUDGED_DAYS = 13
BASELINE_SEARCH_STEPS = 12


class SolverPhase(str, Enum):
    IDLE = "idle"
    SOLVING = "solving"
    COMMITTED = "committed"
    DONE = "done"


class FallbackTier(str, Enum):
    FULL_LATTICE = "full_lattice"
    REDUCED_LATTICE = "reduced_lattice"
    HEURISTIC = "heuristic"
    CAP_BASELINE = "cap_baseline"


_TIER_ORDER = list(FallbackTier)


def worse_tier(a: FallbackTier, b: FallbackTier) -> FallbackTier:
    return a if _TIER_ORDER.index(a) >= _TIER_ORDER.index(b) else b


# ---------------------------------------------------------------------------
# Periodization
# ---------------------------------------------------------------------------

def phase_for_week(week: int, total: int) -> str:
    """Training phase for a 1-based week number of a ``total``-week block."""
    if week % 4 == 0:
        return "Recovery"
    ratio = week / total
    if ratio < 0.4:
        return "Base"
    if ratio < 0.75:
        return "Build"
    if ratio < 0.92:
        return "Peak"
    return "Taper"


def weekday_shares(
    pattern: tuple[float, ...],
    rest_days: tuple[int, ...] = (),
    min_sessions: int = 0,
    max_sessions: int = 7,
) -> tuple[float, ...]:
    """Share of the weekly load per weekday (Monday first), summing to 1."""
    open_days = [d for d in range(7) if d not in rest_days]
    if not open_days:
        return (0.0,) * 7
    ranked = sorted(open_days, key=lambda d: (-pattern[d], d))
    training = set(ranked[:max_sessions])
    shares = [pattern[d] if d in training else 0.0 for d in range(7)]
    positive = [s for s in shares if s > 0]
    active = len(positive)
    if active < min_sessions:
        # Zero-share days called up to meet the session minimum get half the lightest share
        filler = (min(positive) / 2.0) if positive else 1.0
        for d in ranked:
            if active >= min_sessions:
                break
            if d in training and shares[d] == 0.0:
                shares[d] = filler
                active += 1
    total = sum(shares)
    if total <= 0:
        shares = [1.0 if d in training else 0.0 for d in range(7)]
        total = sum(shares)
    return tuple(s / total for s in shares)


def week_day_weights(shares: tuple[float, ...], week_start: date) -> tuple[float, ...]:
    """Shares in day order for a week beginning on ``week_start``."""
    first = week_start.weekday()
    return tuple(shares[(first + i) % 7] for i in range(7))


def spread_week(weekly_load: float, weights: tuple[float, ...]) -> list[float]:
    return [weekly_load * w for w in weights]


# ---------------------------------------------------------------------------
# Planning context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlanningContext:
    """Everything a solve needs, fixed for the whole run."""
    goals: tuple[Goal, ...]
    start: date
    weeks: int
    initial: LoadState
    previous_week_load: float
    lead_in: tuple[LoadPoint, ...]
    limits: CapLimits
    safe_limits: CapLimits
    demands: dict[str, GoalDemand]
    capabilities: dict[ActivityCategory, CapabilityModel]
    shares: tuple[float, ...]
    policy: PolicyTables

    def week_start(self, week: int) -> date:
        return self.start + timedelta(days=7 * week)

    def weights(self, week: int) -> tuple[float, ...]:
        return week_day_weights(self.shares, self.week_start(week))


def plan_weeks(start: date, last_day: date) -> int:
    return max(1, -(-((last_day - start).days + 1) // 7))


def heuristic_week_load(
    ctx: PlanningContext,
    week: int,
    previous_load: float,
    goals: tuple[Goal, ...],
    limits: CapLimits,
    deload: bool = False,
) -> tuple[float, bool]:
    """Cap-constrained periodized load for one week.

    Tracks the steady-state weekly load of the most demanding upcoming goal,
    scaled by taper, event and recovery multipliers. Returns the load and
    whether the ramp cap held it back.
    """
    period: PeriodizationPolicy = ctx.policy.periodization
    start = ctx.week_start(week)
    end = start + timedelta(days=6)
    upcoming = [g for g in goals if g.target_date >= start]
    if upcoming:
        demand = max(ctx.demands[g.goal_id].required_chronic for g in upcoming)
        target = steady_state_weekly_load(demand)
    else:
        demand = max((ctx.demands[g.goal_id].required_chronic for g in goals), default=0.0)
        target = steady_state_weekly_load(demand) * period.maintenance_fraction

    multiplier = 1.0
    if upcoming:
        nxt = min(upcoming, key=lambda g: (g.target_date, g.goal_id))
        weeks_out = (nxt.target_date - start).days // 7
        taper = taper_weeks_for_tier(ctx.demands[nxt.goal_id].tier, ctx.policy.demand)
        if nxt.target_date <= end:
            multiplier = period.event_multiplier
        elif weeks_out <= min(taper, len(period.taper_multipliers)):
            multiplier = period.taper_multipliers[weeks_out - 1]
    if multiplier == 1.0 and any(start - timedelta(days=7) <= g.target_date < start for g in goals):
        multiplier = period.recovery_multiplier
    if multiplier == 1.0 and deload and phase_for_week(week + 1, ctx.weeks) == "Recovery":
        multiplier = period.deload_multiplier

    desired = target * multiplier
    ceiling = limits.ramp_ceiling(previous_load)
    if desired > ceiling:
        return ceiling, True
    return desired, False


def heuristic_plan(
    ctx: PlanningContext,
    goals: tuple[Goal, ...] | None = None,
    limits: CapLimits | None = None,
    deload: bool = False,
) -> tuple[list[float], bool]:
    """Whole-plan weekly loads from the heuristic alone; also reports if the cap bound."""
    goals = ctx.goals if goals is None else goals
    limits = limits or ctx.limits
    loads: list[float] = []
    capped = False
    prev = ctx.previous_week_load
    for week in range(ctx.weeks):
        load, hit = heuristic_week_load(ctx, week, prev, goals, limits, deload)
        capped = capped or hit
        loads.append(load)
        prev = load
    return loads, capped


def daily_loads_for(ctx: PlanningContext, weekly_loads: list[float]) -> list[float]:
    out: list[float] = []
    for week, load in enumerate(weekly_loads):
        out.extend(spread_week(load, ctx.weights(week)))
    return out


def goal_states_from_points(
    goals: tuple[Goal, ...],
    initial: LoadState,
    start: date,
    points: list[LoadPoint],
) -> dict[str, LoadState]:
    """Load state entering each goal day (after the preceding day's load)."""
    out: dict[str, LoadState] = {}
    for goal in goals:
        offset = (goal.target_date - start).days
        if offset <= 0:
            out[goal.goal_id] = initial
        else:
            p = points[min(offset, len(points)) - 1]
            out[goal.goal_id] = LoadState(chronic=p.chronic, acute=p.acute)
    return out


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoreSnapshot:
    plan_score: float
    readiness: float
    goal_scores: dict[str, float]
    state_readiness: dict[str, float]
    evaluations: dict[str, GoalEvaluation]


class GoalScorer:
    """Scores goal-date load states into goal, plan and readiness values."""

    def __init__(self, ctx: PlanningContext):
        self.ctx = ctx
        self.chronic_now = ctx.initial.chronic

    def goal_state(self, goal: Goal, state: LoadState) -> GoalState:
        base = self.ctx.capabilities.get(goal.category)
        cap = None
        if base is not None:
            cap = project_capability(base, self.chronic_now, state.chronic, state.balance, self.ctx.policy.capability)
        return GoalState(
            capability=cap,
            chronic=state.chronic,
            balance=state.balance,
            demand_chronic=self.ctx.demands[goal.goal_id].required_chronic,
        )

    def evaluate(self, states: dict[str, LoadState], goals: tuple[Goal, ...] | None = None) -> ScoreSnapshot:
        goals = self.ctx.goals if goals is None else goals
        policy = self.ctx.policy
        evaluations = {g.goal_id: evaluate_goal(g, self.goal_state(g, states[g.goal_id]), policy) for g in goals}
        scores = {gid: e.score for gid, e in evaluations.items()}
        readiness = {
            g.goal_id: state_readiness(states[g.goal_id], self.ctx.demands[g.goal_id].required_chronic, policy.readiness)
            for g in goals
        }
        return ScoreSnapshot(
            plan_score=plan_score(goals, scores, policy.tiers),
            readiness=plan_score(goals, readiness, policy.tiers),
            goal_scores=scores,
            state_readiness=readiness,
            evaluations=evaluations,
        )


# ---------------------------------------------------------------------------
# Rollout and candidate evaluation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rollout:
    horizon_points: list[LoadPoint]
    weekly_loads: list[float]
    goal_states: dict[str, LoadState]


def rollout(
    ctx: PlanningContext,
    week: int,
    state: LoadState,
    previous_load: float,
    first_loads: list[float],
    horizon: int,
    settled: dict[str, LoadState],
) -> Rollout:
    """Simulate from the start of ``week``: given loads first, then the heuristic."""
    goal_states = dict(settled)
    pending = {g.goal_id: g for g in ctx.goals if g.goal_id not in goal_states}
    horizon_points: list[LoadPoint] = []
    weekly: list[float] = []
    prev = previous_load
    for w in range(week, ctx.weeks):
        in_horizon = w - week < horizon
        if not in_horizon and not pending:
            break
        if w - week < len(first_loads):
            load = first_loads[w - week]
        else:
            load, _ = heuristic_week_load(ctx, w, prev, ctx.goals, ctx.limits)
        weights = ctx.weights(w)
        start = ctx.week_start(w)
        due = [g for g in pending.values() if g.target_date <= start + timedelta(days=6)]
        if in_horizon or due:
            for i, share in enumerate(weights):
                day = start + timedelta(days=i)
                for g in due:
                    if g.target_date == day:
                        goal_states[g.goal_id] = state
                state = advance(state, load * share, ctx.policy.decay)
                if in_horizon:
                    horizon_points.append(LoadPoint(day, state.chronic, state.acute, state.balance, load * share))
            for g in due:
                pending.pop(g.goal_id, None)
        else:
            state = step_week(state, load, weights, ctx.policy.decay)
        if in_horizon:
            weekly.append(load)
        prev = load
    for gid in pending:
        goal_states[gid] = state
    return Rollout(horizon_points=horizon_points, weekly_loads=weekly, goal_states=goal_states)


@dataclass(frozen=True)
class CandidateResult:
    candidate_id: int
    load: float
    objective: float
    feasible: bool
    violated: tuple[str, ...]
    closeness: float
    earliest_goal_ordinal: int
    continuation: tuple[float, ...]
    penalties: dict[str, float] = field(default_factory=dict)

    def sort_key(self) -> tuple:
        return (-round(self.objective, 9), round(self.closeness, 9), self.earliest_goal_ordinal, self.candidate_id)


def _excess(value: float, threshold: float, scale: float) -> float:
    return min(1.0, max(0.0, value - threshold) / max(scale, 1e-9))


def penalties_for(checks, limits: CapLimits) -> dict[str, float]:
    """Normalized distance past caution thresholds over the simulated days."""
    overload = 0.0
    monotony = 0.0
    strain = 0.0
    for c in checks:
        parts = []
        if limits.is_enforced("ramp") and c.previous_week_load is not None:
            caution = limits.ramp_caution_ceiling(c.previous_week_load)
            parts.append(_excess(c.week_load, caution, caution))
        if limits.is_enforced("consecutive_high_load_days"):
            parts.append(_excess(c.high_load_streak, limits.max_consecutive_high_days - 1, limits.max_consecutive_high_days))
        if limits.is_enforced("fatigue_floor"):
            parts.append(_excess(-c.balance, -limits.fatigue_caution_floor, abs(limits.fatigue_floor)))
        overload = max(overload, min(1.0, sum(parts)))
        if limits.is_enforced("monotony"):
            monotony = max(monotony, _excess(c.monotony, limits.monotony_caution, limits.monotony_caution))
        if limits.is_enforced("strain"):
            strain = max(strain, _excess(c.strain, limits.strain_caution, limits.strain_caution))
    return {"overload": overload, "monotony": monotony, "strain": strain}


def hard_violations(checks, limits: CapLimits, inherited: set[tuple[date, str]]) -> list[str]:
    found: list[str] = []
    for c in checks:
        hard, _ = violations(c, limits)
        for cap in hard:
            if limits.is_hard(cap) and (c.day, cap) not in inherited and cap not in found:
                found.append(cap)
    return found


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SolverState:
    phase: SolverPhase
    week: int = 0


@dataclass(frozen=True)
class WeekDecision:
    week: int
    week_start: date
    load: float
    tier: FallbackTier
    decided_by: str
    candidates_evaluated: int
    eliminated: int
    objective: float | None
    active_constraints: tuple[str, ...]


@dataclass(frozen=True)
class SolverResult:
    weekly_loads: tuple[float, ...]
    daily_loads: tuple[float, ...]
    decisions: tuple[WeekDecision, ...]
    evaluations: int
    budget: int
    worst_tier: FallbackTier


class RecedingHorizonSolver:
    """Week-by-week solve driven through ``advance()``."""

    def __init__(self, ctx: PlanningContext, style: OptimizationStyle):
        self.ctx = ctx
        self.profile: SolverProfile = ctx.policy.solver_profile(style)
        self.scorer = GoalScorer(ctx)
        self.state = SolverState(SolverPhase.IDLE)
        self.evaluations = 0
        self.decisions: list[WeekDecision] = []
        self.weekly_loads: list[float] = []
        self.points: list[LoadPoint] = []
        self._load_state = ctx.initial
        self._previous_load = ctx.previous_week_load
        self._planned_ahead: dict[int, float] = {}
        self._pending: WeekDecision | None = None
        self._baseline_load = ramp_ceiling(
            ctx.previous_week_load, ctx.safe_limits.ramp_pct, ctx.safe_limits.ramp_allowance,
        )

    # -- transitions --

    def advance(self) -> tuple[SolverState, WeekDecision | None]:
        """Move one step; returns the new state and the action committed by it, if any."""
        phase = self.state.phase
        if phase is SolverPhase.IDLE:
            self.state = SolverState(SolverPhase.SOLVING, 0)
            return self.state, None
        if phase is SolverPhase.SOLVING:
            decision = self._solve_week(self.state.week)
            self._pending = decision
            self.state = SolverState(SolverPhase.COMMITTED, self.state.week)
            return self.state, decision
        if phase is SolverPhase.COMMITTED:
            self._apply(self._pending)
            self._pending = None
            nxt = self.state.week + 1
            self.state = SolverState(SolverPhase.DONE, nxt) if nxt >= self.ctx.weeks else SolverState(SolverPhase.SOLVING, nxt)
            return self.state, None
        return self.state, None

    def run(self) -> SolverResult:
        while self.state.phase is not SolverPhase.DONE:
            self.advance()
        return self.result()

    def result(self) -> SolverResult:
        worst = FallbackTier.FULL_LATTICE
        for d in self.decisions:
            worst = worse_tier(worst, d.tier)
        return SolverResult(
            weekly_loads=tuple(self.weekly_loads),
            daily_loads=tuple(p.load for p in self.points),
            decisions=tuple(self.decisions),
            evaluations=self.evaluations,
            budget=self.profile.budget,
            worst_tier=worst,
        )

    # -- internals --

    def _lead_in(self) -> list[LoadPoint]:
        return (list(self.ctx.lead_in) + self.points)[-14:]

    def _settled(self, week: int) -> dict[str, LoadState]:
        start = self.ctx.week_start(week)
        done = tuple(g for g in self.ctx.goals if g.target_date < start)
        return goal_states_from_points(done, self.ctx.initial, self.ctx.start, self.points)

    def _lattice(self, size: int) -> list[float]:
        limits = self.ctx.limits
        prev = self._previous_load
        if limits.is_hard("ramp"):
            top = limits.ramp_ceiling(prev)
        else:
            top = ramp_ceiling(prev, 2.0 * limits.ramp_pct, 2.0 * limits.ramp_allowance)
        low = prev * self.profile.lattice_floor_ratio
        if size == 1:
            return [top]
        return [low + (top - low) * i / (size - 1) for i in range(size)]

    def _checks(self, points: list[LoadPoint]):
        return day_checks(points, self.ctx.limits, self._lead_in())

    def _evaluate(self, week, candidate_id, load, settled, inherited, reference: ScoreSnapshot) -> CandidateResult:
        self.evaluations += 1
        ctx = self.ctx
        weights = ctx.policy.objective
        ro = rollout(ctx, week, self._load_state, self._previous_load, [load], self.profile.horizon_weeks, settled)
        checks = self._checks(ro.horizon_points)
        # Later horizon weeks only add penalties
        violated = self._new_violations(week, load, settled, inherited)
        penalties = penalties_for(checks, ctx.limits)

        scale = max(self._previous_load, ctx.limits.ramp_allowance)
        volatility = min(1.0, abs(load - self._previous_load) / scale)
        planned = self._planned_ahead.get(week)
        churn = 0.0 if planned is None else min(1.0, abs(load - planned) / max(planned, ctx.limits.ramp_allowance))

        snapshot = self.scorer.evaluate(ro.goal_states)
        objective = (
            weights.goal * snapshot.plan_score
            + weights.readiness * snapshot.readiness
            - weights.risk * penalties["overload"]
            - weights.volatility * volatility
            - weights.churn * churn
            - weights.monotony * penalties["monotony"]
            - weights.strain * penalties["strain"]
        )
        affected = [
            g.target_date.toordinal() for g in ctx.goals
            if abs(snapshot.goal_scores[g.goal_id] - reference.goal_scores[g.goal_id]) > 1e-9
        ]
        return CandidateResult(
            candidate_id=candidate_id,
            load=load,
            objective=objective,
            feasible=not violated,
            violated=tuple(violated),
            closeness=abs(load - self._previous_load),
            earliest_goal_ordinal=min(affected) if affected else date.max.toordinal(),
            continuation=tuple(ro.weekly_loads[1:]),
            penalties={**penalties, "volatility": volatility, "churn": churn},
        )

    def _reference(self, week: int, settled):
        """All-rest rollout: its violations are inherited, not caused by a candidate."""
        horizon = max(2, self.profile.horizon_weeks)
        ro = rollout(self.ctx, week, self._load_state, self._previous_load, [0.0] * horizon, horizon, settled)
        inherited: set[tuple[date, str]] = set()
        for c in self._checks(ro.horizon_points)[:JUDGED_DAYS]:
            hard, _ = violations(c, self.ctx.limits)
            inherited.update((c.day, cap) for cap in hard)
        return inherited, self.scorer.evaluate(ro.goal_states)

    def _new_violations(self, week: int, load: float, settled, inherited) -> list[str]:
        """Hard caps ``load`` breaks on the days it reaches, with the next week at rest."""
        ro = rollout(self.ctx, week, self._load_state, self._previous_load, [load, 0.0], 2, settled)
        return hard_violations(self._checks(ro.horizon_points)[:JUDGED_DAYS], self.ctx.limits, inherited)

    def _cap_baseline(self, week: int, settled, inherited) -> float:
        """Highest flat load up to the safe ceiling that breaks no hard cap.

        A rest week never adds a violation, so the search always has a floor.
        """
        top = min(self._baseline_load, self.ctx.limits.ramp_ceiling(self._previous_load))
        if not self._new_violations(week, top, settled, inherited):
            return top
        low, high = 0.0, top
        for _ in range(BASELINE_SEARCH_STEPS):
            mid = (low + high) / 2.0
            if self._new_violations(week, mid, settled, inherited):
                high = mid
            else:
                low = mid
        return low

    def _solve_week(self, week: int) -> WeekDecision:
        ctx = self.ctx
        settled = self._settled(week)
        inherited, reference = self._reference(week, settled)
        remaining = self.profile.budget - self.evaluations

        if remaining >= self.profile.lattice_size:
            tier, size = FallbackTier.FULL_LATTICE, self.profile.lattice_size
        elif remaining >= self.profile.reduced_lattice_size:
            tier, size = FallbackTier.REDUCED_LATTICE, self.profile.reduced_lattice_size
        else:
            tier, size = FallbackTier.HEURISTIC, 0

        candidates = [
            self._evaluate(week, i, load, settled, inherited, reference) for i, load in enumerate(self._lattice(size))
        ] if size else []
        feasible = sorted((c for c in candidates if c.feasible), key=CandidateResult.sort_key)
        eliminated = len(candidates) - len(feasible)
        active = sorted({cap for c in candidates for cap in c.violated})

        if feasible:
            best = feasible[0]
            decided_by = "only_feasible_candidate"
            if len(feasible) > 1:
                first, second = best.sort_key(), feasible[1].sort_key()
                decided_by = next((TIE_BREAK_STAGES[i] for i in range(4) if first[i] != second[i]), "candidate_id")
            for offset, planned in enumerate(best.continuation, start=1):
                self._planned_ahead[week + offset] = planned
            decision = WeekDecision(
                week=week, week_start=ctx.week_start(week), load=best.load, tier=tier, decided_by=decided_by,
                candidates_evaluated=len(candidates), eliminated=eliminated, objective=best.objective,
                active_constraints=tuple(REASON_CODES[c] for c in active),
            )
        else:
            load, _ = heuristic_week_load(ctx, week, self._previous_load, ctx.goals, ctx.limits)
            if not self._new_violations(week, load, settled, inherited):
                tier = FallbackTier.HEURISTIC
            else:
                tier = FallbackTier.CAP_BASELINE
                load = self._cap_baseline(week, settled, inherited)
            decision = WeekDecision(
                week=week, week_start=ctx.week_start(week), load=load, tier=tier, decided_by=tier.value,
                candidates_evaluated=len(candidates), eliminated=eliminated, objective=None,
                active_constraints=tuple(REASON_CODES[c] for c in active),
            )

        if decision.tier is not FallbackTier.FULL_LATTICE:
            logger.warning(
                "solver degraded to %s", decision.tier.value,
                extra=log_context(week=week, evaluations=self.evaluations, budget=self.profile.budget),
            )
        return decision

    def _apply(self, decision: WeekDecision) -> None:
        week = decision.week
        loads = spread_week(decision.load, self.ctx.weights(week))
        new_points = project_series(self._load_state, self.ctx.week_start(week), loads, self.ctx.policy.decay)
        self.points.extend(new_points)
        last = new_points[-1]
        self._load_state = LoadState(chronic=last.chronic, acute=last.acute)
        self._previous_load = decision.load
        self.weekly_loads.append(decision.load)
        self.decisions.append(decision)
        logger.debug(
            "committed week %d", week,
            extra=log_context(load=round(decision.load, 2), tier=decision.tier.value, decided_by=decision.decided_by),
        )


def solve(ctx: PlanningContext, style: OptimizationStyle) -> SolverResult:
    return RecedingHorizonSolver(ctx, style).run()
