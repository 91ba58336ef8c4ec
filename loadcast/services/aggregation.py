"""Goal and plan score aggregation, and goal-conflict bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field

from loadcast.models import ConflictRecord, Goal, GoalEvaluation, GoalTarget, PriorityTier
from loadcast.policy import PolicyTables, TierWeights
from loadcast.services.satisfaction import GoalState, evaluate_target


def normalized_target_weights(targets: tuple[GoalTarget, ...]) -> list[float]:
    """Explicit weights as given; unweighted targets share the remainder equally."""
    explicit = sum(t.weight for t in targets if t.weight is not None)
    missing = [t for t in targets if t.weight is None]
    if not missing:
        return [t.weight / explicit for t in targets]
    share = max(0.0, 1.0 - explicit) / len(missing)
    weights = [t.weight if t.weight is not None else share for t in targets]
    total = sum(weights)
    if total <= 0:
        return [1.0 / len(targets)] * len(targets)
    return [w / total for w in weights]


def evaluate_goal(goal: Goal, state: GoalState, policy: PolicyTables) -> GoalEvaluation:
    evaluations = tuple(
        evaluate_target(t, state, goal.targets, policy.satisfaction, policy.capability) for t in goal.targets
    )
    weights = normalized_target_weights(goal.targets)
    score = sum(w * e.satisfaction for w, e in zip(weights, evaluations))
    return GoalEvaluation(goal_id=goal.goal_id, score=score, targets=evaluations)


def tier_scores(goals: tuple[Goal, ...], scores: dict[str, float]) -> dict[PriorityTier, float]:
    """Goal-weighted mean score per tier present."""
    out: dict[PriorityTier, float] = {}
    for tier in PriorityTier:
        members = [g for g in goals if g.priority is tier]
        if not members:
            continue
        total_weight = sum(g.weight for g in members)
        out[tier] = sum(g.weight * scores[g.goal_id] for g in members) / total_weight
    return out


def plan_score(goals: tuple[Goal, ...], scores: dict[str, float], tiers: TierWeights) -> float:
    """Tier-weighted plan score over the tiers present."""
    by_tier = tier_scores(goals, scores)
    weights = tiers.normalized(set(by_tier))
    return sum(weights[t] * s for t, s in by_tier.items())


@dataclass
class ConflictLedger:
    """Conflict records with lookup by goal pair."""

    records: list[ConflictRecord] = field(default_factory=list)
    _index: dict[tuple[str, str], int] = field(default_factory=dict)

    @staticmethod
    def key(a: str, b: str) -> tuple[str, str]:
        return (a, b) if a <= b else (b, a)

    def add(self, record: ConflictRecord) -> None:
        self._index[self.key(record.goal_a, record.goal_b)] = len(self.records)
        self.records.append(record)

    def between(self, a: str, b: str) -> ConflictRecord | None:
        idx = self._index.get(self.key(a, b))
        return None if idx is None else self.records[idx]

    def for_goal(self, goal_id: str) -> list[ConflictRecord]:
        return [r for r in self.records if goal_id in (r.goal_a, r.goal_b)]

    def __len__(self) -> int:
        return len(self.records)


def _precedence(a: Goal, b: Goal, cap_limited: set[str]) -> tuple[str, str]:
    """Winner id and reason for a conflicting pair (goals in canonical order)."""
    if a.priority is not b.priority:
        winner = a if a.priority.value < b.priority.value else b
        return winner.goal_id, "priority"
    a_limited = a.goal_id in cap_limited
    b_limited = b.goal_id in cap_limited
    if a_limited != b_limited:
        winner = b if a_limited else a
        return winner.goal_id, "hard_safety_constraint"
    winner = a if (a.target_date, a.goal_id) <= (b.target_date, b.goal_id) else b
    return winner.goal_id, "event_date"


def detect_conflicts(
    goals: tuple[Goal, ...],
    solo_scores: dict[str, dict[str, float]],
    materiality: float,
    cap_limited: set[str] | None = None,
) -> ConflictLedger:
    """Record goal pairs whose solo plans cost each other more than ``materiality``.

    ``solo_scores[g][h]`` is goal h's score under the plan built for goal g
    alone. ``cap_limited`` holds goals whose solo plan was held back by a
    hard safety cap.
    """
    cap_limited = cap_limited or set()
    ledger = ConflictLedger()
    for i, a in enumerate(goals):
        for b in goals[i + 1:]:
            a_on_b = solo_scores[b.goal_id][b.goal_id] - solo_scores[a.goal_id][b.goal_id]
            b_on_a = solo_scores[a.goal_id][a.goal_id] - solo_scores[b.goal_id][a.goal_id]
            if a_on_b <= materiality and b_on_a <= materiality:
                continue
            winner, reason = _precedence(a, b, cap_limited)
            ledger.add(ConflictRecord(
                goal_a=a.goal_id,
                goal_b=b.goal_id,
                delta_a_on_b=a_on_b,
                delta_b_on_a=b_on_a,
                winner=winner,
                reason=reason,
            ))
    return ledger
