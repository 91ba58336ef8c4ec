"""Canonical ordering, rounding and hashing of projection inputs.

Everything downstream consumes the canonical form, so permuting goals,
targets, samples or evidence in the request never changes the output.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import replace
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum

from loadcast.models import (
    ActivityLoadSample,
    EffortEvidence,
    Goal,
    GoalTarget,
    ProjectionRequest,
    TARGET_KIND,
    TARGET_KIND_ORDER,
)

_NUMERIC_TARGET_FIELDS = (
    "distance_m",
    "target_seconds",
    "target_seconds_per_km",
    "target_watts",
    "duration_seconds",
    "target_probability",
    "tolerance",
    "weight",
)


def round_half_even(value: float, places: int = 4) -> float:
    """Round with banker's rounding at a fixed number of decimal places."""
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_EVEN))


def finite_or_clamp(value: float, low: float, high: float, flags: list[str], label: str) -> float:
    """Clamp ``value`` into [low, high]; non-finite values take the bound and raise a flag."""
    if math.isnan(value):
        flags.append(f"non_finite:{label}")
        return low
    if math.isinf(value):
        flags.append(f"non_finite:{label}")
        return high if value > 0 else low
    return min(high, max(low, value))


def _round_target(target: GoalTarget, places: int) -> GoalTarget:
    changes = {}
    for name in _NUMERIC_TARGET_FIELDS:
        value = getattr(target, name, None)
        if value is not None:
            changes[name] = round_half_even(float(value), places)
    return replace(target, **changes)


def target_sort_key(target: GoalTarget) -> tuple:
    return (TARGET_KIND_ORDER[type(target)], target.target_id)


def goal_sort_key(goal: Goal) -> tuple:
    return (goal.priority.value, goal.target_date, goal.goal_id)


def canonicalize_goals(goals: tuple[Goal, ...] | list[Goal], places: int = 4) -> tuple[Goal, ...]:
    """Sort goals by (tier, date, id) and targets by (kind, id), rounding numerics."""
    out = []
    for goal in sorted(goals, key=goal_sort_key):
        targets = tuple(sorted((_round_target(t, places) for t in goal.targets), key=target_sort_key))
        out.append(replace(goal, targets=targets, weight=round_half_even(goal.weight, places)))
    return tuple(out)


def canonicalize_history(samples, places: int = 4) -> tuple[ActivityLoadSample, ...]:
    rounded = [replace(s, load=round_half_even(s.load, places)) for s in samples]
    return tuple(sorted(rounded, key=lambda s: (s.day, s.category.value, s.load)))


def canonicalize_evidence(evidence, places: int = 4) -> tuple[EffortEvidence, ...]:
    rounded = [
        replace(e, duration_seconds=round_half_even(e.duration_seconds, places), output=round_half_even(e.output, places))
        for e in evidence
    ]
    return tuple(sorted(rounded, key=lambda e: (e.recorded_on, e.category.value, e.duration_seconds, e.output)))


def canonicalize_request(request: ProjectionRequest, places: int = 4) -> ProjectionRequest:
    """Return the canonical form of a validated request."""
    profile = request.profile
    return replace(
        request,
        goals=canonicalize_goals(request.goals, places),
        history=canonicalize_history(request.history, places),
        evidence=canonicalize_evidence(request.evidence, places),
        profile=replace(
            profile,
            weight_kg=None if profile.weight_kg is None else round_half_even(profile.weight_kg, places),
            lthr_bpm=None if profile.lthr_bpm is None else round_half_even(profile.lthr_bpm, places),
        ),
    )


def to_plain(value, places: int | None = None):
    """Convert dataclasses, enums and dates into JSON-ready values.

    Floats are rounded half-even when ``places`` is given.
    """
    if hasattr(value, "__dataclass_fields__"):
        out = {name: to_plain(getattr(value, name), places) for name in value.__dataclass_fields__}
        if type(value) in TARGET_KIND:
            out["kind"] = TARGET_KIND[type(value)]
        return out
    if isinstance(value, (list, tuple)):
        return [to_plain(v, places) for v in value]
    if isinstance(value, dict):
        return {str(to_plain(k)): to_plain(v, places) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and places is not None:
        return round_half_even(value, places)
    return value


def canonical_digest(request: ProjectionRequest, policy_version: str) -> str:
    """SHA-256 of the canonical request plus the policy version."""
    body = {"policy_version": policy_version, "request": to_plain(request)}
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
