"""Adherence scoring: how closely realized load follows the schedule.

Daily score blends realized-vs-scheduled (70%) with scheduled-vs-ideal (30%);
weekly values are the mean of the daily scores.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date

import pandas as pd

from loadcast.policy import AdherencePolicy


@dataclass(frozen=True)
class AdherencePoint:
    day: date
    score: int
    label: str


@dataclass(frozen=True)
class WeeklyAdherence:
    week: str
    score: float
    label: str
    days: int


def ratio_score(realized: float, expected: float, policy: AdherencePolicy) -> float:
    """100 at a 1.0 ratio, falling symmetrically in log space to 0 at ``zero_ratio``.

    A small constant is added to both sides so two rest days compare as a
    perfect match and near-zero expectations do not explode the ratio.
    """
    r = (max(0.0, realized) + policy.smoothing_load) / (max(0.0, expected) + policy.smoothing_load)
    return 100.0 * max(0.0, 1.0 - abs(math.log(r)) / math.log(policy.zero_ratio))


def adherence_label(score: float, realized: float, expected: float, policy: AdherencePolicy) -> str:
    if score >= policy.on_track_min:
        return "on-track"
    if score >= policy.slight_miss_min:
        return "slight-miss"
    if realized > expected:
        return "overload"
    return "major-miss"


def daily_adherence(actual: float, scheduled: float, ideal: float, policy: AdherencePolicy) -> int:
    blended = (
        policy.realized_weight * ratio_score(actual, scheduled, policy)
        + policy.schedule_weight * ratio_score(scheduled, ideal, policy)
    )
    return int(round(min(100.0, max(0.0, blended))))


def score_days(
    days: list[date],
    actual: list[float],
    scheduled: list[float],
    ideal: list[float],
    policy: AdherencePolicy,
) -> list[AdherencePoint]:
    """Per-day adherence for aligned series."""
    points = []
    for day, a, s, i in zip(days, actual, scheduled, ideal):
        score = daily_adherence(a, s, i, policy)
        points.append(AdherencePoint(day=day, score=score, label=adherence_label(score, a, s, policy)))
    return points


def weekly_adherence(
    points: list[AdherencePoint],
    actual: list[float],
    scheduled: list[float],
    policy: AdherencePolicy,
) -> list[WeeklyAdherence]:
    """Mean daily score per calendar week."""
    if not points:
        return []
    d = pd.DataFrame({
        "date": pd.to_datetime([p.day for p in points]),
        "score": [p.score for p in points],
        "actual": actual[: len(points)],
        "scheduled": scheduled[: len(points)],
    })
    d["week"] = d["date"].dt.to_period("W").astype(str)
    out = d.groupby("week", as_index=False, sort=True).agg(
        score=("score", "mean"), actual=("actual", "sum"), scheduled=("scheduled", "sum"), days=("score", "count"),
    )
    return [
        WeeklyAdherence(
            week=row.week,
            score=float(row.score),
            label=adherence_label(float(row.score), float(row.actual), float(row.scheduled), policy),
            days=int(row.days),
        )
        for row in out.itertuples(index=False)
    ]
