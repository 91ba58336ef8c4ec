"""Chronic/acute load tracking, weekly monotony and strain.

Chronic and acute load are exponentially weighted moving averages of daily
training stress (42- and 7-day time constants by default). Balance is
chronic minus acute. Monotony and strain follow Foster (1998): monotony is
mean daily load over its standard deviation, strain is weekly total times
monotony.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from statistics import mean, stdev

import pandas as pd

from loadcast.models import ActivityLoadSample, LoadPoint, LoadState
from loadcast.policy import BoundaryPolicy, LoadDecayPolicy


@dataclass(frozen=True)
class WeeklyLoadMetrics:
    """Aggregated load metrics for a 7-day window."""
    total_load: float
    session_count: int
    monotony: float       # mean daily load / stdev (high = uniform stress = risky)
    strain: float         # total load * monotony
    avg_daily_load: float
    peak_day_load: float


def daily_totals(samples: tuple[ActivityLoadSample, ...] | list[ActivityLoadSample]) -> dict[date, float]:
    """Sum samples per calendar day. Input is expected in canonical order."""
    totals: dict[date, float] = {}
    for sample in samples:
        totals[sample.day] = totals.get(sample.day, 0.0) + float(sample.load)
    return totals


def advance(state: LoadState, load: float, decay: LoadDecayPolicy) -> LoadState:
    """Apply one day of load to the state."""
    chronic = state.chronic + decay.chronic_alpha * (load - state.chronic)
    acute = state.acute + decay.acute_alpha * (load - state.acute)
    return LoadState(chronic=max(0.0, chronic), acute=max(0.0, acute))


def state_before(totals: dict[date, float], day: date, decay: LoadDecayPolicy) -> LoadState:
    """Load state at the end of the day preceding ``day``.

    Missing days decay with zero load. Empty history is the zero state.
    """
    earlier = [d for d in totals if d < day]
    if not earlier:
        return LoadState()
    state = LoadState()
    current = min(earlier)
    while current < day:
        state = advance(state, totals.get(current, 0.0), decay)
        current += timedelta(days=1)
    return state


def project_series(
    initial: LoadState,
    start: date,
    daily_loads: list[float],
    decay: LoadDecayPolicy,
) -> list[LoadPoint]:
    """One LoadPoint per day, starting at ``start`` from ``initial``."""
    points: list[LoadPoint] = []
    state = initial
    for offset, load in enumerate(daily_loads):
        state = advance(state, load, decay)
        points.append(LoadPoint(
            day=start + timedelta(days=offset),
            chronic=state.chronic,
            acute=state.acute,
            balance=state.balance,
            load=float(load),
        ))
    return points


def actual_series(
    samples: tuple[ActivityLoadSample, ...],
    start: date,
    end: date,
    decay: LoadDecayPolicy,
) -> list[LoadPoint]:
    """Realized load points from ``start`` through ``end`` inclusive."""
    if end < start:
        return []
    totals = daily_totals(samples)
    initial = state_before(totals, start, decay)
    days = (end - start).days + 1
    loads = [totals.get(start + timedelta(days=i), 0.0) for i in range(days)]
    return project_series(initial, start, loads, decay)


def step_week(state: LoadState, weekly_load: float, day_weights: tuple[float, ...], decay: LoadDecayPolicy) -> LoadState:
    """Closed form for a week whose load is spread by ``day_weights`` (in day order)."""
    n = len(day_weights)
    ac, aa = decay.chronic_alpha, decay.acute_alpha
    gain_c = ac * sum(w * (1.0 - ac) ** (n - 1 - i) for i, w in enumerate(day_weights))
    gain_a = aa * sum(w * (1.0 - aa) ** (n - 1 - i) for i, w in enumerate(day_weights))
    return LoadState(
        chronic=max(0.0, (1.0 - ac) ** n * state.chronic + gain_c * weekly_load),
        acute=max(0.0, (1.0 - aa) ** n * state.acute + gain_a * weekly_load),
    )


def steady_state_weekly_load(chronic: float) -> float:
    """Weekly load that holds chronic load level."""
    return 7.0 * chronic


def compute_weekly_metrics(daily_loads: list[float]) -> WeeklyLoadMetrics:
    """Compute weekly load summary from daily load values.

    Pass 0.0 for rest days. Expects 7 values but handles any length.
    """
    if not daily_loads:
        return WeeklyLoadMetrics(
            total_load=0, session_count=0, monotony=0, strain=0, avg_daily_load=0, peak_day_load=0,
        )

    total = sum(daily_loads)
    count = sum(1 for d in daily_loads if d > 0)
    avg = mean(daily_loads)
    sd = stdev(daily_loads) if len(daily_loads) > 1 else 0
    monotony = avg / sd if sd > 0 else 0.0
    strain = total * monotony

    return WeeklyLoadMetrics(
        total_load=total,
        session_count=count,
        monotony=monotony,
        strain=strain,
        avg_daily_load=avg,
        peak_day_load=max(daily_loads),
    )


def overtraining_risk(monotony: float, strain: float, limits: BoundaryPolicy) -> str:
    """Classify overtraining risk from monotony and strain values.

    Returns: 'low', 'moderate', or 'high'.
    """
    if monotony >= limits.monotony_max or strain >= limits.strain_max:
        return "high"
    if monotony >= limits.monotony_caution or strain >= limits.strain_caution:
        return "moderate"
    return "low"


def weekly_rollup(points: list[LoadPoint]) -> pd.DataFrame:
    """Aggregate daily load points into calendar weeks.

    Returns a DataFrame with columns: week, load, chronic, acute, balance,
    where load is the weekly total and the others are end-of-week values.
    """
    if not points:
        return pd.DataFrame(columns=["week", "load", "chronic", "acute", "balance"])
    d = pd.DataFrame([
        {"date": p.day, "load": p.load, "chronic": p.chronic, "acute": p.acute, "balance": p.balance}
        for p in points
    ])
    d["date"] = pd.to_datetime(d["date"])
    d["week"] = d["date"].dt.to_period("W").astype(str)
    out = d.groupby("week", as_index=False, sort=True).agg(
        load=("load", "sum"), chronic=("chronic", "last"), acute=("acute", "last"), balance=("balance", "last"),
    )
    return out
