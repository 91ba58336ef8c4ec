"""Critical power / critical speed estimation from best-effort evidence.

Power categories fit ``output(t) = CP + W'/t``; speed categories fit the
distance-time model ``distance(t) = CS*t + D'``. Both are linear in the
work (or distance) versus duration form ``y = A*t + B`` and are solved by
weighted least squares, newer evidence weighted more heavily.

Sparse evidence never raises: a conservative prior derived from body
weight and LTHR is returned with low confidence instead.
"""

from __future__ import annotations

import math
from datetime import date

import numpy as np

from loadcast.models import ActivityCategory, CapabilityModel, EffortEvidence, ProfileMetrics
from loadcast.policy import CapabilityPolicy

BANDS = ("short", "medium", "long")


def duration_band(duration_seconds: float, policy: CapabilityPolicy) -> str:
    if duration_seconds <= policy.short_band_max_s:
        return "short"
    if duration_seconds <= policy.medium_band_max_s:
        return "medium"
    return "long"


def recency_weight(age_days: int, policy: CapabilityPolicy) -> float:
    """Evidence weight halves every ``recency_half_life_days``."""
    return 0.5 ** (max(0, age_days) / policy.recency_half_life_days)


def _weighted_fit(t: np.ndarray, y: np.ndarray, w: np.ndarray) -> tuple[float, float]:
    """Weighted least squares for y = a*t + b with b >= 0."""
    sw = np.sqrt(w)
    design = np.column_stack([t, np.ones_like(t)]) * sw[:, None]
    coef, *_ = np.linalg.lstsq(design, y * sw, rcond=None)
    a, b = float(coef[0]), float(coef[1])
    if b < 0:
        # Through the origin
        a = float(np.sum(w * t * y) / np.sum(w * t * t))
        b = 0.0
    return a, b


def _output_residuals(t: np.ndarray, output: np.ndarray, a: float, b: float) -> np.ndarray:
    return output - (a + b / t)


def _fit_quality(t, output, w, a, b) -> float:
    residuals = _output_residuals(t, output, a, b)
    mean_out = np.sum(w * output) / np.sum(w)
    ss_tot = float(np.sum(w * (output - mean_out) ** 2))
    ss_res = float(np.sum(w * residuals ** 2))
    if ss_tot <= 1e-12:
        return 1.0 if ss_res <= 1e-12 else 0.0
    return min(1.0, max(0.0, 1.0 - ss_res / ss_tot))


def confidence_score(evidence_count: int, bands_covered: int, recency: float, fit_quality: float) -> float:
    """Monotone blend of evidence count, band coverage, recency and fit quality."""
    score = (
        0.35 * (1.0 - math.exp(-evidence_count / 4.0))
        + 0.35 * (bands_covered / len(BANDS))
        + 0.2 * recency
        + 0.1 * fit_quality
    )
    return min(1.0, max(0.0, score))


def _in_window(evidence, category: ActivityCategory, reference_date: date, policy: CapabilityPolicy) -> list[EffortEvidence]:
    out = []
    for e in evidence:
        if e.category is not category:
            continue
        age = (reference_date - e.recorded_on).days
        if 0 <= age <= policy.recency_window_days:
            out.append(e)
    return out


def prior_capability(
    category: ActivityCategory,
    evidence: list[EffortEvidence],
    profile: ProfileMetrics,
    policy: CapabilityPolicy,
    flags: tuple[str, ...] = (),
) -> CapabilityModel:
    """Conservative estimate from profile metrics, capped by observed outputs."""
    weight = profile.weight_kg if profile.weight_kg is not None else policy.default_weight_kg
    if category.is_power_based:
        asymptote = policy.prior_power_w_per_kg * weight
        capacity = policy.prior_w_prime_j
    else:
        base_speed = policy.prior_swim_speed_ms if category is ActivityCategory.SWIM else policy.prior_run_speed_ms
        weight_factor = min(1.1, max(0.85, (policy.prior_reference_weight_kg / weight) ** 0.25))
        asymptote = base_speed * weight_factor
        capacity = policy.prior_swim_d_prime_m if category is ActivityCategory.SWIM else policy.prior_run_d_prime_m

    if profile.lthr_bpm is not None:
        # Threshold heart rate relative to the reference, clamped
        ratio = (profile.lthr_bpm / policy.prior_reference_lthr_bpm) ** policy.prior_lthr_exponent
        asymptote *= min(policy.prior_lthr_ceiling, max(policy.prior_lthr_floor, ratio))

    if evidence:
        # The asymptote can never exceed an output the athlete actually sustained
        asymptote = min(asymptote, min(e.output for e in evidence))

    confidence = 0.1
    if profile.weight_kg is not None:
        confidence += 0.05
    if profile.lthr_bpm is not None:
        confidence += 0.05
    confidence += min(0.1, 0.05 * len(evidence))

    bands = tuple(b for b in BANDS if any(duration_band(e.duration_seconds, policy) == b for e in evidence))
    prior_flags = ["capability_prior"]
    if profile.weight_kg is None:
        prior_flags.append("weight_defaulted")
    return CapabilityModel(
        category=category,
        asymptotic_output=asymptote,
        capacity=capacity,
        fit_quality=0.0,
        recency_score=0.0,
        confidence=min(confidence, policy.low_confidence_threshold - 0.01),
        method="prior",
        evidence_used=len(evidence),
        evidence_rejected=0,
        bands_covered=bands,
        flags=tuple(prior_flags) + tuple(flags),
    )


def fit_capability(
    category: ActivityCategory,
    evidence,
    reference_date: date,
    profile: ProfileMetrics,
    policy: CapabilityPolicy,
) -> CapabilityModel:
    """Fit CP/W' or CS/D' for one category, falling back to the prior."""
    points = _in_window(evidence, category, reference_date, policy)
    bands = {duration_band(e.duration_seconds, policy) for e in points}
    if not ("short" in bands and "long" in bands):
        flag = "no_evidence" if not points else "insufficient_band_coverage"
        return prior_capability(category, points, profile, policy, (flag,))

    t = np.array([e.duration_seconds for e in points], dtype=float)
    output = np.array([e.output for e in points], dtype=float)
    w = np.array([recency_weight((reference_date - e.recorded_on).days, policy) for e in points], dtype=float)
    y = output * t

    a, b = _weighted_fit(t, y, w)
    rejected = 0
    flags: list[str] = []

    residuals = _output_residuals(t, output, a, b)
    centre = float(np.median(residuals))
    spread = policy.mad_scale * float(np.median(np.abs(residuals - centre)))
    # Below this the residuals are rounding noise of an exact fit
    noise = 1e-6 * float(np.mean(np.abs(output)))
    if spread > noise:
        keep = np.abs(residuals - centre) <= policy.outlier_mad_multiple * spread
        kept_bands = {duration_band(float(d), policy) for d in t[keep]}
        if not keep.all():
            if keep.sum() >= 2 and "short" in kept_bands and "long" in kept_bands:
                rejected = int((~keep).sum())
                t, output, w, y = t[keep], output[keep], w[keep], y[keep]
                a, b = _weighted_fit(t, y, w)
                bands = kept_bands
            else:
                flags.append("outlier_rejection_skipped")

    if a <= 0 or not math.isfinite(a) or not math.isfinite(b):
        return prior_capability(category, points, profile, policy, ("degenerate_fit",))

    quality = _fit_quality(t, output, w, a, b)
    recency = float(np.mean(w))
    confidence = confidence_score(len(t), len(bands), recency, quality)
    return CapabilityModel(
        category=category,
        asymptotic_output=a,
        capacity=b,
        fit_quality=quality,
        recency_score=recency,
        confidence=confidence,
        method="fitted",
        evidence_used=len(t),
        evidence_rejected=rejected,
        bands_covered=tuple(band for band in BANDS if band in bands),
        flags=tuple(flags),
    )


def estimate_capabilities(
    evidence,
    categories,
    reference_date: date,
    profile: ProfileMetrics,
    policy: CapabilityPolicy,
) -> dict[ActivityCategory, CapabilityModel]:
    """One model per power- or speed-based category requested."""
    out: dict[ActivityCategory, CapabilityModel] = {}
    for category in sorted(set(categories), key=lambda c: c.value):
        if category.is_power_based or category.is_speed_based:
            out[category] = fit_capability(category, evidence, reference_date, profile, policy)
    return out


def growth_factor(chronic_now: float, chronic_future: float, policy: CapabilityPolicy) -> float:
    """Bounded capability change implied by a change in chronic load."""
    ratio = (max(0.0, chronic_future) + 10.0) / (max(0.0, chronic_now) + 10.0)
    return min(policy.growth_ceiling, max(policy.growth_floor, ratio ** policy.growth_exponent))


def fatigue_factor(balance: float, policy: CapabilityPolicy) -> float:
    """Penalty for arriving at a goal with negative balance."""
    return 1.0 - min(policy.fatigue_penalty_max, policy.fatigue_penalty_per_unit * max(0.0, -balance))


def project_capability(
    model: CapabilityModel,
    chronic_now: float,
    chronic_future: float,
    balance_future: float,
    policy: CapabilityPolicy,
) -> CapabilityModel:
    """Capability expected on a future day given the projected load state."""
    return model.scaled(growth_factor(chronic_now, chronic_future, policy) * fatigue_factor(balance_future, policy))
