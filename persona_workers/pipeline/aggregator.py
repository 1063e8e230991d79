"""
Profile aggregation: merges per-image analyses into one AggregatedProfile.

Every signal category is merged from the analyses that carry it, weighted by
that analysis' confidence for the signal:
  - numeric fields  → weighted median (mean/std recorded alongside)
  - categorical     → weighted mode (first seen wins ties)

Category confidence grows with sample count (n / (n + 1)) so more evidence
never lowers it. The function is pure; identical inputs give identical output.
"""

import logging
import math
from typing import Any, Optional, Sequence

from .errors import InsufficientEvidenceError
from .models import (
    SIGNAL_CATEGORIES,
    AggregatedProfile,
    ImageAnalysis,
    ProfileCategory,
    ProfileField,
    RankedImage,
    SignalReading,
)

logger = logging.getLogger(__name__)

DEFAULT_QUALITY_THRESHOLD = 0.4

CATEGORY_WEIGHTS = {
    "face_geometry": 0.35,
    "body_proportions": 0.15,
    "lighting": 0.15,
    "camera": 0.10,
    "style": 0.25,
}


# ── Weighted statistics ──────────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _weights(pairs: Sequence[tuple[Any, float]]) -> list[float]:
    weights = [max(0.0, w) for _, w in pairs]
    if sum(weights) == 0:
        return [1.0] * len(pairs)
    return weights


def weighted_median(pairs: Sequence[tuple[float, float]]) -> float:
    """Lower weighted median of (value, weight) pairs."""
    weights = _weights(pairs)
    ordered = sorted(zip((v for v, _ in pairs), weights), key=lambda p: p[0])
    half = sum(weights) / 2
    cumulative = 0.0
    for value, weight in ordered:
        cumulative += weight
        if cumulative >= half:
            return float(value)
    return float(ordered[-1][0])


def weighted_mode(pairs: Sequence[tuple[Any, float]]) -> Any:
    """Value with the largest total weight; the first seen wins a tie."""
    weights = _weights(pairs)
    totals: dict[Any, float] = {}
    for (value, _), weight in zip(pairs, weights):
        totals[value] = totals.get(value, 0.0) + weight
    best, best_weight = None, -1.0
    for value, total in totals.items():
        if total > best_weight:
            best, best_weight = value, total
    return best


def weighted_mean_std(pairs: Sequence[tuple[float, float]]) -> tuple[float, float]:
    weights = _weights(pairs)
    total = sum(weights)
    mean = sum(v * w for (v, _), w in zip(pairs, weights)) / total
    variance = sum(w * (v - mean) ** 2 for (v, _), w in zip(pairs, weights)) / total
    return mean, math.sqrt(variance)


def _growth(n: int) -> float:
    return n / (n + 1)


# ── Field / category merge ───────────────────────────────────────────────────

def _field_agreement(pairs: Sequence[tuple[Any, float]]) -> Optional[float]:
    """Agreement in [0, 1] for one field, None when it has a single sample."""
    if len(pairs) < 2:
        return None
    values = [v for v, _ in pairs]
    if _is_number(values[0]):
        mean = sum(values) / len(values)
        std = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
        if mean == 0:
            return 1.0 if std == 0 else 0.0
        return 1.0 - min(1.0, std / abs(mean))
    counts: dict[Any, int] = {}
    for v in values:
        counts[v] = counts.get(v, 0) + 1
    return max(counts.values()) / len(values)


def _collect_fields(readings: Sequence[SignalReading]) -> dict[str, list[tuple[Any, float]]]:
    """Field name → (value, weight) pairs, in first-seen field order."""
    fields: dict[str, list[tuple[Any, float]]] = {}
    for reading in readings:
        for name, value in reading.values.items():
            if value is None or isinstance(value, (list, dict)):
                continue
            fields.setdefault(name, []).append((value, reading.confidence))

    # A field is numeric or categorical by its first value; drop stragglers
    for name, pairs in fields.items():
        numeric = _is_number(pairs[0][0])
        fields[name] = [
            (float(v) if numeric else v, w)
            for v, w in pairs
            if _is_number(v) == numeric
        ]
    return fields


def _merge_category(readings: Sequence[SignalReading]) -> tuple[ProfileCategory, list[float]]:
    fields: dict[str, ProfileField] = {}
    agreements: list[float] = []

    for name, pairs in _collect_fields(readings).items():
        confidence = sum(w for _, w in pairs) / len(pairs) * _growth(len(pairs))
        if _is_number(pairs[0][0]):
            mean, std = weighted_mean_std(pairs)
            fields[name] = ProfileField(
                value=round(weighted_median(pairs), 4),
                confidence=round(confidence, 4),
                sample_count=len(pairs),
                mean=round(mean, 4),
                std=round(std, 4),
            )
        else:
            fields[name] = ProfileField(
                value=weighted_mode(pairs),
                confidence=round(confidence, 4),
                sample_count=len(pairs),
            )
        agreement = _field_agreement(pairs)
        if agreement is not None:
            agreements.append(agreement)

    n = len(readings)
    mean_conf = sum(r.confidence for r in readings) / n
    category = ProfileCategory(
        fields=fields,
        sample_count=n,
        confidence=round(mean_conf * _growth(n), 4),
    )
    return category, agreements


# ── Public API ───────────────────────────────────────────────────────────────

def valid_analyses(
    analyses: Sequence[ImageAnalysis],
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> list[ImageAnalysis]:
    return [a for a in analyses if a.is_valid and a.quality.overall >= quality_threshold]


def aggregate_profile(
    analyses: Sequence[ImageAnalysis],
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
) -> AggregatedProfile:
    """
    Build an AggregatedProfile from per-image analyses.

    Args:
        analyses:          All analyses for the image set, valid or not.
        quality_threshold: Minimum quality.overall for an analysis to count.

    Returns:
        AggregatedProfile.

    Raises:
        InsufficientEvidenceError: If no analysis is valid.
    """
    valid = valid_analyses(analyses, quality_threshold)
    if not valid:
        raise InsufficientEvidenceError("no valid images")

    categories: dict[str, Optional[ProfileCategory]] = {}
    agreements: list[float] = []
    for name in SIGNAL_CATEGORIES:
        readings = [
            a.signal(name) for a in valid
            if a.signal(name) is not None and a.signal(name).values
        ]
        if not readings:
            categories[name] = None
            continue
        category, category_agreements = _merge_category(readings)
        categories[name] = category
        agreements.extend(category_agreements)

    overall = sum(
        CATEGORY_WEIGHTS[name] * cat.confidence
        for name, cat in categories.items()
        if cat is not None
    )

    if len(valid) < 2 or not agreements:
        consistency = 1.0
    else:
        consistency = sum(agreements) / len(agreements)

    keywords: list[str] = []
    for a in valid:
        for kw in a.style_keywords:
            kw = kw.strip().lower()
            if kw and kw not in keywords:
                keywords.append(kw)

    ranking = [
        RankedImage(url=a.image_url, score=a.quality.overall)
        for a in sorted(valid, key=lambda a: a.quality.overall, reverse=True)
    ]

    profile = AggregatedProfile(
        **categories,
        style_keywords=keywords,
        overall_confidence=round(overall, 4),
        consistency_score=round(consistency, 4),
        sample_count=len(valid),
        image_quality_ranking=ranking,
        best_reference_image_url=ranking[0].url,
    )
    logger.info(
        f"Aggregated profile from {len(valid)}/{len(analyses)} valid analyses "
        f"(confidence={profile.overall_confidence}, consistency={profile.consistency_score})"
    )
    return profile
