"""
Output validation against an identity profile, and the accept/retry decision.

score_output compares a generated image's analysis with the profile:
  overall = face * 0.5 + lighting * 0.25 + style * 0.25
Categories that cannot be compared score 0.5. Fields in a category scoring
below 0.7 are reported as deviations and turned into correction hints.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from .analysis import parse_analysis
from .models import (
    AggregatedProfile,
    Decision,
    DecisionKind,
    Deviation,
    ImageAnalysis,
    ValidationReport,
)

logger = logging.getLogger(__name__)

VALIDATION_COST_CENTS = 1
DEVIATION_THRESHOLD = 0.7
HIGH_SEVERITY_THRESHOLD = 0.5
NO_DATA_SCORE = 0.5

FACE_FIELDS = ("face_shape", "jawline", "nose_shape", "chin_shape", "lip_shape")
STYLE_FIELDS = ("skin_tone", "hair_color", "eye_color")
GENERIC_HINT = "Match the reference identity more closely"


# ── Field comparison ─────────────────────────────────────────────────────────

def _norm(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _compare_categorical(
    category: str,
    fields: tuple,
    expected: AggregatedProfile,
    actual: ImageAnalysis,
) -> tuple[list[float], list[Deviation]]:
    scores, deviations = [], []
    reading = actual.signal(category)
    if reading is None:
        return scores, deviations
    for field in fields:
        want = expected.value(category, field)
        got = reading.values.get(field)
        if want is None or got is None:
            continue
        match = _norm(want) == _norm(got)
        scores.append(1.0 if match else 0.0)
        if not match:
            deviations.append(Deviation(category=category, field=field, expected=want, actual=got))
    return scores, deviations


def _score_face(profile: AggregatedProfile, analysis: ImageAnalysis) -> tuple[float, list[Deviation]]:
    scores, deviations = _compare_categorical("face_geometry", FACE_FIELDS, profile, analysis)

    want = profile.value("face_geometry", "eye_distance_ratio")
    reading = analysis.face_geometry
    got = reading.values.get("eye_distance_ratio") if reading else None
    if isinstance(want, (int, float)) and isinstance(got, (int, float)):
        diff = abs(want - got)
        score = 1.0 if diff <= 0.03 else 0.5 if diff <= 0.06 else 0.0
        scores.append(score)
        if score < 1.0:
            deviations.append(Deviation(
                category="face_geometry", field="eye_distance_ratio", expected=want, actual=got,
            ))

    if not scores:
        return NO_DATA_SCORE, []
    return sum(scores) / len(scores), deviations


def _score_lighting(profile: AggregatedProfile, analysis: ImageAnalysis) -> tuple[float, list[Deviation]]:
    scores, deviations = _compare_categorical("lighting", ("lighting_type",), profile, analysis)

    want = profile.value("lighting", "color_temperature")
    reading = analysis.lighting
    got = reading.values.get("color_temperature") if reading else None
    if isinstance(want, (int, float)) and isinstance(got, (int, float)):
        diff = abs(want - got)
        score = 1.0 if diff < 500 else 0.5 if diff < 1000 else 0.0
        scores.append(score)
        if score < 1.0:
            deviations.append(Deviation(
                category="lighting", field="color_temperature", expected=want, actual=got,
            ))

    if not scores:
        return NO_DATA_SCORE, []
    return sum(scores) / len(scores), deviations


def _score_style(profile: AggregatedProfile, analysis: ImageAnalysis) -> tuple[float, list[Deviation]]:
    scores, deviations = _compare_categorical("style", STYLE_FIELDS, profile, analysis)
    if not scores:
        return NO_DATA_SCORE, []
    return sum(scores) / len(scores), deviations


# ── Hints ────────────────────────────────────────────────────────────────────

def _hint(profile: AggregatedProfile, deviation: Deviation) -> str:
    field, expected = deviation.field, deviation.expected
    if field == "skin_tone":
        hex_code = profile.value("style", "skin_tone_hex")
        return f"CRITICAL: Skin tone must match exactly: {expected}" + (f" ({hex_code})" if hex_code else "")
    if field == "hair_color":
        hex_code = profile.value("style", "hair_color_hex")
        return f"Preserve original hair color ({hex_code or expected})"
    if field == "eye_color":
        return f"Eye color must be {expected}"
    if field == "face_shape":
        return f"Keep the {expected} face shape from the references"
    if field == "eye_distance_ratio":
        return "Keep the original eye spacing from the references"
    if field == "color_temperature":
        return f"Match the reference lighting temperature (~{int(expected)}K)"
    if field == "lighting_type":
        return f"Use {expected} lighting as in the references"
    return f"Preserve the original {field.replace('_', ' ')}: {expected}"


def score_output(
    analysis: ImageAnalysis,
    profile: AggregatedProfile,
    threshold: float,
) -> ValidationReport:
    """Score one generated image's analysis against the identity profile."""
    deviations: list[Deviation] = []
    category_scores = {}

    for name, scorer in (
        ("face", _score_face),
        ("lighting", _score_lighting),
        ("style", _score_style),
    ):
        score, found = scorer(profile, analysis)
        category_scores[name] = score
        if score < DEVIATION_THRESHOLD:
            severity = "high" if score < HIGH_SEVERITY_THRESHOLD else "medium"
            deviations.extend(d.model_copy(update={"severity": severity}) for d in found)

    overall = (
        category_scores["face"] * 0.5
        + category_scores["lighting"] * 0.25
        + category_scores["style"] * 0.25
    )
    is_valid = overall >= threshold

    hints: list[str] = []
    if not is_valid:
        for d in deviations:
            if d.severity == "low":
                continue
            hint = _hint(profile, d)
            if hint not in hints:
                hints.append(hint)
        if not hints:
            hints.append(GENERIC_HINT)

    return ValidationReport(
        overall_score=round(overall, 4),
        is_valid=is_valid,
        face_score=round(category_scores["face"], 4),
        lighting_score=round(category_scores["lighting"], 4),
        style_score=round(category_scores["style"], 4),
        deviations=deviations,
        regeneration_hints=hints,
    )


class ProfileValidator:
    """
    Scores an uploaded artifact by analysing it with the same vision model
    used for the source images.
    """

    def __init__(self, analyze_fn: Callable[[str], Awaitable[dict]]):
        self._analyze = analyze_fn

    async def score(
        self,
        artifact_url: str,
        profile: AggregatedProfile,
        threshold: float,
    ) -> ValidationReport:
        raw = await self._analyze(artifact_url)
        analysis = parse_analysis(artifact_url, raw, quality_threshold=0.0)
        report = score_output(analysis, profile, threshold)
        logger.info(
            f"Validated {artifact_url[:60]}: score={report.overall_score} "
            f"(face={report.face_score}, lighting={report.lighting_score}, style={report.style_score})"
        )
        return report


# ── Decision ─────────────────────────────────────────────────────────────────

def decide(
    report: Optional[ValidationReport],
    attempt: int,
    max_attempts: int,
    threshold: float,
) -> Decision:
    """
    Accept, retry with hints, or accept as best effort.

    A missing report means no profile was available to validate against,
    which always accepts.
    """
    if report is None:
        return Decision(kind=DecisionKind.ACCEPT)
    if report.overall_score >= threshold:
        return Decision(kind=DecisionKind.ACCEPT, score=report.overall_score)
    if attempt < max_attempts:
        return Decision(
            kind=DecisionKind.RETRY,
            score=report.overall_score,
            hints=list(report.regeneration_hints) or [GENERIC_HINT],
        )
    return Decision(
        kind=DecisionKind.BEST_EFFORT,
        score=report.overall_score,
        hints=list(report.regeneration_hints),
    )


class ValidationRetryController:
    """
    Usage:
        controller = ValidationRetryController(validator, threshold=0.85, max_attempts=3)
        decision, report = await controller.evaluate(url, profile, attempt)
    """

    def __init__(self, validator, threshold: float, max_attempts: int):
        self.validator = validator
        self.threshold = threshold
        self.max_attempts = max_attempts

    async def evaluate(
        self,
        artifact_url: str,
        profile: Optional[AggregatedProfile],
        attempt: int,
    ) -> tuple[Decision, Optional[ValidationReport]]:
        if profile is None or self.validator is None:
            return decide(None, attempt, self.max_attempts, self.threshold), None
        report = await self.validator.score(artifact_url, profile, self.threshold)
        return decide(report, attempt, self.max_attempts, self.threshold), report
