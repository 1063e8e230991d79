"""
Angle coverage tracking for identities.

Coverage is a sparse map of canonical angle → best detection seen for that
angle. Everything here is a pure function of its inputs.
"""

from typing import Iterable, Mapping

from .models import (
    CANONICAL_ANGLES,
    AngleCoverageEntry,
    CoverageReport,
    Detection,
    FaceAngle,
)

MIN_ANGLE_QUALITY = 0.3
MIN_ANGLES_FOR_3D = 2

PROFILE_ANGLES = (FaceAngle.PROFILE_LEFT, FaceAngle.PROFILE_RIGHT)
QUARTER_ANGLES = (FaceAngle.QUARTER_LEFT, FaceAngle.QUARTER_RIGHT)


def build_angle_coverage(detections: Iterable[Detection]) -> dict[FaceAngle, AngleCoverageEntry]:
    """Best-quality detection per canonical angle. Unknown angles are skipped."""
    coverage: dict[FaceAngle, AngleCoverageEntry] = {}
    for d in detections:
        if d.angle == FaceAngle.UNKNOWN:
            continue
        current = coverage.get(d.angle)
        if current is None or d.quality_score > current.quality:
            coverage[d.angle] = AngleCoverageEntry(
                url=d.cropped_face_url or d.image_url,
                quality=d.quality_score,
                detection_id=d.id,
            )
    return coverage


def merge_angle_coverage(
    existing: Mapping[FaceAngle, AngleCoverageEntry],
    incoming: Mapping[FaceAngle, AngleCoverageEntry],
) -> dict[FaceAngle, AngleCoverageEntry]:
    """Union of two coverage maps keeping the higher quality entry per angle."""
    merged = dict(existing)
    for angle, entry in incoming.items():
        current = merged.get(angle)
        if current is None or entry.quality > current.quality:
            merged[angle] = entry
    return merged


def assess_coverage(
    coverage: Mapping[FaceAngle, AngleCoverageEntry],
    min_quality: float = MIN_ANGLE_QUALITY,
    min_angle_count: int = MIN_ANGLES_FOR_3D,
) -> CoverageReport:
    """
    Report which canonical angles are usable and what to capture next.

    Args:
        coverage:        Angle → best detection entry.
        min_quality:     Entries below this quality count as missing.
        min_angle_count: Minimum usable angles for 3D processing.

    Returns:
        CoverageReport with present/missing angles, priority, suggestions,
        coverage score and the 3D readiness flag.
    """
    present = [
        a for a in CANONICAL_ANGLES
        if a in coverage and coverage[a].quality >= min_quality
    ]
    missing = [a for a in CANONICAL_ANGLES if a not in present]

    has_front = FaceAngle.FRONT in present
    has_profile = any(a in present for a in PROFILE_ANGLES)

    if not has_front or not has_profile or len(missing) >= 3:
        priority = "high"
    elif missing:
        priority = "medium"
    else:
        priority = "low"

    return CoverageReport(
        present=present,
        missing=missing,
        priority=priority,
        suggestions=_suggestions(present),
        coverage_score=len(present) / len(CANONICAL_ANGLES),
        ready_for_3d=has_front and has_profile and len(present) >= min_angle_count,
    )


def _suggestions(present: list[FaceAngle]) -> list[str]:
    suggestions = []

    if FaceAngle.FRONT not in present:
        suggestions.append("Front-facing photo (looking directly at camera)")

    left, right = FaceAngle.PROFILE_LEFT in present, FaceAngle.PROFILE_RIGHT in present
    if not left and not right:
        suggestions.append("Profile photo (side view showing ear)")
    elif not left:
        suggestions.append("Left profile (for symmetry)")
    elif not right:
        suggestions.append("Right profile (for symmetry)")

    left, right = FaceAngle.QUARTER_LEFT in present, FaceAngle.QUARTER_RIGHT in present
    if not left and not right:
        suggestions.append("3/4 angle photo (45-degree turn)")
    elif not left:
        suggestions.append("Left 3/4 angle (for symmetry)")
    elif not right:
        suggestions.append("Right 3/4 angle (for symmetry)")

    return suggestions
