from conftest import make_detection
from persona_workers.pipeline.coverage import (
    assess_coverage,
    build_angle_coverage,
    merge_angle_coverage,
)
from persona_workers.pipeline.models import AngleCoverageEntry, FaceAngle


def _entry(quality=0.8, url="https://img.test/x.jpg"):
    return AngleCoverageEntry(url=url, quality=quality)


def test_empty_coverage_is_high_priority():
    report = assess_coverage({})

    assert report.present == []
    assert len(report.missing) == 5
    assert report.priority == "high"
    assert report.coverage_score == 0.0
    assert not report.ready_for_3d
    assert "Front-facing photo (looking directly at camera)" in report.suggestions


def test_front_and_one_profile_ready_for_3d():
    report = assess_coverage({
        FaceAngle.FRONT: _entry(),
        FaceAngle.PROFILE_LEFT: _entry(),
    })

    assert report.ready_for_3d
    assert report.priority == "high"  # three angles still missing
    assert "Right profile (for symmetry)" in report.suggestions
    assert report.coverage_score == 0.4


def test_full_coverage_is_low_priority():
    coverage = {angle: _entry() for angle in (
        FaceAngle.FRONT, FaceAngle.PROFILE_LEFT, FaceAngle.PROFILE_RIGHT,
        FaceAngle.QUARTER_LEFT, FaceAngle.QUARTER_RIGHT,
    )}

    report = assess_coverage(coverage)

    assert report.priority == "low"
    assert report.missing == []
    assert report.suggestions == []
    assert report.coverage_score == 1.0


def test_four_angles_is_medium_priority():
    coverage = {angle: _entry() for angle in (
        FaceAngle.FRONT, FaceAngle.PROFILE_LEFT, FaceAngle.PROFILE_RIGHT, FaceAngle.QUARTER_LEFT,
    )}
    report = assess_coverage(coverage)
    assert report.priority == "medium"
    assert report.suggestions == ["Right 3/4 angle (for symmetry)"]


def test_low_quality_entries_count_as_missing():
    report = assess_coverage({FaceAngle.FRONT: _entry(quality=0.1)})
    assert FaceAngle.FRONT in report.missing


def test_build_coverage_keeps_best_and_skips_unknown():
    detections = [
        make_detection([1, 0], FaceAngle.FRONT, quality=0.5, image_url="https://img.test/1.jpg"),
        make_detection([1, 0], FaceAngle.FRONT, quality=0.9, image_url="https://img.test/2.jpg"),
        make_detection([1, 0], FaceAngle.UNKNOWN, quality=1.0),
    ]

    coverage = build_angle_coverage(detections)

    assert list(coverage) == [FaceAngle.FRONT]
    assert coverage[FaceAngle.FRONT].url == "https://img.test/2.jpg"


def test_merge_keeps_higher_quality():
    merged = merge_angle_coverage(
        {FaceAngle.FRONT: _entry(0.9, "old")},
        {FaceAngle.FRONT: _entry(0.5, "new"), FaceAngle.PROFILE_LEFT: _entry(0.6, "new")},
    )
    assert merged[FaceAngle.FRONT].url == "old"
    assert merged[FaceAngle.PROFILE_LEFT].url == "new"
