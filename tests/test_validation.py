import asyncio

from conftest import make_analysis, raw_analysis
from persona_workers.pipeline.aggregator import aggregate_profile
from persona_workers.pipeline.models import DecisionKind, ValidationReport
from persona_workers.pipeline.validation import (
    GENERIC_HINT,
    ProfileValidator,
    ValidationRetryController,
    decide,
    score_output,
)
from persona_workers.pipeline.analysis import parse_analysis


def _profile():
    return aggregate_profile([
        make_analysis(
            "https://img.test/0.jpg",
            face={"face_shape": "oval", "eye_distance_ratio": 0.31},
            lighting={"lighting_type": "natural", "color_temperature": 5000},
            style={"skin_tone": "medium", "hair_color": "brown", "hair_color_hex": "#3b2a1a", "eye_color": "brown"},
        ),
    ])


def test_matching_output_scores_high():
    analysis = parse_analysis("https://cdn.test/out.png", raw_analysis(), quality_threshold=0.0)

    report = score_output(analysis, _profile(), threshold=0.85)

    assert report.overall_score == 1.0
    assert report.is_valid
    assert report.regeneration_hints == []


def test_style_mismatch_produces_hints():
    analysis = parse_analysis(
        "https://cdn.test/out.png",
        raw_analysis(skin_tone="light", hair_color="blonde", eye_color="blue"),
        quality_threshold=0.0,
    )

    report = score_output(analysis, _profile(), threshold=0.85)

    assert report.style_score == 0.0
    assert report.overall_score == 0.75
    assert not report.is_valid
    assert "Preserve original hair color (#3b2a1a)" in report.regeneration_hints
    assert "Eye color must be brown" in report.regeneration_hints
    assert all(d.severity == "high" for d in report.deviations)


def test_missing_categories_score_neutral():
    analysis = parse_analysis("https://cdn.test/out.png", {"quality": {"overall": 0.9}}, quality_threshold=0.0)
    report = score_output(analysis, _profile(), threshold=0.85)
    assert report.overall_score == 0.5
    assert report.regeneration_hints == [GENERIC_HINT]


def test_decide_accept_retry_best_effort():
    low = ValidationReport(overall_score=0.6, is_valid=False, regeneration_hints=["fix hair"])
    high = ValidationReport(overall_score=0.9, is_valid=True)

    assert decide(None, 1, 3, 0.85).kind == DecisionKind.ACCEPT
    assert decide(high, 1, 3, 0.85).kind == DecisionKind.ACCEPT

    retry = decide(low, 1, 3, 0.85)
    assert retry.kind == DecisionKind.RETRY
    assert retry.hints == ["fix hair"]

    assert decide(low, 3, 3, 0.85).kind == DecisionKind.BEST_EFFORT


def test_retry_without_hints_gets_generic_hint():
    report = ValidationReport(overall_score=0.2, is_valid=False)
    assert decide(report, 1, 3, 0.85).hints == [GENERIC_HINT]


def test_controller_without_profile_accepts_without_report():
    controller = ValidationRetryController(validator=object(), threshold=0.85, max_attempts=3)
    decision, report = asyncio.run(controller.evaluate("https://cdn.test/out.png", None, 1))
    assert decision.kind == DecisionKind.ACCEPT
    assert report is None


def test_profile_validator_analyses_artifact():
    seen = []

    async def analyze(url):
        seen.append(url)
        return raw_analysis()

    report = asyncio.run(ProfileValidator(analyze).score("https://cdn.test/out.png", _profile(), 0.85))

    assert seen == ["https://cdn.test/out.png"]
    assert report.is_valid
