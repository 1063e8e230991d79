import itertools
from typing import Optional

import pytest

from persona_workers.pipeline.models import (
    BoundingBox,
    Detection,
    FaceAngle,
    GeneratedImage,
    ImageAnalysis,
    ImageQuality,
    PipelineConfig,
    SignalReading,
    ValidationReport,
)


# ── Factories ────────────────────────────────────────────────────────────────

def make_detection(
    embedding,
    angle: FaceAngle = FaceAngle.FRONT,
    quality: float = 0.8,
    image_url: str = "https://img.test/a.jpg",
    detection_id: Optional[str] = None,
) -> Detection:
    return Detection(
        id=detection_id,
        image_url=image_url,
        bbox=BoundingBox(x=10, y=10, width=200, height=200),
        confidence=0.99,
        embedding=list(embedding) if embedding is not None else None,
        quality_score=quality,
        angle=angle,
    )


def make_analysis(
    url: str,
    overall: float = 0.8,
    face: Optional[dict] = None,
    lighting: Optional[dict] = None,
    style: Optional[dict] = None,
    body: Optional[dict] = None,
    confidence: float = 0.9,
    keywords: Optional[list] = None,
) -> ImageAnalysis:
    def reading(values):
        return SignalReading(values=values, confidence=confidence) if values else None

    return ImageAnalysis(
        image_url=url,
        quality=ImageQuality(overall=overall, blur=overall, lighting=overall, resolution=overall, face_visibility=overall),
        is_valid=overall >= 0.4,
        face_geometry=reading(face),
        lighting=reading(lighting),
        style=reading(style),
        body_proportions=reading(body),
        style_keywords=keywords or [],
        cost_cents=1,
    )


def raw_analysis(
    overall: float = 0.8,
    skin_tone: str = "medium",
    hair_color: str = "brown",
    eye_color: str = "brown",
    face_shape: str = "oval",
    eye_distance: float = 0.31,
    lighting_type: str = "natural",
    color_temperature: int = 5000,
) -> dict:
    """Vision-model JSON in the shape gemini.analyze_image returns."""
    return {
        "quality": {
            "overall": overall, "blur": overall, "lighting": overall,
            "resolution": overall, "face_visibility": overall,
        },
        "face_geometry": {
            "face_shape": face_shape,
            "eye_distance_ratio": eye_distance,
            "confidence": 0.9,
        },
        "lighting": {
            "lighting_type": lighting_type,
            "color_temperature": color_temperature,
            "confidence": 0.8,
        },
        "style": {
            "skin_tone": skin_tone,
            "hair_color": hair_color,
            "eye_color": eye_color,
            "keywords": ["Casual", "minimal"],
            "confidence": 0.85,
        },
    }


# ── Fakes ────────────────────────────────────────────────────────────────────

class FakeStore:
    """In-memory stand-in for SupabaseStore with the same version check."""

    def __init__(self, identities=()):
        self.identities = {}
        self.detections = []
        self.analyses = []
        self.profiles = {}
        self.generation_jobs = {}
        self.job_history = []
        self.job_records = {}
        self.conflicts_remaining = 0
        self._ids = itertools.count(1)
        for identity in identities:
            self.identities[identity.id] = identity

    def list_identities(self):
        return sorted(self.identities.values(), key=lambda i: i.created_at or "")

    def get_identity(self, identity_id):
        return self.identities.get(identity_id)

    def create_identity(self, identity):
        n = next(self._ids)
        created = identity.model_copy(update={
            "id": f"identity-{n}",
            "version": 1,
            "created_at": f"2026-01-01T00:00:{n:02d}+00:00",
        })
        self.identities[created.id] = created
        return created

    def update_identity_if_version(self, identity, expected_version):
        current = self.identities[identity.id]
        if self.conflicts_remaining:
            # Another writer lands first
            self.conflicts_remaining -= 1
            self.identities[identity.id] = current.model_copy(update={"version": current.version + 1})
            return False
        if current.version != expected_version:
            return False
        self.identities[identity.id] = identity.model_copy(update={"version": expected_version + 1})
        return True

    def save_detections(self, detections, identity_id, job_id):
        for d in detections:
            self.detections.append((identity_id, job_id, d))
        return list(detections)

    def save_analyses(self, job_id, analyses):
        self.analyses.extend(analyses)

    def get_profile(self, identity_id):
        return self.profiles.get(identity_id)

    def save_profile(self, identity_id, profile, job_id=None):
        self.profiles[identity_id] = profile

    def save_generation_job(self, job):
        self.generation_jobs[job.id] = job.model_copy()
        self.job_history.append((job.id, job.status))

    def update_job_record(self, job_id, fields):
        self.job_records.setdefault(job_id, {}).update(fields)


class FakeGenerator:
    """Returns a PNG-typed payload; `errors` are raised on successive calls first."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.prompts = []
        self.references = []

    async def generate(self, references, prompt, aspect_ratio="1:1", resolution="2K", timeout=None):
        self.prompts.append(prompt)
        self.references.append(list(references))
        if self.errors:
            raise self.errors.pop(0)
        return GeneratedImage(image_bytes=b"\x89PNG fake", mime_type="image/png")


class FakeStorage:
    def __init__(self):
        self.uploads = []

    async def upload(self, bucket, path, data, mime_type):
        self.uploads.append((bucket, path, mime_type))
        return f"https://cdn.test/{bucket}/{path}"


class FakeValidator:
    """Scores outputs from a fixed list; the last score repeats."""

    def __init__(self, scores, hints=("Preserve original hair color (#3b2a1a)",)):
        self.scores = list(scores)
        self.hints = list(hints)
        self.calls = []

    async def score(self, url, profile, threshold):
        self.calls.append(url)
        score = self.scores.pop(0) if len(self.scores) > 1 else self.scores[0]
        is_valid = score >= threshold
        return ValidationReport(
            overall_score=score,
            is_valid=is_valid,
            regeneration_hints=[] if is_valid else list(self.hints),
        )


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def config():
    return PipelineConfig()
