import asyncio

import httpx
import pytest

from persona_workers.pipeline.embedding import (
    EmbeddingClient,
    angle_from_bbox,
    angle_from_euler,
    estimate_quality,
    parse_faces,
)
from persona_workers.pipeline.errors import PermanentServiceError, TransientServiceError
from persona_workers.pipeline.models import BoundingBox, EulerAngles, FaceAngle

FACE = {
    "bbox": {"x": 100, "y": 80, "width": 300, "height": 300},
    "confidence": 0.98,
    "embedding": [0.1, 0.2, 0.3],
    "euler_angles": {"pitch": 2, "yaw": -70, "roll": 1},
}


@pytest.mark.parametrize("yaw,expected", [
    (0, FaceAngle.FRONT),
    (14, FaceAngle.FRONT),
    (30, FaceAngle.QUARTER_RIGHT),
    (-45, FaceAngle.QUARTER_LEFT),
    (75, FaceAngle.PROFILE_RIGHT),
    (-80, FaceAngle.PROFILE_LEFT),
])
def test_angle_from_euler(yaw, expected):
    assert angle_from_euler(EulerAngles(yaw=yaw)) == expected


def test_steep_pitch_is_unknown():
    assert angle_from_euler(EulerAngles(pitch=60, yaw=0)) == FaceAngle.UNKNOWN


def test_angle_from_bbox():
    assert angle_from_bbox(BoundingBox(x=0, y=0, width=100, height=100)) == FaceAngle.FRONT
    assert angle_from_bbox(BoundingBox(x=0, y=0, width=50, height=100)) == FaceAngle.PROFILE_LEFT
    assert angle_from_bbox(BoundingBox(x=700, y=0, width=70, height=100), image_width=1000) == FaceAngle.QUARTER_RIGHT


def test_estimate_quality():
    assert estimate_quality(1.0, BoundingBox(x=0, y=0, width=300, height=300)) == 1.0
    assert estimate_quality(0.5, BoundingBox(x=0, y=0, width=150, height=150)) == 0.4


def test_parse_faces():
    detections = parse_faces("https://img.test/a.jpg", {"faces": [FACE]})

    assert len(detections) == 1
    d = detections[0]
    assert d.angle == FaceAngle.PROFILE_LEFT
    assert d.embedding == [0.1, 0.2, 0.3]
    assert d.quality_score == pytest.approx(0.988)


def _client(handler, **kwargs):
    return EmbeddingClient(
        base_url="http://faces.test", transport=httpx.MockTransport(handler), **kwargs,
    )


def test_detect_collects_per_image_failures():
    """Test a failed image is reported without aborting the batch."""
    def handler(request):
        url = request.read().decode()
        if "broken" in url:
            return httpx.Response(503, text="overloaded")
        if "empty" in url:
            return httpx.Response(200, json={"faces": []})
        return httpx.Response(200, json={"faces": [FACE]})

    refs = ["https://img.test/a.jpg", "https://img.test/broken.jpg", "https://img.test/empty.jpg"]
    batch = asyncio.run(_client(handler).detect(refs))

    assert len(batch.detections) == 1
    assert batch.by_image["https://img.test/empty.jpg"] == []
    assert "https://img.test/broken.jpg" in batch.failed_images


def test_detect_all_failed_transient():
    def handler(request):
        return httpx.Response(502)

    with pytest.raises(TransientServiceError):
        asyncio.run(_client(handler).detect(["https://img.test/a.jpg"]))


def test_detect_all_failed_permanent():
    def handler(request):
        return httpx.Response(400, text="bad image")

    with pytest.raises(PermanentServiceError):
        asyncio.run(_client(handler).detect(["https://img.test/a.jpg"]))


def test_detect_sends_bearer_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"faces": []})

    asyncio.run(_client(handler, api_key="secret").detect(["https://img.test/a.jpg"]))

    assert seen["auth"] == "Bearer secret"
