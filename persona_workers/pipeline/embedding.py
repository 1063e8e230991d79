"""
Embedding client: face detection + embedding extraction over HTTP.

POST {FACE_SERVICE_URL}/detect  {"image_url": ...}
  → {"image_width", "image_height",
     "faces": [{"bbox", "confidence", "embedding", "euler_angles"?, "landmarks"?}]}

"No face found" is an empty list, never an error. Per-image transport
failures are collected in DetectionBatch.failed_images; only a batch in
which every image failed raises.
"""

import asyncio
import hashlib
import logging
import os
from io import BytesIO
from typing import Optional, Sequence

import httpx
from PIL import Image

from .context import CancellationToken
from .errors import PermanentServiceError, PipelineError, TransientServiceError
from .models import BoundingBox, Detection, DetectionBatch, EulerAngles, FaceAngle
from .storage import download_image_bytes

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FACE_SERVICE_URL = os.getenv("FACE_SERVICE_URL", "http://localhost:8090")
FACE_SERVICE_API_KEY = os.getenv("FACE_SERVICE_API_KEY", "")

DETECTION_BATCH_SIZE = 5
REFERENCE_FACE_AREA = 300 * 300
CROP_MARGIN = 0.2


# ── Pose / quality estimation ────────────────────────────────────────────────

def angle_from_euler(euler: EulerAngles) -> FaceAngle:
    """Yaw > 0 means the subject faces camera-left, i.e. shows the right side."""
    if abs(euler.pitch) > 45:
        return FaceAngle.UNKNOWN
    yaw = euler.yaw
    if abs(yaw) < 15:
        return FaceAngle.FRONT
    if abs(yaw) <= 60:
        return FaceAngle.QUARTER_RIGHT if yaw > 0 else FaceAngle.QUARTER_LEFT
    return FaceAngle.PROFILE_RIGHT if yaw > 0 else FaceAngle.PROFILE_LEFT


def angle_from_bbox(bbox: BoundingBox, image_width: Optional[float] = None) -> FaceAngle:
    """Rough pose guess from box shape and horizontal offset when no euler angles exist."""
    if bbox.height <= 0:
        return FaceAngle.UNKNOWN
    aspect = bbox.width / bbox.height
    rel_pos = 0.0
    if image_width:
        rel_pos = (bbox.x + bbox.width / 2) / image_width - 0.5

    if aspect < 0.6:
        return FaceAngle.PROFILE_RIGHT if rel_pos > 0.1 else FaceAngle.PROFILE_LEFT
    if aspect < 0.8:
        return FaceAngle.QUARTER_RIGHT if rel_pos > 0.05 else FaceAngle.QUARTER_LEFT
    return FaceAngle.FRONT


def estimate_quality(confidence: float, bbox: BoundingBox) -> float:
    size_score = min(1.0, (bbox.width * bbox.height) / REFERENCE_FACE_AREA)
    return round(min(1.0, max(0.0, confidence * 0.6 + size_score * 0.4)), 4)


def _parse_bbox(raw) -> BoundingBox:
    if isinstance(raw, dict):
        return BoundingBox(x=raw["x"], y=raw["y"], width=raw["width"], height=raw["height"])
    x, y, w, h = raw
    return BoundingBox(x=x, y=y, width=w, height=h)


def parse_faces(image_url: str, payload: dict) -> list[Detection]:
    """Map one /detect response onto Detection records."""
    image_width = payload.get("image_width")
    detections = []
    for face in payload.get("faces") or []:
        bbox = _parse_bbox(face["bbox"])
        confidence = float(face.get("confidence", 0.0))
        euler = EulerAngles(**face["euler_angles"]) if face.get("euler_angles") else None
        angle = angle_from_euler(euler) if euler else angle_from_bbox(bbox, image_width)
        detections.append(Detection(
            image_url=image_url,
            bbox=bbox,
            confidence=confidence,
            embedding=face.get("embedding") or None,
            quality_score=estimate_quality(confidence, bbox),
            angle=angle,
            euler_angles=euler,
        ))
    return detections


def crop_face(image_bytes: bytes, bbox: BoundingBox, margin: float = CROP_MARGIN) -> bytes:
    """Crop the face box (plus margin) out of an image and return PNG bytes."""
    img = Image.open(BytesIO(image_bytes))
    width, height = img.size
    dx, dy = bbox.width * margin, bbox.height * margin
    box = (
        int(max(0, bbox.x - dx)),
        int(max(0, bbox.y - dy)),
        int(min(width, bbox.x + bbox.width + dx)),
        int(min(height, bbox.y + bbox.height + dy)),
    )
    out = BytesIO()
    img.crop(box).convert("RGB").save(out, format="PNG")
    return out.getvalue()


# ── Client ───────────────────────────────────────────────────────────────────

class EmbeddingClient:
    """
    Usage:
        client = EmbeddingClient()
        batch = await client.detect(["https://.../a.jpg", "https://.../b.jpg"])
    """

    def __init__(
        self,
        base_url: str = FACE_SERVICE_URL,
        api_key: str = FACE_SERVICE_API_KEY,
        concurrency: int = DETECTION_BATCH_SIZE,
        timeout: float = 60.0,
        storage=None,
        crop_bucket: str = "faces",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.concurrency = concurrency
        self.timeout = timeout
        self.storage = storage
        self.crop_bucket = crop_bucket
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def _detect_one(self, client: httpx.AsyncClient, url: str) -> list[Detection]:
        try:
            resp = await client.post(
                f"{self.base_url}/detect",
                json={"image_url": url},
                headers=self._headers(),
            )
        except httpx.TransportError as e:
            raise TransientServiceError(f"Face service unreachable: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientServiceError(f"Face service error {resp.status_code}: {resp.text[:200]}")
        if resp.status_code != 200:
            raise PermanentServiceError(f"Face service rejected image {resp.status_code}: {resp.text[:200]}")

        try:
            return parse_faces(url, resp.json())
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentServiceError(f"Malformed face service response: {e}") from e

    async def _attach_crops(self, url: str, detections: list[Detection], job_id: str) -> list[Detection]:
        image_bytes = await download_image_bytes(url)
        cropped = []
        for i, d in enumerate(detections):
            data = await asyncio.to_thread(crop_face, image_bytes, d.bbox)
            path = f"{job_id or 'detections'}/{hashlib.sha1(url.encode()).hexdigest()[:12]}_{i}.png"
            crop_url = await self.storage.upload(self.crop_bucket, path, data, "image/png")
            cropped.append(d.model_copy(update={"cropped_face_url": crop_url}))
        return cropped

    async def detect(
        self,
        image_refs: Sequence[str],
        token: Optional[CancellationToken] = None,
        job_id: str = "",
    ) -> DetectionBatch:
        """
        Detect faces in every image, at most `concurrency` requests in flight.

        Raises:
            TransientServiceError / PermanentServiceError: If every image failed.
            JobCancelled: If the token fires between images.
        """
        batch = DetectionBatch()
        semaphore = asyncio.Semaphore(self.concurrency)
        errors: list[PipelineError] = []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def _one(url: str):
                async with semaphore:
                    if token is not None:
                        token.raise_if_cancelled(job_id)
                    try:
                        found = await self._detect_one(client, url)
                    except PipelineError as e:
                        logger.warning(f"[{job_id}] face detection failed for {url[:80]}: {e}")
                        return url, [], e
                    if self.storage is not None and found:
                        try:
                            found = await self._attach_crops(url, found, job_id)
                        except (PipelineError, OSError) as e:
                            logger.warning(f"[{job_id}] face crop skipped for {url[:80]}: {e}")
                    return url, found, None

            results = await asyncio.gather(*(_one(url) for url in image_refs))

        for url, found, error in results:
            if error is not None:
                batch.failed_images[url] = str(error)
                errors.append(error)
                continue
            batch.by_image[url] = found
            batch.detections.extend(found)

        if image_refs and len(errors) == len(image_refs):
            if any(isinstance(e, TransientServiceError) for e in errors):
                raise TransientServiceError(f"Face detection failed for all {len(errors)} image(s)")
            raise PermanentServiceError(f"Face detection failed for all {len(errors)} image(s)")

        logger.info(
            f"[{job_id}] detected {len(batch.detections)} face(s) in "
            f"{len(batch.by_image)} image(s), {len(batch.failed_images)} failed"
        )
        return batch
