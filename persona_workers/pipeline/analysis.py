"""
Per-image identity analysis.

Turns the raw JSON returned by the vision model into an ImageAnalysis:
anatomically implausible values are clamped (lowering that signal's
confidence), validity is judged against the quality bar, and a batch of
images is analysed with capped concurrency. One failed image never aborts
the batch; it comes back as an invalid analysis.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from .context import CancellationToken, bounded_call
from .errors import JobCancelled
from .models import SIGNAL_CATEGORIES, ImageAnalysis, ImageQuality, SignalReading

logger = logging.getLogger(__name__)

ANALYSIS_COST_CENTS = 1
DEFAULT_QUALITY_THRESHOLD = 0.4
CLAMP_CONFIDENCE_PENALTY = 0.8

# field → (min, max)
GEOMETRIC_LIMITS = {
    "face_geometry": {
        "eye_distance_ratio": (0.25, 0.45),
        "symmetry_score": (0.0, 1.0),
    },
    "body_proportions": {
        "head_to_body_ratio": (0.1, 0.2),
        "shoulder_to_hip_ratio": (0.6, 2.0),
    },
    "lighting": {
        "color_temperature": (2700, 6500),
        "key_to_fill_ratio": (1.0, 8.0),
    },
}

EULER_LIMITS = {"pitch": (-45.0, 45.0), "yaw": (-90.0, 90.0), "roll": (-30.0, 30.0)}

REJECTION_CHECKS = (
    ("blur", "too blurry"),
    ("lighting", "poor lighting"),
    ("face_visibility", "face not visible"),
    ("resolution", "low resolution"),
)

AnalyzeFn = Callable[[str], Awaitable[dict]]


def _clamp(value: Any, low: float, high: float) -> tuple[Any, bool]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return value, False
    clamped = min(high, max(low, value))
    return clamped, clamped != value


def _unit(value: Any) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def apply_geometric_constraints(category: str, values: dict) -> tuple[dict, bool]:
    """Clamp a category's values to plausible ranges. Returns (values, clamped_any)."""
    out = dict(values)
    clamped_any = False

    for field, (low, high) in GEOMETRIC_LIMITS.get(category, {}).items():
        if field in out:
            out[field], clamped = _clamp(out[field], low, high)
            clamped_any = clamped_any or clamped

    if category == "face_geometry" and isinstance(out.get("euler_angles"), dict):
        euler = dict(out["euler_angles"])
        for axis, (low, high) in EULER_LIMITS.items():
            if axis in euler:
                euler[axis], clamped = _clamp(euler[axis], low, high)
                clamped_any = clamped_any or clamped
        out["euler_angles"] = euler

    return out, clamped_any


def _rejection_reason(quality: ImageQuality, threshold: float) -> str:
    for attr, reason in REJECTION_CHECKS:
        if getattr(quality, attr) < threshold:
            return reason
    return "low overall quality"


def parse_analysis(
    image_url: str,
    raw: dict,
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
    image_type: Optional[str] = None,
) -> ImageAnalysis:
    """Build an ImageAnalysis from the vision model's JSON."""
    q = raw.get("quality") or {}
    quality = ImageQuality(
        overall=_unit(q.get("overall", 0)),
        blur=_unit(q.get("blur", 0)),
        lighting=_unit(q.get("lighting", 0)),
        resolution=_unit(q.get("resolution", 0)),
        face_visibility=_unit(q.get("face_visibility", 0)),
    )

    signals: dict[str, Optional[SignalReading]] = {}
    keywords: list[str] = []
    for category in SIGNAL_CATEGORIES:
        block = raw.get(category)
        if not isinstance(block, dict) or not block:
            signals[category] = None
            continue
        values = dict(block)
        confidence = _unit(values.pop("confidence", 0.5))

        if category == "body_proportions" and values.pop("visible", True) is False:
            signals[category] = None
            continue
        if category == "style":
            keywords = [str(k) for k in values.pop("keywords", []) or []]

        values, clamped = apply_geometric_constraints(category, values)
        if clamped:
            confidence *= CLAMP_CONFIDENCE_PENALTY
            logger.debug(f"Clamped implausible {category} values for {image_url[:60]}")
        signals[category] = SignalReading(values=values, confidence=confidence)

    is_valid = quality.overall >= quality_threshold
    return ImageAnalysis(
        image_url=image_url,
        image_type=image_type,
        quality=quality,
        is_valid=is_valid,
        rejection_reason=None if is_valid else _rejection_reason(quality, quality_threshold),
        style_keywords=keywords,
        expression=raw.get("expression") if isinstance(raw.get("expression"), dict) else None,
        cost_cents=ANALYSIS_COST_CENTS,
        **signals,
    )


def failed_analysis(image_url: str, error: str, image_type: Optional[str] = None) -> ImageAnalysis:
    return ImageAnalysis(
        image_url=image_url,
        image_type=image_type,
        is_valid=False,
        rejection_reason=f"analysis failed: {error}"[:300],
    )


async def analyze_images(
    image_urls: Sequence[str],
    analyze_fn: AnalyzeFn,
    *,
    concurrency: int = 3,
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD,
    image_types: Optional[dict[str, str]] = None,
    timeout: float = 120.0,
    token: Optional[CancellationToken] = None,
    job_id: str = "",
) -> list[ImageAnalysis]:
    """
    Analyse a batch of images with at most `concurrency` calls in flight.

    Results come back in input order. Failed images are returned as invalid
    analyses carrying the failure as their rejection reason.

    Raises:
        JobCancelled: If the token fires before an image is started.
    """
    image_types = image_types or {}
    semaphore = asyncio.Semaphore(concurrency)

    async def _one(url: str) -> ImageAnalysis:
        async with semaphore:
            if token is not None:
                token.raise_if_cancelled(job_id)
            try:
                raw = await bounded_call(analyze_fn(url), timeout, "image analysis")
                return parse_analysis(url, raw, quality_threshold, image_types.get(url))
            except JobCancelled:
                raise
            except Exception as e:
                logger.warning(f"[{job_id}] analysis failed for {url[:80]}: {e}")
                return failed_analysis(url, str(e), image_types.get(url))

    results = await asyncio.gather(*(_one(url) for url in image_urls))

    valid = sum(1 for r in results if r.is_valid)
    logger.info(f"[{job_id}] analysed {len(results)} image(s), {valid} valid")
    return list(results)
