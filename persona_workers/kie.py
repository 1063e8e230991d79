"""
Kie.ai Nano Banana Pro (Gemini 3 Pro Image) client, the generative service.

submit → poll record-info → download output. Requests go through
`_request_with_backoff` (429 / 5xx retried with exponential backoff and
jitter). The blocking client is wrapped by `KieImageGenerator` so the
orchestrator can await it off the event loop.
"""

import asyncio
import logging
import os
import random
import time
from typing import Sequence

import requests

from .pipeline.errors import PermanentServiceError, TransientServiceError
from .pipeline.models import GeneratedImage, ReferenceImage

logger = logging.getLogger(__name__)

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1"
KIE_IMAGE_MODEL = "nano_banana_pro"

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

POLL_INTERVAL = 5
MAX_POLLS = 60         # 5 minutes

SUCCESS_STATES = ("SUCCESS", "success")
FAILURE_STATES = ("GENERATE_FAILED", "CREATE_TASK_FAILED", "fail")
MAX_REFERENCE_IMAGES = 8


def _request_with_backoff(method: str, url: str, **kwargs) -> requests.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Raises:
        TransientServiceError:  Retries exhausted or the network kept failing.
        PermanentServiceError:  Any other non-2xx response.
    """
    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {KIE_API_KEY}")

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= MAX_RETRIES:
                raise TransientServiceError(f"Kie.ai request failed: {e}") from e
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Kie.ai request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e} "
                f"- retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES:
            if response.status_code >= 500:
                raise TransientServiceError(f"Kie.ai error {response.status_code}: {response.text[:300]}")
            if response.status_code >= 400:
                raise PermanentServiceError(f"Kie.ai error {response.status_code}: {response.text[:300]}")
            return response

        if attempt >= MAX_RETRIES:
            raise TransientServiceError(
                f"Kie.ai {response.status_code} after {MAX_RETRIES + 1} attempts (url={url})"
            )

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = int(retry_after)
        else:
            delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
        logger.warning(
            f"Kie.ai {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1} "
            f"- retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise TransientServiceError(f"Request to {url} failed after {MAX_RETRIES + 1} attempts")


def _extract_task_id(result: dict) -> str:
    data = result.get("data") or {}
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id") or data.get("id")
    if not task_id:
        task_id = result.get("taskId") or result.get("task_id") or result.get("id")
    if not task_id:
        raise PermanentServiceError(f"No task_id from Kie.ai image gen response: {str(result)[:200]}")
    return task_id


def _extract_output_url(poll_data: dict) -> str | None:
    results = poll_data.get("results") or poll_data.get("images") or []
    if results and isinstance(results, list):
        first = results[0]
        if isinstance(first, dict):
            return first.get("url") or first.get("imageUrl")
        if isinstance(first, str):
            return first
    return poll_data.get("imageUrl") or poll_data.get("url")


def generate_image(
    prompt: str,
    image_urls: Sequence[str],
    aspect_ratio: str = "1:1",
    resolution: str = "2K",
    timeout: float | None = None,
) -> GeneratedImage:
    """
    Submit an image generation/editing job to Kie.ai Nano Banana Pro,
    poll for completion, and return the downloaded image.

    With `timeout`, polling stops once the next poll would land past the
    deadline and a TransientServiceError is raised instead.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    if not KIE_API_KEY:
        raise PermanentServiceError("KIE_API_KEY not set, cannot generate images via Kie.ai")

    payload = {
        "prompt": prompt,
        "model": KIE_IMAGE_MODEL,
        "imageUrls": list(image_urls),
        "mode": "IMAGE_EDIT",
        "aspectRatio": aspect_ratio,
        "resolution": resolution,
    }

    logger.info(f"Kie.ai image gen request: {len(image_urls)} image(s), prompt={prompt[:60]}...")
    resp = _request_with_backoff(
        "POST", f"{KIE_API_BASE}/nano-banana/generate", json=payload, timeout=60,
    )
    task_id = _extract_task_id(resp.json())
    logger.info(f"Kie.ai image task started: {task_id}")

    status_url = f"{KIE_API_BASE}/nano-banana/record-info"
    for _ in range(MAX_POLLS):
        if deadline is not None and time.monotonic() + POLL_INTERVAL > deadline:
            raise TransientServiceError(f"Kie.ai image task {task_id} did not finish within {timeout:g}s")
        time.sleep(POLL_INTERVAL)
        status_data = _request_with_backoff(
            "GET", status_url, params={"taskId": task_id}, timeout=30,
        ).json()

        poll_data = status_data.get("data") or {}
        raw_status = poll_data.get("status", "")
        success_flag = poll_data.get("successFlag")

        if raw_status in SUCCESS_STATES or success_flag == 1:
            output_url = _extract_output_url(poll_data)
            if not output_url:
                raise PermanentServiceError(
                    f"Kie.ai image gen completed but no output URL: {str(status_data)[:200]}"
                )
            logger.info(f"Kie.ai image gen complete: {output_url[:80]}")

            img_resp = _request_with_backoff("GET", output_url, headers={"Authorization": None}, timeout=30)
            content_type = img_resp.headers.get("Content-Type", "image/png")
            return GeneratedImage(
                image_bytes=img_resp.content,
                mime_type=content_type.split(";")[0],
            )

        if raw_status in FAILURE_STATES or success_flag in (2, 3):
            error_msg = poll_data.get("error") or poll_data.get("msg") or "Unknown"
            raise TransientServiceError(f"Kie.ai image gen failed: {error_msg}")

    raise TransientServiceError(f"Kie.ai image gen timed out after {MAX_POLLS * POLL_INTERVAL}s")


class KieImageGenerator:
    """Generative service adapter: weighted references in, GeneratedImage out."""

    async def generate(
        self,
        references: Sequence[ReferenceImage],
        prompt: str,
        aspect_ratio: str = "1:1",
        resolution: str = "2K",
        timeout: float | None = None,
    ) -> GeneratedImage:
        ordered = sorted(references, key=lambda r: r.weight, reverse=True)
        urls = [r.url for r in ordered[:MAX_REFERENCE_IMAGES]]
        return await asyncio.to_thread(generate_image, prompt, urls, aspect_ratio, resolution, timeout)
