"""
Gemini vision integration for identity analysis.

Google Gemini 2.0 Flash (vision) via REST returns one JSON document per
image describing quality, facial geometry, body proportions, lighting,
camera and style. Used both for source images and for validating
generated outputs.
"""

import base64
import json
import logging
import os

import httpx

from .pipeline.errors import PermanentServiceError, TransientServiceError
from .pipeline.storage import download_image_bytes

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
ANALYSIS_MODEL = os.environ.get("GEMINI_ANALYSIS_MODEL", "gemini-2.0-flash")
REQUEST_TIMEOUT = 60


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


def _parse_json_response(text: str) -> dict:
    """Parse JSON from Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError:
                pass
        raise PermanentServiceError(f"Gemini returned invalid JSON: {text[:200]}")


async def _generate_content(model: str, parts: list, config: dict | None = None) -> dict:
    """Call Gemini generateContent REST endpoint."""
    if not GEMINI_API_KEY:
        raise PermanentServiceError("GEMINI_API_KEY not set")

    body: dict = {
        "contents": [{"parts": parts}],
    }
    if config:
        body["generationConfig"] = config

    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            resp = await client.post(_api_url(model), json=body)
    except httpx.TransportError as e:
        raise TransientServiceError(f"Gemini API unreachable: {e}") from e

    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientServiceError(f"Gemini API error {resp.status_code}: {resp.text[:300]}")
    if resp.status_code != 200:
        raise PermanentServiceError(f"Gemini API error {resp.status_code}: {resp.text[:300]}")

    return resp.json()


# =========================================================================
# Identity analysis (Gemini Flash vision)
# =========================================================================

IDENTITY_ANALYSIS_PROMPT = """You are a forensic portrait analyst building an identity profile for consistent image generation.

Analyze the person in this image and return a JSON object with this EXACT structure (no markdown, just raw JSON).
Use null for anything you cannot see. Every "confidence" is 0.0-1.0 and reflects how sure you are about that block.

{
  "quality": {"overall": 0.0, "blur": 0.0, "lighting": 0.0, "resolution": 0.0, "face_visibility": 0.0},
  "face_geometry": {
    "face_shape": "oval|round|square|heart|oblong|diamond",
    "jawline": "soft|defined|angular",
    "nose_shape": "straight|aquiline|button|wide|narrow",
    "lip_shape": "thin|medium|full",
    "chin_shape": "pointed|rounded|square|cleft",
    "forehead": "narrow|average|broad",
    "eye_distance_ratio": 0.31,
    "symmetry_score": 0.0,
    "euler_angles": {"pitch": 0, "yaw": 0, "roll": 0},
    "confidence": 0.0
  },
  "body_proportions": {
    "visible": true,
    "body_type": "slim|athletic|average|curvy|muscular|heavy",
    "shoulder_to_hip_ratio": 1.1,
    "head_to_body_ratio": 0.13,
    "torso_to_leg_ratio": 0.9,
    "confidence": 0.0
  },
  "lighting": {
    "lighting_type": "natural|studio|mixed|low-key|high-key",
    "key_light_direction": "front|left|right|top|back",
    "intensity": "soft|medium|hard",
    "color_temperature": 5000,
    "key_to_fill_ratio": 2.0,
    "confidence": 0.0
  },
  "camera": {
    "focal_length_mm": 50,
    "subject_distance": "close-up|medium|full",
    "perspective": "eye-level|high-angle|low-angle",
    "confidence": 0.0
  },
  "style": {
    "skin_tone": "descriptive name", "skin_tone_hex": "#RRGGBB",
    "hair_color": "descriptive name", "hair_color_hex": "#RRGGBB",
    "eye_color": "brown|blue|green|hazel|gray|amber",
    "hair_length": "bald|short|medium|long",
    "hair_texture": "straight|wavy|curly|coily",
    "skin_texture": "smooth|textured|freckled",
    "makeup_level": "none|light|moderate|heavy",
    "keywords": ["up to 6 short style keywords"],
    "confidence": 0.0
  },
  "expression": {"primary": "neutral", "intensity": 0.0}
}

Set body_proportions.visible to false when the full body is not in frame. Score quality strictly."""


async def analyze_image(image_url: str) -> dict:
    """
    Use Gemini Flash to analyse one image for identity signals.
    Returns the raw JSON document described by IDENTITY_ANALYSIS_PROMPT.
    """
    image_bytes = await download_image_bytes(image_url)
    mime = _guess_mime(image_url)

    parts = [
        {"inlineData": {"mimeType": mime, "data": base64.b64encode(image_bytes).decode()}},
        {"text": IDENTITY_ANALYSIS_PROMPT},
    ]

    result = await _generate_content(
        model=ANALYSIS_MODEL,
        parts=parts,
        config={"temperature": 0.1, "responseMimeType": "application/json"},
    )

    try:
        text = result["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise PermanentServiceError(f"Gemini response missing content: {str(result)[:200]}") from e
    return _parse_json_response(text)
