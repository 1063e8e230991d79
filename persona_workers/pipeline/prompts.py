"""
Identity-constrained prompt construction.

A prompt is: base instructions for the generation type, a reference-image
note, one constraint section per profile category, any custom direction,
and a closing instruction. Without a profile, generic identity-preservation
constraints are used instead.
"""

from typing import Iterable, Optional, Sequence

from .models import AggregatedProfile, GenerationType, ReferenceImage

SEPARATOR = "\n\n---\n\n"
CORRECTIONS_HEADER = "CRITICAL CORRECTIONS:"
FINAL_INSTRUCTION = "FINAL INSTRUCTION: Identity preservation is the #1 priority."


BASE_PROMPTS = {
    GenerationType.CHARACTER_DIAGRAM: """Create a professional character reference sheet of the person shown in the reference images.
Layout: front view, left profile, right profile and 3/4 view side by side on a plain neutral background,
plus a neutral-expression face close-up. Even studio lighting, consistent scale across all views.
The person MUST look exactly like the reference photos: same face, body shape, hair and skin tone.""",

    GenerationType.REFERENCE_KIT_ANCHOR: """Create a high-resolution front-facing portrait of the person shown in the reference images.
Neutral expression, eyes to camera, soft even lighting, plain background, head and shoulders framing.
This image is the identity anchor: facial structure must match the references exactly.""",

    GenerationType.REFERENCE_KIT_PROFILE: """Create a clean side-profile portrait (90-degree turn) of the person shown in the reference images.
Ear visible, neutral expression, even lighting, plain background.
Nose, jaw and forehead silhouette must match the references exactly.""",

    GenerationType.REFERENCE_KIT_FULL_BODY: """Create a full-body standing photo of the person shown in the reference images.
Head to feet in frame, relaxed natural pose, fitted neutral clothing, plain background, even lighting.
Body proportions must match the references exactly.""",

    GenerationType.REFERENCE_KIT_EXPRESSION: """Create a portrait of the person shown in the reference images showing the requested expression.
Head and shoulders framing, soft lighting, plain background.
Only the expression may change; facial structure must match the references exactly.""",

    GenerationType.IMAGE_GENERATION: """Create a photorealistic image featuring the person shown in the reference images.
The person MUST be immediately recognisable as the same individual, with the same face, hair, skin tone and build.""",
}

GENERIC_CONSTRAINTS = """IDENTITY REQUIREMENTS:
- Preserve the exact facial structure, eye shape and spacing from the reference images
- Preserve skin tone, hair color and hair style exactly
- Keep body proportions consistent with the references
- Do not beautify, age or stylise the face"""


# ── Descriptors ──────────────────────────────────────────────────────────────

def _eye_spacing(ratio: Optional[float]) -> Optional[str]:
    if ratio is None:
        return None
    if ratio < 0.29:
        return "close-set eyes"
    if ratio > 0.33:
        return "wide-set eyes"
    return "average eye spacing"


def _temperature(kelvin: Optional[float]) -> Optional[str]:
    if kelvin is None:
        return None
    if kelvin < 4000:
        return f"warm light (~{int(kelvin)}K)"
    if kelvin > 5500:
        return f"cool light (~{int(kelvin)}K)"
    return f"neutral daylight (~{int(kelvin)}K)"


def _contrast(key_to_fill: Optional[float]) -> Optional[str]:
    if key_to_fill is None:
        return None
    if key_to_fill > 4:
        return "high contrast"
    if key_to_fill < 2:
        return "low contrast, soft fill"
    return "moderate contrast"


def _build(shoulder_to_hip: Optional[float]) -> Optional[str]:
    if shoulder_to_hip is None:
        return None
    if shoulder_to_hip > 1.3:
        return "shoulders noticeably wider than hips"
    if shoulder_to_hip < 1.0:
        return "hips wider than shoulders"
    return "balanced shoulder-to-hip proportion"


def _section(title: str, lines: Iterable[Optional[str]]) -> Optional[str]:
    kept = [f"- {line}" for line in lines if line]
    if not kept:
        return None
    return f"{title}:\n" + "\n".join(kept)


def _labelled(label: str, value) -> Optional[str]:
    return f"{label}: {value}" if value not in (None, "") else None


def build_constraint_sections(profile: AggregatedProfile) -> list[str]:
    v = profile.value
    sections = [
        _section("FACIAL STRUCTURE", [
            _labelled("Face shape", v("face_geometry", "face_shape")),
            _labelled("Jawline", v("face_geometry", "jawline")),
            _labelled("Nose", v("face_geometry", "nose_shape")),
            _labelled("Lips", v("face_geometry", "lip_shape")),
            _labelled("Chin", v("face_geometry", "chin_shape")),
            _labelled("Forehead", v("face_geometry", "forehead")),
            _eye_spacing(v("face_geometry", "eye_distance_ratio")),
        ]),
        _section("LIGHTING REQUIREMENTS", [
            _labelled("Lighting", v("lighting", "lighting_type")),
            _labelled("Key light", v("lighting", "key_light_direction")),
            _temperature(v("lighting", "color_temperature")),
            _contrast(v("lighting", "key_to_fill_ratio")),
        ]),
        _section("BODY PROPORTIONS", [
            _labelled("Body type", v("body_proportions", "body_type")),
            _build(v("body_proportions", "shoulder_to_hip_ratio")),
        ]),
        _section("APPEARANCE & STYLE", [
            _labelled("Skin tone", _with_hex(v("style", "skin_tone"), v("style", "skin_tone_hex"))),
            _labelled("Hair color", _with_hex(v("style", "hair_color"), v("style", "hair_color_hex"))),
            _labelled("Hair", _join(v("style", "hair_length"), v("style", "hair_texture"))),
            _labelled("Eye color", v("style", "eye_color")),
            _labelled("Makeup", v("style", "makeup_level")),
            _labelled("Style", ", ".join(profile.style_keywords[:6]) or None),
        ]),
    ]
    return [s for s in sections if s]


def _with_hex(name, hex_code) -> Optional[str]:
    if name and hex_code:
        return f"{name} ({hex_code})"
    return name or hex_code


def _join(*parts) -> Optional[str]:
    kept = [str(p) for p in parts if p]
    return ", ".join(kept) or None


# ── Assembly ─────────────────────────────────────────────────────────────────

def build_prompt(
    generation_type: GenerationType,
    profile: Optional[AggregatedProfile] = None,
    references: Sequence[ReferenceImage] = (),
    custom_instructions: Optional[str] = None,
) -> str:
    """
    Assemble the initial prompt for one generation.

    Falls back to generic identity constraints when there is no profile or
    the profile yields no usable descriptors.
    """
    parts = [BASE_PROMPTS[generation_type]]

    if references:
        ranked = sorted(references, key=lambda r: r.weight, reverse=True)
        primary = ranked[0]
        parts.append(
            f"REFERENCE IMAGES: {len(references)} image(s) of the same person are attached. "
            f"Treat the {primary.image_type} image as the primary reference."
        )

    sections = build_constraint_sections(profile) if profile is not None else []
    parts.extend(sections or [GENERIC_CONSTRAINTS])

    if custom_instructions:
        parts.append(f"ADDITIONAL DIRECTION:\n{custom_instructions.strip()}")

    parts.append(FINAL_INSTRUCTION)
    return SEPARATOR.join(parts)


def merge_hints(existing: Sequence[str], new: Iterable[str]) -> list[str]:
    """Accumulate hints in first-seen order without duplicates."""
    merged = list(existing)
    for hint in new:
        if hint and hint not in merged:
            merged.append(hint)
    return merged


def append_corrections(prompt: str, hints: Sequence[str]) -> str:
    """Append the accumulated correction hints below the prompt."""
    if not hints:
        return prompt
    lines = "\n".join(f"- {h}" for h in hints)
    return f"{prompt}\n\n{CORRECTIONS_HEADER}\n{lines}"
