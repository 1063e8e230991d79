"""
Pydantic models and enums for the identity pipeline.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from .errors import InputError


# ── Angles ───────────────────────────────────────────────────────────────────

class FaceAngle(str, Enum):
    FRONT = "front"
    PROFILE_LEFT = "profile_left"
    PROFILE_RIGHT = "profile_right"
    QUARTER_LEFT = "quarter_left"
    QUARTER_RIGHT = "quarter_right"
    UNKNOWN = "unknown"


CANONICAL_ANGLES = [
    FaceAngle.FRONT,
    FaceAngle.PROFILE_LEFT,
    FaceAngle.PROFILE_RIGHT,
    FaceAngle.QUARTER_LEFT,
    FaceAngle.QUARTER_RIGHT,
]


class SourceType(str, Enum):
    LORA_TRAINING = "lora_training"
    CHARACTER_DIAGRAM = "character_diagram"
    REFERENCE_KIT = "reference_kit"
    MANUAL = "manual"


# ── Detections ───────────────────────────────────────────────────────────────

class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class EulerAngles(BaseModel):
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0


class Detection(BaseModel):
    """One face found in one source image. Never mutated once stored."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    image_url: str
    bbox: BoundingBox
    confidence: float = 0.0
    embedding: Optional[list[float]] = None
    quality_score: float = Field(0.0, ge=0.0, le=1.0)
    angle: FaceAngle = FaceAngle.UNKNOWN
    euler_angles: Optional[EulerAngles] = None
    cropped_face_url: Optional[str] = None


class DetectionBatch(BaseModel):
    detections: list[Detection] = Field(default_factory=list)
    by_image: dict[str, list[Detection]] = Field(default_factory=dict)
    failed_images: dict[str, str] = Field(default_factory=dict)


# ── Identities ───────────────────────────────────────────────────────────────

class AngleCoverageEntry(BaseModel):
    url: str
    quality: float = 0.0
    detection_id: Optional[str] = None


class Identity(BaseModel):
    id: str
    name: Optional[str] = None
    embedding: list[float]
    angle_coverage: dict[FaceAngle, AngleCoverageEntry] = Field(default_factory=dict)
    mesh_url: Optional[str] = None
    mesh_thumbnail_url: Optional[str] = None
    image_count: int = 0
    angle_count: int = 0
    confidence_score: float = 0.0
    source_type: SourceType = SourceType.MANUAL
    source_id: Optional[str] = None
    merged_batches: list[str] = Field(default_factory=list)
    version: int = 1
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class IdentityMatch(BaseModel):
    identity_id: str
    identity_name: Optional[str] = None
    similarity: float


class Cluster(BaseModel):
    """Batch-scoped grouping; discarded once resolved into an identity."""

    index: int
    detections: list[Detection]
    centroid: list[float]
    similarities: list[float] = Field(default_factory=list)
    matched_identity: Optional[IdentityMatch] = None

    @property
    def is_new(self) -> bool:
        return self.matched_identity is None


class ClusteringResult(BaseModel):
    clusters: list[Cluster] = Field(default_factory=list)
    unclustered: list[Detection] = Field(default_factory=list)

    @property
    def clustered_count(self) -> int:
        return sum(len(c.detections) for c in self.clusters)


class CoverageReport(BaseModel):
    present: list[FaceAngle] = Field(default_factory=list)
    missing: list[FaceAngle] = Field(default_factory=list)
    priority: Literal["high", "medium", "low"] = "high"
    suggestions: list[str] = Field(default_factory=list)
    coverage_score: float = 0.0
    ready_for_3d: bool = False


class ResolvedIdentity(BaseModel):
    """Outcome of folding one cluster into the identity store."""

    cluster_index: int
    identity_id: str
    identity_name: Optional[str] = None
    created: bool = False
    already_merged: bool = False
    detection_count: int = 0
    similarity: Optional[float] = None
    coverage: CoverageReport = Field(default_factory=CoverageReport)


# ── Per-image analysis ───────────────────────────────────────────────────────

SIGNAL_CATEGORIES = ("face_geometry", "body_proportions", "lighting", "camera", "style")


class ImageQuality(BaseModel):
    overall: float = 0.0
    blur: float = 0.0
    lighting: float = 0.0
    resolution: float = 0.0
    face_visibility: float = 0.0


class SignalReading(BaseModel):
    """One signal category read from one image, with its own confidence."""

    values: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class ImageAnalysis(BaseModel):
    image_url: str
    image_type: Optional[str] = None
    quality: ImageQuality = Field(default_factory=ImageQuality)
    is_valid: bool = False
    rejection_reason: Optional[str] = None
    face_geometry: Optional[SignalReading] = None
    body_proportions: Optional[SignalReading] = None
    lighting: Optional[SignalReading] = None
    camera: Optional[SignalReading] = None
    style: Optional[SignalReading] = None
    style_keywords: list[str] = Field(default_factory=list)
    expression: Optional[dict] = None
    cost_cents: int = 0

    def signal(self, category: str) -> Optional[SignalReading]:
        return getattr(self, category)


# ── Aggregated profile ───────────────────────────────────────────────────────

class ProfileField(BaseModel):
    value: Any
    confidence: float
    sample_count: int
    mean: Optional[float] = None
    std: Optional[float] = None


class ProfileCategory(BaseModel):
    fields: dict[str, ProfileField] = Field(default_factory=dict)
    sample_count: int = 0
    confidence: float = 0.0


class RankedImage(BaseModel):
    url: str
    score: float


class AggregatedProfile(BaseModel):
    face_geometry: Optional[ProfileCategory] = None
    body_proportions: Optional[ProfileCategory] = None
    lighting: Optional[ProfileCategory] = None
    camera: Optional[ProfileCategory] = None
    style: Optional[ProfileCategory] = None
    style_keywords: list[str] = Field(default_factory=list)
    overall_confidence: float = 0.0
    consistency_score: float = 0.0
    sample_count: int = 0
    image_quality_ranking: list[RankedImage] = Field(default_factory=list)
    best_reference_image_url: Optional[str] = None

    def category(self, name: str) -> Optional[ProfileCategory]:
        return getattr(self, name)

    def value(self, category: str, field: str) -> Any:
        cat = self.category(category)
        if cat is None or field not in cat.fields:
            return None
        return cat.fields[field].value


# ── Generation ───────────────────────────────────────────────────────────────

class GenerationType(str, Enum):
    CHARACTER_DIAGRAM = "character_diagram"
    REFERENCE_KIT_ANCHOR = "reference_kit_anchor"
    REFERENCE_KIT_PROFILE = "reference_kit_profile"
    REFERENCE_KIT_FULL_BODY = "reference_kit_full_body"
    REFERENCE_KIT_EXPRESSION = "reference_kit_expression"
    IMAGE_GENERATION = "image_generation"


class ReferenceImage(BaseModel):
    url: str
    image_type: str = "reference"
    weight: float = 1.0


class GeneratedImage(BaseModel):
    image_bytes: bytes
    mime_type: str = "image/png"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class GenerationJob(BaseModel):
    id: str
    owner_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress_pct: int = 0
    attempts: int = 0
    cost_cents: int = 0
    prompt: Optional[str] = None
    last_feedback: list[str] = Field(default_factory=list)
    validation_score: Optional[float] = None
    best_effort: bool = False
    output_url: Optional[str] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False


class Deviation(BaseModel):
    category: str
    field: str
    expected: Any = None
    actual: Any = None
    severity: Literal["low", "medium", "high"] = "low"


class ValidationReport(BaseModel):
    overall_score: float
    is_valid: bool
    face_score: float = 0.5
    lighting_score: float = 0.5
    style_score: float = 0.5
    deviations: list[Deviation] = Field(default_factory=list)
    regeneration_hints: list[str] = Field(default_factory=list)


class DecisionKind(str, Enum):
    ACCEPT = "accept"
    RETRY = "retry"
    BEST_EFFORT = "best_effort"


class Decision(BaseModel):
    kind: DecisionKind
    score: Optional[float] = None
    hints: list[str] = Field(default_factory=list)


# ── Configuration ────────────────────────────────────────────────────────────

class PipelineConfig(BaseModel):
    match_threshold: float = Field(0.7, ge=0.0, le=1.0)
    validation_threshold: float = Field(0.85, ge=0.0, le=1.0)
    max_attempts: int = Field(3, ge=1)
    analysis_quality_threshold: float = Field(0.4, ge=0.0, le=1.0)
    coverage_min_quality: float = Field(0.3, ge=0.0, le=1.0)
    detection_concurrency: int = Field(5, ge=1)
    analysis_concurrency: int = Field(3, ge=1)
    call_timeout_seconds: float = Field(120.0, gt=0)
    generation_timeout_seconds: float = Field(420.0, gt=0)
    merge_retries: int = Field(5, ge=1)

    def with_overrides(self, **overrides) -> "PipelineConfig":
        """Return a copy with every non-None override applied."""
        update = {k: v for k, v in overrides.items() if v is not None}
        if not update:
            return self
        return self.model_validate({**self.model_dump(), **update})


# ── Queue payloads ───────────────────────────────────────────────────────────

class ClusterOptions(BaseModel):
    match_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)


class GenerateOptions(BaseModel):
    max_attempts: Optional[int] = Field(None, ge=1, le=10)
    validation_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    enable_validation: bool = True
    analyze: bool = True
    aspect_ratio: str = "1:1"
    resolution: str = "2K"


class IdentityClusterPayload(BaseModel):
    """Detect faces in source_refs and fold them into identities."""

    target_kind: Literal["identity_cluster"] = "identity_cluster"
    job_id: str = Field(..., min_length=1)
    source_refs: list[str] = Field(..., min_length=1)
    source_type: SourceType = SourceType.LORA_TRAINING
    source_id: Optional[str] = None
    options: ClusterOptions = Field(default_factory=ClusterOptions)


class ConstrainedGeneratePayload(BaseModel):
    """Generate one artifact (or one per variant) constrained to an identity."""

    target_kind: Literal["constrained_generate"] = "constrained_generate"
    job_id: str = Field(..., min_length=1)
    source_refs: list[str] = Field(default_factory=list)
    image_types: dict[str, str] = Field(default_factory=dict)
    generation_type: GenerationType = GenerationType.CHARACTER_DIAGRAM
    identity_id: Optional[str] = None
    custom_instructions: Optional[str] = None
    variants: list[str] = Field(default_factory=list)
    options: GenerateOptions = Field(default_factory=GenerateOptions)

    @model_validator(mode="after")
    def _require_identity_source(self):
        if not self.source_refs and not self.identity_id:
            raise ValueError("either source_refs or identity_id is required")
        return self


JobPayload = Annotated[
    Union[IdentityClusterPayload, ConstrainedGeneratePayload],
    Field(discriminator="target_kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_job_payload(data: dict) -> Union[IdentityClusterPayload, ConstrainedGeneratePayload]:
    """Validate a raw queue payload. Raises InputError on anything malformed."""
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise InputError(f"Invalid job payload: {e.errors()[0].get('msg', str(e))}") from e


# ── Job outcomes ─────────────────────────────────────────────────────────────

class JobOutcome(BaseModel):
    """Terminal result of one queue job. Errors leave the worker as status plus reason only."""

    job_id: str
    target_kind: str
    status: JobStatus
    reason: Optional[str] = None
    cost_cents: int = 0
    attempts: int = 0
    best_effort: bool = False
    output_urls: list[str] = Field(default_factory=list)
    failed_items: dict[str, str] = Field(default_factory=dict)
    summary: dict = Field(default_factory=dict)
