"""
Supabase persistence for the identity pipeline.

Tables:
  face_identities      identities (pgvector embedding, version column for merges)
  face_detections      detections linked via matched_identity_id
  image_analyses       per-image analysis records
  identity_profiles    aggregated profiles, one per identity
  generation_jobs      GenerationJob records
  jobs                 queue-level job rows (status, reason, cost, outputs)

All mutations go through the service-role client.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional, Sequence

from supabase import Client, create_client

from .models import (
    AggregatedProfile,
    AngleCoverageEntry,
    Detection,
    FaceAngle,
    GenerationJob,
    Identity,
    ImageAnalysis,
)

logger = logging.getLogger(__name__)

IDENTITIES_TABLE = "face_identities"
DETECTIONS_TABLE = "face_detections"
ANALYSES_TABLE = "image_analyses"
PROFILES_TABLE = "identity_profiles"
GENERATION_JOBS_TABLE = "generation_jobs"
JOBS_TABLE = "jobs"

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── pgvector helpers ─────────────────────────────────────────────────────────

def parse_embedding(value) -> Optional[list[float]]:
    """pgvector columns come back as '[0.1,0.2,...]' strings."""
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return [float(v) for v in value]


def format_embedding(embedding: Optional[Sequence[float]]) -> Optional[str]:
    if embedding is None:
        return None
    return "[" + ",".join(repr(float(v)) for v in embedding) + "]"


# ── Row mappers ──────────────────────────────────────────────────────────────

def _row_to_identity(row: dict) -> Identity:
    coverage = {}
    for angle, entry in (row.get("angle_coverage") or {}).items():
        try:
            coverage[FaceAngle(angle)] = AngleCoverageEntry(**entry)
        except ValueError:
            logger.warning(f"Ignoring unknown angle '{angle}' on identity {row.get('id')}")
    return Identity(
        id=row["id"],
        name=row.get("name"),
        embedding=parse_embedding(row.get("embedding")) or [],
        angle_coverage=coverage,
        mesh_url=row.get("mesh_url"),
        mesh_thumbnail_url=row.get("mesh_thumbnail_url"),
        image_count=row.get("image_count") or 0,
        angle_count=row.get("angle_count") or 0,
        confidence_score=row.get("confidence_score") or 0.0,
        source_type=row.get("source_type") or "manual",
        source_id=row.get("source_id"),
        merged_batches=row.get("merged_batches") or [],
        version=row.get("version") or 1,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _identity_to_row(identity: Identity) -> dict:
    return {
        "name": identity.name,
        "embedding": format_embedding(identity.embedding),
        "angle_coverage": {
            angle.value: entry.model_dump() for angle, entry in identity.angle_coverage.items()
        },
        "image_count": identity.image_count,
        "angle_count": identity.angle_count,
        "confidence_score": identity.confidence_score,
        "source_type": identity.source_type.value,
        "source_id": identity.source_id,
        "merged_batches": identity.merged_batches,
    }


class SupabaseStore:
    """
    Usage:
        store = SupabaseStore()            # service-role client from env
        store = SupabaseStore(client)      # explicit client (tests)
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    # ── Identities ───────────────────────────────────────────────────────

    def list_identities(self, page_size: int = 1000) -> list[Identity]:
        """Every identity, oldest first, read in pages of `page_size` rows."""
        identities: list[Identity] = []
        start = 0
        while True:
            result = (
                self.client.table(IDENTITIES_TABLE)
                .select("*")
                .order("created_at")
                .order("id")
                .range(start, start + page_size - 1)
                .execute()
            )
            rows = result.data or []
            identities.extend(_row_to_identity(row) for row in rows)
            if len(rows) < page_size:
                return identities
            start += page_size

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        result = (
            self.client.table(IDENTITIES_TABLE)
            .select("*")
            .eq("id", identity_id)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return _row_to_identity(rows[0]) if rows else None

    def create_identity(self, identity: Identity) -> Identity:
        now = _now_iso()
        row = {**_identity_to_row(identity), "version": 1, "created_at": now, "updated_at": now}
        result = self.client.table(IDENTITIES_TABLE).insert(row).execute()
        created = _row_to_identity(result.data[0])
        logger.info(f"Created identity {created.id} ({created.image_count} image(s))")
        return created

    def update_identity_if_version(self, identity: Identity, expected_version: int) -> bool:
        """
        Write the identity only if its stored version still equals
        expected_version. Returns False when another writer got there first.
        """
        row = {
            **_identity_to_row(identity),
            "version": expected_version + 1,
            "updated_at": _now_iso(),
        }
        result = (
            self.client.table(IDENTITIES_TABLE)
            .update(row)
            .eq("id", identity.id)
            .eq("version", expected_version)
            .execute()
        )
        return bool(result.data)

    # ── Detections ───────────────────────────────────────────────────────

    def save_detections(
        self,
        detections: Sequence[Detection],
        identity_id: Optional[str],
        job_id: str,
    ) -> list[Detection]:
        if not detections:
            return []
        rows = [
            {
                "job_id": job_id,
                "image_url": d.image_url,
                "bbox": d.bbox.model_dump(),
                "confidence": d.confidence,
                "embedding": format_embedding(d.embedding),
                "quality_score": d.quality_score,
                "angle": d.angle.value,
                "euler_angles": d.euler_angles.model_dump() if d.euler_angles else None,
                "cropped_face_url": d.cropped_face_url,
                "matched_identity_id": identity_id,
            }
            for d in detections
        ]
        result = self.client.table(DETECTIONS_TABLE).insert(rows).execute()
        stored = result.data or []
        return [
            d.model_copy(update={"id": row.get("id")})
            for d, row in zip(detections, stored)
        ]

    # ── Analyses & profiles ──────────────────────────────────────────────

    def save_analyses(self, job_id: str, analyses: Sequence[ImageAnalysis]):
        if not analyses:
            return
        rows = [
            {
                "job_id": job_id,
                "image_url": a.image_url,
                "is_valid": a.is_valid,
                "quality_score": a.quality.overall,
                "rejection_reason": a.rejection_reason,
                "analysis": a.model_dump(mode="json"),
                "api_cost_cents": a.cost_cents,
            }
            for a in analyses
        ]
        self.client.table(ANALYSES_TABLE).insert(rows).execute()

    def get_profile(self, identity_id: str) -> Optional[AggregatedProfile]:
        result = (
            self.client.table(PROFILES_TABLE)
            .select("profile")
            .eq("identity_id", identity_id)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        if not rows or not rows[0].get("profile"):
            return None
        return AggregatedProfile.model_validate(rows[0]["profile"])

    def save_profile(self, identity_id: str, profile: AggregatedProfile, job_id: Optional[str] = None):
        """Replace the identity's profile wholesale."""
        row = {
            "identity_id": identity_id,
            "job_id": job_id,
            "profile": profile.model_dump(mode="json"),
            "overall_confidence": profile.overall_confidence,
            "consistency_score": profile.consistency_score,
            "updated_at": _now_iso(),
        }
        self.client.table(PROFILES_TABLE).upsert(row, on_conflict="identity_id").execute()

    # ── Jobs ─────────────────────────────────────────────────────────────

    def save_generation_job(self, job: GenerationJob):
        row = {**job.model_dump(mode="json"), "updated_at": _now_iso()}
        self.client.table(GENERATION_JOBS_TABLE).upsert(row).execute()

    def update_job_record(self, job_id: str, fields: dict):
        """Update the queue-level job row. Errors surface here only as status plus reason."""
        self.client.table(JOBS_TABLE).update(
            {**fields, "updated_at": _now_iso()}
        ).eq("id", job_id).execute()
