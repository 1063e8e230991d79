"""
Identity resolution: turns clusters into created or updated identities.

New clusters become new identities. Matched clusters are folded into the
existing identity with an optimistic read-modify-write: the row is only
written if its version is unchanged, otherwise the merge is recomputed from
a fresh read. A batch id is recorded on every merge so replaying the same
batch is a no-op.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .clustering import average_embeddings, normalize
from .coverage import assess_coverage, build_angle_coverage, merge_angle_coverage
from .errors import ConcurrentUpdateError
from .models import (
    Cluster,
    ClusteringResult,
    Detection,
    FaceAngle,
    Identity,
    ResolvedIdentity,
    SourceType,
)

logger = logging.getLogger(__name__)

DEFAULT_MERGE_RETRIES = 5
MAX_TRACKED_BATCHES = 50


def identity_confidence(image_count: int, avg_quality: float, angle_count: int) -> float:
    """0.3 * image-count score + 0.4 * mean quality + 0.3 * angle score."""
    count_score = min(1.0, image_count / 10)
    angle_score = min(1.0, angle_count / 5)
    return round(count_score * 0.3 + avg_quality * 0.4 + angle_score * 0.3, 4)


def _mean_quality(identity_coverage: dict, detections: Sequence[Detection]) -> float:
    qualities = [e.quality for e in identity_coverage.values()]
    if not qualities:
        qualities = [d.quality_score for d in detections]
    return sum(qualities) / len(qualities) if qualities else 0.0


def _angle_count(coverage: dict) -> int:
    return sum(1 for angle in coverage if angle != FaceAngle.UNKNOWN)


def new_identity_from_cluster(
    cluster: Cluster,
    batch_id: str,
    source_type: SourceType,
    source_id: Optional[str] = None,
) -> Identity:
    """Unsaved identity built from one new cluster (id assigned by the store)."""
    detections = cluster.detections
    coverage = build_angle_coverage(detections)
    angle_count = _angle_count(coverage)
    return Identity(
        id="",
        embedding=average_embeddings([d.embedding for d in detections]),
        angle_coverage=coverage,
        image_count=len(detections),
        angle_count=angle_count,
        confidence_score=identity_confidence(
            len(detections), _mean_quality(coverage, detections), angle_count,
        ),
        source_type=source_type,
        source_id=source_id,
        merged_batches=[batch_id],
    )


def merge_into_identity(current: Identity, detections: Sequence[Detection], batch_id: str) -> Identity:
    """
    Fold detections into an identity. The centroid is the count-weighted
    mean of the old centroid and the new embeddings, renormalised.
    """
    added = np.asarray([d.embedding for d in detections], dtype=np.float64)
    old = np.asarray(current.embedding, dtype=np.float64)
    total = current.image_count + len(detections)
    centroid = normalize((old * current.image_count + added.sum(axis=0)) / total)

    coverage = merge_angle_coverage(current.angle_coverage, build_angle_coverage(detections))
    angle_count = _angle_count(coverage)
    batches = (current.merged_batches + [batch_id])[-MAX_TRACKED_BATCHES:]

    return current.model_copy(update={
        "embedding": centroid,
        "angle_coverage": coverage,
        "image_count": total,
        "angle_count": angle_count,
        "confidence_score": identity_confidence(total, _mean_quality(coverage, detections), angle_count),
        "merged_batches": batches,
    })


class IdentityResolver:
    """
    Usage:
        resolver = IdentityResolver(store)
        resolved = resolver.resolve(clustering_result, batch_id=job_id)
    """

    def __init__(self, store, max_retries: int = DEFAULT_MERGE_RETRIES, min_angle_quality: float = 0.3):
        self.store = store
        self.max_retries = max_retries
        self.min_angle_quality = min_angle_quality

    def resolve(
        self,
        result: ClusteringResult,
        batch_id: str,
        source_type: SourceType = SourceType.LORA_TRAINING,
        source_id: Optional[str] = None,
    ) -> list[ResolvedIdentity]:
        resolved = []
        for cluster in result.clusters:
            if cluster.is_new:
                resolved.append(self._create(cluster, batch_id, source_type, source_id))
            else:
                resolved.append(self._merge(cluster, batch_id))
        return resolved

    def _create(
        self,
        cluster: Cluster,
        batch_id: str,
        source_type: SourceType,
        source_id: Optional[str],
    ) -> ResolvedIdentity:
        identity = self.store.create_identity(
            new_identity_from_cluster(cluster, batch_id, source_type, source_id)
        )
        self.store.save_detections(cluster.detections, identity.id, batch_id)
        return ResolvedIdentity(
            cluster_index=cluster.index,
            identity_id=identity.id,
            identity_name=identity.name,
            created=True,
            detection_count=len(cluster.detections),
            coverage=assess_coverage(identity.angle_coverage, self.min_angle_quality),
        )

    def _merge(self, cluster: Cluster, batch_id: str) -> ResolvedIdentity:
        identity_id = cluster.matched_identity.identity_id

        for attempt in range(1, self.max_retries + 1):
            current = self.store.get_identity(identity_id)
            if current is None:
                raise ConcurrentUpdateError(f"Identity {identity_id} disappeared during merge")

            if batch_id in current.merged_batches:
                logger.info(f"Batch {batch_id} already merged into identity {identity_id}, skipping")
                return self._resolved(cluster, current, already_merged=True)

            merged = merge_into_identity(current, cluster.detections, batch_id)
            if self.store.update_identity_if_version(merged, current.version):
                merged = merged.model_copy(update={"version": current.version + 1})
                self.store.save_detections(cluster.detections, identity_id, batch_id)
                logger.info(
                    f"Merged {len(cluster.detections)} detection(s) into identity {identity_id} "
                    f"(v{merged.version}, {merged.image_count} images)"
                )
                return self._resolved(cluster, merged)

            logger.warning(
                f"Version conflict merging into identity {identity_id} "
                f"(attempt {attempt}/{self.max_retries}), re-reading"
            )

        raise ConcurrentUpdateError(
            f"Identity {identity_id} kept changing; gave up after {self.max_retries} attempts"
        )

    def _resolved(self, cluster: Cluster, identity: Identity, already_merged: bool = False) -> ResolvedIdentity:
        return ResolvedIdentity(
            cluster_index=cluster.index,
            identity_id=identity.id,
            identity_name=identity.name,
            already_merged=already_merged,
            detection_count=len(cluster.detections),
            similarity=cluster.matched_identity.similarity,
            coverage=assess_coverage(identity.angle_coverage, self.min_angle_quality),
        )
