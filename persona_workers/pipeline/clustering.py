"""
Greedy single-pass similarity clustering of face detections.

Each embedded detection is compared against every known identity centroid
and against the running centroid of every cluster opened earlier in the
same batch. The best candidate at or above the threshold wins; otherwise
the detection opens a new cluster. Candidate order:

  1. existing identities before in-batch clusters
  2. higher cosine similarity
  3. earliest created

Detections without an embedding are returned as unclustered.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .errors import ClusteringError
from .models import Cluster, ClusteringResult, Detection, Identity, IdentityMatch

logger = logging.getLogger(__name__)


# ── Vector helpers ───────────────────────────────────────────────────────────

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors. Zero-length vectors score 0."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ClusteringError(
            f"Embedding dimension mismatch: {va.shape[0]} vs {vb.shape[0]}"
        )
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def normalize(vector: Sequence[float]) -> list[float]:
    v = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v.tolist()
    return (v / norm).tolist()


def average_embeddings(embeddings: Sequence[Sequence[float]]) -> list[float]:
    """Normalised mean of a non-empty set of embeddings."""
    if not embeddings:
        raise ClusteringError("Cannot average zero embeddings")
    dims = {len(e) for e in embeddings}
    if len(dims) != 1:
        raise ClusteringError(f"Embedding dimension mismatch: {sorted(dims)}")
    return normalize(np.mean(np.asarray(embeddings, dtype=np.float64), axis=0))


# ── Clusterer ────────────────────────────────────────────────────────────────

class _OpenCluster:
    """Working state for a cluster while the batch is being scanned."""

    def __init__(self, index: int, identity: Optional[Identity] = None):
        self.index = index
        self.identity = identity
        self.detections: list[Detection] = []
        self.similarities: list[float] = []
        self._sum: Optional[np.ndarray] = None

    def add(self, detection: Detection, similarity: float):
        self.detections.append(detection)
        self.similarities.append(similarity)
        v = np.asarray(detection.embedding, dtype=np.float64)
        self._sum = v if self._sum is None else self._sum + v

    @property
    def centroid(self) -> list[float]:
        return normalize(self._sum / len(self.detections))


class SimilarityClusterer:
    """
    Usage:
        clusterer = SimilarityClusterer(threshold=0.7)
        result = clusterer.cluster(detections, known_identities)
    """

    def __init__(self, threshold: float = 0.7):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        self.threshold = threshold

    def cluster(
        self,
        detections: Sequence[Detection],
        identities: Sequence[Identity] = (),
    ) -> ClusteringResult:
        """
        Group a batch of detections. Pure: the inputs are not modified.

        Args:
            detections: Detections in batch order.
            identities: Stored identities, oldest first.

        Returns:
            ClusteringResult with matched/new clusters and unclustered detections.

        Raises:
            ClusteringError: If embeddings disagree on dimensionality.
        """
        unclustered = [d for d in detections if not d.embedding]
        embedded = [d for d in detections if d.embedding]
        if not embedded:
            return ClusteringResult(clusters=[], unclustered=unclustered)

        self._check_dimensions(embedded, identities)

        # Stable candidate order for existing identities: created_at, then input order
        ordered_identities = sorted(
            ((i, identity) for i, identity in enumerate(identities) if identity.embedding),
            key=lambda pair: (pair[1].created_at or "", pair[0]),
        )

        by_identity: dict[str, _OpenCluster] = {}
        open_clusters: list[_OpenCluster] = []

        for detection in embedded:
            best_key = None
            best_target = None
            best_sim = 0.0

            for order, (_, identity) in enumerate(ordered_identities):
                sim = cosine_similarity(detection.embedding, identity.embedding)
                if sim < self.threshold:
                    continue
                key = (0, -sim, order)
                if best_key is None or key < best_key:
                    best_key, best_target, best_sim = key, identity, sim

            if best_target is None:
                for cluster in open_clusters:
                    if cluster.identity is not None:
                        continue
                    sim = cosine_similarity(detection.embedding, cluster.centroid)
                    if sim < self.threshold:
                        continue
                    key = (1, -sim, cluster.index)
                    if best_key is None or key < best_key:
                        best_key, best_target, best_sim = key, cluster, sim

            if isinstance(best_target, Identity):
                target = by_identity.get(best_target.id)
                if target is None:
                    target = _OpenCluster(len(open_clusters), identity=best_target)
                    by_identity[best_target.id] = target
                    open_clusters.append(target)
                target.add(detection, best_sim)
            elif best_target is not None:
                best_target.add(detection, best_sim)
            else:
                fresh = _OpenCluster(len(open_clusters))
                fresh.add(detection, 1.0)
                open_clusters.append(fresh)

        clusters = [self._freeze(c) for c in open_clusters]
        logger.info(
            f"Clustered {len(embedded)} detection(s) into {len(clusters)} cluster(s) "
            f"({sum(1 for c in clusters if not c.is_new)} matched, "
            f"{len(unclustered)} unclustered, threshold={self.threshold})"
        )
        return ClusteringResult(clusters=clusters, unclustered=unclustered)

    @staticmethod
    def _check_dimensions(detections: Sequence[Detection], identities: Sequence[Identity]):
        dims = {len(d.embedding) for d in detections}
        dims.update(len(i.embedding) for i in identities if i.embedding)
        if len(dims) > 1:
            raise ClusteringError(f"Embedding dimension mismatch: {sorted(dims)}")

    @staticmethod
    def _freeze(cluster: _OpenCluster) -> Cluster:
        match = None
        if cluster.identity is not None:
            match = IdentityMatch(
                identity_id=cluster.identity.id,
                identity_name=cluster.identity.name,
                similarity=min(cluster.similarities),
            )
        return Cluster(
            index=cluster.index,
            detections=list(cluster.detections),
            centroid=cluster.centroid,
            similarities=list(cluster.similarities),
            matched_identity=match,
        )
