import pytest

from conftest import make_detection
from persona_workers.pipeline.clustering import (
    SimilarityClusterer,
    average_embeddings,
    cosine_similarity,
)
from persona_workers.pipeline.errors import ClusteringError
from persona_workers.pipeline.models import Identity


def _identity(identity_id, embedding, created_at):
    return Identity(id=identity_id, name=identity_id, embedding=embedding, created_at=created_at)


def test_cosine_similarity_basics():
    """Test identical, orthogonal and zero vectors."""
    assert cosine_similarity([1, 0], [2, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 0]) == 0.0


def test_cosine_similarity_dimension_mismatch():
    with pytest.raises(ClusteringError):
        cosine_similarity([1, 0, 0], [1, 0])


def test_average_embeddings_is_normalised():
    avg = average_embeddings([[1, 0], [0, 1]])
    assert avg == pytest.approx([0.70710678, 0.70710678])


def test_threshold_out_of_range():
    with pytest.raises(ValueError):
        SimilarityClusterer(threshold=1.5)


def test_empty_batch():
    """Test that an empty batch produces zero clusters and no error."""
    result = SimilarityClusterer(0.7).cluster([])
    assert result.clusters == []
    assert result.unclustered == []


def test_ten_detections_two_people():
    """Test 6 detections of A and 4 of B give two clusters of 6 and 4."""
    a = [make_detection([1.0, 0.05 * i, 0.0]) for i in range(6)]
    b = [make_detection([0.0, 0.05 * i, 1.0]) for i in range(4)]
    interleaved = [a[0], b[0], a[1], a[2], b[1], a[3], b[2], a[4], b[3], a[5]]

    result = SimilarityClusterer(0.7).cluster(interleaved)

    sizes = sorted(len(c.detections) for c in result.clusters)
    assert sizes == [4, 6]
    assert all(c.is_new for c in result.clusters)
    assert result.clustered_count == 10


def test_six_embedded_four_without_embedding():
    """Test 4 + 2 embedded detections cluster at 0.7 and the 4 without embeddings stay out."""
    a = [make_detection([1.0, 0.05 * i, 0.0]) for i in range(4)]
    b = [make_detection([0.0, 0.05 * i, 1.0]) for i in range(2)]
    missing = [make_detection(None, image_url=f"https://img.test/blurry-{i}.jpg") for i in range(4)]
    batch = [a[0], missing[0], b[0], a[1], missing[1], a[2], missing[2], b[1], missing[3], a[3]]

    result = SimilarityClusterer(0.7).cluster(batch)

    assert sorted(len(c.detections) for c in result.clusters) == [2, 4]
    assert result.unclustered == missing
    assert result.clustered_count + len(result.unclustered) == 10


@pytest.mark.parametrize("threshold", [0.5, 0.7, 0.85, 0.95])
def test_matched_members_clear_the_threshold(threshold):
    identities = [
        _identity("p", [1.0, 0.0, 0.0], "2026-01-01"),
        _identity("q", [0.0, 1.0, 0.0], "2026-01-02"),
    ]
    detections = [make_detection([1.0 - 0.08 * i, 0.1 * i, 0.05 * (i % 3)]) for i in range(13)]

    result = SimilarityClusterer(threshold).cluster(detections, identities)

    embeddings = {i.id: i.embedding for i in identities}
    matched = [c for c in result.clusters if not c.is_new]
    assert matched
    for cluster in matched:
        assert cluster.matched_identity.similarity >= threshold
        for d in cluster.detections:
            assert cosine_similarity(d.embedding, embeddings[cluster.matched_identity.identity_id]) >= threshold



def test_similarity_exactly_at_threshold_is_a_match():
    """Test the threshold comparison is inclusive."""
    identity = _identity("id-1", [1.0, 0.0], "2026-01-01")
    # cos == 3/5
    detection = make_detection([3.0, 4.0])

    result = SimilarityClusterer(0.6).cluster([detection], [identity])

    assert len(result.clusters) == 1
    assert result.clusters[0].matched_identity.identity_id == "id-1"


def test_existing_identity_preferred_over_in_batch_cluster():
    """Test a qualifying stored identity wins over a closer in-batch cluster."""
    identity = _identity("stored", [1.0, 0.0], "2026-01-01")
    first = make_detection([1.0, 0.5])    # 0.894 to identity: opens a new cluster
    second = make_detection([1.0, 0.45])  # 0.912 to identity, 0.999 to the new cluster

    result = SimilarityClusterer(0.9).cluster([first, second], [identity])

    assert len(result.clusters) == 2
    new, matched = result.clusters
    assert new.is_new and new.detections == [first]
    assert matched.matched_identity.identity_id == "stored"
    assert matched.detections == [second]


def test_equal_similarity_tie_goes_to_earliest_identity():
    older = _identity("older", [1.0, 0.0], "2026-01-01")
    newer = _identity("newer", [1.0, 0.0], "2026-02-01")

    result = SimilarityClusterer(0.7).cluster([make_detection([1.0, 0.0])], [newer, older])

    assert result.clusters[0].matched_identity.identity_id == "older"


def test_deterministic_output():
    """Test identical inputs produce identical assignments."""
    detections = [make_detection([1.0, 0.1 * i, 0.5 * (i % 2)]) for i in range(8)]
    identities = [_identity("x", [0.0, 1.0, 0.0], "2026-01-01")]

    first = SimilarityClusterer(0.8).cluster(detections, identities)
    second = SimilarityClusterer(0.8).cluster(detections, identities)

    assert first.model_dump() == second.model_dump()


def test_detections_without_embedding_are_unclustered():
    d = make_detection(None)
    result = SimilarityClusterer(0.7).cluster([d, make_detection([1.0, 0.0])])
    assert result.unclustered == [d]
    assert len(result.clusters) == 1


def test_dimension_mismatch_fails_fast():
    with pytest.raises(ClusteringError):
        SimilarityClusterer(0.7).cluster([make_detection([1.0, 0.0]), make_detection([1.0, 0.0, 0.0])])


def test_inputs_not_mutated():
    identity = _identity("id-1", [1.0, 0.0], "2026-01-01")
    before = identity.model_dump()
    SimilarityClusterer(0.7).cluster([make_detection([1.0, 0.0])], [identity])
    assert identity.model_dump() == before
