import pytest

from persona_workers.pipeline.errors import InputError
from persona_workers.pipeline.models import (
    ConstrainedGeneratePayload,
    GenerationType,
    IdentityClusterPayload,
    PipelineConfig,
    parse_job_payload,
)


def test_parse_identity_cluster_payload():
    payload = parse_job_payload({
        "target_kind": "identity_cluster",
        "job_id": "job-1",
        "source_refs": ["https://img.test/a.jpg"],
        "options": {"match_threshold": 0.65},
    })

    assert isinstance(payload, IdentityClusterPayload)
    assert payload.options.match_threshold == 0.65


def test_parse_constrained_generate_payload():
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-2",
        "identity_id": "identity-1",
        "generation_type": "reference_kit_anchor",
        "variants": ["smiling", "serious"],
    })

    assert isinstance(payload, ConstrainedGeneratePayload)
    assert payload.generation_type == GenerationType.REFERENCE_KIT_ANCHOR
    assert payload.options.enable_validation


@pytest.mark.parametrize("data", [
    {"target_kind": "video_generate", "job_id": "x"},
    {"target_kind": "identity_cluster", "job_id": "x", "source_refs": []},
    {"target_kind": "identity_cluster", "job_id": "", "source_refs": ["https://img.test/a.jpg"]},
    {"target_kind": "constrained_generate", "job_id": "x"},
    {"target_kind": "constrained_generate", "job_id": "x", "identity_id": "i", "options": {"max_attempts": 0}},
    {"job_id": "x"},
])
def test_malformed_payloads_are_rejected(data):
    """Test malformed payloads fail validation before any work starts."""
    with pytest.raises(InputError):
        parse_job_payload(data)


def test_config_overrides_skip_none():
    config = PipelineConfig()
    assert config.with_overrides(match_threshold=None) is config
    assert config.with_overrides(max_attempts=5).max_attempts == 5


def test_config_overrides_are_validated():
    with pytest.raises(ValueError):
        PipelineConfig().with_overrides(validation_threshold=2.0)
