import asyncio

import pytest

from conftest import FakeGenerator, FakeStore, FakeStorage, raw_analysis
from persona_workers import jobs, metrics
from persona_workers.pipeline.context import CancellationToken
from persona_workers.pipeline.errors import (
    DuplicateJobError,
    PermanentServiceError,
    TransientServiceError,
)
from persona_workers.pipeline.models import (
    BoundingBox,
    Detection,
    DetectionBatch,
    FaceAngle,
    JobStatus,
    PipelineConfig,
    parse_job_payload,
)


class FakeEmbedder:
    def __init__(self, detections, failed=None):
        self.detections = detections
        self.failed = failed or {}

    async def detect(self, image_refs, token=None, job_id=""):
        return DetectionBatch(detections=self.detections, failed_images=self.failed)


def _detection(embedding, angle=FaceAngle.FRONT):
    return Detection(
        image_url="https://img.test/a.jpg",
        bbox=BoundingBox(x=0, y=0, width=200, height=200),
        confidence=0.99,
        embedding=embedding,
        quality_score=0.8,
        angle=angle,
    )


def _services(store=None, embedder=None, analyze_fn=None, generator=None, config=None):
    async def default_analyze(url):
        return raw_analysis()

    return jobs.JobServices(
        store=store or FakeStore(),
        embedder=embedder or FakeEmbedder([]),
        analyze_fn=analyze_fn or default_analyze,
        generator=generator or FakeGenerator(),
        storage=FakeStorage(),
        config=config or PipelineConfig(),
    )


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


def test_identity_cluster_job_creates_identities():
    embedder = FakeEmbedder([
        _detection([1.0, 0.0]),
        _detection([0.99, 0.05], FaceAngle.PROFILE_LEFT),
        _detection([0.0, 1.0]),
        _detection(None),
    ], failed={"https://img.test/bad.jpg": "Face service error 503"})
    services = _services(embedder=embedder)
    payload = parse_job_payload({
        "target_kind": "identity_cluster",
        "job_id": "job-1",
        "source_refs": ["https://img.test/a.jpg", "https://img.test/bad.jpg"],
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.READY
    assert outcome.summary["clusters"] == 2
    assert outcome.summary["created"] == 2
    assert outcome.summary["unclustered"] == 1
    assert outcome.failed_items == {"https://img.test/bad.jpg": "Face service error 503"}
    assert len(services.store.identities) == 2
    # unclustered detection saved without an identity
    assert (None, "job-1") in [(i, j) for i, j, _ in services.store.detections]
    assert services.store.job_records["job-1"]["status"] == "ready"


def test_constrained_generate_builds_and_saves_profile():
    store = FakeStore()
    services = _services(store=store)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-2",
        "source_refs": ["https://img.test/1.jpg", "https://img.test/2.jpg"],
        "identity_id": "identity-7",
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.READY
    assert not outcome.best_effort
    assert len(outcome.output_urls) == 1
    assert "identity-7" in store.profiles
    assert len(store.analyses) == 2
    # 2 analyses + 1 generation + 1 validation
    assert outcome.cost_cents == 2 + 2 + 1
    assert store.job_records["job-2"]["cost_cents"] == 5


def test_zero_valid_images_fails_job():
    """Test an all-invalid image set fails the job with an explicit reason."""
    async def analyze(url):
        return raw_analysis(overall=0.1)

    generator = FakeGenerator()
    services = _services(analyze_fn=analyze, generator=generator)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-3",
        "source_refs": ["https://img.test/1.jpg"],
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == "no valid images"
    assert generator.prompts == []
    assert services.store.job_records["job-3"] == {
        "status": "failed",
        "error": "no valid images",
        "cost_cents": 1,
        "output_urls": [],
        "failed_items": {},
    }


def test_analysis_disabled_uses_generic_prompt():
    generator = FakeGenerator()
    services = _services(generator=generator)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-4",
        "source_refs": ["https://img.test/1.jpg"],
        "options": {"analyze": False},
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.READY
    assert "IDENTITY REQUIREMENTS:" in generator.prompts[0]
    assert services.store.analyses == []


def test_variants_report_partial_failure():
    generator = FakeGenerator(errors=[PermanentServiceError("content policy violation")])
    services = _services(generator=generator)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-5",
        "source_refs": ["https://img.test/1.jpg"],
        "variants": ["smiling", "serious"],
        "options": {"enable_validation": False},
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.READY
    assert outcome.failed_items == {"job-5-1": "content policy violation"}
    assert len(outcome.output_urls) == 1
    assert outcome.reason == "partial: 1 of 2 variant(s) failed"
    assert "ADDITIONAL DIRECTION:\nserious" in generator.prompts[1]


def test_missing_identity_is_input_error():
    services = _services()
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-6",
        "identity_id": "nobody",
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == "identity nobody not found"


def test_cancelled_job_records_reason():
    token = CancellationToken()
    token.cancel()
    services = _services()
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-7",
        "source_refs": ["https://img.test/1.jpg"],
    })

    outcome = asyncio.run(jobs.run_job(payload, services, token))

    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == "cancelled"
    assert services.store.job_records["job-7"]["error"] == "cancelled"
    assert metrics.get_snapshot()["counters"]["jobs.cancelled.constrained_generate"] == 1


class FlakyEmbedder(FakeEmbedder):
    """Fails the first `failures` calls with a transient error."""

    def __init__(self, detections, failures):
        super().__init__(detections)
        self.failures = failures
        self.calls = 0

    async def detect(self, image_refs, token=None, job_id=""):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientServiceError(f"Face detection failed for all {len(image_refs)} image(s)")
        return await super().detect(image_refs, token, job_id)


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(jobs, "STEP_RETRY_BASE_DELAY", 0)
    monkeypatch.setattr(jobs, "STEP_RETRY_JITTER", 0)


def _cluster_payload(job_id="job-8"):
    return parse_job_payload({
        "target_kind": "identity_cluster",
        "job_id": job_id,
        "source_refs": ["https://img.test/a.jpg"],
    })


def test_transient_detection_failure_is_retried(no_backoff):
    embedder = FlakyEmbedder([_detection([1.0, 0.0])], failures=1)
    services = _services(embedder=embedder)

    outcome = asyncio.run(jobs.run_job(_cluster_payload(), services))

    assert embedder.calls == 2
    assert outcome.status == JobStatus.READY
    assert outcome.summary["created"] == 1


def test_detection_gives_up_after_max_attempts(no_backoff):
    embedder = FlakyEmbedder([_detection([1.0, 0.0])], failures=10)
    services = _services(embedder=embedder, config=PipelineConfig(max_attempts=3))

    outcome = asyncio.run(jobs.run_job(_cluster_payload(), services))

    assert embedder.calls == 3
    assert outcome.status == JobStatus.FAILED
    assert outcome.reason == "Face detection failed for all 1 image(s)"


def test_interrupted_identity_resolution_is_retried_without_duplicates(no_backoff):
    store = FakeStore()
    save_detections = store.save_detections
    calls = []

    def flaky_save(detections, identity_id, job_id):
        calls.append(identity_id)
        if len(calls) == 1:
            raise TransientServiceError("store timed out after 120s")
        return save_detections(detections, identity_id, job_id)

    store.save_detections = flaky_save
    services = _services(store=store, embedder=FakeEmbedder([_detection([1.0, 0.0])]))

    outcome = asyncio.run(jobs.run_job(_cluster_payload("job-9"), services))

    assert outcome.status == JobStatus.READY
    # the identity created before the failure is matched, not created again
    assert len(store.identities) == 1
    assert outcome.summary["identities"][0]["already_merged"]


class SlowGenerator(FakeGenerator):
    async def generate(self, references, prompt, aspect_ratio="1:1", resolution="2K", timeout=None):
        await asyncio.sleep(0.05)
        return await super().generate(references, prompt, aspect_ratio, resolution, timeout)


def test_same_job_id_cannot_run_twice_at_once():
    generator = SlowGenerator()
    services = _services(generator=generator)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "dup",
        "source_refs": ["https://img.test/1.jpg"],
        "options": {"analyze": False},
    })

    async def run_both():
        return await asyncio.gather(
            jobs.run_job(payload, services),
            jobs.run_job(payload, services),
            return_exceptions=True,
        )

    first, second = asyncio.run(run_both())

    assert first.status == JobStatus.READY
    assert isinstance(second, DuplicateJobError)
    assert len(generator.prompts) == 1
    # released once the first run ends
    assert asyncio.run(jobs.run_job(payload, services)).status == JobStatus.READY


def test_rejected_images_are_listed_as_failed_items():
    async def analyze(url):
        if "broken" in url:
            raise PermanentServiceError("unreadable image")
        if "blurry" in url:
            return raw_analysis(overall=0.1)
        return raw_analysis()

    services = _services(analyze_fn=analyze)
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-10",
        "source_refs": [
            "https://img.test/good.jpg",
            "https://img.test/blurry.jpg",
            "https://img.test/broken.jpg",
        ],
    })

    outcome = asyncio.run(jobs.run_job(payload, services))

    assert outcome.status == JobStatus.READY
    assert sorted(outcome.failed_items) == ["https://img.test/blurry.jpg", "https://img.test/broken.jpg"]
    assert outcome.failed_items["https://img.test/broken.jpg"].startswith("analysis failed")
    assert services.store.job_records["job-10"]["failed_items"] == outcome.failed_items


def test_time_budget_covers_every_attempt():
    config = PipelineConfig()
    payload = parse_job_payload({
        "target_kind": "constrained_generate",
        "job_id": "job-11",
        "source_refs": ["https://img.test/1.jpg"],
        "variants": ["smiling", "serious"],
    })

    single = jobs.generation_budget_seconds(config)

    assert single > config.max_attempts * config.generation_timeout_seconds
    assert jobs.time_budget_seconds(payload, config) > 2 * single
    assert jobs.time_budget_seconds(_cluster_payload(), config) > config.call_timeout_seconds
