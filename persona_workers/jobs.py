"""
Queue job handlers.

  identity_cluster      detect → cluster → resolve identities → coverage
  constrained_generate  profile (stored, or analyse → aggregate) →
                        weighted references → generate/validate loop
                        (one child GenerationJob per variant)

Each job runs end-to-end on one worker. Failures are mapped onto a
terminal status plus a reason string on the `jobs` row.
"""

import asyncio
import logging
import math
import os
import random
import threading
import time
from contextlib import contextmanager
from typing import Awaitable, Callable, Optional, TypeVar

from . import metrics
from .config import load_pipeline_config
from .pipeline.aggregator import aggregate_profile
from .pipeline.analysis import analyze_images
from .pipeline.clustering import SimilarityClusterer
from .pipeline.context import CancellationToken, CostLedger, bounded_call
from .pipeline.errors import (
    DuplicateJobError,
    InputError,
    JobCancelled,
    PipelineError,
    TransientServiceError,
)
from .pipeline.identity_service import IdentityResolver
from .pipeline.models import (
    AggregatedProfile,
    ConstrainedGeneratePayload,
    GenerationJob,
    IdentityClusterPayload,
    JobOutcome,
    JobPayload,
    JobStatus,
    PipelineConfig,
)
from .pipeline.orchestrator import GenerationOrchestrator, weight_references
from .pipeline.validation import ProfileValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Step retry configuration ─────────────────────────────────────────────────
STEP_RETRY_BASE_DELAY = 2.0   # seconds, doubles each retry
STEP_RETRY_JITTER = 1.0

# Job ids running in this process; the queue lock covers other workers
_running: set[str] = set()
_running_lock = threading.Lock()


class JobServices:
    """The collaborators a job handler needs, bundled for injection."""

    def __init__(self, store, embedder, analyze_fn, generator, storage, config: PipelineConfig):
        self.store = store
        self.embedder = embedder
        self.analyze_fn = analyze_fn
        self.generator = generator
        self.storage = storage
        self.config = config


def build_services() -> JobServices:
    """Wire the production clients from the environment."""
    from . import gemini
    from .kie import KieImageGenerator
    from .pipeline.embedding import EmbeddingClient
    from .pipeline.storage import R2Storage
    from .pipeline.store import SupabaseStore

    config = load_pipeline_config()
    storage = R2Storage()
    crops = os.environ.get("FACE_CROPS_ENABLED", "true").lower() == "true"
    return JobServices(
        store=SupabaseStore(),
        embedder=EmbeddingClient(
            concurrency=config.detection_concurrency,
            timeout=config.call_timeout_seconds,
            storage=storage if crops else None,
        ),
        analyze_fn=gemini.analyze_image,
        generator=KieImageGenerator(),
        storage=storage,
        config=config,
    )


async def _store_call(services: JobServices, fn, *args):
    """Run a blocking store call off the event loop with the call timeout."""
    return await bounded_call(
        asyncio.to_thread(fn, *args),
        services.config.call_timeout_seconds,
        "store",
    )


async def _with_retries(
    job_id: str,
    what: str,
    step: Callable[[], Awaitable[T]],
    attempts: int,
    token: CancellationToken,
) -> T:
    """
    Run an idempotent step, retrying transient failures with exponential
    backoff and jitter. The last transient failure propagates.
    """
    for attempt in range(1, attempts + 1):
        token.raise_if_cancelled(job_id)
        try:
            return await step()
        except TransientServiceError as e:
            if attempt >= attempts:
                raise
            delay = STEP_RETRY_BASE_DELAY * (2 ** (attempt - 1)) + random.uniform(0, STEP_RETRY_JITTER)
            logger.warning(
                f"[{job_id}] {what} attempt {attempt}/{attempts} failed: {e} "
                f"- retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
    raise TransientServiceError(f"{what} failed after {attempts} attempt(s)")


def _backoff_allowance(attempts: int) -> float:
    return sum(STEP_RETRY_BASE_DELAY * (2 ** i) + STEP_RETRY_JITTER for i in range(attempts - 1))


def generation_budget_seconds(cfg: PipelineConfig) -> float:
    """Worst case for one generate/validate loop with every call running to its timeout."""
    # per attempt: status write, generation, upload, validation
    per_attempt = cfg.generation_timeout_seconds + 3 * cfg.call_timeout_seconds
    return cfg.max_attempts * per_attempt + 2 * cfg.call_timeout_seconds


def time_budget_seconds(payload: JobPayload, config: PipelineConfig) -> float:
    """
    Upper bound on one run of `payload`. Used as the TTL of the queue's
    run lock, so a job holds its lock for as long as it can legally run.
    """
    call = config.call_timeout_seconds
    if isinstance(payload, IdentityClusterPayload):
        waves = math.ceil(len(payload.source_refs) / config.detection_concurrency)
        # detection waves, then list + resolve, both retried; then the unclustered save
        per_try = waves * call + 2 * call
        return config.max_attempts * per_try + 2 * _backoff_allowance(config.max_attempts) + 3 * call

    cfg = config.with_overrides(max_attempts=payload.options.max_attempts)
    waves = math.ceil(max(1, len(payload.source_refs)) / cfg.analysis_concurrency)
    setup = (waves + 5) * call
    return setup + max(1, len(payload.variants)) * generation_budget_seconds(cfg)


@contextmanager
def _claim(job_id: str):
    with _running_lock:
        if job_id in _running:
            raise DuplicateJobError(f"job {job_id} is already running")
        _running.add(job_id)
    try:
        yield
    finally:
        with _running_lock:
            _running.discard(job_id)


# ── identity_cluster ─────────────────────────────────────────────────────────

async def process_identity_cluster(
    payload: IdentityClusterPayload,
    services: JobServices,
    token: CancellationToken,
    ledger: CostLedger,
) -> JobOutcome:
    job_id = payload.job_id
    cfg = services.config.with_overrides(match_threshold=payload.options.match_threshold)

    batch = await _with_retries(
        job_id,
        "face detection",
        lambda: services.embedder.detect(payload.source_refs, token=token, job_id=job_id),
        cfg.max_attempts,
        token,
    )

    resolver = IdentityResolver(
        services.store,
        max_retries=cfg.merge_retries,
        min_angle_quality=cfg.coverage_min_quality,
    )

    # Clusters created by an interrupted try match on the retry and are
    # skipped as already merged.
    async def _cluster_and_resolve():
        identities = await _store_call(services, services.store.list_identities)
        result = SimilarityClusterer(cfg.match_threshold).cluster(batch.detections, identities)
        token.raise_if_cancelled(job_id)
        resolved = await _store_call(
            services, resolver.resolve, result, job_id, payload.source_type, payload.source_id,
        )
        return result, resolved

    result, resolved = await _with_retries(
        job_id, "identity resolution", _cluster_and_resolve, cfg.max_attempts, token,
    )
    if result.unclustered:
        await _store_call(services, services.store.save_detections, result.unclustered, None, job_id)

    summary = {
        "detections": len(batch.detections),
        "clustered": result.clustered_count,
        "unclustered": len(result.unclustered),
        "clusters": len(result.clusters),
        "created": sum(1 for r in resolved if r.created),
        "matched": sum(1 for r in resolved if not r.created),
        "identities": [r.model_dump(mode="json") for r in resolved],
    }
    logger.info(
        f"[{job_id}] identity_cluster done: {summary['clusters']} cluster(s), "
        f"{summary['created']} new, {summary['matched']} matched, "
        f"{summary['unclustered']} unclustered"
    )
    return JobOutcome(
        job_id=job_id,
        target_kind=payload.target_kind,
        status=JobStatus.READY,
        failed_items=dict(batch.failed_images),
        summary=summary,
    )


# ── constrained_generate ─────────────────────────────────────────────────────

async def _load_or_build_profile(
    payload: ConstrainedGeneratePayload,
    services: JobServices,
    cfg: PipelineConfig,
    source_refs: list[str],
    token: CancellationToken,
    ledger: CostLedger,
) -> tuple[Optional[AggregatedProfile], dict[str, str]]:
    """Returns the profile (None for generic constraints) and rejected image url → reason."""
    job_id = payload.job_id
    if payload.identity_id:
        profile = await _store_call(services, services.store.get_profile, payload.identity_id)
        if profile is not None:
            logger.info(f"[{job_id}] using stored profile for identity {payload.identity_id}")
            return profile, {}

    if not payload.options.analyze:
        logger.info(f"[{job_id}] analysis disabled, using generic identity constraints")
        return None, {}

    analyses = await analyze_images(
        source_refs,
        services.analyze_fn,
        concurrency=cfg.analysis_concurrency,
        quality_threshold=cfg.analysis_quality_threshold,
        image_types=payload.image_types,
        timeout=cfg.call_timeout_seconds,
        token=token,
        job_id=job_id,
    )
    ledger.add("analysis", sum(a.cost_cents for a in analyses))
    await _store_call(services, services.store.save_analyses, job_id, analyses)

    # Raises InsufficientEvidenceError("no valid images") on zero valid analyses
    profile = aggregate_profile(analyses, cfg.analysis_quality_threshold)

    if payload.identity_id:
        await _store_call(services, services.store.save_profile, payload.identity_id, profile, job_id)
    rejected = {a.image_url: a.rejection_reason or "rejected" for a in analyses if not a.is_valid}
    return profile, rejected


async def process_constrained_generate(
    payload: ConstrainedGeneratePayload,
    services: JobServices,
    token: CancellationToken,
    ledger: CostLedger,
) -> JobOutcome:
    job_id = payload.job_id
    opts = payload.options
    cfg = services.config.with_overrides(
        max_attempts=opts.max_attempts,
        validation_threshold=opts.validation_threshold,
    )

    source_refs = list(payload.source_refs)
    if not source_refs and payload.identity_id:
        identity = await _store_call(services, services.store.get_identity, payload.identity_id)
        if identity is None:
            raise InputError(f"identity {payload.identity_id} not found")
        source_refs = [entry.url for entry in identity.angle_coverage.values()]
    if not source_refs:
        raise InputError("no reference images")

    profile, rejected = await _load_or_build_profile(payload, services, cfg, source_refs, token, ledger)
    references = weight_references(source_refs, payload.image_types, profile)

    orchestrator = GenerationOrchestrator(
        services.generator,
        services.storage,
        services.store,
        cfg,
        validator=ProfileValidator(services.analyze_fn) if opts.enable_validation else None,
    )
    owner_id = payload.identity_id or job_id

    async def _run(child_id: str, instructions: Optional[str]) -> GenerationJob:
        job = await orchestrator.run(
            child_id,
            payload.generation_type,
            references,
            profile,
            custom_instructions=instructions,
            owner_id=owner_id,
            aspect_ratio=opts.aspect_ratio,
            resolution=opts.resolution,
            enable_validation=opts.enable_validation,
            token=token,
        )
        ledger.add(f"generation:{child_id}", job.cost_cents)
        return job

    if not payload.variants:
        job = await _run(job_id, payload.custom_instructions)
        if job.cancelled:
            raise JobCancelled("cancelled")
        return JobOutcome(
            job_id=job_id,
            target_kind=payload.target_kind,
            status=job.status,
            reason=job.error,
            attempts=job.attempts,
            best_effort=job.best_effort,
            output_urls=[job.output_url] if job.output_url else [],
            failed_items=rejected,
            summary={"generation_job": job.model_dump(mode="json", exclude={"prompt"})},
        )

    # Batch: one child job per variant, failures enumerated rather than fatal
    children: list[GenerationJob] = []
    for i, variant in enumerate(payload.variants, start=1):
        instructions = "\n".join(p for p in (payload.custom_instructions, variant) if p)
        job = await _run(f"{job_id}-{i}", instructions)
        if job.cancelled:
            raise JobCancelled("cancelled")
        children.append(job)

    ready = [c for c in children if c.status == JobStatus.READY]
    failed = {c.id: c.error or "failed" for c in children if c.status == JobStatus.FAILED}
    status = JobStatus.READY if ready else JobStatus.FAILED
    reason = None
    if not ready:
        reason = f"all {len(children)} variant(s) failed"
    elif failed:
        reason = f"partial: {len(failed)} of {len(children)} variant(s) failed"

    logger.info(f"[{job_id}] batch done: {len(ready)}/{len(children)} variant(s) ready")
    return JobOutcome(
        job_id=job_id,
        target_kind=payload.target_kind,
        status=status,
        reason=reason,
        attempts=sum(c.attempts for c in children),
        best_effort=any(c.best_effort for c in ready),
        output_urls=[c.output_url for c in ready if c.output_url],
        failed_items={**rejected, **failed},
        summary={"variants": [c.model_dump(mode="json", exclude={"prompt"}) for c in children]},
    )


# ── Entry point ──────────────────────────────────────────────────────────────

async def run_job(
    payload: JobPayload,
    services: JobServices,
    token: Optional[CancellationToken] = None,
) -> JobOutcome:
    """
    Run one queue job to a terminal state and record it on the `jobs` row.

    Pipeline failures become a failed outcome with a reason; anything else
    propagates so the queue consumer can nack the job.

    Raises:
        DuplicateJobError: The same job id is already running in this process.
            Nothing is written for the duplicate.
    """
    with _claim(payload.job_id):
        return await _run_claimed(payload, services, token or CancellationToken())


async def _run_claimed(
    payload: JobPayload,
    services: JobServices,
    token: CancellationToken,
) -> JobOutcome:
    ledger = CostLedger()
    job_id = payload.job_id
    kind = payload.target_kind
    started = time.time()

    await _store_call(services, services.store.update_job_record, job_id, {"status": "processing"})

    try:
        token.raise_if_cancelled(job_id)
        if isinstance(payload, IdentityClusterPayload):
            outcome = await process_identity_cluster(payload, services, token, ledger)
        else:
            outcome = await process_constrained_generate(payload, services, token, ledger)
    except JobCancelled:
        logger.info(f"[{job_id}] cancelled")
        outcome = JobOutcome(job_id=job_id, target_kind=kind, status=JobStatus.FAILED, reason="cancelled")
    except PipelineError as e:
        logger.warning(f"[{job_id}] {kind} failed: {e}")
        outcome = JobOutcome(
            job_id=job_id, target_kind=kind, status=JobStatus.FAILED, reason=str(e) or e.reason,
        )

    outcome.cost_cents = ledger.total
    await _store_call(services, services.store.update_job_record, job_id, {
        "status": outcome.status.value,
        "error": outcome.reason,
        "cost_cents": outcome.cost_cents,
        "output_urls": outcome.output_urls,
        "failed_items": outcome.failed_items,
    })

    metrics.record_job_outcome(
        kind,
        "cancelled" if outcome.reason == "cancelled" else outcome.status.value,
        (time.time() - started) * 1000,
        cost_cents=outcome.cost_cents,
        attempts=outcome.attempts,
        best_effort=outcome.best_effort,
    )
    if outcome.status == JobStatus.FAILED:
        metrics.record_error(kind, outcome.reason or "failed", job_id)
    return outcome
