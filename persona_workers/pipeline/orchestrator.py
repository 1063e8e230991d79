"""
GenerationOrchestrator: owns the life cycle of one generation job.

  pending → processing → ready | failed

Inside `processing` the generate → upload → validate loop runs strictly
sequentially, up to `max_attempts` generation calls:
  - accept           → ready
  - retry            → hints appended to the next prompt
  - final attempt    → best output accepted, flagged best_effort
  - transient error  → attempt consumed, no hints
  - permanent error  → failed, no further attempts
"""

import asyncio
import logging
from typing import Optional, Sequence

from .context import CancellationToken, bounded_call
from .errors import JobCancelled, PipelineError, TransientServiceError
from .models import (
    AggregatedProfile,
    DecisionKind,
    GenerationJob,
    GenerationType,
    JobStatus,
    PipelineConfig,
    ReferenceImage,
)
from .prompts import append_corrections, build_prompt, merge_hints
from .validation import VALIDATION_COST_CENTS, ValidationRetryController

logger = logging.getLogger(__name__)

GENERATION_COST_CENTS = 2

REFERENCE_TYPE_WEIGHTS = {
    "primary": 1.5,
    "front": 1.5,
    "anchor": 1.5,
    "profile": 1.2,
    "three_quarter": 1.2,
    "quarter": 1.2,
    "full_body": 1.1,
}
UNRANKED_QUALITY = 0.5
NO_PROFILE_QUALITY = 0.7

MIME_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def weight_references(
    urls: Sequence[str],
    image_types: Optional[dict[str, str]] = None,
    profile: Optional[AggregatedProfile] = None,
) -> list[ReferenceImage]:
    """Weight each reference by declared type and ranked quality, heaviest first."""
    image_types = image_types or {}
    ranked = {r.url: r.score for r in profile.image_quality_ranking} if profile else {}

    refs = []
    for url in urls:
        image_type = image_types.get(url, "reference")
        if profile is None:
            quality = NO_PROFILE_QUALITY
        else:
            quality = ranked.get(url, UNRANKED_QUALITY)
        weight = REFERENCE_TYPE_WEIGHTS.get(image_type, 1.0) * quality
        refs.append(ReferenceImage(url=url, image_type=image_type, weight=round(weight, 4)))
    return sorted(refs, key=lambda r: r.weight, reverse=True)


class _Candidate:
    def __init__(self, url: str, mime_type: str, score: Optional[float]):
        self.url = url
        self.mime_type = mime_type
        self.score = score

    def beats(self, other: Optional["_Candidate"]) -> bool:
        if other is None:
            return True
        if self.score is None:
            return False
        return other.score is None or self.score > other.score


class GenerationOrchestrator:
    """
    Usage:
        orchestrator = GenerationOrchestrator(generator, storage, store, config, validator)
        job = await orchestrator.run(job_id, GenerationType.CHARACTER_DIAGRAM, references, profile)

    `generator.generate(references, prompt, aspect_ratio, resolution, timeout=)`
    returns a GeneratedImage and should stop by itself once `timeout` passes.
    `validator.score(url, profile, threshold)` returns a ValidationReport.
    Pass validator=None to skip validation entirely.
    """

    def __init__(
        self,
        generator,
        storage,
        store,
        config: Optional[PipelineConfig] = None,
        validator=None,
        bucket: str = "generations",
    ):
        self.generator = generator
        self.storage = storage
        self.store = store
        self.config = config or PipelineConfig()
        self.validator = validator
        self.bucket = bucket

    # ── Status ───────────────────────────────────────────────────────────

    async def _persist(self, job: GenerationJob):
        await bounded_call(
            asyncio.to_thread(self.store.save_generation_job, job),
            self.config.call_timeout_seconds,
            "job persistence",
        )

    async def _update_status(self, job: GenerationJob, status: JobStatus, progress: int, step: str = ""):
        job.status = status
        job.progress_pct = progress
        logger.info(f"[{job.id}] {status.value} → {step} ({progress}%)")
        await self._persist(job)

    async def _generate(self, job: GenerationJob, references, prompt: str, aspect_ratio: str, resolution: str):
        """
        One generation call. On timeout the call is drained before the next
        attempt starts, so at most one generation per job is ever in flight.
        """
        timeout = self.config.generation_timeout_seconds
        call = asyncio.ensure_future(
            self.generator.generate(references, prompt, aspect_ratio, resolution, timeout=timeout)
        )
        try:
            return await bounded_call(asyncio.shield(call), timeout, "generation")
        except TransientServiceError:
            if call.done():
                raise
            logger.warning(f"[{job.id}] generation timed out after {timeout:g}s, waiting for the call to stop")
            try:
                await call
            except PipelineError as e:
                logger.info(f"[{job.id}] timed-out generation stopped: {e}")
            else:
                # Billed by the service; the attempt is still spent
                job.cost_cents += GENERATION_COST_CENTS
                logger.warning(f"[{job.id}] late generation result discarded")
            raise

    def _output_path(self, job: GenerationJob, attempt: int, mime_type: str) -> str:
        ext = MIME_EXTENSIONS.get(mime_type, "png")
        suffix = f"_v{attempt}" if attempt > 1 else ""
        return f"{job.owner_id or 'jobs'}/{job.id}/output{suffix}.{ext}"

    # ── Main loop ────────────────────────────────────────────────────────

    async def run(
        self,
        job_id: str,
        generation_type: GenerationType,
        references: Sequence[ReferenceImage],
        profile: Optional[AggregatedProfile] = None,
        *,
        custom_instructions: Optional[str] = None,
        owner_id: Optional[str] = None,
        aspect_ratio: str = "1:1",
        resolution: str = "2K",
        enable_validation: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> GenerationJob:
        """
        Run one job to a terminal state.

        Args:
            job_id:              GenerationJob id.
            generation_type:     Selects the base prompt.
            references:          Weighted reference images for the generator.
            profile:             Identity profile, or None for generic constraints.
            custom_instructions: Extra direction appended to the prompt.
            owner_id:            Identity / parent job the output belongs to.
            enable_validation:   False skips validation even with a profile.
            token:               Cooperative cancellation token.

        Returns:
            The terminal GenerationJob (status ready or failed).
        """
        token = token or CancellationToken()
        job = GenerationJob(id=job_id, owner_id=owner_id)
        try:
            await self._update_status(job, JobStatus.PENDING, 0, "accepted")
            return await self._run_attempts(
                job, generation_type, references, profile,
                custom_instructions, aspect_ratio, resolution, enable_validation, token,
            )
        except JobCancelled:
            job.cancelled = True
            await self._fail(job, "cancelled")
            return job
        except PipelineError as e:
            logger.error(f"[{job_id}] generation failed: {e}")
            await self._fail(job, str(e))
            return job
        except Exception as e:
            logger.error(f"[{job_id}] generation failed unexpectedly: {e}", exc_info=True)
            await self._fail(job, f"internal error: {type(e).__name__}")
            return job

    async def _fail(self, job: GenerationJob, reason: str):
        job.error = reason
        await self._update_status(job, JobStatus.FAILED, job.progress_pct, reason)

    async def _run_attempts(
        self,
        job: GenerationJob,
        generation_type: GenerationType,
        references: Sequence[ReferenceImage],
        profile: Optional[AggregatedProfile],
        custom_instructions: Optional[str],
        aspect_ratio: str,
        resolution: str,
        enable_validation: bool,
        token: CancellationToken,
    ) -> GenerationJob:
        cfg = self.config
        controller = ValidationRetryController(
            self.validator if enable_validation else None,
            threshold=cfg.validation_threshold,
            max_attempts=cfg.max_attempts,
        )
        base_prompt = build_prompt(generation_type, profile, references, custom_instructions)
        hints: list[str] = []
        best: Optional[_Candidate] = None
        last_error: Optional[Exception] = None

        await self._update_status(job, JobStatus.PROCESSING, 10, "building prompt")

        for attempt in range(1, cfg.max_attempts + 1):
            token.raise_if_cancelled(job.id)
            prompt = append_corrections(base_prompt, hints)
            job.attempts = attempt
            job.prompt = prompt
            progress = 10 + int(80 * (attempt - 1) / cfg.max_attempts)
            await self._update_status(
                job, JobStatus.PROCESSING, progress,
                f"generation attempt {attempt}/{cfg.max_attempts}",
            )

            try:
                image = await self._generate(job, references, prompt, aspect_ratio, resolution)
                job.cost_cents += GENERATION_COST_CENTS

                token.raise_if_cancelled(job.id)
                url = await bounded_call(
                    self.storage.upload(
                        self.bucket,
                        self._output_path(job, attempt, image.mime_type),
                        image.image_bytes,
                        image.mime_type,
                    ),
                    cfg.call_timeout_seconds,
                    "upload",
                )
            except TransientServiceError as e:
                last_error = e
                logger.warning(f"[{job.id}] attempt {attempt} transient failure: {e}")
                continue

            token.raise_if_cancelled(job.id)
            try:
                decision, report = await bounded_call(
                    controller.evaluate(url, profile, attempt),
                    cfg.call_timeout_seconds,
                    "validation",
                )
            except TransientServiceError as e:
                last_error = e
                logger.warning(f"[{job.id}] attempt {attempt} validation unavailable: {e}")
                candidate = _Candidate(url, image.mime_type, None)
                if candidate.beats(best):
                    best = candidate
                continue

            if report is not None:
                job.cost_cents += VALIDATION_COST_CENTS
            candidate = _Candidate(url, image.mime_type, decision.score)
            if candidate.beats(best):
                best = candidate

            if decision.kind == DecisionKind.ACCEPT:
                return await self._finish(job, candidate, best_effort=False)

            if decision.kind == DecisionKind.RETRY:
                job.last_feedback = list(decision.hints)
                hints = merge_hints(hints, decision.hints)
                logger.info(
                    f"[{job.id}] attempt {attempt} scored {decision.score:.2f} "
                    f"< {cfg.validation_threshold}, retrying with {len(decision.hints)} hint(s)"
                )
                continue

            job.last_feedback = list(decision.hints)
            return await self._finish(job, best, best_effort=True)

        if best is not None:
            return await self._finish(job, best, best_effort=True)

        reason = f"generation failed after {job.attempts} attempt(s)"
        if last_error is not None:
            reason = f"{reason}: {last_error}"
        raise TransientServiceError(reason)

    async def _finish(self, job: GenerationJob, candidate: _Candidate, best_effort: bool) -> GenerationJob:
        job.output_url = candidate.url
        job.mime_type = candidate.mime_type
        job.validation_score = candidate.score
        job.best_effort = best_effort
        step = "accepted as best effort" if best_effort else "accepted"
        await self._update_status(job, JobStatus.READY, 100, step)
        logger.info(
            f"[{job.id}] ready after {job.attempts} attempt(s), cost={job.cost_cents}¢, "
            f"score={job.validation_score}, best_effort={job.best_effort}"
        )
        return job
