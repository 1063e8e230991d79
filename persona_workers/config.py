"""
Worker configuration.

Service endpoints and keys are read as module constants where they are
used. Pipeline thresholds are gathered into one PipelineConfig built here
and passed explicitly into the job handlers; queue payload options can
override them per job.
"""

import os

from dotenv import load_dotenv

from .pipeline.models import PipelineConfig

# env var → (PipelineConfig field, cast)
_PIPELINE_ENV = {
    "MATCH_THRESHOLD": ("match_threshold", float),
    "VALIDATION_THRESHOLD": ("validation_threshold", float),
    "MAX_GENERATION_ATTEMPTS": ("max_attempts", int),
    "ANALYSIS_QUALITY_THRESHOLD": ("analysis_quality_threshold", float),
    "COVERAGE_MIN_QUALITY": ("coverage_min_quality", float),
    "DETECTION_CONCURRENCY": ("detection_concurrency", int),
    "ANALYSIS_CONCURRENCY": ("analysis_concurrency", int),
    "CALL_TIMEOUT_SECONDS": ("call_timeout_seconds", float),
    "GENERATION_TIMEOUT_SECONDS": ("generation_timeout_seconds", float),
    "IDENTITY_MERGE_RETRIES": ("merge_retries", int),
}


def worker_concurrency() -> int:
    """Number of queue consumer threads (the worker pool size)."""
    return max(1, int(os.environ.get("WORKER_CONCURRENCY", "2")))


def load_pipeline_config() -> PipelineConfig:
    """Build the PipelineConfig from the environment. Unset values keep their defaults."""
    load_dotenv()
    values = {}
    for env_var, (field, cast) in _PIPELINE_ENV.items():
        raw = os.environ.get(env_var)
        if raw not in (None, ""):
            values[field] = cast(raw)
    return PipelineConfig(**values)
