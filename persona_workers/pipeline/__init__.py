"""
Identity-Constrained Generation Pipeline

  Identity clustering:   Face detection → Similarity clustering → Identity resolve → Angle coverage
  Constrained generate:  Image analysis → Profile aggregation → Prompt → Generate ↔ Validate
"""

from .aggregator import aggregate_profile
from .clustering import SimilarityClusterer
from .coverage import assess_coverage
from .orchestrator import GenerationOrchestrator
from .validation import ValidationRetryController
from .models import JobStatus, PipelineConfig, parse_job_payload

__all__ = [
    "aggregate_profile",
    "SimilarityClusterer",
    "assess_coverage",
    "GenerationOrchestrator",
    "ValidationRetryController",
    "JobStatus",
    "PipelineConfig",
    "parse_job_payload",
]
