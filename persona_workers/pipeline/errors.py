"""
Typed failures raised inside the identity pipeline.

The job handlers map these onto a terminal status and a short reason
string; nothing else crosses the queue boundary.
"""


class PipelineError(Exception):
    """Base class for every pipeline failure."""

    reason = "pipeline_error"


class InputError(PipelineError):
    """Request is unusable as submitted (empty image set, missing identity source)."""

    reason = "invalid_input"


class InsufficientEvidenceError(PipelineError):
    """Not enough valid evidence to build a profile."""

    reason = "insufficient_evidence"


class TransientServiceError(PipelineError):
    """Timeout, rate limit or 5xx from an external collaborator."""

    reason = "service_unavailable"


class PermanentServiceError(PipelineError):
    """Malformed response or unrecoverable failure from an external collaborator."""

    reason = "service_failed"


class ClusteringError(PipelineError):
    reason = "clustering_failed"


class ConcurrentUpdateError(PipelineError):
    """An identity kept changing underneath a merge."""

    reason = "concurrent_update"


class JobCancelled(PipelineError):
    reason = "cancelled"


class DuplicateJobError(PipelineError):
    """The job id is already queued or running."""

    reason = "duplicate_job"
