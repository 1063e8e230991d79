"""
Redis-backed FIFO job queue with reliable delivery and cancellation.

Reliable queue pattern, so a claimed job is never lost:
  1. LPUSH → `personaq:jobs`                 (enqueue)
  2. BLMOVE → `personaq:processing`          (atomic claim + in-flight tracking)
  3. LREM from processing on completion      (ack)
  4. Requeue, or → `personaq:dead_letter` after 3 crashes (nack)

Run lock:
  `personaq:lock:{job_id}` is taken with SET NX before a job runs and held
  for its whole time budget (TTL), so two workers never run one job id
  together. Stale recovery leaves locked jobs alone.

Cancellation:
  - still pending  → removed from `personaq:jobs`, status `cancelled`
  - already claimed → `cancel_requested` flag set; the worker's
    CancellationToken sees it at its next check

Keys:
  personaq:jobs             pending job ids (Redis list, FIFO)
  personaq:processing       in-flight job ids (Redis list)
  personaq:dead_letter      job ids that crashed the worker repeatedly
  personaq:meta:{job_id}    per-job metadata (Redis hash, TTL 2h)
  personaq:lock:{job_id}    run lock, value = owning worker
"""

import json
import logging
import math
import time
from typing import Optional

from .pipeline.errors import DuplicateJobError

logger = logging.getLogger(__name__)

QUEUE_KEY = "personaq:jobs"
PROCESSING_KEY = "personaq:processing"
DEAD_LETTER_KEY = "personaq:dead_letter"
META_PREFIX = "personaq:meta:"
LOCK_PREFIX = "personaq:lock:"
META_TTL = 7200  # 2 hours

MAX_RETRIES = 3
ACTIVE_STATUSES = ("queued", "processing")


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(
    redis_client,
    job_id: str,
    target_kind: str,
    payload: dict,
    owner_id: str = "",
) -> int:
    """
    Add a validated job payload to the back of the queue.
    Returns the queue position (1-based).

    Raises:
        DuplicateJobError: The job id is already queued or processing.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    current = redis_client.hget(meta_key, "status")
    if current is not None and _decode(current) in ACTIVE_STATUSES:
        raise DuplicateJobError(f"job {job_id} is already {_decode(current)}")

    meta = {
        "owner_id": owner_id,
        "job_id": job_id,
        "target_kind": target_kind,
        "payload": json.dumps(payload),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    }

    pipe = redis_client.pipeline(transaction=True)
    pipe.hset(meta_key, mapping=meta)
    pipe.expire(meta_key, META_TTL)
    # LPUSH = new items on the left; consumers pop from the right
    pipe.lpush(QUEUE_KEY, job_id)
    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued job {job_id} (kind={target_kind}, pos={position})")
    return position


# ── Reliable Dequeue ─────────────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a job from the pending queue to the processing list.
    Returns the job_id or None on timeout.
    """
    result = redis_client.blmove(
        QUEUE_KEY, PROCESSING_KEY,
        timeout=timeout,
        src="RIGHT", dest="LEFT",
    )
    if result is None:
        return None

    job_id = _decode(result)
    redis_client.hset(f"{META_PREFIX}{job_id}", "processing_started_at", str(time.time()))
    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, job_id: str, status: str = "completed"):
    """Remove a finished job from the processing list and record its final status."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_task_status(redis_client, job_id, status)
    logger.info(f"Acked job {job_id} ({status})")


def nack_task(redis_client, job_id: str, error_msg: str = ""):
    """
    Negative-acknowledge a job whose handler crashed.
    Requeues below MAX_RETRIES, otherwise moves it to the dead-letter list.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0) + 1
    redis_client.hset(meta_key, "retries", str(retries))
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_task_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked job {job_id} (retry {retries}/{MAX_RETRIES}), requeued")
    else:
        redis_client.lpush(DEAD_LETTER_KEY, job_id)
        update_task_status(redis_client, job_id, "dead_letter")
        logger.error(f"Job {job_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")


# ── Run lock ──────────────────────────────────────────────────────────────────

_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def acquire_job_lock(redis_client, job_id: str, owner: str, ttl_seconds: float) -> bool:
    """Take the run lock for job_id. False if another worker holds it."""
    ttl = max(1, math.ceil(ttl_seconds))
    if not redis_client.set(f"{LOCK_PREFIX}{job_id}", owner, nx=True, ex=ttl):
        return False
    # Metadata must outlive the run it describes
    redis_client.expire(f"{META_PREFIX}{job_id}", ttl + META_TTL)
    return True


def release_job_lock(redis_client, job_id: str, owner: str):
    """Release the run lock, only if `owner` still holds it."""
    redis_client.eval(_RELEASE_LOCK_SCRIPT, 1, f"{LOCK_PREFIX}{job_id}", owner)


def is_job_locked(redis_client, job_id: str) -> bool:
    return bool(redis_client.exists(f"{LOCK_PREFIX}{job_id}"))


def discard_task(redis_client, job_id: str):
    """Drop one processing entry for a job another worker is already running."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    logger.warning(f"Discarded duplicate delivery of job {job_id}")


# ── Cancellation ──────────────────────────────────────────────────────────────

def cancel_task(redis_client, job_id: str) -> str:
    """
    Cancel a job.

    Returns:
        "removed"    the job was still pending and will never run
        "requested"  the job is in flight; its worker will stop cooperatively
        "not_found"  no such job, or it already finished
    """
    if redis_client.lrem(QUEUE_KEY, 0, job_id):
        update_task_status(redis_client, job_id, "cancelled")
        logger.info(f"Cancelled pending job {job_id}")
        return "removed"

    processing = [_decode(i) for i in redis_client.lrange(PROCESSING_KEY, 0, -1)]
    if job_id in processing:
        redis_client.hset(f"{META_PREFIX}{job_id}", "cancel_requested", "1")
        logger.info(f"Cancellation requested for in-flight job {job_id}")
        return "requested"

    return "not_found"


def is_cancel_requested(redis_client, job_id: str) -> bool:
    return _decode(redis_client.hget(f"{META_PREFIX}{job_id}", "cancel_requested") or b"0") == "1"


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, stale_after: float) -> int:
    """
    Move jobs in-flight longer than `stale_after` seconds whose run lock has
    lapsed (crashed workers) back to the pending queue. Call on worker
    startup with the longest time a job can legally run.
    Returns the number of recovered jobs.
    """
    recovered = 0
    now = time.time()

    for item in redis_client.lrange(PROCESSING_KEY, 0, -1):
        job_id = _decode(item)
        meta = get_task_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if is_job_locked(redis_client, job_id):
            continue
        if started_at > 0 and (now - started_at) > stale_after:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_task_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s > {stale_after:g}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale job(s) from processing queue")
    return recovered


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_position(redis_client, job_id: str) -> Optional[int]:
    """1-based position in the pending queue, or None if not pending."""
    queue_items = redis_client.lrange(QUEUE_KEY, 0, -1)
    for i, item in enumerate(queue_items):
        if _decode(item) == job_id:
            # Rightmost item is next
            return len(queue_items) - i
    return None


def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_task_meta(redis_client, job_id: str) -> Optional[dict]:
    """Metadata for a queued/processing job, decoded to str."""
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_task_status(redis_client, job_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)


# ── ETA Estimation ────────────────────────────────────────────────────────────

ESTIMATED_DURATIONS = {
    "identity_cluster": 45,
    "constrained_generate": 240,
    "default": 120,
}


def estimate_wait_seconds(redis_client, job_id: str) -> int:
    """Rough time until this job starts processing."""
    position = get_queue_position(redis_client, job_id)
    if position is None:
        return 0

    meta = get_task_meta(redis_client, job_id)
    kind = meta.get("target_kind", "default") if meta else "default"
    per_task = ESTIMATED_DURATIONS.get(kind, ESTIMATED_DURATIONS["default"])
    return (position - 1) * per_task
