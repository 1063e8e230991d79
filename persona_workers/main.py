"""
Worker service: HTTP intake plus the queue consumer pool.

Endpoints:
  GET  /health                        liveness + configured services
  GET  /metrics                       in-memory metrics snapshot
  GET  /queue/status?job_id=          queue position + ETA
  POST /webhook/jobs                  validate and enqueue a job payload
  POST /webhook/jobs/{job_id}/cancel  cancel a pending or running job

With Redis configured, jobs go through the reliable queue and are run by
WORKER_CONCURRENCY consumer threads. Without it, they run as background
tasks under the fallback concurrency limiter.
"""

import asyncio
import json
import logging
import os
import socket
import threading
import time
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import BackgroundTasks, Body, FastAPI, HTTPException, Query

from . import fallback_limiter
from . import jobs
from . import metrics
from . import queue as task_queue
from .auth_middleware import WorkerAuthMiddleware
from .config import load_pipeline_config, worker_concurrency
from .pipeline.context import CancellationToken
from .pipeline.errors import DuplicateJobError, InputError
from .pipeline.models import JobStatus, parse_job_payload

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── Lazy service wiring ───────────────────────────────────────────────────────
_services: jobs.JobServices | None = None
_services_lock = threading.Lock()


def get_services() -> jobs.JobServices:
    global _services
    with _services_lock:
        if _services is None:
            _services = jobs.build_services()
    return _services


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            _redis_client = redis.from_url(redis_url, decode_responses=False)
            try:
                _redis_client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}, falling back to direct processing")
                _redis_client = None
    return _redis_client


# Tokens for jobs running without the queue, so they can still be cancelled
_local_tokens: dict[str, CancellationToken] = {}


# ── Queue consumer threads (reliable) ─────────────────────────────────────────

def _mark_failed(job_id: str, reason: str):
    get_services().store.update_job_record(job_id, {"status": JobStatus.FAILED.value, "error": reason})


def _process_queued_job(r, job_id: str, worker_index: int):
    meta = task_queue.get_task_meta(r, job_id)
    if not meta:
        logger.warning(f"[worker-{worker_index}] no metadata for job {job_id}, skipping")
        task_queue.ack_task(r, job_id, "expired")
        return

    try:
        payload = parse_job_payload(json.loads(meta.get("payload", "{}")))
    except (InputError, json.JSONDecodeError) as e:
        logger.warning(f"[worker-{worker_index}] rejecting job {job_id}: {e}")
        _mark_failed(job_id, str(e))
        task_queue.ack_task(r, job_id, "failed")
        return

    services = get_services()
    owner = f"{socket.gethostname()}:{os.getpid()}:{worker_index}"
    ttl = jobs.time_budget_seconds(payload, services.config)
    if not task_queue.acquire_job_lock(r, job_id, owner, ttl):
        logger.warning(f"[worker-{worker_index}] job {job_id} is running on another worker")
        task_queue.discard_task(r, job_id)
        return

    retries = int(meta.get("retries", "0"))
    task_queue.update_task_status(r, job_id, "processing")
    logger.info(f"[worker-{worker_index}] processing {payload.target_kind} job {job_id} (attempt {retries + 1})")

    token = CancellationToken(probe=lambda: task_queue.is_cancel_requested(r, job_id))
    try:
        outcome = asyncio.run(jobs.run_job(payload, services, token))
    except DuplicateJobError as e:
        logger.warning(f"[worker-{worker_index}] {e}")
        task_queue.discard_task(r, job_id)
        return
    except Exception as e:
        # Crash outside the pipeline's own error handling: retry or dead-letter
        logger.error(f"[worker-{worker_index}] job {job_id} crashed: {e}", exc_info=True)
        task_queue.nack_task(r, job_id, f"{type(e).__name__}: {e}")
        return
    finally:
        task_queue.release_job_lock(r, job_id, owner)

    status = "cancelled" if outcome.reason == "cancelled" else outcome.status.value
    task_queue.ack_task(r, job_id, status)


def _queue_consumer_loop(worker_index: int = 0):
    """Background thread: dequeues via BLMOVE, acks on completion, nacks on crash."""
    logger.info(f"Queue consumer {worker_index} started (reliable mode)")
    while True:
        try:
            r = get_redis()
            if r is None:
                time.sleep(5)
                continue

            job_id = task_queue.dequeue_task(r, timeout=5)
            if job_id is None:
                continue

            _process_queued_job(r, job_id, worker_index)

        except Exception as e:
            logger.error(f"Queue consumer {worker_index} loop error: {e}", exc_info=True)
            time.sleep(2)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    r = get_redis()
    if r:
        stale_after = jobs.generation_budget_seconds(load_pipeline_config())
        recovered = task_queue.recover_stale_tasks(r, stale_after)
        if recovered:
            logger.info(f"Recovered {recovered} stale job(s) from previous session")

        pool_size = worker_concurrency()
        for i in range(pool_size):
            threading.Thread(target=_queue_consumer_loop, args=(i,), daemon=True).start()
        logger.info(f"Launched {pool_size} queue consumer thread(s)")
    else:
        logger.info("No Redis, using fallback limiter + direct job processing")
    yield
    logger.info("Worker shutting down...")


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)


@app.get("/health")
def health_check():
    """Verify the worker is running and its services are configured."""
    return {
        "status": "ok",
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY")),
        "kie_api_key_set": bool(os.environ.get("KIE_API_KEY")),
        "face_service_url_set": bool(os.environ.get("FACE_SERVICE_URL")),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "redis": get_redis() is not None,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    r = get_redis()
    if r:
        metrics.set_gauge("queue_depth", task_queue.get_queue_length(r))
        metrics.set_gauge("processing_count", task_queue.get_processing_count(r))
    metrics.set_gauge("active_fallback_jobs", fallback_limiter.get_active_jobs())
    return metrics.get_snapshot()


@app.get("/queue/status")
def queue_status(job_id: str = Query(...)):
    """Return queue position + ETA for a given job."""
    r = get_redis()
    if not r:
        status = "processing" if job_id in _local_tokens else "unknown"
        return {"position": 0, "estimated_wait_seconds": 0, "queue_length": 0, "status": status}

    position = task_queue.get_queue_position(r, job_id)
    meta = task_queue.get_task_meta(r, job_id)
    return {
        "position": position or 0,
        "estimated_wait_seconds": task_queue.estimate_wait_seconds(r, job_id) if position else 0,
        "queue_length": task_queue.get_queue_length(r),
        "status": meta.get("status", "unknown") if meta else "not_found",
    }


@app.post("/webhook/jobs")
async def submit_job(background_tasks: BackgroundTasks, body: dict = Body(...)):
    """Validate a job payload and enqueue it (or run it directly without Redis)."""
    try:
        payload = parse_job_payload(body)
    except InputError as e:
        raise HTTPException(status_code=422, detail=str(e))

    job_id = payload.job_id
    kind = payload.target_kind
    owner_id = getattr(payload, "identity_id", None) or getattr(payload, "source_id", None) or ""
    metrics.inc_counter(f"jobs.enqueued.{kind}")
    store = get_services().store

    r = get_redis()
    if r:
        try:
            position = task_queue.enqueue_task(r, job_id, kind, payload.model_dump(mode="json"), owner_id)
        except DuplicateJobError as e:
            raise HTTPException(status_code=409, detail=str(e))
        store.update_job_record(job_id, {"status": "queued", "queue_position": position})
        return {"message": "Job queued", "job_id": job_id, "queue_position": position}

    if job_id in _local_tokens:
        raise HTTPException(status_code=409, detail=f"job {job_id} is already running")

    if not fallback_limiter.acquire_job_slot():
        raise HTTPException(
            status_code=503,
            detail=f"Server at capacity ({fallback_limiter.MAX_CONCURRENT_JOBS} concurrent jobs). Try again shortly.",
        )

    token = CancellationToken()
    _local_tokens[job_id] = token

    async def _run_and_release():
        try:
            await jobs.run_job(payload, get_services(), token)
        except DuplicateJobError as e:
            logger.warning(f"Dropped fallback job: {e}")
        finally:
            _local_tokens.pop(job_id, None)
            fallback_limiter.release_job_slot()

    store.update_job_record(job_id, {"status": "queued"})
    background_tasks.add_task(_run_and_release)
    return {"message": "Job received", "job_id": job_id}


@app.post("/webhook/jobs/{job_id}/cancel")
def cancel_job(job_id: str):
    """
    Cancel a job. A pending job is dropped from the queue and marked failed
    with reason "cancelled"; a running job stops at its next checkpoint.
    """
    r = get_redis()
    if r:
        result = task_queue.cancel_task(r, job_id)
    elif job_id in _local_tokens:
        _local_tokens[job_id].cancel()
        result = "requested"
    else:
        result = "not_found"

    if result == "removed":
        _mark_failed(job_id, "cancelled")
        metrics.inc_counter("jobs.cancelled.pending")
    if result == "not_found":
        raise HTTPException(status_code=404, detail=f"Job {job_id} is not pending or running")
    return {"job_id": job_id, "result": result}


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("persona_workers.main:app", host="0.0.0.0", port=port)
