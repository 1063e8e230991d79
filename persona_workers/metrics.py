"""
Thread-safe in-memory metrics for the identity workers.

Tracks:
  - Traffic: enqueued jobs by kind
  - Outcomes: ready / failed / cancelled / best-effort jobs
  - Latency: job duration samples by kind
  - Cost: accumulated external-call cost in cents
  - Saturation: queue depth, in-flight jobs (gauges)
  - Errors: last failures for root-cause analysis

Ephemeral: everything resets on restart.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# ── Latency samples (last 100 per job kind) ──────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Error log (last 50 failures) ─────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'jobs.enqueued.identity_cluster')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(kind: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[kind]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[kind] = samples[-MAX_SAMPLES:]


def record_error(kind: str, reason: str, job_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "kind": kind,
            "reason": reason[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def record_job_outcome(
    kind: str,
    status: str,
    duration_ms: float,
    cost_cents: int = 0,
    attempts: int = 0,
    best_effort: bool = False,
):
    """One call per finished queue job."""
    with _lock:
        _counters[f"jobs.{status}.{kind}"] += 1
        _counters["cost_cents"] += cost_cents
        _counters["generation_attempts"] += attempts
        if best_effort:
            _counters["jobs.best_effort"] += 1
    record_latency(kind, duration_ms)


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        latency_stats = {}
        for kind, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[kind] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        failure_reasons: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            failure_reasons[f"{err['kind']}:{err['reason'][:60]}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "failure_reasons": dict(failure_reasons),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()
