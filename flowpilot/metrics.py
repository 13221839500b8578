"""
Thread-safe in-memory metrics for the flowpilot worker.

Tracks:
  - Items: ready / error / retry counters per phase ("items.images.ready", ...)
  - Runs: outcome counters ("runs.completed", "runs.error", ...)
  - Latency: seconds per successfully generated item, per phase
  - Gauges: active_job, start_time
  - Recent errors (last 50) for root-cause analysis

All data is ephemeral (resets on restart). Durable history lives in the
job store's run records.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def record_latency(name: str, seconds: float):
    with _lock:
        samples = _latency_samples[name]
        samples.append(seconds)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_type: str, message: str, project_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "project_id": project_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    """Clear everything (used by tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[name] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        attempted = sum(v for k, v in _counters.items() if k.startswith("items.") and k.endswith((".ready", ".error")))
        failed = sum(v for k, v in _counters.items() if k.startswith("items.") and k.endswith(".error"))
        item_error_rate = (failed / attempted * 100) if attempted else 0

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "item_error_rate": round(item_error_rate, 2),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
