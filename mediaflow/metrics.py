"""
Thread-safe in-memory metrics for the workflow worker.

  - Traffic:     runs started per variant, finished per status
  - Credits:     credits debited and refunded
  - Errors:      step failures by code, failed refunds, plus a short error log
  - Latency:     per-step duration samples (ms)
  - Saturation:  active runs

Everything resets on restart; run history lives in the run store.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# ── Latency samples (last 100 per step) ──────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Error log (last 50 for RCA) ──────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50

_started_at = time.time()


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(name: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            del samples[:-MAX_SAMPLES]


def record_error(source: str, code: str, message: str, run_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "code": code,
            "message": message[:300],
            "run_id": run_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


# ── Workflow helpers ─────────────────────────────────────────────────────────

def run_started(variant: str):
    inc_counter("runs.started")
    inc_counter(f"runs.started.{variant}")


def run_finished(status: str):
    inc_counter(f"runs.{status}")


def credits_debited(amount: int):
    inc_counter("credits.debited", amount)


def credits_refunded(amount: int):
    inc_counter("credits.refunded", amount)


def step_failed(step_id: str, code: str, message: str, run_id: str):
    inc_counter(f"errors.{code}")
    record_error(step_id, code, message, run_id)


def _percentiles(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    """Complete metrics snapshot for GET /metrics."""
    now = time.time()
    with _lock:
        started = _counters.get("runs.started", 0)
        failed = _counters.get("runs.failed", 0)
        return {
            "timestamp": now,
            "uptime_seconds": now - _started_at,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {
                name: _percentiles(samples)
                for name, samples in _latency_samples.items() if samples
            },
            "failure_rate": round(failed / started * 100, 2) if started else 0,
            "recent_errors": list(_recent_errors[-10:]),
        }


def reset():
    """Clear all collected data."""
    global _started_at
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()
        _started_at = time.time()
