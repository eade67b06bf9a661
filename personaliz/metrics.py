"""
Thread-safe in-memory metrics for the service.

Tracks pipeline traffic and outcomes:
  - Traffic: submissions and webhook deliveries per provider
  - Outcomes: generation completed/failed/timeout, delivery sent/failed
  - Reconciliation: accepted vs rejected transitions, unmatched callbacks
  - Saturation: in-flight background jobs

All data is ephemeral (resets on restart). The request store remains the
source of truth for per-request history.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# ── Per-minute buckets, last 60 minutes ──────────────────────────────────────
_timeseries: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
MAX_MINUTES = 60

# ── Last 50 errors for RCA ───────────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def _minute_bucket() -> int:
    return int(time.time()) // 60 * 60


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'webhooks.unmatched', 'generation.timeout')."""
    with _lock:
        _counters[name] += amount
        _timeseries[name][_minute_bucket()] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def record_error(component: str, error_type: str, message: str, request_id: str = ""):
    """Record an error for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "component": component,
            "error_type": error_type,
            "message": message[:300],
            "request_id": request_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()
    minute_now = int(now) // 60 * 60
    cutoff = minute_now - MAX_MINUTES * 60

    with _lock:
        timeseries_out = {}
        for name, buckets in _timeseries.items():
            for expired in [k for k in buckets if k < cutoff]:
                del buckets[expired]
            timeseries_out[name] = [
                {"t": t, "v": buckets[t]} for t in sorted(buckets)
            ]

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['component']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "timeseries": timeseries_out,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything (tests and process restarts)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _timeseries.clear()
        _recent_errors.clear()
