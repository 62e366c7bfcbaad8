"""
In-process counters and duration samples for the pipeline.

Counter names follow `{stage}.success` / `{stage}.error` for the three stages
(`upload`, `analysis`, `email`). The alerting service reads them back to compute
failure and delivery rates; the worker logs a snapshot after each health check.
"""

from collections import defaultdict
from typing import Any, Dict, List

_counters: Dict[str, int] = defaultdict(int)
_samples: Dict[str, List[float]] = defaultdict(list)

MAX_SAMPLES = 500  # per series, oldest dropped first

STAGES = ("upload", "analysis", "email")


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def observe(name: str, value: float) -> None:
    """Record a duration sample in milliseconds."""
    series = _samples[name]
    series.append(value)
    if len(series) > MAX_SAMPLES:
        del series[: len(series) - MAX_SAMPLES]


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def success_rate(stage: str) -> Dict[str, Any]:
    """Success percentage of a stage; 100.0 when nothing has been counted yet."""
    ok = get_counter(f"{stage}.success")
    failed = get_counter(f"{stage}.error")
    total = ok + failed
    return {
        "total": total,
        "success": ok,
        "failed": failed,
        "success_rate": (ok / total * 100) if total else 100.0,
    }


def _percentile(ordered: List[float], fraction: float) -> float:
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


def summarize(name: str) -> Dict[str, Any]:
    ordered = sorted(_samples.get(name, ()))
    if not ordered:
        return {"count": 0}
    return {
        "count": len(ordered),
        "p50": round(_percentile(ordered, 0.5), 1),
        "p95": round(_percentile(ordered, 0.95), 1),
        "max": round(ordered[-1], 1),
    }


def get_snapshot() -> Dict[str, Any]:
    """Per-stage rates plus duration summaries, ready to log."""
    return {
        "stages": {stage: success_rate(stage) for stage in STAGES},
        "durations": {name: summarize(name) for name in sorted(_samples)},
    }


def reset() -> None:
    _counters.clear()
    _samples.clear()
