from cvpipeline.utils import metrics


def test_success_rate_defaults_to_full_when_idle():
    assert metrics.success_rate("email") == {"total": 0, "success": 0, "failed": 0, "success_rate": 100.0}


def test_success_rate_counts_both_outcomes():
    metrics.inc("upload.success", 3)
    metrics.inc("upload.error")

    rate = metrics.success_rate("upload")
    assert rate["total"] == 4
    assert rate["success_rate"] == 75.0


def test_samples_keep_a_rolling_window():
    for value in range(metrics.MAX_SAMPLES + 20):
        metrics.observe("analysis.duration_ms", float(value))

    summary = metrics.summarize("analysis.duration_ms")
    assert summary["count"] == metrics.MAX_SAMPLES
    assert summary["max"] == metrics.MAX_SAMPLES + 19


def test_snapshot_lists_every_stage():
    metrics.inc("email.error")
    metrics.observe("email.send_duration_ms", 12.5)

    snapshot = metrics.get_snapshot()
    assert set(snapshot["stages"]) == {"upload", "analysis", "email"}
    assert snapshot["stages"]["email"]["failed"] == 1
    assert snapshot["durations"]["email.send_duration_ms"] == {"count": 1, "p50": 12.5, "p95": 12.5, "max": 12.5}
    assert metrics.summarize("missing") == {"count": 0}
