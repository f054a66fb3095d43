import asyncio
import threading

import pytest

from onboarding.metrics import MetricsTracker


def test_stage_metrics_track_extremes_and_error_codes() -> None:
    metrics = MetricsTracker()
    metrics.record_stage("identity_creation", 0.2, True)
    metrics.record_stage("identity_creation", 0.4, False, "SERVICE_UNAVAILABLE")
    metrics.record_stage("identity_creation", 0.1, False, "SERVICE_UNAVAILABLE")

    stage = metrics.stage("identity_creation")

    assert (stage.executions, stage.successes, stage.failures) == (3, 1, 2)
    assert stage.min_time == 0.1
    assert stage.max_time == 0.4
    assert stage.average_time == pytest.approx(0.7 / 3)
    assert stage.error_counts == {"SERVICE_UNAVAILABLE": 2}


def test_unknown_stage_is_empty() -> None:
    stage = MetricsTracker().stage("validation")

    assert stage.executions == 0
    assert stage.min_time is None
    assert stage.average_time == 0.0


def test_trackers_do_not_share_counts() -> None:
    first = MetricsTracker()
    second = MetricsTracker()

    first.record_pipeline(0.5, True)

    assert first.snapshot()["total_executions"] == 1
    assert second.snapshot()["total_executions"] == 0


def test_concurrent_threads_lose_no_updates() -> None:
    metrics = MetricsTracker()

    def work() -> None:
        for i in range(500):
            metrics.record_stage("deduplication", 0.01, i % 5 != 0, "DB_ERROR")
            metrics.record_pipeline(0.02, i % 5 != 0)

    threads = [threading.Thread(target=work) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stage = metrics.stage("deduplication")
    assert stage.executions == 4000
    assert stage.failures == 800
    assert stage.error_counts == {"DB_ERROR": 800}
    snapshot = metrics.snapshot()
    assert (snapshot["successful_runs"], snapshot["failed_runs"]) == (3200, 800)


def test_concurrent_tasks_lose_no_updates() -> None:
    metrics = MetricsTracker()

    async def record(index: int) -> None:
        await asyncio.sleep(0)
        metrics.record_stage("validation", 0.001 * index, True)

    async def scenario() -> None:
        await asyncio.gather(*(record(i) for i in range(1, 201)))

    asyncio.run(scenario())

    stage = metrics.stage("validation")
    assert stage.successes == 200
    assert stage.min_time == pytest.approx(0.001)
    assert stage.max_time == pytest.approx(0.2)


def test_exposition_uses_prometheus_text_format() -> None:
    metrics = MetricsTracker()
    metrics.record_stage("validation", 0.02, False, "INVALID_FORMAT")
    metrics.record_pipeline(0.02, False)

    text = metrics.exposition().decode("utf-8")

    assert 'onboarding_stage_duration_seconds_count{stage_name="validation"} 1.0' in text
    assert 'onboarding_stage_errors_total{stage_name="validation",error_code="INVALID_FORMAT"} 1.0' in text
    assert 'onboarding_pipeline_runs_total{outcome="failure"} 1.0' in text
