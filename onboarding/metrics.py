from dataclasses import dataclass, field
import threading

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


STAGE_BUCKETS = (0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 20, 30)
PIPELINE_BUCKETS = (0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120)


@dataclass
class StageMetrics:
    executions: int = 0
    successes: int = 0
    failures: int = 0
    total_time: float = 0.0
    min_time: float | None = None
    max_time: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)

    @property
    def average_time(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.total_time / self.executions


class MetricsTracker:
    """Stage and pipeline metrics held in a private Prometheus registry.

    Every pipeline built by one service shares its tracker, so counts cover
    all records and batches run there. ``exposition()`` renders the registry
    in the Prometheus text format.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        # Histograms carry count and sum only; extremes are kept alongside.
        self._extremes: dict[str, tuple[float, float]] = {}

        self._stage_duration = Histogram(
            "onboarding_stage_duration_seconds",
            "Time spent in each pipeline stage",
            ["stage_name"],
            buckets=STAGE_BUCKETS,
            registry=self.registry,
        )
        self._stage_runs = Counter(
            "onboarding_stage_runs",
            "Stage executions by outcome",
            ["stage_name", "outcome"],
            registry=self.registry,
        )
        self._stage_errors = Counter(
            "onboarding_stage_errors",
            "Stage failures by error code",
            ["stage_name", "error_code"],
            registry=self.registry,
        )
        self._pipeline_duration = Histogram(
            "onboarding_pipeline_duration_seconds",
            "Time spent running one record through the pipeline",
            buckets=PIPELINE_BUCKETS,
            registry=self.registry,
        )
        self._pipeline_runs = Counter(
            "onboarding_pipeline_runs",
            "Pipeline runs by outcome",
            ["outcome"],
            registry=self.registry,
        )

    def record_stage(self, stage_name: str, duration: float, success: bool, error_code: str | None = None) -> None:
        with self._lock:
            self._stage_duration.labels(stage_name=stage_name).observe(duration)
            self._stage_runs.labels(stage_name=stage_name, outcome="success" if success else "failure").inc()
            if not success and error_code:
                self._stage_errors.labels(stage_name=stage_name, error_code=error_code).inc()

            low, high = self._extremes.get(stage_name, (duration, duration))
            self._extremes[stage_name] = (min(low, duration), max(high, duration))

    def record_pipeline(self, duration: float, success: bool) -> None:
        with self._lock:
            self._pipeline_duration.observe(duration)
            self._pipeline_runs.labels(outcome="success" if success else "failure").inc()

    def _value(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def _error_counts(self, stage_name: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for family in self._stage_errors.collect():
            for sample in family.samples:
                if sample.name.endswith("_total") and sample.labels.get("stage_name") == stage_name:
                    counts[sample.labels["error_code"]] = int(sample.value)
        return counts

    def _stage_locked(self, stage_name: str) -> StageMetrics:
        labels = {"stage_name": stage_name}
        extremes = self._extremes.get(stage_name)
        return StageMetrics(
            executions=int(self._value("onboarding_stage_duration_seconds_count", labels)),
            successes=int(self._value("onboarding_stage_runs_total", {**labels, "outcome": "success"})),
            failures=int(self._value("onboarding_stage_runs_total", {**labels, "outcome": "failure"})),
            total_time=self._value("onboarding_stage_duration_seconds_sum", labels),
            min_time=extremes[0] if extremes else None,
            max_time=extremes[1] if extremes else 0.0,
            error_counts=self._error_counts(stage_name),
        )

    def stage(self, stage_name: str) -> StageMetrics:
        with self._lock:
            return self._stage_locked(stage_name)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            total = int(self._value("onboarding_pipeline_duration_seconds_count"))
            total_time = self._value("onboarding_pipeline_duration_seconds_sum")
            stages = {name: self._stage_locked(name) for name in self._extremes}
            return {
                "total_executions": total,
                "successful_runs": int(self._value("onboarding_pipeline_runs_total", {"outcome": "success"})),
                "failed_runs": int(self._value("onboarding_pipeline_runs_total", {"outcome": "failure"})),
                "average_execution_time": total_time / total if total else 0.0,
                "stages": {
                    name: {
                        "executions": s.executions,
                        "successes": s.successes,
                        "failures": s.failures,
                        "average_time": s.average_time,
                        "min_time": s.min_time,
                        "max_time": s.max_time,
                        "error_counts": s.error_counts,
                    }
                    for name, s in stages.items()
                },
            }

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
