from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any


class InMemoryMetricsStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._job_status_events: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._job_failures: dict[str, int] = defaultdict(int)
        self._provider_errors: dict[str, int] = defaultdict(int)
        self._latency: dict[str, dict[str, float]] = defaultdict(
            lambda: {"count": 0.0, "sum_ms": 0.0, "max_ms": 0.0}
        )
        # Buckets: 100ms, 500ms, 1s, 5s, 10s, 30s, 60s, 2m, +Inf
        self._latency_buckets_def = [100, 500, 1000, 5000, 10000, 30000, 60000, 120000, float("inf")]
        self._latency_buckets: dict[str, dict[float, int]] = defaultdict(
            lambda: {b: 0 for b in self._latency_buckets_def}
        )

    def reset(self) -> None:
        with self._lock:
            self._job_status_events.clear()
            self._job_failures.clear()
            self._provider_errors.clear()
            self._latency.clear()
            self._latency_buckets.clear()

    def increment_job_status(self, job_type: str, status: str) -> None:
        normalized_type = (job_type or "unknown").strip() or "unknown"
        normalized_status = (status or "unknown").strip() or "unknown"
        with self._lock:
            self._job_status_events[normalized_type][normalized_status] += 1

    def increment_job_failure(self, job_type: str) -> None:
        normalized_type = (job_type or "unknown").strip() or "unknown"
        with self._lock:
            self._job_failures[normalized_type] += 1

    def increment_provider_error(self, operation: str) -> None:
        normalized = (operation or "unknown").strip() or "unknown"
        with self._lock:
            self._provider_errors[normalized] += 1

    def observe_latency(self, operation: str, duration_ms: float) -> None:
        normalized = (operation or "unknown").strip() or "unknown"
        duration_ms = max(0.0, duration_ms)
        with self._lock:
            metric = self._latency[normalized]
            metric["count"] += 1
            metric["sum_ms"] += duration_ms
            metric["max_ms"] = max(metric["max_ms"], duration_ms)

            bucket_counts = self._latency_buckets[normalized]
            for bucket in self._latency_buckets_def:
                if duration_ms <= bucket:
                    bucket_counts[bucket] += 1

    def snapshot(self, video_jobs: dict[str, int] | None = None) -> dict[str, Any]:
        with self._lock:
            latency: dict[str, dict[str, float]] = {}
            for operation, metric in self._latency.items():
                count = metric["count"]
                avg_ms = (metric["sum_ms"] / count) if count > 0 else 0.0
                latency[operation] = {
                    "count": int(count),
                    "sumMs": round(metric["sum_ms"], 2),
                    "avgMs": round(avg_ms, 2),
                    "maxMs": round(metric["max_ms"], 2),
                }

            return {
                "videoJobs": video_jobs or {},
                "jobStatusEvents": {
                    key: dict(value) for key, value in self._job_status_events.items()
                },
                "jobFailures": dict(self._job_failures),
                "providerErrors": dict(self._provider_errors),
                "latencyMs": latency,
                "latencyBuckets": {key: dict(value) for key, value in self._latency_buckets.items()},
            }


def _escape_label(value: str) -> str:
    return value.replace("\\", r"\\").replace('"', r'\"')


def render_prometheus_metrics(snapshot: dict[str, Any]) -> str:
    lines: list[str] = []

    lines.append("# HELP studio_video_jobs Lesson video jobs currently stored, by status.")
    lines.append("# TYPE studio_video_jobs gauge")
    for status, count in sorted((snapshot.get("videoJobs") or {}).items()):
        lines.append(f'studio_video_jobs{{status="{_escape_label(str(status))}"}} {int(count)}')

    lines.append("# HELP studio_job_status_events_total Observed job status events.")
    lines.append("# TYPE studio_job_status_events_total counter")
    for job_type, statuses in sorted((snapshot.get("jobStatusEvents") or {}).items()):
        for status, count in sorted((statuses or {}).items()):
            lines.append(
                "studio_job_status_events_total"
                f'{{job_type="{_escape_label(str(job_type))}",status="{_escape_label(str(status))}"}} {int(count)}'
            )

    lines.append("# HELP studio_job_failures_total Failed jobs by type.")
    lines.append("# TYPE studio_job_failures_total counter")
    for job_type, count in sorted((snapshot.get("jobFailures") or {}).items()):
        lines.append(f'studio_job_failures_total{{job_type="{_escape_label(str(job_type))}"}} {int(count)}')

    lines.append("# HELP studio_provider_errors_total Upstream provider errors by operation.")
    lines.append("# TYPE studio_provider_errors_total counter")
    for operation, count in sorted((snapshot.get("providerErrors") or {}).items()):
        lines.append(f'studio_provider_errors_total{{operation="{_escape_label(str(operation))}"}} {int(count)}')

    lines.append("# HELP studio_latency_ms Operation latency histogram in milliseconds.")
    lines.append("# TYPE studio_latency_ms histogram")
    latency = snapshot.get("latencyMs") or {}
    for operation, buckets in sorted((snapshot.get("latencyBuckets") or {}).items()):
        label = _escape_label(str(operation))
        for le, count in sorted(buckets.items(), key=lambda x: x[0]):
            le_str = "+Inf" if le == float("inf") else str(int(le))
            lines.append(f'studio_latency_ms_bucket{{operation="{label}",le="{le_str}"}} {int(count)}')
        info = latency.get(operation, {})
        lines.append(f'studio_latency_ms_sum{{operation="{label}"}} {float(info.get("sumMs", 0.0))}')
        lines.append(f'studio_latency_ms_count{{operation="{label}"}} {int(info.get("count", 0))}')

    return "\n".join(lines) + "\n"


METRICS = InMemoryMetricsStore()
