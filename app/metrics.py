from prometheus_client import Counter, Histogram

JOB_RUNS = Counter(
    "background_job_runs_total",
    "Celery task executions",
    ["job", "status"],  # status: success, error, skipped
)

JOB_DURATION = Histogram(
    "background_job_duration_seconds",
    "Celery task duration",
    ["job"],
)


def observe_job(name: str, status: str, duration: float) -> None:
    JOB_RUNS.labels(job=name, status=status).inc()
    JOB_DURATION.labels(job=name).observe(duration)
