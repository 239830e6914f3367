"""Prometheus metrics for pipeline runs.

A pipeline run is a short-lived process, so metrics live in a dedicated
registry and are pushed to a Pushgateway at the end of the run instead of
being scraped.
"""

import time
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram, push_to_gateway

logger = structlog.get_logger()

REGISTRY = CollectorRegistry()

STAGE_DURATION = Histogram(
    "deploy_stage_duration_seconds",
    "Pipeline stage duration in seconds",
    ["stage"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
    registry=REGISTRY,
)

STAGE_OUTCOME = Counter(
    "deploy_stage_total",
    "Pipeline stage executions by outcome",
    ["stage", "status"],
    registry=REGISTRY,
)

EXPOSURE_RESULT = Counter(
    "deploy_exposure_total",
    "Service exposure attempts by load balancer kind and result",
    ["kind", "resolved"],
    registry=REGISTRY,
)

ROLLOUT_RESULT = Counter(
    "deploy_rollout_total",
    "Rollout verifications by outcome",
    ["outcome"],
    registry=REGISTRY,
)


class MetricsClient:
    """Client for recording pipeline metrics."""

    def __init__(self, enabled: bool = True, pushgateway: str | None = None, job: str = "deploy-pipeline"):
        self.enabled = enabled
        self.pushgateway = pushgateway
        self.job = job

    @contextmanager
    def time_stage(self, stage: str) -> Iterator[None]:
        """Time a pipeline stage and count its outcome."""
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.record_stage(stage, "failure", time.perf_counter() - start)
            raise
        self.record_stage(stage, "success", time.perf_counter() - start)

    def record_stage(self, stage: str, status: str, duration: float) -> None:
        if not self.enabled:
            return
        STAGE_DURATION.labels(stage=stage).observe(duration)
        STAGE_OUTCOME.labels(stage=stage, status=status).inc()

    def record_exposure(self, kind: str, resolved: bool) -> None:
        if not self.enabled:
            return
        EXPOSURE_RESULT.labels(kind=kind, resolved=str(resolved).lower()).inc()

    def record_rollout(self, outcome: str) -> None:
        if not self.enabled:
            return
        ROLLOUT_RESULT.labels(outcome=outcome).inc()

    def push(self) -> None:
        """Push collected metrics to the configured Pushgateway.

        Push failures are logged; metrics never decide the run outcome.
        """
        if not self.enabled or not self.pushgateway:
            return
        try:
            push_to_gateway(self.pushgateway, job=self.job, registry=REGISTRY)
        except OSError as e:
            logger.warning("Failed to push metrics", gateway=self.pushgateway, error=str(e))


@lru_cache
def get_metrics_client() -> MetricsClient:
    """Get cached metrics client configured from settings."""
    from src.common.config import get_settings

    settings = get_settings()
    return MetricsClient(pushgateway=settings.metrics_pushgateway, job=settings.metrics_job)
