"""Rollout verification for Deployment image updates.

A rollout that does not converge within its timeout is not retried. A fixed
diagnostic bundle is captured first, then the rollout fails.
"""

import json
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import structlog
from kubernetes import client
from pydantic import BaseModel, Field

from src.cluster.client import API_ERRORS
from src.cluster.polling import poll_until
from src.common.errors import RolloutError
from src.common.metrics import MetricsClient

logger = structlog.get_logger()

TIMEOUT_SECONDS = 300.0
POLL_INTERVAL_SECONDS = 5.0
EVENT_LIMIT = 100

EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class WorkloadRef(BaseModel):
    """Reference to a Deployment and optionally one of its containers."""

    namespace: str
    name: str
    container: str | None = None


class RolloutOutcome(str, Enum):
    """Terminal rollout states."""

    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


class DiagnosticCapture(BaseModel):
    """Output of one diagnostic step."""

    step: str
    ok: bool
    output: Any = None
    error: str | None = None


class RolloutAttempt(BaseModel):
    """A single image update and its outcome."""

    workload: WorkloadRef
    image: str
    timeout_seconds: float
    outcome: RolloutOutcome | None = None
    diagnostics: list[DiagnosticCapture] = Field(default_factory=list)


def is_converged(deployment: client.V1Deployment) -> bool:
    """Whether a Deployment's observed state matches its desired state.

    Mirrors ``kubectl rollout status``: the controller has observed the
    latest generation, every desired replica is updated and available, and
    no old replicas remain.
    """
    status = deployment.status
    if status is None:
        return False

    generation = deployment.metadata.generation or 0
    if (status.observed_generation or 0) < generation:
        return False

    desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    updated = status.updated_replicas or 0
    total = status.replicas or 0
    available = status.available_replicas or 0

    if updated < desired:
        return False
    if total > updated:
        return False
    if available < updated:
        return False
    return not status.unavailable_replicas


def _selector(deployment: client.V1Deployment) -> str:
    labels = deployment.spec.selector.match_labels or {}
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _event_timestamp(event: client.CoreV1Event) -> datetime:
    return (
        event.last_timestamp
        or event.event_time
        or event.first_timestamp
        or (event.metadata.creation_timestamp if event.metadata else None)
        or EPOCH
    )


class RolloutVerifier:
    """Update a Deployment's image and verify that it converges."""

    def __init__(
        self,
        apps_api: client.AppsV1Api,
        core_api: client.CoreV1Api,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        event_limit: int = EVENT_LIMIT,
        diagnostics_dir: str | Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics: MetricsClient | None = None,
    ):
        """Initialize verifier.

        Args:
            apps_api: AppsV1Api client
            core_api: CoreV1Api client
            poll_interval: Seconds between convergence checks
            event_limit: Number of most recent events kept in diagnostics
            diagnostics_dir: Directory for diagnostic bundle artifacts
            clock: Monotonic clock
            sleep: Sleep function
            metrics: Metrics client
        """
        self.apps = apps_api
        self.core = core_api
        self.poll_interval = poll_interval
        self.event_limit = event_limit
        self.diagnostics_dir = Path(diagnostics_dir) if diagnostics_dir else None
        self.clock = clock
        self.sleep = sleep
        self.metrics = metrics or MetricsClient(enabled=False)

    def rollout(self, workload: WorkloadRef, image: str, timeout: float = TIMEOUT_SECONDS) -> RolloutAttempt:
        """Roll the workload to ``image`` and wait for convergence.

        Args:
            workload: Target Deployment
            image: Image reference to roll out
            timeout: Seconds to wait for convergence

        Returns:
            Converged RolloutAttempt

        Raises:
            RolloutError: If the update cannot be issued, or the workload does
                not converge in time (carries the diagnostic bundle)
        """
        attempt = RolloutAttempt(workload=workload, image=image, timeout_seconds=timeout)
        log = logger.bind(deployment=workload.name, namespace=workload.namespace, image=image)

        self.set_image(workload, image)
        log.info("Waiting for rollout", timeout=timeout)

        if self.wait_for_convergence(workload, timeout):
            attempt.outcome = RolloutOutcome.CONVERGED
            self.metrics.record_rollout(attempt.outcome.value)
            log.info("Rollout converged")
            return attempt

        attempt.outcome = RolloutOutcome.TIMED_OUT
        self.metrics.record_rollout(attempt.outcome.value)
        log.error("Rollout did not converge", timeout=timeout)

        attempt.diagnostics = self.collect_diagnostics(workload)
        self._write_bundle(attempt)

        raise RolloutError(
            f"Deployment {workload.namespace}/{workload.name} did not converge within {timeout:.0f}s",
            diagnostics=attempt.diagnostics,
        )

    def set_image(self, workload: WorkloadRef, image: str) -> None:
        """Patch the container image in the Deployment's pod template.

        The patch merges containers by name, so the target container must
        already exist in the template; an unknown name would add a container.

        Raises:
            RolloutError: If the container is unknown or the update is rejected
        """
        try:
            deployment = self.apps.read_namespaced_deployment(workload.name, workload.namespace)
            names = [c.name for c in deployment.spec.template.spec.containers or []]
            container = workload.container or (names[0] if names else None)
            if container not in names:
                raise RolloutError(
                    f"Deployment {workload.namespace}/{workload.name} has no container {container!r}"
                    f" (containers: {', '.join(names) or 'none'})"
                )

            body = {"spec": {"template": {"spec": {"containers": [{"name": container, "image": image}]}}}}
            self.apps.patch_namespaced_deployment(workload.name, workload.namespace, body)
        except API_ERRORS as e:
            raise RolloutError(f"Failed to update image on {workload.namespace}/{workload.name}: {e}") from e

        logger.info("Image updated", deployment=workload.name, container=container, image=image)

    def wait_for_convergence(self, workload: WorkloadRef, timeout: float) -> bool:
        def probe() -> bool:
            try:
                deployment = self.apps.read_namespaced_deployment_status(workload.name, workload.namespace)
            except API_ERRORS as e:
                logger.warning("Failed to read rollout status", deployment=workload.name, error=str(e))
                return False
            return is_converged(deployment)

        return bool(
            poll_until(probe, timeout=timeout, interval=self.poll_interval, clock=self.clock, sleep=self.sleep)
        )

    def collect_diagnostics(self, workload: WorkloadRef) -> list[DiagnosticCapture]:
        """Capture the diagnostic bundle in fixed order.

        Each step is guarded on its own so a failing capture never prevents
        the ones after it.
        """
        steps: list[tuple[str, Callable[[WorkloadRef], Any]]] = [
            ("deployment_summary", self._deployment_summary),
            ("deployment_description", self._deployment_description),
            ("replica_sets", self._replica_sets),
            ("pods", self._pods),
            ("pod_descriptions", self._pod_descriptions),
            ("events", self._events),
        ]

        captures = []
        for step, capture in steps:
            try:
                captures.append(DiagnosticCapture(step=step, ok=True, output=capture(workload)))
            except Exception as e:
                logger.warning("Diagnostic capture failed", step=step, error=str(e))
                captures.append(DiagnosticCapture(step=step, ok=False, error=str(e)))
                continue
            logger.error("Rollout diagnostics", step=step, output=captures[-1].output)

        return captures

    def _read(self, workload: WorkloadRef) -> client.V1Deployment:
        return self.apps.read_namespaced_deployment(workload.name, workload.namespace)

    def _deployment_summary(self, workload: WorkloadRef) -> dict[str, Any]:
        deployment = self._read(workload)
        status = deployment.status
        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        return {
            "name": deployment.metadata.name,
            "ready": f"{status.ready_replicas or 0}/{desired}",
            "up_to_date": status.updated_replicas or 0,
            "available": status.available_replicas or 0,
        }

    def _deployment_description(self, workload: WorkloadRef) -> dict[str, Any]:
        return self._read(workload).to_dict()

    def _replica_sets(self, workload: WorkloadRef) -> list[dict[str, Any]]:
        selector = _selector(self._read(workload))
        replica_sets = self.apps.list_namespaced_replica_set(workload.namespace, label_selector=selector)
        return [
            {
                "name": rs.metadata.name,
                "desired": rs.spec.replicas,
                "current": rs.status.replicas or 0,
                "ready": rs.status.ready_replicas or 0,
                "images": [c.image for c in rs.spec.template.spec.containers],
            }
            for rs in replica_sets.items
        ]

    def _list_pods(self, workload: WorkloadRef) -> list[client.V1Pod]:
        selector = _selector(self._read(workload))
        return self.core.list_namespaced_pod(workload.namespace, label_selector=selector).items

    def _pods(self, workload: WorkloadRef) -> list[dict[str, Any]]:
        pods = []
        for pod in self._list_pods(workload):
            statuses = pod.status.container_statuses or []
            pods.append(
                {
                    "name": pod.metadata.name,
                    "phase": pod.status.phase,
                    "ready": f"{sum(1 for s in statuses if s.ready)}/{len(statuses)}",
                    "restarts": sum(s.restart_count or 0 for s in statuses),
                    "node": pod.spec.node_name if pod.spec else None,
                }
            )
        return pods

    def _pod_descriptions(self, workload: WorkloadRef) -> list[dict[str, Any]]:
        return [pod.to_dict() for pod in self._list_pods(workload)]

    def _events(self, workload: WorkloadRef) -> list[dict[str, Any]]:
        events = sorted(self.core.list_namespaced_event(workload.namespace).items, key=_event_timestamp)
        return [
            {
                "time": _event_timestamp(event).isoformat(),
                "type": event.type,
                "reason": event.reason,
                "object": f"{event.involved_object.kind}/{event.involved_object.name}",
                "message": event.message,
            }
            for event in (events[-self.event_limit:] if self.event_limit > 0 else [])
        ]

    def _write_bundle(self, attempt: RolloutAttempt) -> None:
        if self.diagnostics_dir is None:
            return
        try:
            self.diagnostics_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            path = self.diagnostics_dir / f"rollout-{attempt.workload.name}-{stamp}.json"
            path.write_text(json.dumps(attempt.model_dump(), indent=2, default=str))
            logger.info("Wrote rollout diagnostics", path=str(path))
        except OSError as e:
            logger.warning("Failed to write rollout diagnostics", error=str(e))
