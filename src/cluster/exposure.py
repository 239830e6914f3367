"""Service exposure with load balancer fallback.

Some environments support one load balancer type but not another. The
primary Service manifest is applied first; if no external address appears
before the deadline, the secondary manifest is applied and polled once.
Failing both leaves the deployment running but unexposed, which is reported
and left to an operator.
"""

import time
from enum import Enum
from typing import Any, Callable

import structlog
import yaml
from kubernetes import client
from pydantic import BaseModel, Field

from src.cluster.client import API_ERRORS
from src.cluster.manifests import DEFAULT_NAMESPACE, ManifestApplier, ManifestRole, ManifestSet
from src.cluster.polling import poll_until
from src.common.metrics import MetricsClient

logger = structlog.get_logger()

POLL_INTERVAL_SECONDS = 15.0
DEADLINE_SECONDS = 360.0


class ExposureKind(str, Enum):
    """Exposure strategies in attempt order."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


ROLE_BY_KIND = {
    ExposureKind.PRIMARY: ManifestRole.PRIMARY_SERVICE,
    ExposureKind.SECONDARY: ManifestRole.SECONDARY_SERVICE,
}


class ServiceEndpoint(BaseModel):
    """Result of a service exposure.

    Attributes:
        kind: Strategy that resolved the address (None when unresolved)
        hostname: External hostname or IP
        deadline_seconds: Per-attempt poll deadline
        attempts: Strategies applied, in order
    """

    kind: ExposureKind | None = None
    hostname: str | None = None
    deadline_seconds: float = DEADLINE_SECONDS
    attempts: list[ExposureKind] = Field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.hostname is not None


class ExposureStrategy:
    """One load balancer type: apply its manifest, then poll for an address."""

    def __init__(
        self,
        kind: ExposureKind,
        documents: list[dict[str, Any]],
        applier: ManifestApplier,
        core_api: client.CoreV1Api,
        interval: float = POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kind = kind
        self.documents = documents
        self.applier = applier
        self.core = core_api
        self.interval = interval
        self.clock = clock
        self.sleep = sleep

        service = next((doc for doc in documents if doc.get("kind") == "Service"), None)
        if service is None:
            raise ValueError(f"{kind.value} exposure manifest contains no Service")
        self.service_name = service["metadata"]["name"]
        self.namespace = service["metadata"].get("namespace", applier.default_namespace or DEFAULT_NAMESPACE)

    def apply(self) -> None:
        """Apply the manifest; a live Service of the same name is replaced, not merged."""
        for document in self.documents:
            self.applier.apply(document, replace=document.get("kind") == "Service")

    def resolve_hostname(self) -> str | None:
        """Current external address of the Service, if any."""
        try:
            service = self.core.read_namespaced_service(self.service_name, self.namespace)
        except API_ERRORS as e:
            logger.debug("Service not readable yet", service=self.service_name, error=str(e))
            return None

        load_balancer = service.status.load_balancer if service.status else None
        for ingress in (load_balancer.ingress if load_balancer else None) or []:
            address = ingress.hostname or ingress.ip
            if address:
                return address
        return None

    def poll(self, deadline: float) -> str | None:
        """Poll for an external address until ``deadline`` seconds elapse."""
        return poll_until(
            self.resolve_hostname,
            timeout=deadline,
            interval=self.interval,
            clock=self.clock,
            sleep=self.sleep,
        )


class ExposureManager:
    """Attempt exposure strategies in order until one resolves."""

    def __init__(
        self,
        applier: ManifestApplier,
        core_api: client.CoreV1Api,
        interval: float = POLL_INTERVAL_SECONDS,
        deadline: float = DEADLINE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics: MetricsClient | None = None,
    ):
        self.applier = applier
        self.core = core_api
        self.interval = interval
        self.deadline = deadline
        self.clock = clock
        self.sleep = sleep
        self.metrics = metrics or MetricsClient(enabled=False)

    def strategies_for(self, manifests: ManifestSet) -> list[ExposureStrategy]:
        """Strategies for the Service manifests present, primary first.

        A secondary manifest without a primary is the sole attempt. A manifest
        that cannot be used is logged and skipped.
        """
        strategies = []
        for kind in ExposureKind:
            role = ROLE_BY_KIND[kind]
            if not manifests.has(role):
                continue
            try:
                strategies.append(
                    ExposureStrategy(
                        kind,
                        manifests.documents(role),
                        self.applier,
                        self.core,
                        interval=self.interval,
                        clock=self.clock,
                        sleep=self.sleep,
                    )
                )
            except (ValueError, KeyError, OSError, yaml.YAMLError) as e:
                logger.error("Skipping unusable exposure manifest", kind=kind.value, error=str(e))
                self.metrics.record_exposure(kind.value, False)
        return strategies

    def expose_service(self, manifests: ManifestSet, deadline: float | None = None) -> ServiceEndpoint:
        """Expose the workload and wait for an externally resolvable address.

        Args:
            manifests: Manifest set holding the Service manifests
            deadline: Per-attempt deadline in seconds

        Returns:
            ServiceEndpoint; ``resolved`` is False when no attempt produced
            an address. Non-resolution is not an error.
        """
        deadline = self.deadline if deadline is None else deadline
        endpoint = ServiceEndpoint(deadline_seconds=deadline)

        for strategy in self.strategies_for(manifests):
            endpoint.attempts.append(strategy.kind)
            log = logger.bind(kind=strategy.kind.value, service=strategy.service_name)

            try:
                strategy.apply()
            except API_ERRORS + (ValueError,) as e:
                log.error("Failed to apply exposure manifest", error=str(e))
                self.metrics.record_exposure(strategy.kind.value, False)
                continue

            log.info("Waiting for external address", deadline=deadline, interval=strategy.interval)
            hostname = strategy.poll(deadline)
            self.metrics.record_exposure(strategy.kind.value, hostname is not None)

            if hostname:
                endpoint.kind = strategy.kind
                endpoint.hostname = hostname
                log.info("Service exposed", hostname=hostname)
                return endpoint

            log.warning("No external address before deadline", deadline=deadline)

        logger.warning(
            "Service exposure unresolved; manual intervention required",
            attempts=[kind.value for kind in endpoint.attempts],
        )
        return endpoint
