"""Deployment pipeline orchestrator.

Sequences backend provisioning, image publishing, service exposure and
rollout verification for a single run. Stages run strictly in order and a
fatal error aborts the remaining sequence.
"""

import time
from typing import Callable

import boto3
import structlog
from kubernetes import client
from pydantic import BaseModel, Field

from src.cluster.client import API_ERRORS, KubeClients, load_kube_clients
from src.cluster.exposure import ExposureManager, ServiceEndpoint
from src.cluster.manifests import (
    BASE_ROLES,
    DEFAULT_NAMESPACE,
    ManifestApplier,
    ManifestRole,
    ManifestSet,
)
from src.cluster.rollout import RolloutAttempt, RolloutVerifier, WorkloadRef
from src.common.config import Settings
from src.common.errors import DeploymentError
from src.common.logging import bind_run_context
from src.common.metrics import MetricsClient
from src.provisioning.backend import BackendProvisioner, BackendResource
from src.provisioning.identity import BuildIdentity, resolve_account, resolve_build_identity
from src.publishing.publisher import ImagePublisher

logger = structlog.get_logger()


class PipelineResult(BaseModel):
    """Outcome of a pipeline run."""

    identity: BuildIdentity
    backend: list[BackendResource] = Field(default_factory=list)
    image: str | None = None
    first_deployment: bool | None = None
    endpoint: ServiceEndpoint | None = None
    rollout: RolloutAttempt | None = None


class PipelineController:
    """Run the deployment stages for one build."""

    def __init__(
        self,
        settings: Settings,
        session: boto3.session.Session | None = None,
        kube_clients: KubeClients | None = None,
        metrics: MetricsClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize controller.

        Args:
            settings: Pipeline settings
            session: boto3 session shared by all AWS clients
            kube_clients: Kubernetes API clients (loaded on first use if omitted)
            metrics: Metrics client
            clock: Monotonic clock for polling
            sleep: Sleep function for polling
        """
        self.settings = settings
        self.session = session or boto3.session.Session(
            profile_name=settings.aws_profile,
            region_name=settings.aws_region,
        )
        self._kube = kube_clients
        self.metrics = metrics or MetricsClient(enabled=False)
        self.clock = clock
        self.sleep = sleep

    @property
    def kube(self) -> KubeClients:
        if self._kube is None:
            self._kube = load_kube_clients(self.settings.kube_context)
        return self._kube

    def resolve_identity(self) -> BuildIdentity:
        identity = resolve_build_identity(
            self.settings.revision,
            self.settings.build_number,
            region=self.settings.aws_region,
            session=self.session,
        )
        bind_run_context(account=identity.account_id, region=identity.region, tag=identity.tag)
        return identity

    def provisioner(self, account_id: str, region: str) -> BackendProvisioner:
        return BackendProvisioner(
            account_id=account_id,
            region=region,
            session=self.session,
            wait_attempts=self.settings.bucket_wait_attempts,
            wait_interval=self.settings.bucket_wait_interval,
            sleep=self.sleep,
        )

    def publisher(self) -> ImagePublisher:
        return ImagePublisher(
            repository=self.settings.ecr_repository,
            context=self.settings.docker_context,
            dockerfile=self.settings.dockerfile,
            session=self.session,
            scan_enabled=self.settings.scan_enabled,
            scan_command=self.settings.scan_command,
        )

    def applier(self) -> ManifestApplier:
        return ManifestApplier(self.kube.core, self.kube.apps)

    def exposure_manager(self) -> ExposureManager:
        return ExposureManager(
            self.applier(),
            self.kube.core,
            interval=self.settings.exposure_poll_interval,
            deadline=self.settings.exposure_deadline,
            clock=self.clock,
            sleep=self.sleep,
            metrics=self.metrics,
        )

    def rollout_verifier(self) -> RolloutVerifier:
        return RolloutVerifier(
            self.kube.apps,
            self.kube.core,
            poll_interval=self.settings.rollout_poll_interval,
            event_limit=self.settings.diagnostics_event_limit,
            diagnostics_dir=self.settings.diagnostics_dir,
            clock=self.clock,
            sleep=self.sleep,
            metrics=self.metrics,
        )

    def manifest_set(self) -> ManifestSet:
        s = self.settings
        if s.manifest_dir is None:
            raise ValueError("No manifest directory configured")
        return ManifestSet.from_directory(
            s.manifest_dir,
            {
                ManifestRole.NAMESPACE: s.namespace_manifest,
                ManifestRole.CONFIG: s.config_manifest,
                ManifestRole.SECRET: s.secret_manifest,
                ManifestRole.WORKLOAD: s.workload_manifest,
                ManifestRole.PRIMARY_SERVICE: s.primary_service_manifest,
                ManifestRole.SECONDARY_SERVICE: s.secondary_service_manifest,
            },
        )

    def workload_ref(self, manifests: ManifestSet) -> WorkloadRef | None:
        workload = manifests.workload()
        if workload is None:
            return None
        metadata = workload["metadata"]
        return WorkloadRef(
            namespace=metadata.get("namespace", DEFAULT_NAMESPACE),
            name=metadata["name"],
            container=self.settings.container_name,
        )

    def bootstrap(self, account_id: str | None = None, region: str | None = None) -> list[BackendResource]:
        """Ensure the Terraform state bucket and lock table exist."""
        if account_id is None or region is None:
            account_id, region = resolve_account(region or self.settings.aws_region, self.session)

        provisioner = self.provisioner(account_id, region)
        return [
            provisioner.ensure_backend(self.settings.state_bucket, region),
            provisioner.ensure_lock_table(self.settings.lock_table, region),
        ]

    def deploy(self, image: str, result: PipelineResult) -> PipelineResult:
        """Apply manifests, then expose (first deployment) or roll out (update).

        Args:
            image: Published image reference
            result: Result to record stage outcomes on

        Returns:
            The updated result
        """
        manifests = self.manifest_set()
        applier = self.applier()
        workload = self.workload_ref(manifests)

        first = workload is None or not self._workload_exists(workload)
        result.first_deployment = first
        logger.info("Deploying", first_deployment=first, manifest_dir=str(manifests.directory))

        try:
            for role in BASE_ROLES:
                applier.apply_role(manifests, role)
            if first:
                applier.apply_role(manifests, ManifestRole.WORKLOAD, image=image, container=self.settings.container_name)
        except API_ERRORS as e:
            raise DeploymentError(f"Failed to apply manifests: {e}") from e

        if first:
            result.endpoint = self.exposure_manager().expose_service(manifests)
        else:
            result.rollout = self.rollout_verifier().rollout(
                workload, image, timeout=self.settings.rollout_timeout
            )
        return result

    def run(self) -> PipelineResult:
        """Run all stages in order.

        Raises:
            DeploymentError: On any fatal stage failure
        """
        try:
            with self.metrics.time_stage("identity"):
                identity = self.resolve_identity()
            result = PipelineResult(identity=identity)

            with self.metrics.time_stage("provision"):
                result.backend = self.bootstrap(identity.account_id, identity.region)

            with self.metrics.time_stage("publish"):
                result.image = self.publisher().publish(identity)

            if self.settings.manifest_dir is None:
                logger.info("No manifest directory configured; skipping deployment")
                return result

            with self.metrics.time_stage("deploy"):
                self.deploy(result.image, result)

            if result.endpoint is not None and not result.endpoint.resolved:
                logger.warning("Pipeline finished with unresolved service exposure")
            logger.info("Pipeline finished", image=result.image)
            return result
        finally:
            self.metrics.push()

    def _workload_exists(self, workload: WorkloadRef) -> bool:
        try:
            self.kube.apps.read_namespaced_deployment(workload.name, workload.namespace)
            return True
        except client.ApiException as e:
            if e.status == 404:
                return False
            raise DeploymentError(
                f"Failed to look up deployment {workload.namespace}/{workload.name}: {e.reason}"
            ) from e
