"""Kubernetes manifest loading and application.

Manifests are applied with create-or-patch semantics: an existing object is
patched in place, a missing one is created. Callers that must not inherit
fields from the live object can replace it instead of patching.
"""

import copy
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml
from kubernetes import client
from pydantic import BaseModel

from src.common.errors import DeploymentError

logger = structlog.get_logger()

DEFAULT_NAMESPACE = "default"


class ManifestRole(str, Enum):
    """Manifest roles in application order."""

    NAMESPACE = "namespace"
    CONFIG = "config"
    SECRET = "secret"
    WORKLOAD = "workload"
    PRIMARY_SERVICE = "primary_service"
    SECONDARY_SERVICE = "secondary_service"


BASE_ROLES = (ManifestRole.NAMESPACE, ManifestRole.CONFIG, ManifestRole.SECRET)


def load_manifest(path: str | Path) -> list[dict[str, Any]]:
    """Load all YAML documents from a manifest file, skipping empty ones."""
    with open(path) as f:
        return [doc for doc in yaml.safe_load_all(f) if doc]


class ManifestSet(BaseModel):
    """Manifest files found in a manifest directory, keyed by role."""

    directory: Path
    files: dict[ManifestRole, Path] = {}

    @classmethod
    def from_directory(cls, directory: str | Path, file_names: dict[ManifestRole, str]) -> "ManifestSet":
        """Collect the manifests present in ``directory``.

        Args:
            directory: Manifest directory
            file_names: File name per role

        Returns:
            ManifestSet with only the files that exist
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Manifest directory not found: {directory}")

        files = {}
        for role in ManifestRole:
            path = directory / file_names[role]
            if path.is_file():
                files[role] = path

        logger.debug("Discovered manifests", directory=str(directory), roles=[r.value for r in files])
        return cls(directory=directory, files=files)

    def has(self, role: ManifestRole) -> bool:
        return role in self.files

    def documents(self, role: ManifestRole) -> list[dict[str, Any]]:
        if role not in self.files:
            return []
        return load_manifest(self.files[role])

    def workload(self) -> dict[str, Any] | None:
        """First Deployment document of the workload manifest."""
        for doc in self.documents(ManifestRole.WORKLOAD):
            if doc.get("kind") == "Deployment":
                return doc
        return None


def with_image(document: dict[str, Any], image: str, container: str | None = None) -> dict[str, Any]:
    """Return a copy of a Deployment document with its container image set.

    Args:
        document: Deployment manifest
        image: Image reference to inject
        container: Container name; all containers are updated if omitted

    Raises:
        DeploymentError: If no container would receive the image
    """
    document = copy.deepcopy(document)
    containers = document.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [])
    targets = [item for item in containers if container is None or item.get("name") == container]
    if not targets:
        name = document.get("metadata", {}).get("name")
        raise DeploymentError(
            f"Deployment {name} has no container {container!r}" if container else f"Deployment {name} has no containers"
        )
    for item in targets:
        item["image"] = image
    return document


class ManifestApplier:
    """Create-or-patch application of supported manifest kinds."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        default_namespace: str = DEFAULT_NAMESPACE,
    ):
        self.core = core_api
        self.apps = apps_api
        self.default_namespace = default_namespace

    def _operations(self, kind: str):
        """Read, patch, replace and create callables for a kind, plus whether it is namespaced."""
        table = {
            "Namespace": (
                self.core.read_namespace,
                self.core.patch_namespace,
                self.core.replace_namespace,
                self.core.create_namespace,
                False,
            ),
            "ConfigMap": (
                self.core.read_namespaced_config_map,
                self.core.patch_namespaced_config_map,
                self.core.replace_namespaced_config_map,
                self.core.create_namespaced_config_map,
                True,
            ),
            "Secret": (
                self.core.read_namespaced_secret,
                self.core.patch_namespaced_secret,
                self.core.replace_namespaced_secret,
                self.core.create_namespaced_secret,
                True,
            ),
            "Service": (
                self.core.read_namespaced_service,
                self.core.patch_namespaced_service,
                self.core.replace_namespaced_service,
                self.core.create_namespaced_service,
                True,
            ),
            "Deployment": (
                self.apps.read_namespaced_deployment,
                self.apps.patch_namespaced_deployment,
                self.apps.replace_namespaced_deployment,
                self.apps.create_namespaced_deployment,
                True,
            ),
        }
        if kind not in table:
            raise ValueError(f"Unsupported manifest kind: {kind}")
        return table[kind]

    def apply(self, document: dict[str, Any], replace: bool = False) -> str:
        """Apply a single manifest document.

        Args:
            document: Parsed manifest
            replace: Replace an existing object instead of patching it, so
                fields absent from the manifest (annotations included) are
                dropped rather than kept

        Returns:
            "created", "configured" or "replaced"
        """
        kind = document.get("kind", "")
        name = document["metadata"]["name"]
        read, patch, replace_object, create, namespaced = self._operations(kind)
        namespace = document["metadata"].get("namespace", self.default_namespace)
        scope = (namespace,) if namespaced else ()
        log = logger.bind(kind=kind, name=name, namespace=namespace if namespaced else None)

        try:
            existing = read(name, *scope)
        except client.ApiException as e:
            if e.status != 404:
                raise
            create(*scope, document)
            log.info("Created resource")
            return "created"

        if replace:
            replace_object(name, *scope, replacement_body(document, existing))
            log.info("Replaced resource")
            return "replaced"

        patch(name, *scope, document)
        log.info("Configured resource")
        return "configured"

    def apply_role(
        self,
        manifests: ManifestSet,
        role: ManifestRole,
        image: str | None = None,
        container: str | None = None,
    ) -> list[str]:
        """Apply every document of a role, injecting the image into Deployments."""
        results = []
        for document in manifests.documents(role):
            if image and document.get("kind") == "Deployment":
                document = with_image(document, image, container)
            results.append(self.apply(document))
        return results


def replacement_body(document: dict[str, Any], existing: Any) -> dict[str, Any]:
    """Manifest carrying the fields a full replace must keep from the live object.

    The resource version guards against concurrent writers; a Service's
    cluster IP is immutable and must be echoed back.
    """
    body = copy.deepcopy(document)
    metadata = getattr(existing, "metadata", None)
    if metadata is not None and metadata.resource_version:
        body["metadata"]["resourceVersion"] = metadata.resource_version

    spec = getattr(existing, "spec", None)
    if document.get("kind") == "Service" and spec is not None:
        body.setdefault("spec", {})
        if spec.cluster_ip and "clusterIP" not in body["spec"]:
            body["spec"]["clusterIP"] = spec.cluster_ip
        cluster_ips = getattr(spec, "cluster_ips", None) or getattr(spec, "cluster_i_ps", None)
        if cluster_ips and "clusterIPs" not in body["spec"]:
            body["spec"]["clusterIPs"] = list(cluster_ips)
    return body
