"""Test fixtures for cluster tests."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml
from kubernetes import client

NAMESPACE_MANIFEST = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}}

CONFIG_MANIFEST = {
    "apiVersion": "v1",
    "kind": "ConfigMap",
    "metadata": {"name": "web-config", "namespace": "web"},
    "data": {"LISTEN_PORT": "8080"},
}

SECRET_MANIFEST = {
    "apiVersion": "v1",
    "kind": "Secret",
    "metadata": {"name": "web-secret", "namespace": "web"},
    "stringData": {"API_KEY": "changeme"},
}

DEPLOYMENT_MANIFEST = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "web-app", "namespace": "web"},
    "spec": {
        "replicas": 2,
        "selector": {"matchLabels": {"app": "web-app"}},
        "template": {
            "metadata": {"labels": {"app": "web-app"}},
            "spec": {"containers": [{"name": "nginx", "image": "nginx:stable", "ports": [{"containerPort": 8080}]}]},
        },
    },
}


def service_manifest(lb_type: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": "web-app",
            "namespace": "web",
            "annotations": {"service.beta.kubernetes.io/aws-load-balancer-type": lb_type},
        },
        "spec": {
            "type": "LoadBalancer",
            "selector": {"app": "web-app"},
            "ports": [{"port": 80, "targetPort": 8080}],
        },
    }


def write_manifest(directory: Path, name: str, *documents: dict) -> Path:
    path = directory / name
    path.write_text(yaml.safe_dump_all(documents))
    return path


@pytest.fixture
def manifest_dir(tmp_path):
    """Manifest directory with every role present."""
    write_manifest(tmp_path, "namespace.yaml", NAMESPACE_MANIFEST)
    write_manifest(tmp_path, "configmap.yaml", CONFIG_MANIFEST)
    write_manifest(tmp_path, "secret.yaml", SECRET_MANIFEST)
    write_manifest(tmp_path, "deployment.yaml", DEPLOYMENT_MANIFEST)
    write_manifest(tmp_path, "service-nlb.yaml", service_manifest("nlb"))
    write_manifest(tmp_path, "service-clb.yaml", service_manifest("clb"))
    return tmp_path


@pytest.fixture
def file_names():
    """Default manifest file names per role."""
    from src.cluster.manifests import ManifestRole

    return {
        ManifestRole.NAMESPACE: "namespace.yaml",
        ManifestRole.CONFIG: "configmap.yaml",
        ManifestRole.SECRET: "secret.yaml",
        ManifestRole.WORKLOAD: "deployment.yaml",
        ManifestRole.PRIMARY_SERVICE: "service-nlb.yaml",
        ManifestRole.SECONDARY_SERVICE: "service-clb.yaml",
    }


@pytest.fixture
def core_api():
    """Mock CoreV1Api client."""
    return MagicMock(spec=client.CoreV1Api)


@pytest.fixture
def apps_api():
    """Mock AppsV1Api client."""
    return MagicMock(spec=client.AppsV1Api)


def make_service(hostname: str | None = None, ip: str | None = None) -> client.V1Service:
    ingress = [client.V1LoadBalancerIngress(hostname=hostname, ip=ip)] if hostname or ip else None
    return client.V1Service(
        metadata=client.V1ObjectMeta(name="web-app", namespace="web"),
        status=client.V1ServiceStatus(load_balancer=client.V1LoadBalancerStatus(ingress=ingress)),
    )


def make_deployment(
    replicas: int = 2,
    ready: int = 0,
    updated: int = 0,
    available: int = 0,
    total: int | None = None,
    generation: int = 2,
    observed: int = 2,
    unavailable: int | None = None,
) -> client.V1Deployment:
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name="web-app", namespace="web", generation=generation),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": "web-app"}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": "web-app"}),
                spec=client.V1PodSpec(containers=[client.V1Container(name="nginx", image="nginx:stable")]),
            ),
        ),
        status=client.V1DeploymentStatus(
            replicas=updated if total is None else total,
            ready_replicas=ready,
            updated_replicas=updated,
            available_replicas=available,
            observed_generation=observed,
            unavailable_replicas=unavailable,
        ),
    )


@pytest.fixture
def service_factory():
    return make_service


@pytest.fixture
def deployment_factory():
    return make_deployment


@pytest.fixture
def namespace_manifest():
    return NAMESPACE_MANIFEST


@pytest.fixture
def secret_manifest():
    return SECRET_MANIFEST


@pytest.fixture
def deployment_manifest():
    return DEPLOYMENT_MANIFEST
