"""Test fixtures for pipeline tests."""

from unittest.mock import MagicMock

import pytest
import yaml
from kubernetes import client

from src.cluster.client import KubeClients
from src.common.config import Settings
from src.provisioning.identity import BuildIdentity

IMAGE = "123456789012.dkr.ecr.us-west-2.amazonaws.com/web-app:a1b2c3d"


@pytest.fixture
def deploy_manifests(tmp_path):
    """Minimal manifest directory: namespace, workload and primary Service."""
    documents = {
        "namespace.yaml": {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "web"}},
        "deployment.yaml": {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "web-app", "namespace": "web"},
            "spec": {
                "replicas": 2,
                "selector": {"matchLabels": {"app": "web-app"}},
                "template": {
                    "metadata": {"labels": {"app": "web-app"}},
                    "spec": {"containers": [{"name": "nginx", "image": "nginx:stable"}]},
                },
            },
        },
        "service-nlb.yaml": {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web-app", "namespace": "web"},
            "spec": {"type": "LoadBalancer", "ports": [{"port": 80, "targetPort": 8080}]},
        },
    }
    for name, document in documents.items():
        (tmp_path / name).write_text(yaml.safe_dump(document))
    return tmp_path


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        aws_region="us-west-2",
        revision="a1b2c3d4e5",
        state_bucket="tf-state",
        lock_table="tf-locks",
    )


@pytest.fixture
def identity():
    return BuildIdentity(account_id="123456789012", region="us-west-2", tag="a1b2c3d")


@pytest.fixture
def kube_clients():
    return KubeClients(core=MagicMock(spec=client.CoreV1Api), apps=MagicMock(spec=client.AppsV1Api))


@pytest.fixture
def image():
    return IMAGE
