"""Kubernetes API client loading."""

from typing import NamedTuple

import structlog
from kubernetes import client, config
from urllib3.exceptions import HTTPError

logger = structlog.get_logger()

# Failures of a single API call: rejected by the server or lost in transport.
API_ERRORS = (client.ApiException, HTTPError, OSError)


class KubeClients(NamedTuple):
    """Typed API groups used by the pipeline."""

    core: client.CoreV1Api
    apps: client.AppsV1Api


def load_kube_clients(context: str | None = None) -> KubeClients:
    """Load cluster credentials and build API clients.

    In-cluster service account credentials are preferred; the local
    kubeconfig is used otherwise.

    Args:
        context: kubeconfig context (ignored in-cluster)

    Returns:
        KubeClients with CoreV1Api and AppsV1Api
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config(context=context)
        logger.debug("Loaded kubeconfig", context=context)

    return KubeClients(core=client.CoreV1Api(), apps=client.AppsV1Api())
