"""Kubernetes exposure and rollout.

This module applies manifests, exposes the workload behind a load
balancer with fallback, and verifies image rollouts.
"""

from src.cluster.client import API_ERRORS, KubeClients, load_kube_clients
from src.cluster.exposure import ExposureKind, ExposureManager, ExposureStrategy, ServiceEndpoint
from src.cluster.manifests import ManifestApplier, ManifestRole, ManifestSet, load_manifest
from src.cluster.polling import poll_until
from src.cluster.rollout import (
    DiagnosticCapture,
    RolloutAttempt,
    RolloutOutcome,
    RolloutVerifier,
    WorkloadRef,
)

__all__ = [
    # Clients
    "API_ERRORS",
    "KubeClients",
    "load_kube_clients",
    # Manifests
    "ManifestApplier",
    "ManifestRole",
    "ManifestSet",
    "load_manifest",
    # Exposure
    "ExposureKind",
    "ExposureManager",
    "ExposureStrategy",
    "ServiceEndpoint",
    # Rollout
    "DiagnosticCapture",
    "RolloutAttempt",
    "RolloutOutcome",
    "RolloutVerifier",
    "WorkloadRef",
    "poll_until",
]
