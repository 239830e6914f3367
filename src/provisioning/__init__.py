"""Terraform backend provisioning and build identity."""

from src.provisioning.backend import (
    BackendProvisioner,
    BackendResource,
    ResourceKind,
    ResourceState,
)
from src.provisioning.identity import (
    BuildIdentity,
    derive_tag,
    resolve_account,
    resolve_build_identity,
)

__all__ = [
    "BackendProvisioner",
    "BackendResource",
    "ResourceKind",
    "ResourceState",
    "BuildIdentity",
    "derive_tag",
    "resolve_account",
    "resolve_build_identity",
]
