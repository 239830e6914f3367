"""Common utilities module."""

from src.common.config import Settings, get_settings
from src.common.errors import (
    CommandError,
    DeploymentError,
    ProvisionError,
    PublishError,
    RolloutError,
)
from src.common.logging import bind_run_context, get_logger, setup_logging
from src.common.metrics import MetricsClient, get_metrics_client

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "bind_run_context",
    "get_logger",
    "MetricsClient",
    "get_metrics_client",
    "CommandError",
    "DeploymentError",
    "ProvisionError",
    "PublishError",
    "RolloutError",
]
