"""Pipeline error taxonomy.

Fatal conditions derive from ``DeploymentError`` and abort the run.
Exposure non-resolution and scan findings are not errors; they are
reported through logs and metrics only.
"""

from typing import Any


class DeploymentError(Exception):
    """Base class for fatal pipeline errors."""

    stage = "pipeline"


class ProvisionError(DeploymentError):
    """Identity unresolved or backend resource unreachable after retries."""

    stage = "provision"


class PublishError(DeploymentError):
    """Registry authentication, image build or push failed."""

    stage = "publish"


class RolloutError(DeploymentError):
    """Workload did not converge within its timeout.

    Attributes:
        diagnostics: Ordered diagnostic captures taken before failing
    """

    stage = "rollout"

    def __init__(self, message: str, diagnostics: list[Any] | None = None):
        super().__init__(message)
        self.diagnostics = diagnostics or []


class CommandError(Exception):
    """External command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = ""):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{args[0]} exited with status {returncode}: {stderr.strip()}")
