"""Container image publishing to ECR.

Builds the image with the docker CLI, tags it with the deterministic build
tag and pushes it to the account's ECR registry.
"""

import base64
from pathlib import Path

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from src.common.commands import run_command
from src.common.errors import CommandError, PublishError
from src.provisioning.identity import BuildIdentity

logger = structlog.get_logger()


def registry_host(account_id: str, region: str) -> str:
    """ECR registry host for an account and region."""
    return f"{account_id}.dkr.ecr.{region}.amazonaws.com"


class ImagePublisher:
    """Build, tag and push the application image."""

    def __init__(
        self,
        repository: str,
        context: str | Path = ".",
        dockerfile: str | Path = "Dockerfile",
        session: boto3.session.Session | None = None,
        scan_enabled: bool = True,
        scan_command: str = "trivy",
    ):
        """Initialize publisher.

        Args:
            repository: ECR repository name
            context: Docker build context directory
            dockerfile: Dockerfile path
            session: boto3 session (a default session is created if omitted)
            scan_enabled: Run an informational vulnerability scan after push
            scan_command: Scanner executable
        """
        self.repository = repository
        self.context = Path(context)
        self.dockerfile = Path(dockerfile)
        self.session = session or boto3.session.Session()
        self.scan_enabled = scan_enabled
        self.scan_command = scan_command

    def local_reference(self, identity: BuildIdentity) -> str:
        return f"{self.repository}:{identity.tag}"

    def remote_reference(self, identity: BuildIdentity) -> str:
        host = registry_host(identity.account_id, identity.region)
        return f"{host}/{self.repository}:{identity.tag}"

    def publish(self, identity: BuildIdentity) -> str:
        """Build and push the image for this run.

        Args:
            identity: Build identity of the run

        Returns:
            Fully qualified remote image reference

        Raises:
            PublishError: If authentication, build, tag or push fails
        """
        ecr = self.session.client("ecr", region_name=identity.region)
        local_ref = self.local_reference(identity)
        remote_ref = self.remote_reference(identity)

        self._ensure_repository(ecr)
        self._login(ecr, identity)

        try:
            logger.info("Building image", image=local_ref, context=str(self.context))
            run_command(
                ["docker", "build", "-t", local_ref, "-f", str(self.dockerfile), str(self.context)]
            )
            run_command(["docker", "tag", local_ref, remote_ref])
            logger.info("Pushing image", image=remote_ref)
            run_command(["docker", "push", remote_ref])
        except (CommandError, OSError) as e:
            raise PublishError(f"Failed to publish {remote_ref}: {e}") from e

        logger.info("Image published", image=remote_ref)

        if self.scan_enabled:
            self.scan(remote_ref)

        return remote_ref

    def scan(self, image: str) -> int | None:
        """Run a vulnerability scan; findings are informational only.

        Returns:
            Scanner exit code, or None if the scanner could not be started
        """
        try:
            result = run_command(
                [self.scan_command, "image", "--severity", "HIGH,CRITICAL", "--no-progress", image],
                check=False,
            )
        except OSError as e:
            logger.warning("Image scan skipped", scanner=self.scan_command, error=str(e))
            return None

        if result.stdout:
            logger.info("Image scan report", image=image, report=result.stdout)
        logger.info("Image scan finished", image=image, exit_code=result.returncode)
        return result.returncode

    def _ensure_repository(self, ecr) -> None:
        try:
            ecr.describe_repositories(repositoryNames=[self.repository])
            return
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "RepositoryNotFoundException":
                raise PublishError(f"Failed to look up repository {self.repository}: {e}") from e
        except BotoCoreError as e:
            raise PublishError(f"Failed to look up repository {self.repository}: {e}") from e

        logger.info("Creating ECR repository", repository=self.repository)
        try:
            ecr.create_repository(
                repositoryName=self.repository,
                imageScanningConfiguration={"scanOnPush": True},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "RepositoryAlreadyExistsException":
                raise PublishError(f"Failed to create repository {self.repository}: {e}") from e

    def _login(self, ecr, identity: BuildIdentity) -> None:
        """Exchange AWS credentials for a short-lived registry token."""
        try:
            auth = ecr.get_authorization_token()["authorizationData"][0]
        except (ClientError, BotoCoreError, KeyError, IndexError) as e:
            raise PublishError(f"Failed to obtain registry credentials: {e}") from e

        username, password = base64.b64decode(auth["authorizationToken"]).decode().split(":", 1)
        endpoint = auth.get("proxyEndpoint") or f"https://{registry_host(identity.account_id, identity.region)}"

        try:
            run_command(
                ["docker", "login", "--username", username, "--password-stdin", endpoint],
                input_text=password,
            )
        except (CommandError, OSError) as e:
            raise PublishError(f"Registry login failed: {e}") from e

        logger.info("Authenticated to registry", registry=endpoint)
