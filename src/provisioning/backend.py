"""Terraform remote state backend provisioning.

Ensures the S3 state bucket and the DynamoDB lock table exist. Both follow
the same check-then-create-then-wait pattern, so repeated runs against an
existing backend never issue a create call.
"""

from enum import Enum

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from pydantic import BaseModel
from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from src.common.errors import ProvisionError

logger = structlog.get_logger()

# Location constraint must be omitted in the default region.
DEFAULT_S3_REGION = "us-east-1"

MISSING_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}


class ResourceState(str, Enum):
    """Lifecycle state of a backend resource."""

    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"


class ResourceKind(str, Enum):
    """Backend resource kinds."""

    BUCKET = "bucket"
    LOCK_TABLE = "lock_table"


class BackendResource(BaseModel):
    """A shared backend resource and its observed state."""

    name: str
    kind: ResourceKind
    region: str
    state: ResourceState = ResourceState.ABSENT
    created: bool = False


class BackendProvisioner:
    """Idempotent bootstrap of the Terraform state bucket and lock table."""

    def __init__(
        self,
        account_id: str,
        region: str,
        session: boto3.session.Session | None = None,
        wait_attempts: int = 10,
        wait_interval: float = 5.0,
        sleep=None,
    ):
        """Initialize provisioner.

        Args:
            account_id: AWS account used to qualify the fallback bucket name
            region: AWS region for both resources
            session: boto3 session (a default session is created if omitted)
            wait_attempts: Existence checks after bucket creation
            wait_interval: Seconds between existence checks
            sleep: Sleep function used between checks
        """
        self.account_id = account_id
        self.region = region
        self.wait_attempts = wait_attempts
        self.wait_interval = wait_interval
        self._sleep = sleep

        session = session or boto3.session.Session()
        self.s3 = session.client("s3", region_name=region)
        self.dynamodb = session.client("dynamodb", region_name=region)

    def fallback_name(self, name: str) -> str:
        """Bucket name qualified by account for globally claimed names."""
        return f"{name}-{self.account_id}"

    def bucket_exists(self, name: str) -> bool:
        """Check whether the bucket exists and is reachable by this account."""
        try:
            self.s3.head_bucket(Bucket=name)
            return True
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in MISSING_BUCKET_CODES or code == "403":
                return False
            raise

    def ensure_backend(self, name: str, region: str | None = None) -> BackendResource:
        """Ensure the state bucket exists, creating it at most once.

        Args:
            name: Logical bucket name
            region: Region override (defaults to the provisioner region)

        Returns:
            Ready BackendResource with the bucket name actually in use

        Raises:
            ProvisionError: If the bucket cannot be created or never becomes
                reachable within the retry budget
        """
        region = region or self.region

        for candidate in (name, self.fallback_name(name)):
            if self._check_bucket(candidate):
                logger.info("State bucket already exists", bucket=candidate)
                return BackendResource(
                    name=candidate,
                    kind=ResourceKind.BUCKET,
                    region=region,
                    state=ResourceState.READY,
                )

        try:
            bucket = self._create_bucket(name, region)
        except ClientError as e:
            logger.warning(
                "Primary bucket name unavailable, using account-qualified name",
                bucket=name,
                error=str(e),
            )
            bucket = self.fallback_name(name)
            try:
                self._create_bucket(bucket, region)
            except ClientError as fallback_error:
                raise ProvisionError(
                    f"Failed to create state bucket {name} or {bucket}: {fallback_error}"
                ) from fallback_error

        self._harden_bucket(bucket)
        self._wait_for_bucket(bucket)

        logger.info("State bucket ready", bucket=bucket, region=region)
        return BackendResource(
            name=bucket,
            kind=ResourceKind.BUCKET,
            region=region,
            state=ResourceState.READY,
            created=True,
        )

    def ensure_lock_table(self, name: str, region: str | None = None) -> BackendResource:
        """Ensure the DynamoDB lock table exists and is ACTIVE.

        Args:
            name: Table name
            region: Region override (defaults to the provisioner region)

        Returns:
            Ready BackendResource for the table

        Raises:
            ProvisionError: If the table cannot be created or never becomes ACTIVE
        """
        region = region or self.region
        created = False

        status = self._table_status(name)
        if status is None:
            logger.info("Creating lock table", table=name)
            try:
                self.dynamodb.create_table(
                    TableName=name,
                    AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
                    KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
                    BillingMode="PAY_PER_REQUEST",
                )
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "ResourceInUseException":
                    raise ProvisionError(f"Failed to create lock table {name}: {e}") from e
            else:
                created = True
            status = "CREATING"

        if status != "ACTIVE":
            try:
                self.dynamodb.get_waiter("table_exists").wait(TableName=name)
            except WaiterError as e:
                raise ProvisionError(f"Lock table {name} did not become active: {e}") from e
        else:
            logger.info("Lock table already exists", table=name)

        return BackendResource(
            name=name,
            kind=ResourceKind.LOCK_TABLE,
            region=region,
            state=ResourceState.READY,
            created=created,
        )

    def _check_bucket(self, name: str) -> bool:
        try:
            return self.bucket_exists(name)
        except (ClientError, BotoCoreError) as e:
            raise ProvisionError(f"Failed to check state bucket {name}: {e}") from e

    def _table_status(self, name: str) -> str | None:
        try:
            response = self.dynamodb.describe_table(TableName=name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise ProvisionError(f"Failed to describe lock table {name}: {e}") from e
        return response["Table"]["TableStatus"]

    def _create_bucket(self, name: str, region: str) -> str:
        logger.info("Creating state bucket", bucket=name, region=region)
        kwargs: dict = {"Bucket": name}
        if region != DEFAULT_S3_REGION:
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self.s3.create_bucket(**kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "BucketAlreadyOwnedByYou":
                raise
        return name

    def _harden_bucket(self, name: str) -> None:
        """Enable versioning and block all public access."""
        try:
            self.s3.put_bucket_versioning(
                Bucket=name,
                VersioningConfiguration={"Status": "Enabled"},
            )
            self.s3.put_public_access_block(
                Bucket=name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        except ClientError as e:
            raise ProvisionError(f"Failed to harden state bucket {name}: {e}") from e

    def _wait_for_bucket(self, name: str) -> None:
        retry_kwargs = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep

        retrying = Retrying(
            stop=stop_after_attempt(self.wait_attempts),
            wait=wait_fixed(self.wait_interval),
            retry=retry_if_result(lambda exists: not exists),
            **retry_kwargs,
        )
        try:
            retrying(self.bucket_exists, name)
        except RetryError as e:
            raise ProvisionError(
                f"State bucket {name} not reachable after {self.wait_attempts} checks"
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise ProvisionError(f"Failed to verify state bucket {name}: {e}") from e
