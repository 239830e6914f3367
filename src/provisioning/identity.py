"""Build identity resolution.

The build identity (account, region, image tag) is derived once per run
and never changes afterwards.
"""

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict

from src.common.errors import ProvisionError

logger = structlog.get_logger()

TAG_LENGTH = 7


class BuildIdentity(BaseModel):
    """Immutable identifiers shared by every stage of a run."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    region: str
    tag: str


def derive_tag(revision: str | None, build_number: int | None) -> str:
    """Derive the deterministic image tag.

    Args:
        revision: Source revision identifier (commit SHA)
        build_number: Ordinal build counter

    Returns:
        First 7 characters of the revision when it has at least 7
        characters, otherwise the build counter.

    Raises:
        ValueError: If neither input yields a tag
    """
    if revision and len(revision) >= TAG_LENGTH:
        return revision[:TAG_LENGTH]
    if build_number is None:
        raise ValueError("No revision of at least 7 characters and no build number available")
    return str(build_number)


def resolve_account(
    region: str | None = None,
    session: boto3.session.Session | None = None,
) -> tuple[str, str]:
    """Resolve the AWS account and region through an STS identity lookup.

    Args:
        region: Explicit region; falls back to the session region
        session: boto3 session (a default session is created if omitted)

    Returns:
        (account_id, region)

    Raises:
        ProvisionError: If the account or region cannot be resolved
    """
    session = session or boto3.session.Session()
    region = region or session.region_name
    if not region:
        raise ProvisionError("AWS region could not be resolved")

    try:
        identity = session.client("sts", region_name=region).get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise ProvisionError(f"AWS account identity could not be resolved: {e}") from e

    account_id = identity.get("Account")
    if not account_id:
        raise ProvisionError("AWS account identity could not be resolved")
    return account_id, region


def resolve_build_identity(
    revision: str | None,
    build_number: int | None,
    region: str | None = None,
    session: boto3.session.Session | None = None,
) -> BuildIdentity:
    """Resolve the full build identity for a run.

    Raises:
        ProvisionError: If the account, region or tag cannot be resolved
    """
    account_id, region = resolve_account(region, session)

    try:
        tag = derive_tag(revision, build_number)
    except ValueError as e:
        raise ProvisionError(str(e)) from e

    logger.info("Resolved build identity", account=account_id, region=region, tag=tag)
    return BuildIdentity(account_id=account_id, region=region, tag=tag)
