"""Test fixtures for provisioning tests."""

from unittest.mock import MagicMock

import pytest


@pytest.fixture
def aws_clients():
    """Mock S3, DynamoDB and STS clients."""
    return {
        "s3": MagicMock(),
        "dynamodb": MagicMock(),
        "sts": MagicMock(),
    }


@pytest.fixture
def aws_session(aws_clients):
    """Mock boto3 session handing out the mock clients."""
    session = MagicMock()
    session.region_name = "us-west-2"
    session.client.side_effect = lambda name, **kwargs: aws_clients[name]
    return session


@pytest.fixture
def provisioner(aws_session, fake_clock):
    """Provisioner with a small wait budget and fake sleep."""
    from src.provisioning.backend import BackendProvisioner

    return BackendProvisioner(
        account_id="123456789012",
        region="us-west-2",
        session=aws_session,
        wait_attempts=3,
        wait_interval=5.0,
        sleep=fake_clock.sleep,
    )
