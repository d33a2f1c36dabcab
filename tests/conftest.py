import boto3
import pytest
from moto import mock_aws

from fleet_controller.aws.utils import AWSClientManager
from fleet_controller.config.settings import get_settings
from tests.consts import TEST_REGION

pytest_plugins = ["tests.fixtures.fleet_fixtures"]


@pytest.fixture(autouse=True)
def fresh_settings():
    """Make every test read settings and clients from scratch."""
    get_settings.cache_clear()
    AWSClientManager.reset()
    yield
    get_settings.cache_clear()
    AWSClientManager.reset()


@pytest.fixture
def mocked_aws(monkeypatch):
    """Point boto3 at moto's in-memory AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)

    with mock_aws():
        yield


@pytest.fixture
def ec2_client(mocked_aws):
    return boto3.client("ec2", region_name=TEST_REGION)
