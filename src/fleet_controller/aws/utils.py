"""AWS client management."""
import os
import threading
import boto3
import logging
from typing import Any, Dict, Optional, Tuple

from botocore.config import Config

from fleet_controller.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def client_config(settings: Settings) -> Config:
    """botocore config shared by every client.

    Launch tasks call EC2 from the launch pool, so the connection pool must
    be at least as large as the pool plus the sweep thread.
    """
    return Config(
        region_name=settings.aws_region,
        user_agent_extra=settings.app_name,
        max_pool_connections=max(10, settings.launch_workers + 2),
        retries={'max_attempts': 5, 'mode': 'standard'},
    )


class AWSClientManager:
    """Process-wide cache of AWS clients, built from settings."""
    _instance = None
    _instance_lock = threading.Lock()

    def __new__(cls):
        with cls._instance_lock:
            if cls._instance is None:
                instance = super(AWSClientManager, cls).__new__(cls)
                instance._initialize(get_settings())
                cls._instance = instance
        return cls._instance

    def _initialize(self, settings: Settings):
        self.settings = settings
        self.mode = settings.deployment_mode
        self.config = client_config(settings)
        self._clients: Dict[Tuple[str, str], Any] = {}
        self._clients_lock = threading.Lock()

        logger.info(
            f"Initializing AWSClientManager (mode: {self.mode}, region: {settings.aws_region}, "
            f"endpoint: {settings.aws_endpoint_url})"
        )

    def _session(self) -> boto3.Session:
        # SSO profiles only apply against real AWS
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            logger.debug(f"Using AWS profile: {aws_profile}")
            return boto3.Session(profile_name=aws_profile)

        return boto3.Session(
            aws_access_key_id=self.settings.aws_access_key_id,
            aws_secret_access_key=self.settings.aws_secret_access_key,
        )

    def get_client(self, service_name: str, region: Optional[str] = None) -> Any:
        """Get or create a client for a service, optionally in another region."""
        region = region or self.settings.aws_region
        key = (service_name, region)
        with self._clients_lock:
            if key in self._clients:
                return self._clients[key]

            client_kwargs: Dict[str, Any] = {'region_name': region, 'config': self.config}
            if self.settings.aws_endpoint_url and self.mode in ['local-dev', 'aws-mock']:
                client_kwargs['endpoint_url'] = self.settings.aws_endpoint_url

            try:
                client = self._session().client(service_name, **client_kwargs)
            except Exception as e:
                logger.error(f"Error creating {service_name} client in {region}: {str(e)}")
                raise

            self._clients[key] = client
            logger.debug(f"Created {service_name} client in {region}")
            return client

    def clear_clients(self):
        with self._clients_lock:
            self._clients.clear()

    @classmethod
    def reset(cls):
        """Forget the cached manager so the next use re-reads settings."""
        with cls._instance_lock:
            if cls._instance is not None:
                cls._instance.clear_clients()
            cls._instance = None


def get_ec2_client(region: Optional[str] = None):
    """Get the EC2 client."""
    return AWSClientManager().get_client('ec2', region)
