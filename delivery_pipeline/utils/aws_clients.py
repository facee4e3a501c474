"""AWS client creation and caching."""

import threading
from typing import Any, Dict, Optional

import boto3

from delivery_pipeline.config.settings import AWSSettings
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientFactory:
    """
    Creates and caches boto3 clients for one AWS configuration.

    boto3 clients are thread-safe once created; creation itself goes
    through a lock because the underlying session is not.
    """

    def __init__(self, settings: AWSSettings):
        self.settings = settings
        self.region = settings.region
        self._clients: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._session: Optional[boto3.session.Session] = None

        logger.info("Initializing AWSClientFactory", extra={
            'region': self.region,
            'endpoint_url': settings.endpoint_url,
            'profile': settings.profile,
        })

    def _get_session(self) -> boto3.session.Session:
        if self._session is None:
            if self.settings.profile:
                self._session = boto3.session.Session(profile_name=self.settings.profile)
            else:
                self._session = boto3.session.Session()
        return self._session

    def get_client(self, service_name: str) -> Any:
        """Get or create a client for an AWS service."""
        with self._lock:
            if service_name in self._clients:
                return self._clients[service_name]

            client_kwargs = {'region_name': self.region}
            if self.settings.endpoint_url:
                client_kwargs['endpoint_url'] = self.settings.endpoint_url

            client = self._get_session().client(service_name, **client_kwargs)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client")
            return client

    def ecr(self):
        return self.get_client('ecr')

    def ecs(self):
        return self.get_client('ecs')

    def elbv2(self):
        return self.get_client('elbv2')

    def sts(self):
        return self.get_client('sts')
