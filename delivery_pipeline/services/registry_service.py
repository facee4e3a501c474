"""
Service for container registry operations.

Handles the short-lived credential exchange with the registry, the docker
login that uses it, and lookups of existing images.

Author: Delivery Pipeline Team
"""

import base64
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from delivery_pipeline.exceptions import AuthFailed, SourceUnavailable
from delivery_pipeline.services.command_runner import CommandRunner
from delivery_pipeline.utils.aws_clients import AWSClientFactory
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)


class RegistryService:
    """
    Registry access for one repository.

    Example:
        >>> registry = RegistryService(aws, runner, "echo")
        >>> registry.authenticate()
        >>> registry.repository_uri
        '123456789012.dkr.ecr.us-east-1.amazonaws.com/echo'
    """

    def __init__(
        self,
        aws: AWSClientFactory,
        runner: CommandRunner,
        repository_name: str,
        account_id: Optional[str] = None,
    ):
        self.aws = aws
        self.runner = runner
        self.repository_name = repository_name
        self._account_id = account_id

    @property
    def region(self) -> str:
        return self.aws.region

    @property
    def account_id(self) -> str:
        """Account owning the registry, from settings or the caller identity."""
        if self._account_id is None:
            try:
                self._account_id = self.aws.sts().get_caller_identity()['Account']
            except (ClientError, BotoCoreError) as e:
                raise AuthFailed(
                    f"Unable to resolve account identity: {e}",
                    details={'region': self.region}
                ) from e
        return self._account_id

    @property
    def registry_host(self) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"

    @property
    def repository_uri(self) -> str:
        return f"{self.registry_host}/{self.repository_name}"

    def authenticate(self) -> str:
        """
        Exchange credentials for a registry token and log docker in.

        Returns:
            The registry endpoint logged into

        Raises:
            AuthFailed: If the token exchange or the login fails. Not retried here.
        """
        try:
            response = self.aws.ecr().get_authorization_token()
            auth_data = response['authorizationData'][0]
            username, password = base64.b64decode(
                auth_data['authorizationToken']
            ).decode().split(':', 1)
            endpoint = auth_data.get('proxyEndpoint') or f"https://{self.registry_host}"
        except (ClientError, BotoCoreError) as e:
            logger.error("Registry credential exchange failed", extra={'error': str(e)})
            raise AuthFailed(f"Registry credential exchange failed: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise AuthFailed(f"Malformed registry authorization data: {e}") from e

        result = self.runner.run(
            ['docker', 'login', '--username', username, '--password-stdin', endpoint],
            input=password,
            timeout=120,
        )
        if not result.ok:
            raise AuthFailed(
                f"docker login to {endpoint} failed",
                details={'exit_code': result.returncode, 'output': result.output_tail}
            )

        logger.info("Authenticated to registry", extra={'endpoint': endpoint})
        return endpoint

    def describe_image(self, tag: str) -> dict:
        """
        Look up an image by tag.

        Raises:
            SourceUnavailable: If the repository or tag cannot be read.
        """
        try:
            response = self.aws.ecr().describe_images(
                repositoryName=self.repository_name,
                imageIds=[{'imageTag': tag}],
            )
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise SourceUnavailable(
                f"Image {self.repository_name}:{tag} is not readable ({code})",
                details={'repository': self.repository_name, 'tag': tag, 'code': code}
            ) from e
        except BotoCoreError as e:
            raise SourceUnavailable(f"Registry unreachable: {e}") from e

        images = response.get('imageDetails', [])
        if not images:
            raise SourceUnavailable(
                f"Image {self.repository_name}:{tag} not found",
                details={'repository': self.repository_name, 'tag': tag}
            )
        return images[0]
