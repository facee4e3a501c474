"""
Artifact source adapter.

Resolves "what changed" into a ``SourceReference``: a commit on the pinned
branch of a Git repository, or the image currently tagged ``latest`` in a
registry repository. The variant is chosen by configuration when the
service is built and never changes per run.

Author: Delivery Pipeline Team
"""

import re
from typing import Optional

from delivery_pipeline.config.settings import SourceKind, SourceSettings
from delivery_pipeline.exceptions import ConfigurationError, SourceUnavailable, ValidationError
from delivery_pipeline.schemas.source import (
    RegistrySourceReference,
    SourceReference,
    VcsSourceReference,
)
from delivery_pipeline.services.command_runner import CommandRunner
from delivery_pipeline.services.registry_service import RegistryService
from delivery_pipeline.utils.logging import get_logger
from delivery_pipeline.utils.validators import (
    validate_branch_name,
    validate_commit_hash,
    validate_git_repository_url,
)

logger = get_logger(__name__)

LS_REMOTE_LINE = re.compile(r'^([0-9a-f]{40,64})\s+(\S+)$')


class SourceService:
    """
    Resolves the source reference for a pipeline run.

    Example:
        >>> service = SourceService(settings.source, runner, registry, latest_tag="latest")
        >>> ref = service.resolve()
        >>> ref.kind
        <SourceKind.VCS: 'vcs'>
    """

    def __init__(
        self,
        settings: SourceSettings,
        runner: CommandRunner,
        registry: RegistryService,
        latest_tag: str = "latest",
        git_timeout: int = 120,
    ):
        self.settings = settings
        self.kind = settings.kind
        self.runner = runner
        self.registry = registry
        self.latest_tag = latest_tag
        self.git_timeout = git_timeout

        if self.kind == SourceKind.VCS:
            if not settings.repository_url:
                raise ConfigurationError("A VCS source requires SOURCE_REPOSITORY_URL")
            if not validate_git_repository_url(settings.repository_url):
                raise ConfigurationError(f"Invalid repository URL: {settings.repository_url}")
            if not validate_branch_name(settings.branch):
                raise ConfigurationError(f"Invalid branch name: {settings.branch}")

    def resolve(self, resolved_version: Optional[str] = None) -> SourceReference:
        """
        Resolve the source reference.

        Args:
            resolved_version: Source version carried by the trigger event.
                VCS only; ``None`` reads the branch head instead.

        Returns:
            The immutable source reference

        Raises:
            SourceUnavailable: If the repository or registry cannot be read
        """
        if self.kind == SourceKind.VCS:
            return self._resolve_vcs(resolved_version)
        if self.kind == SourceKind.REGISTRY:
            return self._resolve_registry()
        raise ConfigurationError(f"Unsupported source kind: {self.kind}")

    def _resolve_vcs(self, resolved_version: Optional[str]) -> VcsSourceReference:
        if resolved_version is not None:
            resolved_version = resolved_version.strip()
            if not validate_commit_hash(resolved_version):
                raise ValidationError(f"Invalid resolved source version: {resolved_version!r}")
            commit_hash = resolved_version
        else:
            commit_hash = self._read_branch_head()

        logger.info("Resolved VCS source", extra={
            'branch': self.settings.branch,
            'commit_hash': commit_hash,
        })
        return VcsSourceReference(
            branch=self.settings.branch,
            commit_hash=commit_hash,
            repository_url=self.settings.repository_url,
        )

    def _read_branch_head(self) -> str:
        ref = f"refs/heads/{self.settings.branch}"
        result = self.runner.run(
            ['git', 'ls-remote', self.settings.repository_url, ref],
            timeout=self.git_timeout,
        )
        if not result.ok:
            raise SourceUnavailable(
                f"Unable to read {self.settings.repository_url}",
                details={'exit_code': result.returncode, 'output': result.output_tail}
            )

        for line in result.stdout.splitlines():
            match = LS_REMOTE_LINE.match(line.strip())
            if match and match.group(2) == ref:
                return match.group(1)

        raise SourceUnavailable(
            f"Branch {self.settings.branch} not found in {self.settings.repository_url}",
            details={'branch': self.settings.branch}
        )

    def _resolve_registry(self) -> RegistrySourceReference:
        image = self.registry.describe_image(self.latest_tag)
        digest = image.get('imageDigest')

        logger.info("Resolved registry source", extra={
            'repository': self.registry.repository_name,
            'tag': self.latest_tag,
            'digest': digest,
        })
        return RegistrySourceReference(
            image_tag=self.latest_tag,
            image_digest=digest,
            repository_name=self.registry.repository_name,
        )
