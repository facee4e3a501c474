"""
Build stage.

Turns a source reference into a pushed, tagged image and the image
descriptor artifact the deploy stage consumes.

Author: Delivery Pipeline Team
"""

import os
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from delivery_pipeline.config.settings import SourceKind
from delivery_pipeline.exceptions import BuildFailed, ValidationError
from delivery_pipeline.schemas.artifacts import (
    BuildConfig,
    BuildPhase,
    BuildSpecification,
    ImageDescriptor,
)
from delivery_pipeline.schemas.source import SourceReference
from delivery_pipeline.services.build_spec import build_specification_for
from delivery_pipeline.services.cancellation import CancellationToken
from delivery_pipeline.services.command_runner import CommandResult, CommandRunner
from delivery_pipeline.services.image_definitions import write_image_definitions
from delivery_pipeline.services.registry_service import RegistryService
from delivery_pipeline.utils.logging import get_logger, log_execution_time
from delivery_pipeline.utils.validators import validate_image_tag

logger = get_logger(__name__)

LATEST_TAG = "latest"
COMMIT_TAG_LENGTH = 7

StageLog = Callable[[str], None]


def compute_image_tag(ref: SourceReference, build_number: int) -> str:
    """
    Compute the image tag for a run.

    VCS runs use the first 7 characters of the commit hash, or ``latest``
    when the hash is empty. Registry runs use the pipeline build number.
    """
    if ref.kind == SourceKind.VCS:
        tag = ref.commit_hash[:COMMIT_TAG_LENGTH] or LATEST_TAG
    elif ref.kind == SourceKind.REGISTRY:
        if build_number < 1:
            raise ValidationError(f"Build number must be positive, got {build_number}")
        tag = str(build_number)
    else:
        raise ValidationError(f"Unsupported source kind: {ref.kind}")

    if not validate_image_tag(tag):
        raise ValidationError(f"Invalid image tag: {tag!r}")
    return tag


class BuildService:
    """
    Executes the build specification for one run.

    Steps: authenticate to the registry, compute the tag, materialize the
    source (VCS only), run the build specification phases, write the descriptor.
    Cancellation is honored until the push phase starts; pushes always run
    to completion.
    """

    def __init__(self, registry: RegistryService, runner: CommandRunner):
        self.registry = registry
        self.runner = runner

    def specification_for(self, ref: SourceReference, cfg: BuildConfig) -> BuildSpecification:
        return build_specification_for(ref.kind, cfg)

    @log_execution_time(logger, level=20)
    def build(
        self,
        ref: SourceReference,
        cfg: BuildConfig,
        cancellation: Optional[CancellationToken] = None,
        log: Optional[StageLog] = None,
    ) -> ImageDescriptor:
        """
        Build, tag and push the image, then write the descriptor artifact.

        Args:
            ref: Source reference from the source stage
            cfg: Build parameters for this run
            cancellation: Optional token checked before each abandonable step
            log: Optional callback receiving human-readable progress lines

        Returns:
            The image descriptor that was written to ``cfg.artifact_path``

        Raises:
            AuthFailed: If registry authentication fails
            BuildFailed: If any build command fails
            RunCancelled: If cancelled before the push phase
        """
        token = cancellation or CancellationToken()
        emit = log or (lambda message: None)

        token.raise_if_cancelled("build")
        self.registry.authenticate()
        emit(f"Authenticated to registry {self.registry.region}")

        image_tag = compute_image_tag(ref, cfg.build_number)
        spec = self.specification_for(ref, cfg)
        emit(f"Image tag: {image_tag}")

        workdir = self._prepare_workspace(ref, cfg, token, emit)
        env = self._build_environment(cfg, image_tag, ref)

        for phase in spec.phases:
            for command in phase.commands:
                if phase.name != BuildPhase.POST_BUILD:
                    token.raise_if_cancelled("build")
                self._run_command(phase.name, command, workdir, env, cfg, emit)

        descriptor = ImageDescriptor(
            name=cfg.container_name,
            image_uri=f"{cfg.repository_uri}:{image_tag}",
        )
        write_image_definitions(descriptor, cfg.artifact_path)
        emit(f"Wrote {cfg.artifact_file}: {descriptor.to_image_definitions()}")

        logger.info("Build completed", extra={
            'run_id': cfg.run_id,
            'image_uri': descriptor.image_uri,
            'source_kind': ref.kind.value,
        })
        return descriptor

    def _prepare_workspace(
        self,
        ref: SourceReference,
        cfg: BuildConfig,
        token: CancellationToken,
        emit: StageLog,
    ) -> Path:
        try:
            cfg.workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildFailed(f"Unable to create build workspace: {e}", phase="workspace") from e

        if ref.kind != SourceKind.VCS:
            return cfg.workspace

        token.raise_if_cancelled("build")
        self._checkout(ref, cfg, emit)

        workdir = cfg.source_dir / cfg.context_dir if cfg.context_dir else cfg.source_dir
        if not (workdir / "Dockerfile").exists():
            raise BuildFailed(
                f"Dockerfile not found in {cfg.context_dir or 'repository root'}",
                phase="checkout",
            )
        return workdir

    def _checkout(self, ref: SourceReference, cfg: BuildConfig, emit: StageLog) -> None:
        url = ref.repository_url or cfg.source_repository_url
        if not url:
            raise BuildFailed("No repository URL to check out", phase="checkout")

        if cfg.source_dir.exists():
            shutil.rmtree(cfg.source_dir, ignore_errors=True)

        clone = self.runner.run(
            ['git', 'clone', '--branch', ref.branch, url, str(cfg.source_dir)],
            timeout=cfg.command_timeout,
        )
        self._check(clone, "checkout")

        if ref.commit_hash:
            checkout = self.runner.run(
                ['git', 'checkout', '--detach', ref.commit_hash],
                cwd=cfg.source_dir,
                timeout=cfg.command_timeout,
            )
            self._check(checkout, "checkout")

        emit(f"Checked out {url} ({ref.branch} @ {ref.commit_hash[:8] or 'HEAD'})")

    def _build_environment(self, cfg: BuildConfig, image_tag: str, ref: SourceReference) -> Dict[str, str]:
        env = os.environ.copy()
        env['REGION'] = cfg.region
        env['IMAGE_TAG'] = image_tag
        if ref.kind == SourceKind.VCS:
            env['RESOLVED_SOURCE_VERSION'] = ref.commit_hash
        return env

    def _run_command(
        self,
        phase: BuildPhase,
        command: str,
        workdir: Path,
        env: Dict[str, str],
        cfg: BuildConfig,
        emit: StageLog,
    ) -> CommandResult:
        emit(f"[{phase.value}] {command}")
        start_time = time.time()
        result = self.runner.run_shell(command, cwd=workdir, env=env, timeout=cfg.command_timeout)
        if result.stdout.strip():
            emit(result.stdout.strip()[-2000:])
        self._check(result, phase.value)
        logger.debug("Build command completed", extra={
            'run_id': cfg.run_id,
            'phase': phase.value,
            'duration_seconds': round(time.time() - start_time, 3),
        })
        return result

    @staticmethod
    def _check(result: CommandResult, phase: str) -> None:
        if result.ok:
            return
        reason = "timed out" if result.timed_out else f"exited with {result.returncode}"
        raise BuildFailed(
            f"Build step {reason}: {result.command}",
            phase=phase,
            command=result.command,
            details={'exit_code': result.returncode, 'output': result.output_tail},
        )


__all__ = ["BuildService", "compute_image_tag", "LATEST_TAG"]
