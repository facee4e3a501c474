"""
Pipeline controller.

Drives one pipeline run through Source, Build and Deploy, persisting its
state and publishing lifecycle events. Each stage receives only the output
of the stage before it.

Author: Delivery Pipeline Team
"""

import shutil
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from delivery_pipeline.config.settings import Settings, SourceKind
from delivery_pipeline.exceptions import (
    DeliveryPipelineError,
    DeployFailed,
    NotFoundError,
    PipelineError,
    RunCancelled,
    ValidationError,
)
from delivery_pipeline.models.models import PipelineRun, utcnow
from delivery_pipeline.schemas.artifacts import BuildConfig
from delivery_pipeline.schemas.deploy import ServiceTarget
from delivery_pipeline.schemas.events import EventType, NotificationEvent
from delivery_pipeline.schemas.pipeline import PipelineStage, RunStatus
from delivery_pipeline.services.build_service import BuildService, compute_image_tag
from delivery_pipeline.services.build_spec import build_specification_for
from delivery_pipeline.services.cancellation import CancellationToken
from delivery_pipeline.services.deploy_service import DeployService
from delivery_pipeline.services.event_bus import EventBus
from delivery_pipeline.services.source_service import SourceService
from delivery_pipeline.utils.logging import get_logger, log_function_call
from delivery_pipeline.utils.validators import validate_commit_hash, validate_pagination_params

logger = get_logger(__name__)


class PipelineService:
    """
    Controller for pipeline runs.

    State machine: ``pending -> running(source) -> running(build) ->
    running(deploy) -> succeeded``; any stage failure moves the run to
    ``failed``. Failed runs are never retried; a new trigger creates a new
    run with the next build number.
    """

    AVAILABLE_STAGES = {
        PipelineStage.SOURCE: {
            'name': 'Source',
            'description': 'Resolve the commit or registry image to deliver',
            'order': 1,
        },
        PipelineStage.BUILD: {
            'name': 'Build',
            'description': 'Build or promote the image, push it and write the image descriptor',
            'order': 2,
        },
        PipelineStage.DEPLOY: {
            'name': 'Deploy',
            'description': 'Roll the image out to the service, rolling back if it is not healthy',
            'order': 3,
        },
    }

    # Build numbers are allocated under this lock so concurrent triggers
    # in one process never share a number.
    _build_number_lock = threading.Lock()

    def __init__(
        self,
        db: Session,
        settings: Settings,
        source: SourceService,
        builder: BuildService,
        deployer: DeployService,
        bus: EventBus,
    ):
        """
        Initialize the pipeline controller.

        Args:
            db: Database session owned by this controller
            settings: Application settings
            source: Source stage
            builder: Build stage
            deployer: Deploy stage
            bus: Event bus receiving lifecycle events
        """
        self.db = db
        self.settings = settings
        self.source = source
        self.builder = builder
        self.deployer = deployer
        self.bus = bus

    @property
    def pipeline_name(self) -> str:
        return self.settings.pipeline_name

    @property
    def source_kind(self) -> SourceKind:
        return self.settings.source.kind

    @property
    def service_target(self) -> ServiceTarget:
        return ServiceTarget(
            cluster=self.settings.service.cluster,
            service=self.settings.service_identifier,
            container_name=self.settings.container_name,
            target_group_arn=self.settings.service.target_group_arn,
        )

    @log_function_call(logger)
    def create_pipeline_run(
        self,
        resolved_source_version: Optional[str] = None,
        triggered_by: str = "api",
    ) -> PipelineRun:
        """
        Create a pending pipeline run with the next build number.

        Args:
            resolved_source_version: Commit carried by the trigger. None means
                the source stage looks up the branch head; an empty string is
                kept as is and tags the image ``latest``.
            triggered_by: Who or what triggered the run

        Returns:
            Created PipelineRun instance

        Raises:
            ValidationError: If the source version is malformed or not applicable
        """
        if resolved_source_version is not None:
            if self.source_kind == SourceKind.REGISTRY and resolved_source_version:
                raise ValidationError("Registry pipelines do not accept a source version")
            if not validate_commit_hash(resolved_source_version):
                raise ValidationError(f"Invalid commit hash: {resolved_source_version}")

        with self._build_number_lock:
            last_build_number = self.db.query(func.max(PipelineRun.build_number)).filter(
                PipelineRun.pipeline_name == self.pipeline_name
            ).scalar()

            pipeline_run = PipelineRun(
                pipeline_name=self.pipeline_name,
                build_number=(last_build_number or 0) + 1,
                status=RunStatus.PENDING.value,
                triggered_by=triggered_by,
                source_kind=self.source_kind.value,
                resolved_source_version=resolved_source_version,
                logs="",
            )
            self.db.add(pipeline_run)
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(pipeline_run)

        self._log_to_pipeline(pipeline_run, "Pipeline run created. Waiting for execution.")
        logger.info("Created pipeline run", extra={
            'pipeline_run_id': pipeline_run.id,
            'pipeline_name': pipeline_run.pipeline_name,
            'build_number': pipeline_run.build_number,
            'source_kind': pipeline_run.source_kind,
        })
        return pipeline_run

    @log_function_call(logger)
    def execute_pipeline_run(
        self,
        run_id: int,
        cancellation: Optional[CancellationToken] = None,
    ) -> PipelineRun:
        """
        Execute a pending pipeline run to a terminal state.

        Stage failures do not raise: they are recorded on the run, which is
        returned in the ``failed`` state.

        Args:
            run_id: Pipeline run ID to execute
            cancellation: Optional token used to cancel the run

        Returns:
            The run in ``succeeded`` or ``failed`` state

        Raises:
            NotFoundError: If the pipeline run doesn't exist
            ValidationError: If the run is not pending
        """
        pipeline_run = self.get_pipeline_run(run_id)
        if pipeline_run.status != RunStatus.PENDING.value:
            raise ValidationError(f"Pipeline run {run_id} is not in pending status")

        token = cancellation or CancellationToken()

        pipeline_run.started_at = utcnow()
        self._update_pipeline_status(pipeline_run, RunStatus.RUNNING, "Starting pipeline execution...")
        self._publish(pipeline_run, EventType.STARTED)

        try:
            self._run_stages(pipeline_run, token)
        except DeliveryPipelineError as e:
            self._fail(pipeline_run, e, token)
        except Exception as e:
            logger.exception("Unexpected error executing pipeline run", extra={'pipeline_run_id': run_id})
            self._fail(pipeline_run, PipelineError(
                f"Unexpected error in {pipeline_run.current_stage} stage: {e}",
                stage=pipeline_run.current_stage,
                run_id=pipeline_run.id,
                details={'exception': type(e).__name__},
            ), token)
        else:
            pipeline_run.ended_at = utcnow()
            self._update_pipeline_status(
                pipeline_run,
                RunStatus.SUCCEEDED,
                f"Pipeline completed successfully. Deployed {pipeline_run.image_uri}",
            )
            logger.info("Pipeline run succeeded", extra={
                'pipeline_run_id': pipeline_run.id,
                'image_uri': pipeline_run.image_uri,
            })
            self._publish(pipeline_run, EventType.SUCCEEDED)

        return pipeline_run

    def _run_stages(self, pipeline_run: PipelineRun, token: CancellationToken) -> None:
        log = self._stage_log(pipeline_run)

        token.raise_if_cancelled(PipelineStage.SOURCE.value)
        self._enter_stage(pipeline_run, PipelineStage.SOURCE)
        start_time = time.time()
        ref = self.source.resolve(pipeline_run.resolved_source_version)
        pipeline_run.source_reference = ref.model_dump(mode="json")
        pipeline_run.image_tag = compute_image_tag(ref, pipeline_run.build_number)
        self._complete_stage(pipeline_run, PipelineStage.SOURCE, start_time)

        token.raise_if_cancelled(PipelineStage.BUILD.value)
        self._enter_stage(pipeline_run, PipelineStage.BUILD)
        start_time = time.time()
        cfg = self._build_config(pipeline_run)
        # Workspace holds the checkout and descriptor; removed once Deploy has read it
        try:
            descriptor = self.builder.build(ref, cfg, cancellation=token, log=log)
            pipeline_run.image_uri = descriptor.image_uri
            self._complete_stage(pipeline_run, PipelineStage.BUILD, start_time)

            token.raise_if_cancelled(PipelineStage.DEPLOY.value)
            self._enter_stage(pipeline_run, PipelineStage.DEPLOY)
            start_time = time.time()
            result = self.deployer.deploy_from_artifact(
                cfg.artifact_path, self.service_target, cancellation=token, log=log
            )
        finally:
            shutil.rmtree(cfg.workspace, ignore_errors=True)
        pipeline_run.deploy_result = result.model_dump(mode="json")
        self._complete_stage(pipeline_run, PipelineStage.DEPLOY, start_time)

    def _build_config(self, pipeline_run: PipelineRun) -> BuildConfig:
        build = self.settings.build
        return BuildConfig(
            run_id=pipeline_run.id,
            build_number=pipeline_run.build_number,
            container_name=self.settings.container_name,
            repository_uri=self.builder.registry.repository_uri,
            region=self.settings.aws.region,
            workspace=build.workspace_dir / f"{pipeline_run.pipeline_name}-{pipeline_run.build_number}",
            source_repository_url=self.settings.source.repository_url,
            context_dir=build.context_dir,
            artifact_file=build.artifact_file,
            latest_tag=self.settings.registry.latest_tag,
            runtime_versions=build.runtime_versions,
            command_timeout=build.command_timeout,
        )

    def _fail(self, pipeline_run: PipelineRun, error: DeliveryPipelineError, token: CancellationToken) -> None:
        if token.cancelled and not isinstance(error, RunCancelled):
            details = dict(error.details)
            if isinstance(error, DeployFailed):
                details.update({'rolled_back': error.rolled_back, 'rollback_outcome': error.rollback_outcome})
            error = RunCancelled(
                token.reason or "Run cancelled",
                stage=pipeline_run.current_stage,
                details=details,
            )

        pipeline_run.error_kind = error.kind
        pipeline_run.error_message = error.message
        if error.details:
            self._log_to_pipeline(pipeline_run, f"Error details: {error.details}")
        if isinstance(error, DeployFailed):
            self._log_to_pipeline(
                pipeline_run,
                f"Rolled back: {error.rolled_back} ({error.rollback_outcome})",
            )

        pipeline_run.ended_at = utcnow()
        self._update_pipeline_status(
            pipeline_run,
            RunStatus.FAILED,
            f"Pipeline failed in {pipeline_run.current_stage or 'pending'} stage: {error.kind}: {error.message}",
        )
        logger.error("Pipeline run failed", extra={
            'pipeline_run_id': pipeline_run.id,
            'stage': pipeline_run.current_stage,
            'error_kind': error.kind,
            'error_message': error.message,
        })
        self._publish(pipeline_run, EventType.FAILED)

    def _enter_stage(self, pipeline_run: PipelineRun, stage: PipelineStage) -> None:
        pipeline_run.current_stage = stage.value
        self._update_pipeline_status(
            pipeline_run,
            RunStatus.RUNNING,
            f"Executing stage: {self.AVAILABLE_STAGES[stage]['name']}",
        )

    def _complete_stage(self, pipeline_run: PipelineRun, stage: PipelineStage, start_time: float) -> None:
        self._log_to_pipeline(
            pipeline_run,
            f"Stage completed: {self.AVAILABLE_STAGES[stage]['name']} "
            f"({time.time() - start_time:.1f}s)",
        )

    def _stage_log(self, pipeline_run: PipelineRun) -> Callable[[str], None]:
        return lambda message: self._log_to_pipeline(pipeline_run, message)

    def _update_pipeline_status(self, pipeline_run: PipelineRun, status: RunStatus, message: str) -> None:
        """Update pipeline run status and log message."""
        pipeline_run.status = status.value
        pipeline_run.logs = (pipeline_run.logs or "") + f"[{utcnow().isoformat()}] {message}\n"
        self.db.commit()

    def _log_to_pipeline(self, pipeline_run: PipelineRun, message: str) -> None:
        """Add a log message to the pipeline run."""
        pipeline_run.logs = (pipeline_run.logs or "") + f"[{utcnow().isoformat()}] {message}\n"
        self.db.commit()

    def _publish(self, pipeline_run: PipelineRun, event_type: EventType) -> None:
        self.bus.publish(NotificationEvent(
            pipeline_run_id=pipeline_run.id,
            event_type=event_type,
            payload=self._event_payload(pipeline_run),
        ))

    def _event_payload(self, pipeline_run: PipelineRun) -> Dict[str, Any]:
        payload = {
            'pipeline_name': pipeline_run.pipeline_name,
            'build_number': pipeline_run.build_number,
            'run_id': pipeline_run.id,
            'status': pipeline_run.status,
            'stage': pipeline_run.current_stage,
            'source_kind': pipeline_run.source_kind,
            'namespace': self.settings.app.ns,
            'environment': self.settings.app.stage,
        }
        if pipeline_run.resolved_source_version:
            payload['resolved_source_version'] = pipeline_run.resolved_source_version
        if pipeline_run.image_uri:
            payload['image_uri'] = pipeline_run.image_uri
        if pipeline_run.error_kind:
            payload['error_kind'] = pipeline_run.error_kind
            payload['error_message'] = pipeline_run.error_message
        return payload

    def get_pipeline_run(self, run_id: int) -> PipelineRun:
        """
        Get a pipeline run by ID.

        Raises:
            NotFoundError: If the pipeline run doesn't exist
        """
        pipeline_run = self.db.query(PipelineRun).filter(PipelineRun.id == run_id).first()
        if not pipeline_run:
            raise NotFoundError(f"Pipeline run with ID {run_id} not found")
        return pipeline_run

    def list_pipeline_runs(
        self,
        skip: int = 0,
        limit: int = 100,
        status: Optional[RunStatus] = None,
    ) -> List[PipelineRun]:
        """List pipeline runs, newest first."""
        skip, limit = validate_pagination_params(skip, limit)
        query = self.db.query(PipelineRun).filter(PipelineRun.pipeline_name == self.pipeline_name)
        if status is not None:
            query = query.filter(PipelineRun.status == RunStatus(status).value)
        return query.order_by(PipelineRun.id.desc()).offset(skip).limit(limit).all()

    def get_pipeline_logs(self, run_id: int) -> str:
        """
        Get the logs for a pipeline run.

        Raises:
            NotFoundError: If the pipeline run doesn't exist
        """
        return self.get_pipeline_run(run_id).logs or "No logs available"

    def get_available_stages(self) -> List[Dict[str, Any]]:
        return [
            {'id': stage.value, **info}
            for stage, info in sorted(self.AVAILABLE_STAGES.items(), key=lambda item: item[1]['order'])
        ]

    def get_build_specification(self) -> Dict[str, Any]:
        """Render the build specification of the configured source kind."""
        cfg = self._build_config(PipelineRun(
            id=0,
            pipeline_name=self.pipeline_name,
            build_number=1,
        ))
        return build_specification_for(self.source_kind, cfg).to_buildspec()

    def get_pipeline_statistics(self, days: int = 30) -> Dict[str, Any]:
        """
        Get pipeline execution statistics.

        Args:
            days: Number of days to look back for statistics

        Returns:
            Dictionary with pipeline statistics
        """
        if days < 1:
            raise ValidationError("Statistics window must be at least one day")

        cutoff_date = datetime.now(timezone.utc) - timedelta(days=days)
        runs = self.db.query(PipelineRun).filter(
            PipelineRun.pipeline_name == self.pipeline_name,
            PipelineRun.created_at >= cutoff_date,
        ).all()

        total_runs = len(runs)
        counts = {status.value: 0 for status in RunStatus}
        error_kinds: Dict[str, int] = {}
        for run in runs:
            counts[run.status] = counts.get(run.status, 0) + 1
            if run.error_kind:
                error_kinds[run.error_kind] = error_kinds.get(run.error_kind, 0) + 1

        finished = counts[RunStatus.SUCCEEDED.value] + counts[RunStatus.FAILED.value]
        success_rate = (counts[RunStatus.SUCCEEDED.value] / finished * 100) if finished else 0

        return {
            'pipeline_name': self.pipeline_name,
            'period_days': days,
            'total_runs': total_runs,
            'succeeded_runs': counts[RunStatus.SUCCEEDED.value],
            'failed_runs': counts[RunStatus.FAILED.value],
            'pending_runs': counts[RunStatus.PENDING.value],
            'running_runs': counts[RunStatus.RUNNING.value],
            'success_rate_percent': round(success_rate, 2),
            'error_kinds': sorted(error_kinds.items(), key=lambda x: x[1], reverse=True),
            'date_range': {
                'start': cutoff_date.isoformat(),
                'end': datetime.now(timezone.utc).isoformat(),
            },
        }
