"""
Composition root.

Builds the long-lived pipeline components from explicit settings. Stage
services, the deploy lock registry and the event bus are shared by every
run; each run gets its own session and controller from the scheduler.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from delivery_pipeline.config.settings import Settings
from delivery_pipeline.models.database import create_db_engine, create_session_factory, init_db
from delivery_pipeline.services.build_service import BuildService
from delivery_pipeline.services.command_runner import CommandRunner
from delivery_pipeline.services.deploy_service import DeployLockRegistry, DeployService
from delivery_pipeline.services.event_bus import EventBus
from delivery_pipeline.services.notification_service import WebhookNotifier
from delivery_pipeline.services.pipeline_service import PipelineService
from delivery_pipeline.services.registry_service import RegistryService
from delivery_pipeline.services.scheduler import PipelineScheduler
from delivery_pipeline.services.source_service import SourceService
from delivery_pipeline.utils.aws_clients import AWSClientFactory
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PipelineComponents:
    settings: Settings
    source: SourceService
    builder: BuildService
    deployer: DeployService
    bus: EventBus
    notifier: WebhookNotifier

    def pipeline_for(self, session: Session) -> PipelineService:
        return PipelineService(
            db=session,
            settings=self.settings,
            source=self.source,
            builder=self.builder,
            deployer=self.deployer,
            bus=self.bus,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.bus.shutdown(wait=wait)


def build_components(
    settings: Settings,
    aws: Optional[AWSClientFactory] = None,
    runner: Optional[CommandRunner] = None,
) -> PipelineComponents:
    """Create the shared stage services, event bus and notifier."""
    aws = aws or AWSClientFactory(settings.aws)
    runner = runner or CommandRunner()

    registry = RegistryService(
        aws,
        runner,
        repository_name=settings.registry.repository_name,
        account_id=settings.aws.account_id,
    )
    source = SourceService(settings.source, runner, registry, latest_tag=settings.registry.latest_tag)
    builder = BuildService(registry, runner)
    deployer = DeployService(
        aws,
        locks=DeployLockRegistry(settings.deploy.concurrency_policy, settings.deploy.queue_timeout),
        settings=settings.deploy,
    )

    bus = EventBus(max_workers=settings.notification.max_workers)
    notifier = WebhookNotifier(settings.notification)
    notifier.attach(bus)

    logger.info("Pipeline components ready", extra={
        'pipeline_name': settings.pipeline_name,
        'source_kind': settings.source.kind.value,
        'service': settings.service_identifier,
        'notifications': bool(notifier.hook_url),
    })
    return PipelineComponents(
        settings=settings,
        source=source,
        builder=builder,
        deployer=deployer,
        bus=bus,
        notifier=notifier,
    )


def build_scheduler(
    settings: Settings,
    components: Optional[PipelineComponents] = None,
    session_factory: Optional[sessionmaker] = None,
) -> PipelineScheduler:
    """Create the scheduler, initializing the database when no session factory is given."""
    components = components or build_components(settings)
    if session_factory is None:
        engine = create_db_engine(settings.database)
        init_db(engine)
        session_factory = create_session_factory(engine)

    return PipelineScheduler(
        session_factory,
        components.pipeline_for,
        max_workers=settings.pipeline.max_concurrent_runs,
    )
