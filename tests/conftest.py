"""
Shared fixtures for the delivery pipeline test suite.
"""

from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional
from unittest.mock import Mock

import pytest

from delivery_pipeline.config.settings import (
    AWSSettings,
    BuildSettings,
    DatabaseSettings,
    DeploySettings,
    NotificationSettings,
    ServiceSettings,
    Settings,
    SourceSettings,
)
from delivery_pipeline.models.database import create_db_engine, create_session_factory, init_db
from delivery_pipeline.schemas.artifacts import ImageDescriptor
from delivery_pipeline.schemas.deploy import DeployResult
from delivery_pipeline.schemas.source import VcsSourceReference
from delivery_pipeline.services.build_service import BuildService
from delivery_pipeline.services.command_runner import CommandResult, CommandRunner
from delivery_pipeline.services.deploy_service import DeployService
from delivery_pipeline.services.event_bus import EventBus
from delivery_pipeline.services.pipeline_service import PipelineService
from delivery_pipeline.services.source_service import SourceService

REPOSITORY_URI = "123456789012.dkr.ecr.us-east-1.amazonaws.com/echo"
COMMIT = "a1b2c3d4e5f6a7b8c9d0a1b2c3d4e5f6a7b8c9d0"


class RecordingRunner(CommandRunner):
    """
    Command runner that records commands instead of executing them.

    ``failures`` maps a command substring to the exit code it should return.
    ``on_run`` hooks run for argument-vector commands (e.g. to fake a clone).
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None):
        super().__init__()
        self.failures = failures or {}
        self.commands: List[str] = []
        self.calls: List[dict] = []
        self.on_run: List[Callable[[List[str]], None]] = []
        self.stdout_for: Dict[str, str] = {}

    def _execute(self, argv, display, cwd, env, input, timeout) -> CommandResult:
        self.commands.append(display)
        self.calls.append({'command': display, 'cwd': cwd, 'env': env, 'input': input})
        if argv and argv[0] != self.shell:
            for hook in self.on_run:
                hook(argv)

        for fragment, code in self.failures.items():
            if fragment in display:
                return CommandResult(command=display, returncode=code, stderr=f"{fragment} failed")

        stdout = next((out for key, out in self.stdout_for.items() if key in display), "")
        return CommandResult(command=display, returncode=0, stdout=stdout)


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings for a VCS pipeline with fast deploy polling and an in-memory database."""
    return Settings(
        aws=AWSSettings(region="us-east-1", account_id="123456789012"),
        source=SourceSettings(kind="vcs", repository_url="https://github.com/example/echo.git", branch="main"),
        build=BuildSettings(workspace_dir=tmp_path / "builds"),
        service=ServiceSettings(name="echo", cluster="dev", container_name="echo"),
        deploy=DeploySettings(timeout_seconds=60, poll_interval=5.0, rollback_timeout=30),
        notification=NotificationSettings(hook_url=None),
        database=DatabaseSettings(url="sqlite://"),
    )


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.database)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mock_aws():
    """AWS client factory whose clients are plain mocks."""
    aws = Mock()
    aws.region = "us-east-1"
    aws.ecr.return_value = Mock(name="ecr")
    aws.ecs.return_value = Mock(name="ecs")
    aws.elbv2.return_value = Mock(name="elbv2")
    aws.sts.return_value = Mock(name="sts")
    return aws


class FakeClock:
    """Monotonic clock advanced by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory on a file database, for tests that run pipelines on worker threads."""
    engine = create_db_engine(DatabaseSettings(url=f"sqlite:///{tmp_path / 'pipeline.db'}"))
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def stages():
    """Mocked stage services producing a successful run."""
    source = Mock(spec=SourceService)
    source.resolve.return_value = VcsSourceReference(
        branch="main", commit_hash=COMMIT, repository_url="https://github.com/example/echo.git"
    )

    builder = Mock(spec=BuildService)
    builder.registry = Mock(repository_uri=REPOSITORY_URI)
    builder.build.return_value = ImageDescriptor(name="echo", image_uri=f"{REPOSITORY_URI}:a1b2c3d")

    deployer = Mock(spec=DeployService)
    deployer.deploy_from_artifact.return_value = DeployResult(
        cluster="dev",
        service="Devecho",
        image_uri=f"{REPOSITORY_URI}:a1b2c3d",
        task_definition_arn="arn:aws:ecs:us-east-1:123456789012:task-definition/echo:8",
        previous_task_definition_arn="arn:aws:ecs:us-east-1:123456789012:task-definition/echo:7",
        desired_count=2,
        running_count=2,
    )

    return SimpleNamespace(source=source, builder=builder, deployer=deployer, bus=Mock(spec=EventBus))


@pytest.fixture
def pipeline_factory(settings, stages):
    def factory(session):
        return PipelineService(
            db=session,
            settings=settings,
            source=stages.source,
            builder=stages.builder,
            deployer=stages.deployer,
            bus=stages.bus,
        )

    return factory
