"""
Test suite for the pipeline controller and scheduler.

Stage services are mocked; runs are persisted to a real SQLite database.
"""

import requests
import pytest
from unittest.mock import Mock

from delivery_pipeline.config.settings import NotificationSettings
from delivery_pipeline.exceptions import (
    BuildFailed,
    DeployFailed,
    NotFoundError,
    SourceUnavailable,
    ValidationError,
)
from delivery_pipeline.schemas.events import EventType
from delivery_pipeline.services.cancellation import CancellationToken
from delivery_pipeline.services.event_bus import EventBus
from delivery_pipeline.services.notification_service import WebhookNotifier
from delivery_pipeline.services.pipeline_service import PipelineService
from delivery_pipeline.services.scheduler import PipelineScheduler

from tests.conftest import COMMIT, REPOSITORY_URI


def published_events(bus):
    return [call.args[0].event_type for call in bus.publish.call_args_list]


class TestPipelineService:
    """Test cases for PipelineService."""

    @pytest.fixture
    def pipeline(self, db_session, pipeline_factory):
        return pipeline_factory(db_session)

    def test_available_stages(self, pipeline):
        stages = pipeline.get_available_stages()

        assert [stage['id'] for stage in stages] == ['source', 'build', 'deploy']
        for stage in stages:
            assert 'name' in stage
            assert 'description' in stage

    def test_build_numbers_increase(self, pipeline):
        first = pipeline.create_pipeline_run(COMMIT)
        second = pipeline.create_pipeline_run(COMMIT)

        assert first.pipeline_name == "Devecho"
        assert (first.build_number, second.build_number) == (1, 2)
        assert first.status == "pending"

    def test_create_rejects_malformed_version(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.create_pipeline_run("not-a-commit")

    def test_successful_run(self, pipeline, stages):
        """Test a run moves through every stage and ends succeeded."""
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id)

        assert result.status == "succeeded"
        assert result.current_stage == "deploy"
        assert result.image_tag == "a1b2c3d"
        assert result.image_uri == f"{REPOSITORY_URI}:a1b2c3d"
        assert result.source_reference['commit_hash'] == COMMIT
        assert result.deploy_result['running_count'] == 2
        assert result.started_at is not None and result.ended_at is not None
        assert result.error_kind is None
        assert published_events(stages.bus) == [EventType.STARTED, EventType.SUCCEEDED]

    def test_stages_receive_previous_output(self, pipeline, stages, settings):
        run = pipeline.create_pipeline_run(COMMIT)

        pipeline.execute_pipeline_run(run.id)

        stages.source.resolve.assert_called_once_with(COMMIT)
        ref, cfg = stages.builder.build.call_args.args
        assert ref == stages.source.resolve.return_value
        assert cfg.build_number == run.build_number
        assert cfg.repository_uri == REPOSITORY_URI
        artifact_path, target = stages.deployer.deploy_from_artifact.call_args.args
        assert artifact_path == cfg.artifact_path
        assert target.service == settings.service_identifier
        assert target.container_name == "echo"

    def test_workspace_removed_after_deploy(self, pipeline, stages, settings):
        seen = {}

        def build(ref, cfg, cancellation=None, log=None):
            cfg.artifact_path.parent.mkdir(parents=True)
            cfg.artifact_path.write_text("[]")
            seen['workspace'] = cfg.workspace
            return stages.builder.build.return_value

        def deploy(path, target, cancellation=None, log=None):
            seen['artifact_present'] = path.exists()
            return stages.deployer.deploy_from_artifact.return_value

        stages.builder.build.side_effect = build
        stages.deployer.deploy_from_artifact.side_effect = deploy
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id)

        assert result.status == "succeeded"
        assert seen['artifact_present'] is True
        assert not seen['workspace'].exists()
        assert list(settings.build.workspace_dir.iterdir()) == []

    def test_workspace_removed_after_failed_build(self, pipeline, stages):
        seen = {}

        def build(ref, cfg, cancellation=None, log=None):
            (cfg.workspace / "src").mkdir(parents=True)
            seen['workspace'] = cfg.workspace
            raise BuildFailed("Build step exited with 1: docker build", phase="build")

        stages.builder.build.side_effect = build
        run = pipeline.create_pipeline_run(COMMIT)

        pipeline.execute_pipeline_run(run.id)

        assert not seen['workspace'].exists()

    def test_deploy_timeout_fails_run_once(self, pipeline, stages):
        """Test a health-check timeout ends failed, rolled back, with one failed event."""
        stages.deployer.deploy_from_artifact.side_effect = DeployFailed(
            "Deploy to dev/Devecho failed: not healthy after 900s",
            rolled_back=True,
            rollback_outcome="rolled back to task-definition/echo:7",
        )
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id)

        assert result.status == "failed"
        assert result.current_stage == "deploy"
        assert result.error_kind == "DeployFailed"
        assert "not healthy" in result.error_message
        assert "Rolled back: True" in result.logs
        events = published_events(stages.bus)
        assert events.count(EventType.FAILED) == 1
        assert events == [EventType.STARTED, EventType.FAILED]

    def test_source_failure_stops_run(self, pipeline, stages):
        stages.source.resolve.side_effect = SourceUnavailable("Unable to read repository")
        run = pipeline.create_pipeline_run()

        result = pipeline.execute_pipeline_run(run.id)

        assert result.status == "failed"
        assert result.current_stage == "source"
        assert result.error_kind == "SourceUnavailable"
        stages.builder.build.assert_not_called()
        stages.deployer.deploy_from_artifact.assert_not_called()

    def test_build_failure_details_in_logs(self, pipeline, stages):
        stages.builder.build.side_effect = BuildFailed(
            "Build step exited with 1: docker build",
            phase="build",
            details={'exit_code': 1, 'output': 'no space left on device'},
        )
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id)

        assert result.error_kind == "BuildFailed"
        assert "no space left on device" in pipeline.get_pipeline_logs(run.id)
        stages.deployer.deploy_from_artifact.assert_not_called()

    def test_unexpected_error_is_wrapped(self, pipeline, stages):
        stages.builder.build.side_effect = RuntimeError("disk on fire")
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id)

        assert result.status == "failed"
        assert result.error_kind == "PipelineError"
        assert "disk on fire" in result.error_message

    def test_cancelled_before_start(self, pipeline, stages):
        token = CancellationToken()
        token.cancel("Cancelled by request")
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id, cancellation=token)

        assert result.status == "failed"
        assert result.error_kind == "RunCancelled"
        stages.source.resolve.assert_not_called()

    def test_cancelled_during_deploy_reports_run_cancelled(self, pipeline, stages):
        token = CancellationToken()

        def cancelled_deploy(path, target, cancellation=None, log=None):
            token.cancel("Cancelled by request")
            raise DeployFailed("Deploy to dev/Devecho failed: Cancelled by request",
                               rolled_back=True, rollback_outcome="rolled back")

        stages.deployer.deploy_from_artifact.side_effect = cancelled_deploy
        run = pipeline.create_pipeline_run(COMMIT)

        result = pipeline.execute_pipeline_run(run.id, cancellation=token)

        assert result.error_kind == "RunCancelled"
        assert "'rolled_back': True" in result.logs

    def test_execute_requires_pending(self, pipeline):
        run = pipeline.create_pipeline_run(COMMIT)
        pipeline.execute_pipeline_run(run.id)

        with pytest.raises(ValidationError):
            pipeline.execute_pipeline_run(run.id)

    def test_get_missing_run(self, pipeline):
        with pytest.raises(NotFoundError):
            pipeline.get_pipeline_run(999)

    def test_list_runs_newest_first(self, pipeline):
        runs = [pipeline.create_pipeline_run(COMMIT) for _ in range(3)]

        listed = pipeline.list_pipeline_runs(limit=2)

        assert [run.id for run in listed] == [runs[2].id, runs[1].id]

    def test_statistics(self, pipeline, stages):
        succeeded = pipeline.create_pipeline_run(COMMIT)
        pipeline.execute_pipeline_run(succeeded.id)
        stages.source.resolve.side_effect = SourceUnavailable("down")
        failed = pipeline.create_pipeline_run()
        pipeline.execute_pipeline_run(failed.id)
        pipeline.create_pipeline_run()

        stats = pipeline.get_pipeline_statistics(days=7)

        assert stats['total_runs'] == 3
        assert stats['succeeded_runs'] == 1
        assert stats['failed_runs'] == 1
        assert stats['pending_runs'] == 1
        assert stats['success_rate_percent'] == 50.0
        assert stats['error_kinds'] == [('SourceUnavailable', 1)]

    def test_build_specification_rendering(self, pipeline):
        document = pipeline.get_build_specification()

        assert document['version'] == "0.2"
        assert document['phases']['pre_build']['commands'][0] == "cd app"

    def test_broken_webhook_never_fails_run(self, db_session, settings, stages):
        session = Mock(spec=requests.Session)
        session.post.side_effect = requests.ConnectionError("connection refused")
        bus = EventBus(max_workers=1)
        WebhookNotifier(NotificationSettings(hook_url="https://hooks.example.com/x"), session=session).attach(bus)
        pipeline = PipelineService(db_session, settings, stages.source, stages.builder, stages.deployer, bus)

        run = pipeline.create_pipeline_run(COMMIT)
        result = pipeline.execute_pipeline_run(run.id)
        bus.shutdown(wait=True)

        assert result.status == "succeeded"
        assert session.post.call_count == 2


class TestPipelineScheduler:
    """Test cases for PipelineScheduler."""

    @pytest.fixture
    def scheduler(self, file_session_factory, pipeline_factory):
        scheduler = PipelineScheduler(file_session_factory, pipeline_factory, max_workers=2)
        yield scheduler
        scheduler.shutdown(wait=True)

    def test_trigger_runs_to_completion(self, scheduler):
        run = scheduler.trigger(resolved_source_version=COMMIT, triggered_by="test")

        result = scheduler.wait(run.id, timeout=10)

        assert result.status == "succeeded"
        assert result.triggered_by == "test"
        assert not scheduler.is_active(run.id)

    def test_concurrent_triggers_get_distinct_build_numbers(self, scheduler):
        runs = [scheduler.trigger(resolved_source_version=COMMIT) for _ in range(4)]
        for run in runs:
            scheduler.wait(run.id, timeout=10)

        assert sorted(run.build_number for run in runs) == [1, 2, 3, 4]

    def test_finished_runs_are_not_retained(self, scheduler):
        runs = [scheduler.trigger(resolved_source_version=COMMIT) for _ in range(5)]
        for run in runs:
            scheduler.wait(run.id, timeout=10)
        scheduler.shutdown(wait=True)

        assert scheduler._futures == {}
        assert scheduler._tokens == {}

    def test_wait_on_finished_run_reads_database(self, scheduler):
        run = scheduler.trigger(resolved_source_version=COMMIT)
        scheduler.wait(run.id, timeout=10)
        scheduler.shutdown(wait=True)

        result = scheduler.wait(run.id)

        assert result.id == run.id
        assert result.status == "succeeded"

    def test_wait_on_unknown_run(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.wait(12345)

    def test_cancel_unknown_run(self, scheduler):
        with pytest.raises(NotFoundError):
            scheduler.cancel(12345)

    def test_cancel_finished_run(self, scheduler):
        run = scheduler.trigger(resolved_source_version=COMMIT)
        scheduler.wait(run.id, timeout=10)

        with pytest.raises(ValidationError):
            scheduler.cancel(run.id)
