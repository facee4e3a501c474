"""
Tests for the HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from delivery_pipeline.exceptions import ConcurrentDeployRejected, SourceUnavailable
from delivery_pipeline.main import create_app
from delivery_pipeline.services.scheduler import PipelineScheduler

from tests.conftest import COMMIT


@pytest.fixture
def scheduler(file_session_factory, pipeline_factory):
    scheduler = PipelineScheduler(file_session_factory, pipeline_factory, max_workers=1)
    yield scheduler
    scheduler.shutdown(wait=True)


@pytest.fixture
def client(settings, scheduler):
    with TestClient(create_app(settings, scheduler=scheduler)) as client:
        yield client


def trigger(client, scheduler, **body):
    response = client.post("/api/pipelines/runs", json=body)
    assert response.status_code == 202
    run_id = response.json()['pipeline_run']['id']
    scheduler.wait(run_id, timeout=10)
    return run_id


class TestPipelineAPI:
    """Test cases for the pipeline endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()['status'] == "healthy"
        assert response.json()['pipeline_name'] == "Devecho"

    def test_trigger_creates_pending_run(self, client, scheduler):
        response = client.post("/api/pipelines/runs", json={"resolved_source_version": COMMIT})

        assert response.status_code == 202
        body = response.json()
        assert body['success'] is True
        assert body['pipeline_run']['build_number'] == 1
        assert body['pipeline_run']['status'] == "pending"
        scheduler.wait(body['pipeline_run']['id'], timeout=10)

    def test_trigger_without_body(self, client, scheduler):
        run_id = trigger(client, scheduler)

        response = client.get(f"/api/pipelines/runs/{run_id}")

        assert response.json()['pipeline_run']['status'] == "succeeded"

    def test_trigger_rejects_malformed_version(self, client):
        response = client.post("/api/pipelines/runs", json={"resolved_source_version": "zzz"})

        assert response.status_code == 400

    def test_get_run_and_logs(self, client, scheduler):
        run_id = trigger(client, scheduler, resolved_source_version=COMMIT)

        run = client.get(f"/api/pipelines/runs/{run_id}").json()['pipeline_run']
        logs = client.get(f"/api/pipelines/runs/{run_id}/logs")

        assert run['image_tag'] == "a1b2c3d"
        assert run['current_stage'] == "deploy"
        assert logs.status_code == 200
        assert "Pipeline completed successfully" in logs.text

    def test_failed_run_reports_error_kind(self, client, scheduler, stages):
        stages.source.resolve.side_effect = SourceUnavailable("Unable to read repository")
        run_id = trigger(client, scheduler)

        run = client.get(f"/api/pipelines/runs/{run_id}").json()['pipeline_run']

        assert run['status'] == "failed"
        assert run['error_kind'] == "SourceUnavailable"

    def test_missing_run_is_404(self, client):
        assert client.get("/api/pipelines/runs/999").status_code == 404
        assert client.get("/api/pipelines/runs/999/logs").status_code == 404
        assert client.post("/api/pipelines/runs/999/cancel").status_code == 404

    def test_cancel_finished_run_is_400(self, client, scheduler):
        run_id = trigger(client, scheduler, resolved_source_version=COMMIT)

        response = client.post(f"/api/pipelines/runs/{run_id}/cancel")

        assert response.status_code == 400

    def test_list_runs_filters_by_status(self, client, scheduler, stages):
        trigger(client, scheduler, resolved_source_version=COMMIT)
        stages.source.resolve.side_effect = SourceUnavailable("down")
        trigger(client, scheduler)

        everything = client.get("/api/pipelines/runs").json()
        failed = client.get("/api/pipelines/runs", params={"status": "failed"}).json()

        assert everything['count'] == 2
        assert failed['count'] == 1
        assert failed['runs'][0]['error_kind'] == "SourceUnavailable"

    def test_invalid_pagination_is_400(self, client):
        assert client.get("/api/pipelines/runs", params={"limit": 0}).status_code == 400

    def test_stages(self, client):
        body = client.get("/api/pipelines/stages").json()

        assert body['count'] == 3
        assert [stage['id'] for stage in body['stages']] == ['source', 'build', 'deploy']

    def test_build_spec(self, client):
        body = client.get("/api/pipelines/build-spec").json()

        assert body['build_spec']['artifacts']['files'] == ["imagedefinitions.json"]

    def test_statistics(self, client, scheduler):
        trigger(client, scheduler, resolved_source_version=COMMIT)

        stats = client.get("/api/pipelines/statistics", params={"days": 1}).json()['statistics']

        assert stats['total_runs'] == 1
        assert stats['success_rate_percent'] == 100.0

    def test_rejected_deploy_reported_on_run(self, client, scheduler, stages):
        stages.deployer.deploy_from_artifact.side_effect = ConcurrentDeployRejected(
            "Another deploy to dev/Devecho is in progress", target="dev/Devecho"
        )
        run_id = trigger(client, scheduler, resolved_source_version=COMMIT)

        run = client.get(f"/api/pipelines/runs/{run_id}").json()['pipeline_run']

        assert run['status'] == "failed"
        assert run['error_kind'] == "ConcurrentDeployRejected"
