"""
Tests for build specifications and the image descriptor artifact.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from delivery_pipeline.config.settings import SourceKind
from delivery_pipeline.exceptions import FileOperationError, ValidationError
from delivery_pipeline.schemas.artifacts import (
    BuildConfig,
    BuildPhase,
    BuildPhaseSpec,
    BuildSpecification,
    ImageDescriptor,
)
from delivery_pipeline.services.build_spec import build_specification_for
from delivery_pipeline.services.image_definitions import read_image_definitions, write_image_definitions

from tests.conftest import REPOSITORY_URI


@pytest.fixture
def cfg(tmp_path):
    return BuildConfig(
        run_id=1,
        build_number=3,
        container_name="echo",
        repository_uri=REPOSITORY_URI,
        region="us-east-1",
        workspace=tmp_path,
        context_dir="app",
        runtime_versions={"golang": "1.20"},
    )


class TestBuildSpecification:
    """Test cases for the build specifications."""

    def test_vcs_phases_in_order(self, cfg):
        spec = build_specification_for(SourceKind.VCS, cfg)

        assert [phase.name for phase in spec.phases] == [
            BuildPhase.INSTALL, BuildPhase.PRE_BUILD, BuildPhase.BUILD, BuildPhase.POST_BUILD,
        ]

    def test_vcs_pushes_latest_before_tag(self, cfg):
        post_build = build_specification_for(SourceKind.VCS, cfg).phase(BuildPhase.POST_BUILD)
        pushes = [c for c in post_build if c.startswith("docker push")]

        assert pushes == [f"docker push {REPOSITORY_URI}:latest", f"docker push {REPOSITORY_URI}:$IMAGE_TAG"]

    def test_registry_never_builds(self, cfg):
        spec = build_specification_for(SourceKind.REGISTRY, cfg)

        commands = [command for _, command in spec.iter_commands()]
        assert not any("docker build" in c for c in commands)
        assert spec.phase(BuildPhase.INSTALL) == ()

    def test_buildspec_document(self, cfg):
        document = build_specification_for(SourceKind.VCS, cfg).to_buildspec()

        assert document['version'] == "0.2"
        assert document['phases']['install']['runtime-versions'] == {"golang": "1.20"}
        assert document['phases']['pre_build']['commands'][0] == "cd app"
        assert document['artifacts'] == {'files': ["imagedefinitions.json"], 'discard-paths': 'yes'}

    def test_phases_are_immutable(self, cfg):
        spec = build_specification_for(SourceKind.VCS, cfg)

        with pytest.raises(PydanticValidationError):
            spec.version = "0.1"

    def test_out_of_order_phases_rejected(self):
        with pytest.raises(PydanticValidationError):
            BuildSpecification(phases=(
                BuildPhaseSpec(name=BuildPhase.BUILD),
                BuildPhaseSpec(name=BuildPhase.PRE_BUILD),
            ))


class TestImageDefinitions:
    """Test cases for the image descriptor file."""

    def test_written_file_is_single_entry_array(self, tmp_path):
        descriptor = ImageDescriptor(name="echo", image_uri=f"{REPOSITORY_URI}:a1b2c3d")

        path = write_image_definitions(descriptor, tmp_path / "out" / "imagedefinitions.json")

        assert json.loads(path.read_text()) == [{"name": "echo", "imageUri": f"{REPOSITORY_URI}:a1b2c3d"}]
        assert read_image_definitions(path) == descriptor

    def test_descriptor_requires_tag(self):
        with pytest.raises(PydanticValidationError):
            ImageDescriptor(name="echo", image_uri=REPOSITORY_URI)

    def test_multiple_entries_rejected(self, tmp_path):
        path = tmp_path / "imagedefinitions.json"
        entry = {"name": "echo", "imageUri": f"{REPOSITORY_URI}:1"}
        path.write_text(json.dumps([entry, entry]))

        with pytest.raises(ValidationError):
            read_image_definitions(path)

    def test_invalid_json_rejected(self, tmp_path):
        path = tmp_path / "imagedefinitions.json"
        path.write_text("{not json")

        with pytest.raises(ValidationError):
            read_image_definitions(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileOperationError) as exc_info:
            read_image_definitions(Path(tmp_path / "missing.json"))

        assert exc_info.value.operation == "read"
