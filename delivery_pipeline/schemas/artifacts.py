"""
Artifacts exchanged between pipeline stages.

``ImageDescriptor`` is the only thing the build stage hands to the deploy
stage. ``BuildSpecification`` is the declarative command list the build
stage executes; ``BuildConfig`` carries the per-run parameters.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from delivery_pipeline.utils.validators import validate_container_name, validate_image_uri


class ImageDescriptor(BaseModel):
    """
    Names the image a container should run.

    Serialized as ``{"name": ..., "imageUri": ...}``; ``name`` must equal the
    name of the running container the deploy stage updates.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    image_uri: str = Field(alias="imageUri")

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        if not validate_container_name(v):
            raise ValueError(f"Invalid container name: {v!r}")
        return v

    @field_validator("image_uri")
    @classmethod
    def check_image_uri(cls, v: str) -> str:
        if not validate_image_uri(v):
            raise ValueError(f"Image URI must be registry/repository:tag, got {v!r}")
        return v

    @property
    def tag(self) -> str:
        return self.image_uri.rsplit(":", 1)[1]

    def to_image_definitions(self) -> List[Dict[str, str]]:
        """Single-element list, the shape the deploy stage indexes by container name."""
        return [self.model_dump(by_alias=True)]


class BuildPhase(str, Enum):
    """Build specification phases, in execution order."""

    INSTALL = "install"
    PRE_BUILD = "pre_build"
    BUILD = "build"
    POST_BUILD = "post_build"


PHASE_ORDER = [BuildPhase.INSTALL, BuildPhase.PRE_BUILD, BuildPhase.BUILD, BuildPhase.POST_BUILD]


class BuildPhaseSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: BuildPhase
    commands: Tuple[str, ...] = ()


class BuildSpecification(BaseModel):
    """
    Ordered shell-level phases of a build.

    Never mutated after construction. Commands read ``REGION`` and
    ``IMAGE_TAG`` from the environment.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "0.2"
    runtime_versions: Dict[str, str] = Field(default_factory=dict)
    phases: Tuple[BuildPhaseSpec, ...]
    base_directory: Optional[str] = None
    artifact_files: Tuple[str, ...] = ()
    discard_paths: bool = True

    @model_validator(mode="after")
    def check_phase_order(self) -> "BuildSpecification":
        names = [phase.name for phase in self.phases]
        if len(set(names)) != len(names):
            raise ValueError("Build phases must be unique")
        if names != sorted(names, key=PHASE_ORDER.index):
            raise ValueError(f"Build phases out of order: {[n.value for n in names]}")
        return self

    def phase(self, name: BuildPhase) -> Tuple[str, ...]:
        """Commands of one phase; empty when the phase is absent."""
        for phase in self.phases:
            if phase.name == name:
                return phase.commands
        return ()

    def iter_commands(self):
        """Yield ``(phase, command)`` pairs in execution order."""
        for phase in self.phases:
            for command in phase.commands:
                yield phase.name, command

    def to_buildspec(self) -> Dict[str, Any]:
        """Render as a buildspec document."""
        phases: Dict[str, Any] = {}
        for phase in self.phases:
            body: Dict[str, Any] = {}
            if phase.name == BuildPhase.INSTALL and self.runtime_versions:
                body['runtime-versions'] = dict(self.runtime_versions)
            commands = list(phase.commands)
            if phase.name == BuildPhase.PRE_BUILD and self.base_directory:
                commands.insert(0, f"cd {self.base_directory}")
            if commands:
                body['commands'] = commands
            phases[phase.name.value] = body

        document: Dict[str, Any] = {'version': self.version, 'phases': phases}
        if self.artifact_files:
            document['artifacts'] = {
                'files': list(self.artifact_files),
                'discard-paths': 'yes' if self.discard_paths else 'no',
            }
        return document


class BuildConfig(BaseModel):
    """Per-run build parameters."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    build_number: int
    container_name: str
    repository_uri: str
    region: str
    workspace: Path
    source_repository_url: Optional[str] = None
    context_dir: Optional[str] = None
    artifact_file: str = "imagedefinitions.json"
    latest_tag: str = "latest"
    runtime_versions: Dict[str, str] = Field(default_factory=dict)
    command_timeout: int = 900

    @property
    def artifact_path(self) -> Path:
        return self.workspace / "artifacts" / self.artifact_file

    @property
    def source_dir(self) -> Path:
        return self.workspace / "src"
