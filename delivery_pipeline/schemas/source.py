from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from delivery_pipeline.config.settings import SourceKind


class VcsSourceReference(BaseModel):
    """A commit on a pinned branch."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[SourceKind.VCS] = SourceKind.VCS
    branch: str
    commit_hash: str = ""
    repository_url: Optional[str] = None


class RegistrySourceReference(BaseModel):
    """An image tag in an existing registry repository."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[SourceKind.REGISTRY] = SourceKind.REGISTRY
    image_tag: str = "latest"
    image_digest: Optional[str] = None
    repository_name: Optional[str] = None


# Callers switch on ``kind``; see build_service.compute_image_tag.
SourceReference = Annotated[
    Union[VcsSourceReference, RegistrySourceReference],
    Field(discriminator="kind"),
]
