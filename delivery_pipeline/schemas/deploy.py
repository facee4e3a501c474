from typing import Optional

from pydantic import BaseModel, ConfigDict


class ServiceTarget(BaseModel):
    """
    Handle to an externally provisioned service.

    The pipeline updates the service's running image; it never creates or
    deletes the service itself.
    """

    model_config = ConfigDict(frozen=True)

    cluster: str
    service: str
    container_name: str
    target_group_arn: Optional[str] = None

    @property
    def key(self) -> str:
        """Identity used to serialize deploys."""
        return f"{self.cluster}/{self.service}"


class DeployResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    cluster: str
    service: str
    image_uri: str
    task_definition_arn: str
    previous_task_definition_arn: str
    desired_count: int
    running_count: int
    healthy_targets: Optional[int] = None
    duration_seconds: float = 0.0
