from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineStage(str, Enum):
    SOURCE = "source"
    BUILD = "build"
    DEPLOY = "deploy"


TERMINAL_STATUSES = (RunStatus.SUCCEEDED, RunStatus.FAILED)


class PipelineTrigger(BaseModel):
    # None means "look up the branch head"; an empty string is a trigger
    # without a resolved version and tags the image ``latest``.
    resolved_source_version: Optional[str] = None
    triggered_by: str = "api"


class PipelineRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pipeline_name: str
    build_number: int
    status: RunStatus
    current_stage: Optional[PipelineStage] = None
    triggered_by: Optional[str] = None
    source_kind: str
    resolved_source_version: Optional[str] = None
    source_reference: Optional[Dict[str, Any]] = None
    image_tag: Optional[str] = None
    image_uri: Optional[str] = None
    deploy_result: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class PipelineRunList(BaseModel):
    runs: List[PipelineRunRead]
    count: int
