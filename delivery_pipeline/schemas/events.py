from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationEvent(BaseModel):
    """Pipeline lifecycle event. Delivered at least once, never deduplicated."""

    model_config = ConfigDict(frozen=True)

    pipeline_run_id: int
    event_type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
