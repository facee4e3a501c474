from .artifacts import (
    BuildConfig,
    BuildPhase,
    BuildPhaseSpec,
    BuildSpecification,
    ImageDescriptor,
)
from .deploy import DeployResult, ServiceTarget
from .events import EventType, NotificationEvent
from .pipeline import (
    PipelineRunList,
    PipelineRunRead,
    PipelineStage,
    PipelineTrigger,
    RunStatus,
)
from .source import RegistrySourceReference, SourceReference, VcsSourceReference

__all__ = [
    "BuildConfig",
    "BuildPhase",
    "BuildPhaseSpec",
    "BuildSpecification",
    "DeployResult",
    "EventType",
    "ImageDescriptor",
    "NotificationEvent",
    "PipelineRunList",
    "PipelineRunRead",
    "PipelineStage",
    "PipelineTrigger",
    "RegistrySourceReference",
    "RunStatus",
    "ServiceTarget",
    "SourceReference",
    "VcsSourceReference",
]
