from api.src.models.pipeline import Repository, PipelineRun, PipelineStep
from api.src.models.event import Event, EventKind, Trigger
from api.src.models.run import (
    CronTriggerRequest,
    PipelineRunResponse,
    StepResponse,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "PipelineStep",
    "Event",
    "EventKind",
    "Trigger",
    "CronTriggerRequest",
    "PipelineRunResponse",
    "StepResponse",
    "RepositoryResponse"
]
