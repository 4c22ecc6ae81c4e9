from controller.src.models.step import (
    StepStatus,
    PipelineStatus,
    SecretRef,
    RunCondition,
    CacheSettings,
    StepConfig,
    StepResult,
)
from controller.src.models.pipeline import (
    RunStatus,
    IntegrityRecord,
    PreRunHook,
    IntegrityConfig,
    PipelineConfig,
    PipelineResult,
    PipelineJob,
)

__all__ = [
    "StepStatus",
    "PipelineStatus",
    "SecretRef",
    "RunCondition",
    "CacheSettings",
    "StepConfig",
    "StepResult",
    "RunStatus",
    "IntegrityRecord",
    "PreRunHook",
    "IntegrityConfig",
    "PipelineConfig",
    "PipelineResult",
    "PipelineJob",
]
