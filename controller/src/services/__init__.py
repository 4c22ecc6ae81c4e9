from controller.src.services.executor import execute_pipeline, get_step_runner
from controller.src.services.graph import (
    build_graph,
    StepGraph,
    GraphError,
    DuplicateStepName,
    UnknownDependency,
    CycleDetected,
)
from controller.src.services.scheduler import (
    Scheduler,
    StepOutcome,
    StepExecutionError,
    CancellationToken,
)
from controller.src.services.integrity import verify, file_digest, IntegrityError
from controller.src.services.cache import (
    CacheStore,
    InMemoryCacheStore,
    FileCacheStore,
    RedisCacheStore,
    StoreError,
    derive_cache_key,
)
from controller.src.services.status_reporter import StatusReporter

__all__ = [
    "execute_pipeline",
    "get_step_runner",
    "build_graph",
    "StepGraph",
    "GraphError",
    "DuplicateStepName",
    "UnknownDependency",
    "CycleDetected",
    "Scheduler",
    "StepOutcome",
    "StepExecutionError",
    "CancellationToken",
    "verify",
    "file_digest",
    "IntegrityError",
    "CacheStore",
    "InMemoryCacheStore",
    "FileCacheStore",
    "RedisCacheStore",
    "StoreError",
    "derive_cache_key",
    "StatusReporter",
]
