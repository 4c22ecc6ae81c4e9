"""
Pipeline executor - verifies, schedules and runs one pipeline run.
"""

import asyncio
import logging
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.models.pipeline import (
    PipelineConfig,
    PipelineJob,
    PipelineResult,
    RunStatus,
)
from controller.src.models.step import StepConfig, StepResult, StepStatus
from controller.src.services.cache import (
    CacheStore,
    StoreError,
    get_cache_store,
    rebuild_cache,
    restore_cache,
)
from controller.src.services.graph import GraphError, build_graph
from controller.src.services.integrity import IntegrityError, verify
from controller.src.services.runner import (
    KubernetesStepRunner,
    LocalStepRunner,
    StepRunner,
)
from controller.src.services.scheduler import (
    BestEffortFailure,
    CancellationToken,
    Scheduler,
    StepExecutionError,
    StepOutcome,
)
from controller.src.services.secrets import EnvironmentSecretProvider
from controller.src.services.status_reporter import StatusReporter
from controller.src.services.workspace import (
    WorkspaceError,
    cleanup_workspace,
    prepare_workspace,
)

logger = logging.getLogger(__name__)
settings = get_settings()

PRE_RUN_STEP = "integrity-pre-run"

def get_step_runner(run_id: str, pipeline: PipelineConfig, workspace: Path) -> StepRunner:
    if settings.runner == "kubernetes":
        step_orders = {step.name: i for i, step in enumerate(pipeline.steps)}
        return KubernetesStepRunner(run_id, pipeline.workspace, step_orders)
    if settings.runner == "local":
        return LocalStepRunner(workspace, EnvironmentSecretProvider())
    raise ValueError(f"Unknown step runner: {settings.runner}")

def run_pre_run_hook(pipeline: PipelineConfig, runner: StepRunner):
    """Invoke the integrity block's companion script, when enabled."""
    hook = pipeline.integrity.pre_run if pipeline.integrity else None
    if hook is None or not hook.enabled:
        return

    step = StepConfig(
        name=PRE_RUN_STEP,
        image=pipeline.integrity.image,
        commands=[shlex.join(["sh", hook.script, *hook.args])],
    )
    logger.info(f"Running pre-run hook {hook.script}")
    outcome = runner.run(step, pipeline.environment)
    if not outcome.succeeded:
        raise IntegrityError(
            hook.script, "", None,
            message=f"Pre-run hook {hook.script} exited with code {outcome.exit_code}",
        )

def run_cache_step(store: CacheStore, step: StepConfig, workspace: Path) -> StepOutcome:
    if step.cache.restore:
        hit = restore_cache(store, step.cache, workspace)
        return StepOutcome(logs="cache hit\n" if hit else "cache miss, cold build\n")

    try:
        stored = rebuild_cache(store, step.cache, workspace)
    except StoreError as e:
        raise BestEffortFailure(str(e))
    return StepOutcome(logs="cache saved\n" if stored else "cache entry unchanged\n")

def _skipped_result(name: str, config: Dict[str, Any], error: str) -> PipelineResult:
    steps = [
        StepResult(name=step["name"], status=StepStatus.SKIPPED)
        for step in config.get("steps", [])
        if isinstance(step, dict) and "name" in step
    ]
    return PipelineResult(name=name, status=RunStatus.FAILED, steps=steps, error=error)

async def execute_pipeline(
    job_data: Dict[str, Any],
    runner: Optional[StepRunner] = None,
    cache_store: Optional[CacheStore] = None,
    reporter: Optional[StatusReporter] = None,
    workspace: Optional[Path] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> PipelineResult:
    """
    Execute a pipeline run.
    Load-time errors (config, graph, integrity) fail the run before any step starts.
    """
    job = PipelineJob.model_validate(job_data)
    run_id = job.run_id
    name = job.config.get("name", "unnamed")
    reporter = reporter or StatusReporter(run_id)

    logger.info(f"Starting pipeline run {run_id} ({name})")
    reporter.update_run_status(RunStatus.RUNNING.value, started_at=datetime.now(timezone.utc))

    def abort(error: Exception) -> PipelineResult:
        logger.error(f"Pipeline run {run_id} aborted: {error}")
        result = _skipped_result(name, job.config, str(error))
        for step_result in result.steps:
            reporter.update_step_status(step_result)
        reporter.update_run_status(
            RunStatus.FAILED.value,
            error=str(error),
            finished_at=datetime.now(timezone.utc),
        )
        return result

    try:
        pipeline = PipelineConfig.model_validate(job.config)
        graph = build_graph(pipeline.steps)
    except (ValidationError, GraphError) as e:
        return abort(e)

    owns_workspace = workspace is None
    try:
        if owns_workspace:
            workspace = await asyncio.to_thread(prepare_workspace, run_id, job.repo_info)
    except WorkspaceError as e:
        return abort(e)

    try:
        runner = runner or get_step_runner(run_id, pipeline, workspace)

        if pipeline.integrity:
            try:
                await asyncio.to_thread(verify, pipeline.integrity.files, workspace)
                await asyncio.to_thread(run_pre_run_hook, pipeline, runner)
            except IntegrityError as e:
                return abort(e)

        store = cache_store or get_cache_store()

        async def dispatch(step: StepConfig) -> StepOutcome:
            try:
                if step.cache:
                    return await asyncio.to_thread(run_cache_step, store, step, workspace)

                environment = {**pipeline.environment, **step.environment}
                outcome = await asyncio.to_thread(runner.run, step, environment)
            except asyncio.CancelledError:
                await asyncio.to_thread(runner.terminate, step.name)
                raise

            if not outcome.succeeded:
                raise StepExecutionError(step.name, outcome.exit_code, outcome.logs)
            return outcome

        scheduler = Scheduler(
            graph,
            dispatch,
            name=pipeline.name,
            cancel_token=cancel_token,
            on_update=reporter.update_step_status,
        )
        result = await scheduler.run()
    finally:
        if owns_workspace and workspace is not None:
            await asyncio.to_thread(cleanup_workspace, workspace)

    error = None
    if result.cancelled:
        error = "Run cancelled"
    elif result.failed_steps:
        error = f"Failed steps: {', '.join(result.failed_steps)}"
    reporter.update_run_status(
        result.status.value,
        error=error,
        finished_at=datetime.now(timezone.utc),
    )

    logger.info(f"Pipeline run {run_id} finished with status: {result.status.value}")
    return result
