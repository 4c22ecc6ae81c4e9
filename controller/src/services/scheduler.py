"""
Dependency-ordered step scheduler.

Steps start as soon as every predecessor is terminal and their `when`
condition accepts the upstream status. Independent branches run as
concurrent asyncio tasks.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from controller.src.models.pipeline import PipelineResult, RunStatus
from controller.src.models.step import (
    PipelineStatus,
    StepConfig,
    StepResult,
    StepStatus,
)
from controller.src.services.graph import StepGraph

logger = logging.getLogger(__name__)

class StepExecutionError(Exception):
    """Raised when a step's command sequence exits non-zero."""

    def __init__(self, step: str, exit_code: int, logs: str = ""):
        self.step = step
        self.exit_code = exit_code
        self.logs = logs
        super().__init__(f"Step '{step}' exited with code {exit_code}")

class BestEffortFailure(Exception):
    """
    A failure that only fails the pipeline when a strict-success step
    depends on the failed step.
    """
    pass

@dataclass
class StepOutcome:
    exit_code: int = 0
    logs: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

class CancellationToken:
    """Cooperative cancellation flag backed by an ``asyncio.Event``."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

Dispatch = Callable[[StepConfig], Awaitable[StepOutcome]]
UpdateCallback = Callable[[StepResult], None]

def _now() -> datetime:
    return datetime.now(timezone.utc)

class Scheduler:
    """Runs one pipeline's step graph to completion, failure or cancellation."""

    def __init__(
        self,
        graph: StepGraph,
        dispatch: Dispatch,
        name: str = "pipeline",
        cancel_token: Optional[CancellationToken] = None,
        on_update: Optional[UpdateCallback] = None,
    ):
        self.graph = graph
        self.name = name
        self._dispatch = dispatch
        self._token = cancel_token or CancellationToken()
        self._on_update = on_update
        self.results: Dict[str, StepResult] = {
            step_name: StepResult(
                name=step_name,
                always_run=graph.step(step_name).always_run,
            )
            for step_name in graph.names
        }
        self._running: Dict[asyncio.Task, str] = {}
        self._cancelled = False

    def upstream_status(self, step_name: str) -> PipelineStatus:
        """
        Failure when any ancestor failed or any direct predecessor did not
        succeed, success otherwise.
        """
        for ancestor in self.graph.ancestors(step_name):
            if self.results[ancestor].status == StepStatus.FAILED:
                return PipelineStatus.FAILURE
        for dep in self.graph.predecessors(step_name):
            if self.results[dep].status != StepStatus.SUCCEEDED:
                return PipelineStatus.FAILURE
        return PipelineStatus.SUCCESS

    async def run(self) -> PipelineResult:
        logger.info(f"Scheduling {len(self.graph)} steps for pipeline {self.name}")
        cancel_waiter = asyncio.ensure_future(self._token.wait())
        try:
            while True:
                if self._token.is_cancelled:
                    await self._cancel()
                    break

                self._advance()

                if not self._running:
                    break

                done, _ = await asyncio.wait(
                    set(self._running) | {cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    self._finish(task)
        finally:
            cancel_waiter.cancel()
            # Steps still running when the loop exits early must not outlive it
            for task in self._running:
                task.cancel()
            await asyncio.gather(cancel_waiter, *self._running, return_exceptions=True)
            self._running.clear()

        return self._result()

    def _advance(self):
        """Start or skip every pending step whose predecessors are terminal."""
        changed = True
        while changed:
            changed = False
            for step_name in self.graph.topological_order():
                result = self.results[step_name]
                if result.status != StepStatus.PENDING:
                    continue
                deps = self.graph.predecessors(step_name)
                if not all(self.results[d].status.is_terminal for d in deps):
                    continue

                step = self.graph.step(step_name)
                upstream = self.upstream_status(step_name)
                if step.when.allows(upstream):
                    self._start(step)
                else:
                    logger.info(
                        f"Skipping step {step_name}: upstream status is {upstream.value}"
                    )
                    self._set(result, StepStatus.SKIPPED, finished_at=_now())
                    changed = True

    def _start(self, step: StepConfig):
        result = self.results[step.name]
        self._set(result, StepStatus.RUNNING, started_at=_now())
        logger.info(f"Starting step {step.name}")
        task = asyncio.ensure_future(self._dispatch(step))
        self._running[task] = step.name

    def _finish(self, task: asyncio.Task):
        step_name = self._running.pop(task)
        result = self.results[step_name]
        finished_at = _now()

        try:
            outcome = task.result()
        except StepExecutionError as e:
            logger.error(f"Step {step_name} failed: {e}")
            self._set(
                result, StepStatus.FAILED,
                exit_code=e.exit_code, logs=e.logs, error=str(e),
                finished_at=finished_at,
            )
            return
        except BestEffortFailure as e:
            logger.warning(f"Step {step_name} failed (best effort): {e}")
            self._set(
                result, StepStatus.FAILED,
                best_effort=True, error=str(e), finished_at=finished_at,
            )
            return
        except Exception as e:
            logger.exception(f"Step {step_name} failed with exception")
            self._set(result, StepStatus.FAILED, error=str(e), finished_at=finished_at)
            return

        if outcome.succeeded:
            logger.info(f"Step {step_name} succeeded")
            status = StepStatus.SUCCEEDED
            error = None
        else:
            logger.error(f"Step {step_name} exited with code {outcome.exit_code}")
            status = StepStatus.FAILED
            error = f"Step '{step_name}' exited with code {outcome.exit_code}"
        self._set(
            result, status,
            exit_code=outcome.exit_code, logs=outcome.logs, error=error,
            finished_at=finished_at,
        )

    async def _cancel(self):
        logger.warning(f"Pipeline {self.name} cancelled, skipping remaining steps")
        self._cancelled = True
        for task in self._running:
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()

        finished_at = _now()
        for result in self.results.values():
            if not result.status.is_terminal:
                self._set(result, StepStatus.SKIPPED, finished_at=finished_at)

    def _set(self, result: StepResult, status: StepStatus, **fields):
        result.status = status
        for key, value in fields.items():
            setattr(result, key, value)
        if self._on_update:
            try:
                self._on_update(result)
            except Exception:
                # A failed status write never stops the run
                logger.exception(
                    f"Failed to report step {result.name} as {status.value}"
                )

    def _blocks_pipeline(self, result: StepResult) -> bool:
        if result.status != StepStatus.FAILED or result.always_run:
            return False
        if not result.best_effort:
            return True
        # A best-effort failure only counts when a strict successor needed it
        return any(
            PipelineStatus.FAILURE not in self.graph.step(child).when.status
            for child in self.graph.successors(result.name)
        )

    def _result(self) -> PipelineResult:
        cancelled = self._cancelled
        failed = cancelled or any(self._blocks_pipeline(r) for r in self.results.values())
        status = RunStatus.FAILED if failed else RunStatus.SUCCEEDED

        for step_name in self.graph.names:
            result = self.results[step_name]
            if result.status == StepStatus.FAILED and result.always_run:
                logger.warning(f"Finalization step {step_name} failed")

        logger.info(f"Pipeline {self.name} finished with status: {status.value}")
        return PipelineResult(
            name=self.name,
            status=status,
            steps=[self.results[n] for n in self.graph.names],
            cancelled=cancelled,
        )
