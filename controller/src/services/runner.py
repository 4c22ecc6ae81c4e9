"""
Step runners - execute a step's command sequence in an isolated environment.

Runners are blocking; the executor calls them from worker threads.
"""

import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from kubernetes.client.rest import ApiException

from controller.src.config import get_settings
from controller.src.k8s import (
    get_batch_api,
    build_job,
    get_job_status,
    delete_job,
)
from controller.src.models.step import SecretRef, StepConfig
from controller.src.services.log_collector import collect_logs, get_exit_code
from controller.src.services.scheduler import StepOutcome
from controller.src.services.secrets import SecretProvider, resolve_environment

logger = logging.getLogger(__name__)
settings = get_settings()

Environment = Mapping[str, Union[str, SecretRef]]

# Only these controller variables reach local step processes
INHERITED_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "USER", "SHELL")

class StepRunner(ABC):
    @abstractmethod
    def run(self, step: StepConfig, environment: Environment) -> StepOutcome:
        """Run the step's commands in order and return the exit status and logs."""
        pass

    def terminate(self, step_name: str):
        """Ask a running step to stop. Best effort."""
        pass

class KubernetesStepRunner(StepRunner):
    """Runs each step as a Kubernetes Job."""

    def __init__(self, run_id: str, workspace: str, step_orders: Optional[Dict[str, int]] = None):
        self.run_id = run_id
        self.workspace = workspace
        self.step_orders = step_orders or {}
        self._jobs: Dict[str, str] = {}
        self._terminated = set()

    def run(self, step: StepConfig, environment: Environment) -> StepOutcome:
        batch_v1 = get_batch_api()
        timeout = step.timeout or settings.job_timeout

        job = build_job(
            run_id=self.run_id,
            step_order=self.step_orders.get(step.name, 0),
            step_name=step.name,
            image=step.image,
            commands=step.commands,
            env_vars=dict(environment),
            timeout=timeout,
            workspace=self.workspace,
            pull_policy=step.pull,
        )

        job_name = job.metadata.name
        self._jobs[step.name] = job_name
        logger.info(f"Creating job {job_name}")

        try:
            batch_v1.create_namespaced_job(
                namespace=settings.k8s_namespace,
                body=job,
            )
        except ApiException as e:
            if e.status == 409:
                # Job already exists, delete and recreate
                logger.warning(f"Job {job_name} already exists, deleting...")
                delete_job(job_name)
                time.sleep(2)
                batch_v1.create_namespaced_job(
                    namespace=settings.k8s_namespace,
                    body=job,
                )
            else:
                raise

        succeeded = self.wait_for_job(step.name, job_name, timeout)
        logs = collect_logs(job_name)

        exit_code = get_exit_code(job_name)
        if exit_code is None or (exit_code == 0 and not succeeded):
            exit_code = 0 if succeeded else 1
        return StepOutcome(exit_code=exit_code, logs=logs)

    def wait_for_job(self, step_name: str, job_name: str, timeout: int) -> bool:
        """
        Wait for a job to complete.
        Returns True if succeeded, False if failed, timed out or terminated.
        """
        batch_v1 = get_batch_api()
        start_time = time.time()

        while step_name not in self._terminated:
            elapsed = time.time() - start_time
            if elapsed > timeout:
                logger.error(f"Job {job_name} timed out after {timeout}s")
                return False

            try:
                job = batch_v1.read_namespaced_job(
                    name=job_name,
                    namespace=settings.k8s_namespace,
                )

                status = get_job_status(job)
                if status == "succeeded":
                    return True
                elif status == "failed":
                    return False

                # Still running or pending
                time.sleep(2)

            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
                time.sleep(5)

        logger.warning(f"Stopped waiting for terminated job {job_name}")
        return False

    def terminate(self, step_name: str):
        self._terminated.add(step_name)
        job_name = self._jobs.get(step_name)
        if job_name:
            delete_job(job_name)

class LocalStepRunner(StepRunner):
    """
    Runs commands as local shell processes inside the workspace directory.
    The step image is not used. Meant for development.
    """

    def __init__(self, workspace: Path, secret_provider: SecretProvider):
        self.workspace = Path(workspace)
        self.secret_provider = secret_provider
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def run(self, step: StepConfig, environment: Environment) -> StepOutcome:
        env = {key: os.environ[key] for key in INHERITED_ENV if key in os.environ}
        env.update(resolve_environment(environment, self.secret_provider))
        env["CONVEYOR_STEP_NAME"] = step.name
        env["CONVEYOR_WORKSPACE"] = str(self.workspace)

        if step.image:
            logger.debug(f"Local runner ignores image {step.image} for step {step.name}")

        deadline = time.monotonic() + step.timeout
        output = []

        for command in step.commands:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                output.append(f"Step timed out after {step.timeout}s\n")
                return StepOutcome(exit_code=124, logs="".join(output))

            proc = subprocess.Popen(
                ["/bin/sh", "-c", command],
                cwd=self.workspace,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
            with self._lock:
                self._processes[step.name] = proc
            try:
                stdout, _ = proc.communicate(timeout=remaining)
            except subprocess.TimeoutExpired:
                proc.kill()
                stdout, _ = proc.communicate()
                output.append(stdout or "")
                output.append(f"Step timed out after {step.timeout}s\n")
                return StepOutcome(exit_code=124, logs="".join(output))
            finally:
                with self._lock:
                    self._processes.pop(step.name, None)

            output.append(stdout or "")
            if proc.returncode != 0:
                return StepOutcome(exit_code=proc.returncode, logs="".join(output))

        return StepOutcome(exit_code=0, logs="".join(output))

    def terminate(self, step_name: str):
        with self._lock:
            proc = self._processes.get(step_name)
        if proc is not None and proc.poll() is None:
            proc.terminate()
