"""
Pipeline, job and run result models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from enum import Enum

from controller.src.models.step import StepConfig, StepResult, StepStatus

class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class IntegrityRecord(BaseModel):
    path: str
    sha256: str

    class Config:
        frozen = True

class PreRunHook(BaseModel):
    script: str
    args: List[str] = []
    enabled: bool = True

    class Config:
        frozen = True

class IntegrityConfig(BaseModel):
    image: str = "alpine/git:v2.30.1"
    files: List[IntegrityRecord] = []
    pre_run: Optional[PreRunHook] = None

    class Config:
        frozen = True

class PipelineConfig(BaseModel):
    name: str
    steps: List[StepConfig]
    workspace: str = "/workspace"
    environment: Dict[str, str] = {}
    integrity: Optional[IntegrityConfig] = None

    class Config:
        frozen = True

class PipelineResult(BaseModel):
    name: str
    status: RunStatus
    steps: List[StepResult] = []
    error: Optional[str] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def failed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == StepStatus.FAILED]

    @property
    def skipped_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == StepStatus.SKIPPED]

    @property
    def finalization_failures(self) -> List[str]:
        """Always-run steps that failed without failing the pipeline."""
        return [
            s.name for s in self.steps
            if s.status == StepStatus.FAILED and s.always_run
        ]

    def step(self, name: str) -> StepResult:
        for result in self.steps:
            if result.name == name:
                return result
        raise KeyError(name)

class PipelineJob(BaseModel):
    run_id: str
    config: Dict[str, Any]
    repo_info: Dict[str, Any] = {}
    event: Dict[str, Any] = {}
    queued_at: str
