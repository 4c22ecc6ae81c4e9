"""
Step execution models.
"""

from pydantic import BaseModel, model_validator
from typing import List, Optional, Dict, Union
from datetime import datetime
from enum import Enum

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)

class PipelineStatus(str, Enum):
    """Status a `when` condition is evaluated against."""
    SUCCESS = "success"
    FAILURE = "failure"

class SecretRef(BaseModel):
    """Environment value resolved from a secret at dispatch time."""
    from_secret: str

    class Config:
        frozen = True

    def __repr__(self) -> str:
        return f"SecretRef(from_secret={self.from_secret!r})"

class RunCondition(BaseModel):
    status: List[PipelineStatus] = [PipelineStatus.SUCCESS]

    class Config:
        frozen = True

    @property
    def always_run(self) -> bool:
        return PipelineStatus.SUCCESS in self.status and PipelineStatus.FAILURE in self.status

    def allows(self, upstream: PipelineStatus) -> bool:
        return upstream in self.status

class CacheSettings(BaseModel):
    restore: bool = False
    rebuild: bool = False
    namespace: str
    lockfile: str
    mount: List[str]
    override: bool = False

    class Config:
        frozen = True

    @model_validator(mode="after")
    def check_mode(self):
        if self.restore == self.rebuild:
            raise ValueError("cache step must set exactly one of 'restore' or 'rebuild'")
        return self

class StepConfig(BaseModel):
    name: str
    image: str = ""
    commands: List[str] = []
    environment: Dict[str, Union[str, SecretRef]] = {}
    depends_on: List[str] = []
    when: RunCondition = RunCondition()
    cache: Optional[CacheSettings] = None
    timeout: int = 600
    pull: str = "IfNotPresent"

    class Config:
        frozen = True

    @property
    def always_run(self) -> bool:
        return self.when.always_run

class StepResult(BaseModel):
    name: str
    status: StepStatus = StepStatus.PENDING
    always_run: bool = False
    best_effort: bool = False
    exit_code: Optional[int] = None
    logs: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
