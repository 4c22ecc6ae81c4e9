from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID

class StepBase(BaseModel):
    name: str
    image: Optional[str] = None
    commands: List[str]
    depends_on: List[str] = []
    always_run: bool = False

class StepResponse(StepBase):
    id: UUID
    status: str
    step_order: int
    exit_code: Optional[int] = None
    logs: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class CronTriggerRequest(BaseModel):
    repository_url: str
    cron: str
    branch: str = "main"
    commit_sha: Optional[str] = None

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    pipeline_name: str
    event: str
    status: str
    error: Optional[str] = None
    triggered_by: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
