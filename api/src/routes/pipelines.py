from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.db.database import get_db
from api.src.models.event import Event, EventKind
from api.src.models.pipeline import PipelineRun, PipelineStep, Repository
from api.src.models.run import PipelineRunResponse, RepositoryResponse, CronTriggerRequest
from api.src.services.github import parse_repository_url
from api.src.services.queue import get_run_status, request_cancel
from api.src.services.runs import process_event

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

FINISHED_STATUSES = ("succeeded", "failed")

async def _load_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.steps))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    pipeline: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.steps))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)
    if pipeline:
        query = query.where(PipelineRun.pipeline_name == pipeline)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    runs = result.scalars().all()
    return runs

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await _load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await _load_run(db, run_id)

    # Get live status from Redis
    redis_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "pipeline": run.pipeline_name,
        "db_status": run.status,
        "live_status": redis_status,
        "error": run.error,
        "steps": [
            {
                "name": step.name,
                "status": step.status,
                "order": step.step_order,
                "depends_on": step.depends_on,
                "always_run": step.always_run,
                "exit_code": step.exit_code,
            }
            for step in sorted(run.steps, key=lambda s: s.step_order)
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get logs for all steps in a pipeline run."""
    query = (
        select(PipelineStep)
        .where(PipelineStep.run_id == run_id)
        .order_by(PipelineStep.step_order)
    )
    result = await db.execute(query)
    steps = result.scalars().all()

    if not steps:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return {
        "run_id": str(run_id),
        "steps": [
            {
                "name": step.name,
                "status": step.status,
                "logs": step.logs,
                "error": step.error,
                "started_at": step.started_at,
                "finished_at": step.finished_at,
            }
            for step in steps
        ]
    }

@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Request cancellation of a queued or running pipeline run."""
    run = await _load_run(db, run_id)

    if run.status in FINISHED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    await request_cancel(str(run_id))
    return {"status": "cancelling", "run_id": str(run_id)}

@router.post("/cron")
async def trigger_cron(request: CronTriggerRequest, db: AsyncSession = Depends(get_db)):
    """Start the pipelines of a repository whose trigger accepts this cron job."""
    repo_info = parse_repository_url(
        request.repository_url,
        request.branch,
        request.commit_sha,
    )
    event = Event(kind=EventKind.CRON, branch=request.branch, cron=request.cron)
    return await process_event(db, repo_info, event)

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    repos = result.scalars().all()
    return repos

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    # Count runs by status
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    # Count runs by pipeline
    pipeline_query = (
        select(PipelineRun.pipeline_name, func.count(PipelineRun.id))
        .group_by(PipelineRun.pipeline_name)
    )
    result = await db.execute(pipeline_query)
    pipeline_counts = {row[0]: row[1] for row in result.all()}

    # Count total repositories
    repo_count_query = select(func.count(Repository.id))
    result = await db.execute(repo_count_query)
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "pipelines": pipeline_counts,
        "total_runs": sum(status_counts.values()),
    }
