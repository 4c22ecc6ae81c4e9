"""
Create and enqueue pipeline runs for an incoming event.
"""

import logging
import subprocess
from typing import Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from api.src.config import get_settings
from api.src.models.event import Event
from api.src.models.pipeline import Repository, PipelineRun, PipelineStep
from api.src.services.github import (
    RepositoryError,
    clone_repository,
    cleanup_repo,
    fetch_pipeline_config,
    get_head_commit,
)
from api.src.services.pipeline_parser import parse_pipeline_documents, PipelineConfigError
from api.src.services.queue import enqueue_pipeline_run
from api.src.services.trigger import select_pipelines

logger = logging.getLogger(__name__)

settings = get_settings()

async def get_or_create_repository(db: AsyncSession, repo_info: Dict[str, Any]) -> Repository:
    repo_query = select(Repository).where(
        Repository.full_name == repo_info["repo_full_name"]
    )
    result = await db.execute(repo_query)
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=repo_info["repo_name"],
            full_name=repo_info["repo_full_name"],
            clone_url=repo_info["clone_url"],
        )
        db.add(repository)
        await db.flush()

    return repository

async def load_pipelines(repo_info: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Clone the repository and parse its pipeline file.
    Fills in `commit_sha` when the event did not name a commit.
    """
    repo_path = None
    try:
        repo_path = await clone_repository(
            repo_info["clone_url"],
            repo_info.get("commit_sha", ""),
            repo_info.get("branch"),
        )
        if not repo_info.get("commit_sha"):
            repo_info["commit_sha"] = get_head_commit(repo_path)

        content = await fetch_pipeline_config(repo_path)
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    if content is None:
        return []

    return parse_pipeline_documents(content, settings.config_signing_secret)

def _always_run(step_config: Dict[str, Any]) -> bool:
    return set(step_config["when"]["status"]) == {"success", "failure"}

async def create_run(
    db: AsyncSession,
    repository: Repository,
    pipeline: Dict[str, Any],
    repo_info: Dict[str, Any],
    event: Event,
) -> PipelineRun:
    pipeline_run = PipelineRun(
        repository_id=repository.id,
        pipeline_name=pipeline["name"],
        commit_sha=repo_info["commit_sha"],
        branch=repo_info.get("branch") or "",
        event=event.kind.value,
        status="queued",
        triggered_by=repo_info.get("pusher"),
        config=pipeline,
    )
    db.add(pipeline_run)
    await db.flush()

    for i, step_config in enumerate(pipeline["steps"]):
        step = PipelineStep(
            run_id=pipeline_run.id,
            name=step_config["name"],
            image=step_config["image"] or None,
            commands=step_config["commands"],
            depends_on=step_config["depends_on"],
            always_run=_always_run(step_config),
            status="pending",
            step_order=i,
        )
        db.add(step)

    return pipeline_run

async def process_event(
    db: AsyncSession,
    repo_info: Dict[str, Any],
    event: Event,
) -> Dict[str, Any]:
    """
    Start one run per declared pipeline whose trigger accepts `event`.
    Each run is recorded and enqueued independently.
    """
    try:
        pipelines = await load_pipelines(repo_info)
    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline config in {repo_info['repo_full_name']}: {e}")
        return {"status": "error", "reason": str(e)}
    except (RepositoryError, subprocess.SubprocessError, OSError) as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}

    if not pipelines:
        logger.info(f"No pipeline config found in {repo_info['repo_full_name']}")
        return {"status": "skipped", "reason": "No pipeline configuration found"}

    selected = select_pipelines(pipelines, event)
    if not selected:
        logger.info(
            f"No pipeline in {repo_info['repo_full_name']} matches "
            f"{event.kind.value} on {event.branch}"
        )
        return {"status": "skipped", "reason": "No pipeline matches this event"}

    repository = await get_or_create_repository(db, repo_info)

    runs = []
    for pipeline in selected:
        runs.append((pipeline, await create_run(db, repository, pipeline, repo_info, event)))

    await db.commit()

    for pipeline, pipeline_run in runs:
        await enqueue_pipeline_run(
            run_id=str(pipeline_run.id),
            config=pipeline,
            repo_info=repo_info,
            event=event.model_dump(mode="json"),
        )
        logger.info(f"Pipeline run {pipeline_run.id} ({pipeline['name']}) created and queued")

    return {
        "status": "queued",
        "runs": [
            {"run_id": str(pipeline_run.id), "pipeline": pipeline["name"], "steps": len(pipeline["steps"])}
            for pipeline, pipeline_run in runs
        ],
    }
