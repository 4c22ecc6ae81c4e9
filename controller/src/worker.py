"""
Queue worker - pulls jobs from Redis and executes them.
"""

import asyncio
import logging
import json
from typing import Optional, Dict, Any, Set

import redis.asyncio as redis

from controller.src.config import get_settings
from controller.src.services.cancellation import watch_for_cancel
from controller.src.services.executor import execute_pipeline
from controller.src.services.scheduler import CancellationToken

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "conveyor:jobs"
PIPELINE_STATUS = "conveyor:status"

async def get_next_job(client: redis.Redis) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = await client.brpop(PIPELINE_QUEUE, timeout=5)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

async def set_live_status(client: redis.Redis, run_id: str, status: str):
    try:
        await client.hset(PIPELINE_STATUS, run_id, status)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish status of run {run_id}: {e}")

async def run_job(job: Dict[str, Any], client: redis.Redis):
    """Execute one queued run while watching for its cancellation."""
    run_id = job.get("run_id", "unknown")
    token = CancellationToken()
    watcher = asyncio.create_task(watch_for_cancel(run_id, token))

    await set_live_status(client, run_id, "running")
    try:
        result = await execute_pipeline(job, cancel_token=token)
        await set_live_status(client, run_id, "cancelled" if result.cancelled else result.status.value)
    except Exception as e:
        logger.exception(f"Failed to execute pipeline {run_id}: {e}")
        await set_live_status(client, run_id, "failed")
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)

async def worker_loop():
    """Main worker loop. Runs up to `max_concurrent_runs` pipelines at once."""
    logger.info("Worker started, waiting for jobs...")
    client = redis.from_url(settings.redis_url, decode_responses=True)
    slots = asyncio.Semaphore(settings.max_concurrent_runs)
    running: Set[asyncio.Task] = set()

    def release(task: asyncio.Task):
        running.discard(task)
        slots.release()

    try:
        while True:
            await slots.acquire()
            try:
                job = await get_next_job(client)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                slots.release()
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
                continue

            if not job:
                slots.release()
                continue

            logger.info(f"Received job for run {job.get('run_id', 'unknown')}")
            task = asyncio.create_task(run_job(job, client))
            running.add(task)
            task.add_done_callback(release)
    finally:
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        await client.aclose()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
