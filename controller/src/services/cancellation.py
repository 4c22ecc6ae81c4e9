"""
Watch Redis for run cancellation requests.
"""

import asyncio
import logging

import redis.asyncio as redis

from controller.src.config import get_settings
from controller.src.services.scheduler import CancellationToken

logger = logging.getLogger(__name__)

CANCEL_KEY_PREFIX = "conveyor:cancel:"

async def is_cancel_requested(client: redis.Redis, run_id: str) -> bool:
    return bool(await client.exists(CANCEL_KEY_PREFIX + run_id))

async def watch_for_cancel(run_id: str, token: CancellationToken):
    """Poll the cancel flag of a run and trip `token` once it is set."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url, decode_responses=True)

    try:
        while not token.is_cancelled:
            try:
                if await is_cancel_requested(client, run_id):
                    logger.info(f"Cancellation requested for run {run_id}")
                    token.cancel()
                    break
            except redis.RedisError as e:
                logger.warning(f"Failed to poll cancel flag for run {run_id}: {e}")
            await asyncio.sleep(settings.cancel_poll_interval)
    finally:
        await client.aclose()
