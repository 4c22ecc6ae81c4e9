from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

async def _check_db(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        return f"unhealthy: {e}"

async def _check_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return "healthy"
    except redis.RedisError as e:
        return f"unhealthy: {e}"
    finally:
        await client.aclose()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "conveyor-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    state = await _check_db(db)
    return {"status": state.split(":")[0], "database": state}

@router.get("/health/redis")
async def redis_health_check():
    state = await _check_redis()
    return {"status": state.split(":")[0], "redis": state}

@router.get("/health/queue")
async def queue_health_check():
    try:
        return {"status": "healthy", "queue_length": await get_queue_length()}
    except redis.RedisError as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for the database, Redis and the run queue."""
    health = {
        "api": "healthy",
        "database": await _check_db(db),
        "redis": await _check_redis(),
    }

    queue_length = None
    if health["redis"] == "healthy":
        try:
            queue_length = await get_queue_length()
        except redis.RedisError as e:
            health["redis"] = f"unhealthy: {e}"

    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"

    return {"status": overall, "services": health, "queue_length": queue_length}
