"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from config import settings
from database import get_db
from models.bulk_job import BulkJob
from services.content_generation import OpenAIContentGenerator
from services.job_store import JOB_STATUS_QUEUED, JOB_STATUS_RUNNING

router = APIRouter()


async def _queue_depth(db: AsyncSession) -> dict:
    result = await db.execute(
        select(BulkJob.status, func.count())
        .where(BulkJob.status.in_((JOB_STATUS_QUEUED, JOB_STATUS_RUNNING)))
        .group_by(BulkJob.status)
    )
    counts = {status: int(count) for status, count in result.all()}
    return {
        JOB_STATUS_QUEUED: counts.get(JOB_STATUS_QUEUED, 0),
        JOB_STATUS_RUNNING: counts.get(JOB_STATUS_RUNNING, 0),
    }


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Report database, Redis, generation provider and job queue status.
    Redis only backs rate limiting, so its outage degrades but never fails the API.
    """
    worker = getattr(request.app.state, "job_worker", None)
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "openai_api_key": "configured" if OpenAIContentGenerator().is_configured() else "missing",
        "job_worker": "running" if worker is not None else "disabled",
        "jobs": None,
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "up"
        health_status["jobs"] = await _queue_depth(db)
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Not ready until jobs can actually be generated."""
    if not OpenAIContentGenerator().is_configured():
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": ["OPENAI_API_KEY"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
