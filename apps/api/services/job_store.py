"""Durable bulk job store backed by SQLAlchemy."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.bulk_job import BulkJob

logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

CLAIM_ATTEMPTS = 5
ERROR_MESSAGE_MAX_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Persist bulk jobs and their status/progress transitions.

    Every mutation is a conditional UPDATE on the expected current status, so
    status only moves forward even if more than one worker polls the table.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def create_job(
        self,
        db: AsyncSession,
        *,
        shop_domain: str,
        job_type: str,
        task: str,
        config: Dict[str, Any],
        total_items: int,
    ) -> BulkJob:
        """Insert a queued job using the caller's session and commit it."""
        job = BulkJob(
            shop_domain=shop_domain,
            type=job_type,
            task=task,
            status=JOB_STATUS_QUEUED,
            config=config,
            total_items=int(total_items),
            processed_items=0,
            failed_targets=0,
            created_at=self._clock(),
        )
        db.add(job)
        await db.commit()
        await db.refresh(job)
        return job

    async def claim_next_job(self) -> Optional[BulkJob]:
        """Atomically move the oldest queued job (any shop) to running."""
        async with self._session_maker() as db:
            for _ in range(CLAIM_ATTEMPTS):
                candidate = await db.execute(
                    select(BulkJob.id)
                    .where(BulkJob.status == JOB_STATUS_QUEUED)
                    .order_by(BulkJob.created_at.asc(), BulkJob.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = candidate.scalar_one_or_none()
                if job_id is None:
                    await db.rollback()
                    return None

                result = await db.execute(
                    update(BulkJob)
                    .where(BulkJob.id == job_id, BulkJob.status == JOB_STATUS_QUEUED)
                    .values(status=JOB_STATUS_RUNNING, started_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await db.commit()
                    claimed = await db.execute(select(BulkJob).where(BulkJob.id == job_id))
                    return claimed.scalar_one()

                # Another worker claimed it between the select and the update.
                await db.rollback()
                logger.info("Bulk job %s was claimed by another worker", job_id)
        return None

    async def increment_progress(self, job_id: str, count: int) -> None:
        """Advance processed_items by ``count``, capped at total_items."""
        if count <= 0:
            return
        advanced = BulkJob.processed_items + int(count)
        async with self._session_maker() as db:
            await db.execute(
                update(BulkJob)
                .where(BulkJob.id == job_id, BulkJob.status == JOB_STATUS_RUNNING)
                .values(
                    processed_items=case(
                        (advanced > BulkJob.total_items, BulkJob.total_items),
                        else_=advanced,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def mark_completed(self, job_id: str, *, failed_targets: int = 0) -> bool:
        async with self._session_maker() as db:
            result = await db.execute(
                update(BulkJob)
                .where(BulkJob.id == job_id, BulkJob.status == JOB_STATUS_RUNNING)
                .values(
                    status=JOB_STATUS_COMPLETED,
                    processed_items=BulkJob.total_items,
                    failed_targets=max(int(failed_targets), 0),
                    completed_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def mark_failed(self, job_id: str, error_message: str) -> bool:
        """Fail a queued or running job; returns True only for the call that failed it."""
        message = (error_message or "Unknown error")[:ERROR_MESSAGE_MAX_LENGTH]
        async with self._session_maker() as db:
            result = await db.execute(
                update(BulkJob)
                .where(
                    BulkJob.id == job_id,
                    BulkJob.status.in_((JOB_STATUS_QUEUED, JOB_STATUS_RUNNING)),
                )
                .values(status=JOB_STATUS_FAILED, error_message=message, completed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def get_job(self, job_id: str) -> Optional[BulkJob]:
        async with self._session_maker() as db:
            result = await db.execute(select(BulkJob).where(BulkJob.id == job_id))
            return result.scalar_one_or_none()

    async def find_stalled_jobs(self, started_before: datetime) -> List[BulkJob]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(BulkJob)
                .where(
                    BulkJob.status == JOB_STATUS_RUNNING,
                    BulkJob.started_at < started_before,
                )
                .order_by(BulkJob.started_at.asc())
            )
            return list(result.scalars().all())


async def list_jobs_for_shop(shop_domain: str, db: AsyncSession, *, limit: int = 25) -> List[BulkJob]:
    result = await db.execute(
        select(BulkJob)
        .where(BulkJob.shop_domain == shop_domain)
        .order_by(BulkJob.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def get_job_for_shop(job_id: str, shop_domain: str, db: AsyncSession) -> Optional[BulkJob]:
    """Look up a job only if it belongs to ``shop_domain``."""
    result = await db.execute(
        select(BulkJob).where(
            BulkJob.id == job_id,
            BulkJob.shop_domain == shop_domain,
        )
    )
    return result.scalar_one_or_none()
