"""Single-flight polling worker for queued bulk jobs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session_maker
from models.bulk_job import BulkJob
from services.alt_text_jobs import process_alt_text_job
from services.content_generation import OpenAIContentGenerator
from services.content_jobs import process_content_job
from services.credits import normalize_amount, refund_credits
from services.job_runtime import ContentGenerator, InvalidJobConfigError, JobContext, JobOutcome
from services.job_store import JobStore
from services.shopify_admin import get_admin_client_for_shop

logger = logging.getLogger(__name__)

Processor = Callable[[BulkJob, JobContext], Awaitable[JobOutcome]]
AdminClientFactory = Callable[[str, Optional[str], async_sessionmaker[AsyncSession]], Awaitable[Any]]

PROCESSORS: Dict[Tuple[str, str], Processor] = {
    ("products", "content"): process_content_job,
    ("collections", "content"): process_content_job,
    ("products", "alt_text"): process_alt_text_job,
}

STALLED_JOB_MESSAGE = "Bulk job was interrupted before it finished. Credits were refunded; please resubmit."
INTERRUPTED_JOB_MESSAGE = "Bulk job was stopped by a worker shutdown. Credits were refunded; please resubmit."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BulkJobWorker:
    """Claims the oldest queued job each tick and runs it to a terminal status.

    One job is in flight at a time. A job whose processor raises is marked failed
    and its reserved credits are refunded in full; failed jobs are never retried.
    """

    def __init__(
        self,
        *,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        generator: Optional[ContentGenerator] = None,
        admin_client_factory: Optional[AdminClientFactory] = None,
        interval_seconds: Optional[float] = None,
        call_timeout_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_maker = session_maker or async_session_maker
        self._clock = clock
        self.store = JobStore(self._session_maker, clock=clock)
        self._generator = generator or OpenAIContentGenerator()
        self._admin_client_factory = admin_client_factory or get_admin_client_for_shop
        self._interval = float(
            settings.JOB_WORKER_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._call_timeout = float(
            settings.EXTERNAL_CALL_TIMEOUT_SECONDS if call_timeout_seconds is None else call_timeout_seconds
        )
        self._sweep_interval = float(
            settings.STALLED_JOB_SWEEP_INTERVAL_SECONDS if sweep_interval_seconds is None else sweep_interval_seconds
        )
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._current_job_id: Optional[str] = None

    async def run_next_job(self) -> Optional[str]:
        """Claim and fully process at most one queued job; returns its id."""
        job = await self.store.claim_next_job()
        if job is None:
            return None

        self._current_job_id = job.id
        try:
            await self._run_claimed_job(job)
        finally:
            self._current_job_id = None
        return job.id

    async def _run_claimed_job(self, job: BulkJob) -> None:
        logger.info("Bulk job %s (%s/%s) started for %s", job.id, job.type, job.task, job.shop_domain)
        try:
            outcome = await self._execute(job)
        except asyncio.CancelledError:
            logger.warning("Bulk job %s cancelled mid-run; failing it and refunding credits", job.id)
            await asyncio.shield(self._fail_job(job, INTERRUPTED_JOB_MESSAGE))
            raise
        except Exception as exc:
            logger.exception("Bulk job %s failed", job.id)
            await self._fail_job(job, str(exc) or exc.__class__.__name__)
            return

        try:
            await self.store.mark_completed(job.id, failed_targets=outcome.failed)
        except Exception:
            # Left running; the stalled-job sweep fails and refunds it.
            logger.exception("Bulk job %s finished but could not be marked completed", job.id)
            return

        if outcome.failed:
            logger.warning(
                "Bulk job %s completed with %s failed and %s updated targets",
                job.id,
                outcome.failed,
                outcome.succeeded,
            )
        else:
            logger.info("Bulk job %s completed (%s targets updated)", job.id, outcome.succeeded)

    async def _execute(self, job: BulkJob) -> JobOutcome:
        processor = PROCESSORS.get((job.type, job.task))
        if processor is None:
            raise InvalidJobConfigError(f"Unsupported bulk job type: {job.type}/{job.task}")

        self._generator.ensure_configured()
        config = job.config or {}
        admin = await self._admin_client_factory(job.shop_domain, config.get("session_id"), self._session_maker)
        context = JobContext(
            job_id=job.id,
            total_items=job.total_items,
            processed_items=job.processed_items,
            store=self.store,
            admin=admin,
            generator=self._generator,
            call_timeout=self._call_timeout,
        )
        return await processor(job, context)

    async def _fail_job(self, job: BulkJob, message: str) -> None:
        if not await self.store.mark_failed(job.id, message):
            logger.warning("Bulk job %s was already finalized; skipping refund", job.id)
            return

        credit_cost = normalize_amount((job.config or {}).get("credit_cost"))
        if credit_cost <= 0:
            return
        try:
            async with self._session_maker() as db:
                await refund_credits(job.shop_domain, credit_cost, db)
        except Exception:
            logger.exception("Failed to refund %s credits for bulk job %s (%s)", credit_cost, job.id, job.shop_domain)

    async def recover_stalled_jobs(self, max_age_minutes: Optional[int] = None) -> int:
        """Fail and refund running jobs left behind by a crash or a lost completion."""
        age = settings.STALLED_JOB_MAX_AGE_MINUTES if max_age_minutes is None else max_age_minutes
        cutoff = self._clock() - timedelta(minutes=max(int(age), 1))
        stalled = await self.store.find_stalled_jobs(cutoff)
        for job in stalled:
            await self._fail_job(job, STALLED_JOB_MESSAGE)
        return len(stalled)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick until ``stop_event`` is set; a failing tick never stops the loop.

        Between ticks the loop also sweeps for stalled jobs every
        ``sweep_interval_seconds``.
        """
        stop_event = stop_event or asyncio.Event()
        next_sweep = self._clock() + timedelta(seconds=self._sweep_interval)
        while not stop_event.is_set():
            try:
                await self.run_next_job()
            except Exception:
                logger.exception("Bulk job worker tick failed")
            if stop_event.is_set():
                break
            if self._clock() >= next_sweep:
                try:
                    recovered = await self.recover_stalled_jobs()
                    if recovered:
                        logger.warning("Recovered %s stalled bulk jobs", recovered)
                except Exception:
                    logger.exception("Stalled bulk job sweep failed")
                next_sweep = self._clock() + timedelta(seconds=self._sweep_interval)
            await self._sleep(self._interval)

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(self._stop_event))
        return self._task

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop polling; an in-flight job gets ``grace_seconds`` to finish before it is cancelled.

        A cancelled job is failed and refunded rather than left running.
        """
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()

        grace = settings.JOB_WORKER_SHUTDOWN_GRACE_SECONDS if grace_seconds is None else grace_seconds
        if self._current_job_id is not None and not self._task.done() and grace > 0:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Bulk job %s did not finish within %ss of shutdown", self._current_job_id, grace)
            except Exception:
                logger.exception("Bulk job worker exited with an error during shutdown")

        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Bulk job worker exited with an error during shutdown")
        self._task = None
