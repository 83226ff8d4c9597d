"""Delayed execution with cancellation and optional persistence."""

import asyncio
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import JobStatus, ScheduledJob

logger = get_logger(__name__)


JobHandler = Callable[[ScheduledJob], Awaitable[None]]


class IJobStore(Protocol):
    """Durable backing for scheduled jobs."""

    async def save_scheduled_job(self, job: ScheduledJob) -> None:
        ...

    async def update_scheduled_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        ...

    async def get_pending_scheduled_jobs(self) -> list[ScheduledJob]:
        ...


class IScheduler(Protocol):
    """Runs a registered handler for a job at or after its run time."""

    def register_handler(self, kind: str, handler: JobHandler) -> None:
        """Route jobs of ``kind`` to handler."""
        ...

    async def schedule(
        self, kind: str, payload: dict[str, Any], run_at: datetime
    ) -> str:
        """Schedule a job and return its id."""
        ...

    async def cancel(self, schedule_id: str) -> bool:
        """Cancel a pending job. False if unknown or already fired."""
        ...

    def get(self, schedule_id: str) -> ScheduledJob | None:
        ...

    def list_pending(self) -> list[ScheduledJob]:
        ...


class AsyncioScheduler:
    """One asyncio task per pending job.

    With a job store, jobs are persisted on schedule and pending ones are
    re-armed on ``start()``, so they survive a restart. Jobs whose time has
    already passed fire immediately.

    Finished jobs move to a bounded history of the most recent
    ``max_finished`` so ``get()`` still answers for them.
    """

    def __init__(
        self,
        store: IJobStore | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        max_finished: int = 1000,
    ):
        self._store = store
        self._clock = clock
        self._max_finished = max_finished
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, ScheduledJob] = {}
        self._finished: OrderedDict[str, ScheduledJob] = OrderedDict()
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        if self._store:
            for job in await self._store.get_pending_scheduled_jobs():
                self._jobs.setdefault(job.id, job)

        pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
        for job in pending:
            self._arm(job)
        if pending:
            logger.info("Scheduler armed %s pending jobs", len(pending))

    async def stop(self) -> None:
        """Stop timers. Pending jobs stay pending in the store."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def schedule(
        self, kind: str, payload: dict[str, Any], run_at: datetime
    ) -> str:
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)

        job = ScheduledJob(
            id=f"sched_{uuid.uuid4().hex[:12]}",
            kind=kind,
            payload=payload,
            run_at=run_at,
            created_at=self._clock(),
        )
        self._jobs[job.id] = job

        if self._store:
            await self._store.save_scheduled_job(job)

        if self._running:
            self._arm(job)

        logger.info("Scheduled %s job %s for %s", kind, job.id, run_at.isoformat())
        return job.id

    async def cancel(self, schedule_id: str) -> bool:
        job = self._jobs.get(schedule_id)
        if not job or job.status != JobStatus.PENDING:
            return False

        job.status = JobStatus.CANCELLED
        task = self._tasks.pop(schedule_id, None)
        if task:
            task.cancel()

        self._finish(job)

        if self._store:
            await self._store.update_scheduled_job_status(schedule_id, JobStatus.CANCELLED)

        logger.info("Cancelled scheduled job %s", schedule_id)
        return True

    def get(self, schedule_id: str) -> ScheduledJob | None:
        return self._jobs.get(schedule_id) or self._finished.get(schedule_id)

    def list_pending(self) -> list[ScheduledJob]:
        pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
        return sorted(pending, key=lambda j: j.run_at)

    def _arm(self, job: ScheduledJob) -> None:
        if job.id in self._tasks:
            return
        delay = max(0.0, (job.run_at - self._clock()).total_seconds())
        self._tasks[job.id] = asyncio.create_task(self._fire_after(job, delay))

    async def _fire_after(self, job: ScheduledJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._tasks.pop(job.id, None)

        if job.status != JobStatus.PENDING:
            return
        # cancel() only accepts PENDING jobs
        job.status = JobStatus.RUNNING

        handler = self._handlers.get(job.kind)
        if handler is None:
            job.status = JobStatus.FAILED
            job.error = f"No handler registered for {job.kind}"
            logger.error("Scheduled job %s failed: %s", job.id, job.error)
        else:
            try:
                await handler(job)
                job.status = JobStatus.EXECUTED
            except asyncio.CancelledError:
                # stop() mid-run; left for the next start()
                job.status = JobStatus.PENDING
                raise
            except Exception as e:
                job.status = JobStatus.FAILED
                job.error = str(e)
                logger.error(
                    "Scheduled job %s (%s) failed: %s", job.id, job.kind, e, exc_info=True
                )

        self._finish(job)

        if self._store:
            try:
                await self._store.update_scheduled_job_status(job.id, job.status, job.error)
            except Exception as e:
                logger.error("Failed to persist job %s status: %s", job.id, e)

    def _finish(self, job: ScheduledJob) -> None:
        self._jobs.pop(job.id, None)
        self._finished[job.id] = job
        while len(self._finished) > self._max_finished:
            self._finished.popitem(last=False)
