import asyncio
import enum
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from config.logging_config import MetricsLogger, get_logger, log_job_execution
from services.audit_service.config import settings
from services.audit_service.errors import ConfigurationError

logger = get_logger(__name__)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType:
    RUN_AUDIT = "run-audit"
    SCHEDULE_AUDIT = "schedule-audit"
    GENERATE_REPORT = "generate-report"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    type: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


Handler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    """In-process, non-durable background job queue.

    At most ``concurrency`` jobs are processing at once; the rest wait FIFO.
    Jobs are lost on restart. Build one per process and hand it to producers.
    """

    def __init__(self, concurrency: int | None = None, retention_s: float | None = None, cleanup_interval_s: float | None = None):
        self.concurrency = concurrency or settings.job_concurrency
        self.retention_s = settings.job_retention_s if retention_s is None else retention_s
        self.cleanup_interval_s = cleanup_interval_s or settings.job_cleanup_interval_s
        self._handlers: Dict[str, Handler] = {}
        self._jobs: Dict[str, Job] = {}
        self._pending: deque[Job] = deque()
        self._running: Dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._cleanup_task: asyncio.Task | None = None
        self._stopping = False

    def register_handler(self, job_type: str, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def add(self, job_type: str, payload: Dict[str, Any] | None = None) -> Job:
        job = Job(type=job_type, payload=dict(payload or {}))
        self._jobs[job.id] = job
        self._pending.append(job)
        self._idle.clear()
        logger.info(f"Job queued: {job_type}", extra={"job_id": job.id})
        self._dispatch()
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def all_jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def jobs_by_status(self, status: JobStatus) -> list[Job]:
        return [j for j in self._jobs.values() if j.status == status]

    @property
    def processing_count(self) -> int:
        return len(self._running)

    def update_progress(self, job_id: str, progress: int) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.is_terminal:
            return
        job.progress = max(job.progress, min(100, max(0, int(progress))))

    def _dispatch(self) -> None:
        if self._stopping:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # picked up by start() once a loop is running
            return

        while self._pending and len(self._running) < self.concurrency:
            job = self._pending.popleft()
            handler = self._handlers.get(job.type)
            if handler is None:
                self._finish(job, error=ConfigurationError(f"no handler registered for job type '{job.type}'"))
                continue
            self._running[job.id] = loop.create_task(self._execute(job, handler))

        if not self._pending and not self._running:
            self._idle.set()

    async def _execute(self, job: Job, handler: Handler) -> None:
        job.status = JobStatus.PROCESSING
        job.started_at = _now()
        MetricsLogger.increment("jobs_started")
        try:
            result = await handler(job)
        except asyncio.CancelledError:
            self._finish(job, error="job cancelled")
            raise
        except Exception as e:
            self._finish(job, error=e)
        else:
            self._finish(job, result=result)
        finally:
            self._running.pop(job.id, None)
            self._dispatch()

    def _finish(self, job: Job, result: Any = None, error: Any = None) -> None:
        job.completed_at = _now()
        duration = (job.completed_at - (job.started_at or job.completed_at)).total_seconds()
        if error is not None:
            job.status = JobStatus.FAILED
            job.error = str(error)
        else:
            job.status = JobStatus.COMPLETED
            job.result = result
            job.progress = 100
        log_job_execution(logger, job.type, job.id, duration, job.status.value, error=job.error)

    def cleanup_old_jobs(self, now: datetime | None = None) -> int:
        cutoff = (now or _now()) - timedelta(seconds=self.retention_s)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"Pruned {len(expired)} finished jobs")
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_s)
            self.cleanup_old_jobs()

    def start(self) -> None:
        self._stopping = False
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        self._dispatch()

    async def stop(self) -> None:
        self._stopping = True
        tasks = list(self._running.values())
        if self._cleanup_task is not None:
            tasks.append(self._cleanup_task)
            self._cleanup_task = None
        for task in tasks:
            task.cancel()
        started = time.monotonic()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Job queue stopped in {time.monotonic() - started:.2f}s")

    async def join(self) -> None:
        """Wait until nothing is pending or processing."""
        await self._idle.wait()
