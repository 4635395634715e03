import asyncio
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta

from config.logging_config import get_logger
from services.audit_service.config import settings
from services.audit_service.db.models import ScheduleFrequency
from services.audit_service.errors import PersistenceError
from services.audit_service.jobs.queue import Job, JobQueue, JobType

logger = get_logger(__name__)

_DAY_STEPS = {ScheduleFrequency.DAILY.value: 1, ScheduleFrequency.WEEKLY.value: 7}


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _step(frequency: str, n: int) -> relativedelta:
    if frequency == ScheduleFrequency.MONTHLY.value:
        return relativedelta(months=n)
    return relativedelta(days=n * _DAY_STEPS[frequency])


def calculate_next_run(frequency: str, previous: datetime | None, now: datetime, run_hour: int | None = None) -> datetime:
    """Next run strictly after ``now`` on the frequency grid anchored at ``previous``.

    The anchor is moved to ``run_hour``:00 UTC. Monthly steps are taken from the
    anchor, so a day-of-month past the end of a short month is clamped
    (Jan 31 -> Feb 28/29).
    """
    if isinstance(frequency, ScheduleFrequency):
        frequency = frequency.value
    if frequency not in _DAY_STEPS and frequency != ScheduleFrequency.MONTHLY.value:
        raise ValueError(f"unknown schedule frequency: {frequency}")

    hour = settings.schedule_run_hour if run_hour is None else run_hour
    now = _as_utc(now)
    anchor = _as_utc(previous or now).replace(hour=hour, minute=0, second=0, microsecond=0)

    # skip whole periods when the anchor is far in the past
    if frequency == ScheduleFrequency.MONTHLY.value:
        n = max(1, (now.year - anchor.year) * 12 + now.month - anchor.month - 1)
    else:
        n = max(1, (now - anchor).days // _DAY_STEPS[frequency])

    while anchor + _step(frequency, n) <= now:
        n += 1
    return anchor + _step(frequency, n)


async def queue_scheduled_audit(store, queue: JobQueue, schedule) -> tuple[str, Job]:
    audit = await store.create_audit(
        schedule.site_url,
        dict(schedule.options or {}),
        project_id=schedule.project_id,
        schedule_id=schedule.id,
    )
    job = queue.add(JobType.RUN_AUDIT, {"audit_id": audit.id, "schedule_id": schedule.id})
    return audit.id, job


class ScheduleLocks:
    """One lock per schedule id; shared by every producer of scheduled audits."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, schedule_id: str) -> asyncio.Lock:
        return self._locks.setdefault(schedule_id, asyncio.Lock())


async def queue_if_idle(store, queue: JobQueue, schedule, locks: ScheduleLocks) -> tuple[str, Job] | None:
    """Queue an audit for ``schedule`` unless one is already PENDING or IN_PROGRESS."""
    async with locks(schedule.id):
        if await store.has_active_audit(schedule.id):
            return None
        return await queue_scheduled_audit(store, queue, schedule)


class SchedulePoller:
    """Periodic sweep that turns due schedules into queued audits."""

    def __init__(
        self,
        store,
        queue: JobQueue,
        interval_s: float | None = None,
        run_hour: int | None = None,
        locks: ScheduleLocks | None = None,
    ):
        self.store = store
        self.queue = queue
        self.interval_s = interval_s or settings.schedule_poll_interval_s
        self.run_hour = settings.schedule_run_hour if run_hour is None else run_hour
        self.locks = locks or ScheduleLocks()
        self._task: asyncio.Task | None = None

    async def sweep(self, now: datetime | None = None) -> list[str]:
        now = _as_utc(now or datetime.now(timezone.utc))
        try:
            due = await self.store.list_due_schedules(now)
        except PersistenceError as e:
            logger.error(f"Schedule sweep failed: {e}")
            return []

        queued: list[str] = []
        for schedule in due:
            try:
                audit_id = await self._run_schedule(schedule, now)
            except Exception as e:
                logger.error(f"Scheduled audit not queued: {e}", extra={"schedule_id": schedule.id}, exc_info=True)
                continue
            if audit_id is not None:
                queued.append(audit_id)

        if due:
            logger.info(f"Schedule sweep queued {len(queued)} of {len(due)} due schedules")
        return queued

    async def _run_schedule(self, schedule, now: datetime) -> str | None:
        next_run = calculate_next_run(schedule.frequency, schedule.next_run_at, now, self.run_hour)
        queued = await queue_if_idle(self.store, self.queue, schedule, self.locks)
        if queued is None:
            logger.info("Previous scheduled audit still running; skipped", extra={"schedule_id": schedule.id})
            return None

        audit_id, job = queued
        await self.store.mark_schedule_run(schedule.id, now, next_run)
        logger.info(
            f"Scheduled audit queued; next run {next_run.isoformat()}",
            extra={"schedule_id": schedule.id, "audit_id": audit_id, "job_id": job.id},
        )
        return audit_id

    async def _loop(self) -> None:
        while True:
            await self.sweep()
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
