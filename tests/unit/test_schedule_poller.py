import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.audit_service.db.models import AuditStatus
from services.audit_service.jobs.queue import Job, JobType
from services.audit_service.scheduling.poller import ScheduleLocks, SchedulePoller, calculate_next_run, queue_if_idle


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def add(self, job_type, payload=None):
        job = Job(type=job_type, payload=dict(payload or {}))
        self.jobs.append(job)
        return job


def test_daily_adds_one_calendar_day():
    previous = utc(2025, 3, 10, 2)
    assert calculate_next_run("daily", previous, previous + timedelta(seconds=30), run_hour=2) == utc(2025, 3, 11, 2)


def test_weekly_adds_seven_days():
    previous = utc(2025, 3, 10, 2)
    assert calculate_next_run("weekly", previous, previous, run_hour=2) == utc(2025, 3, 17, 2)


def test_monthly_clamps_to_month_end():
    assert calculate_next_run("monthly", utc(2025, 1, 31, 2), utc(2025, 1, 31, 3), run_hour=2) == utc(2025, 2, 28, 2)
    assert calculate_next_run("monthly", utc(2024, 1, 31, 2), utc(2024, 1, 31, 3), run_hour=2) == utc(2024, 2, 29, 2)
    assert calculate_next_run("monthly", utc(2025, 5, 15, 2), utc(2025, 5, 15, 2), run_hour=2) == utc(2025, 6, 15, 2)


def test_anchor_is_moved_to_run_hour():
    previous = utc(2025, 3, 10, 15, 45, 12)
    assert calculate_next_run("daily", previous, utc(2025, 3, 10, 16), run_hour=2) == utc(2025, 3, 11, 2)


def test_missed_periods_are_skipped():
    previous = utc(2025, 3, 1, 2)
    now = utc(2025, 3, 10, 9)
    assert calculate_next_run("daily", previous, now, run_hour=2) == utc(2025, 3, 11, 2)
    assert calculate_next_run("weekly", previous, now, run_hour=2) == utc(2025, 3, 15, 2)
    assert calculate_next_run("monthly", utc(2024, 11, 30, 2), now, run_hour=2) == utc(2025, 3, 30, 2)


def test_first_run_without_previous_and_naive_datetimes():
    now = datetime(2025, 3, 10, 9)
    assert calculate_next_run("daily", None, now, run_hour=2) == utc(2025, 3, 11, 2)


def test_unknown_frequency_rejected():
    with pytest.raises(ValueError):
        calculate_next_run("hourly", None, utc(2025, 1, 1))


async def _schedule(store, frequency="daily", next_run_at=None, project_id="p1"):
    return await store.create_schedule(
        project_id=project_id,
        site_url="https://example.com/",
        frequency=frequency,
        options={"max_pages": 10},
        next_run_at=next_run_at or utc(2025, 3, 10, 2),
    )


@pytest.mark.asyncio
async def test_two_due_schedules_get_one_audit_each(store):
    first = await _schedule(store, project_id="p1")
    second = await _schedule(store, frequency="weekly", project_id="p2")
    queue = RecordingQueue()
    now = utc(2025, 3, 10, 2, 5)

    queued = await SchedulePoller(store, queue, run_hour=2).sweep(now)

    assert len(queued) == 2
    audits = [store.audits[a] for a in queued]
    assert sorted(a.schedule_id for a in audits) == sorted([first.id, second.id])
    assert all(a.status == AuditStatus.PENDING.value for a in audits)
    assert [j.type for j in queue.jobs] == [JobType.RUN_AUDIT, JobType.RUN_AUDIT]
    assert sorted(j.payload["audit_id"] for j in queue.jobs) == sorted(queued)

    assert first.last_run_at == now
    assert first.next_run_at == utc(2025, 3, 11, 2)
    assert second.next_run_at == utc(2025, 3, 17, 2)


@pytest.mark.asyncio
async def test_not_due_and_inactive_schedules_are_ignored(store):
    await _schedule(store, next_run_at=utc(2025, 3, 12, 2))
    inactive = await _schedule(store)
    inactive.is_active = False
    queue = RecordingQueue()

    assert await SchedulePoller(store, queue, run_hour=2).sweep(utc(2025, 3, 10, 3)) == []
    assert queue.jobs == []


@pytest.mark.asyncio
async def test_schedule_with_running_audit_is_not_requeued(store):
    schedule = await _schedule(store)
    queue = RecordingQueue()
    poller = SchedulePoller(store, queue, run_hour=2)

    [audit_id] = await poller.sweep(utc(2025, 3, 10, 2, 5))
    store.audits[audit_id].status = AuditStatus.IN_PROGRESS.value

    schedule.next_run_at = utc(2025, 3, 10, 2)
    assert await poller.sweep(utc(2025, 3, 10, 3)) == []
    assert len(queue.jobs) == 1
    assert schedule.next_run_at == utc(2025, 3, 10, 2)

    store.audits[audit_id].status = AuditStatus.COMPLETED.value
    assert len(await poller.sweep(utc(2025, 3, 10, 4))) == 1


@pytest.mark.asyncio
async def test_one_bad_schedule_does_not_block_the_sweep(store):
    await _schedule(store, frequency="hourly")
    good = await _schedule(store, project_id="p2")
    queue = RecordingQueue()

    queued = await SchedulePoller(store, queue, run_hour=2).sweep(utc(2025, 3, 10, 2, 5))

    assert len(queued) == 1
    assert store.audits[queued[0]].schedule_id == good.id


@pytest.mark.asyncio
async def test_sweep_and_run_now_queue_one_audit_between_them(store):
    schedule = await _schedule(store)
    queue = RecordingQueue()
    locks = ScheduleLocks()
    create_audit = store.create_audit

    async def slow_create_audit(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await create_audit(*args, **kwargs)

    store.create_audit = slow_create_audit
    poller = SchedulePoller(store, queue, run_hour=2, locks=locks)

    swept, run_now = await asyncio.gather(
        poller.sweep(utc(2025, 3, 10, 2, 5)),
        queue_if_idle(store, queue, schedule, locks),
    )

    assert len(queue.jobs) == 1
    assert len(store.audits) == 1
    assert len(swept) + (run_now is not None) == 1
