from typing import Callable

import aio_pika

from config.logging_config import get_logger
from services.audit_service.crawler.fetcher import PageFetcher, build_fetcher
from services.audit_service.crawler.orchestrator import CrawlSession, SessionRegistry, SessionState
from services.audit_service.db.models import AuditStatus
from services.audit_service.errors import JobHandlerError
from services.audit_service.events.audit_completed import AuditCompletedEvent, publish_audit_completed
from services.audit_service.jobs.queue import Job, JobQueue, JobType
from services.audit_service.reports.html_report import write_html_report
from services.audit_service.scheduling.poller import ScheduleLocks, queue_if_idle
from services.audit_service.schemas.audit import AuditOptions

logger = get_logger(__name__)

FetcherFactory = Callable[..., PageFetcher]


def register_audit_handlers(
    queue: JobQueue,
    store,
    registry: SessionRegistry,
    fetcher_factory: FetcherFactory = build_fetcher,
    http_client=None,
    report_dir: str | None = None,
    publish=publish_audit_completed,
    schedule_locks: ScheduleLocks | None = None,
) -> None:
    """Wire the run-audit, schedule-audit and generate-report handlers into ``queue``.

    Pass the poller's ``ScheduleLocks`` as ``schedule_locks`` so a "run now"
    job and a sweep never both queue an audit for one schedule.
    """
    locks = schedule_locks or ScheduleLocks()

    async def run_audit(job: Job) -> dict:
        audit_id = job.payload["audit_id"]
        audit = await store.get_audit(audit_id)
        if audit is None:
            raise JobHandlerError(f"audit not found: {audit_id}")
        if AuditStatus(audit.status).is_terminal:
            logger.info(f"Audit already {audit.status}; skipped", extra={"audit_id": audit_id, "job_id": job.id})
            return {"audit_id": audit_id, "status": audit.status, "skipped": True}

        options = AuditOptions.model_validate(audit.options or {})
        session = CrawlSession(
            audit_id,
            audit.site_url,
            options,
            store,
            fetcher_factory(audit.site_url, options, audit_id=audit_id),
            project_id=audit.project_id,
            on_progress=lambda processed, percentage: queue.update_progress(job.id, percentage),
            http_client=http_client,
            report_dir=report_dir,
        )
        registry.register(session)
        try:
            state = await session.run()
        finally:
            registry.unregister(audit_id)

        if state is not SessionState.COMPLETED:
            raise JobHandlerError(session.error_message or "audit failed")

        event = AuditCompletedEvent.build(
            audit_id,
            audit.site_url,
            session.processed,
            dict(session.issues_summary),
            project_id=audit.project_id,
            report_ref=session.report_ref,
        )
        try:
            await publish(event)
        except (aio_pika.AMQPException, OSError) as e:
            logger.warning(f"AuditCompleted event not published: {e}", extra={"audit_id": audit_id})

        return {"audit_id": audit_id, "total_pages": session.processed, "issues_summary": dict(session.issues_summary)}

    async def schedule_audit(job: Job) -> dict:
        schedule_id = job.payload["schedule_id"]
        schedule = await store.get_schedule(schedule_id)
        if schedule is None:
            raise JobHandlerError(f"schedule not found: {schedule_id}")
        queued = await queue_if_idle(store, queue, schedule, locks)
        if queued is None:
            logger.info("Scheduled audit already running; skipped", extra={"schedule_id": schedule_id, "job_id": job.id})
            return {"schedule_id": schedule_id, "skipped": True}
        audit_id, run_job = queued
        return {"schedule_id": schedule_id, "audit_id": audit_id, "job_id": run_job.id}

    async def generate_report(job: Job) -> dict:
        audit_id = job.payload["audit_id"]
        audit = await store.get_audit(audit_id)
        if audit is None:
            raise JobHandlerError(f"audit not found: {audit_id}")
        if audit.status != AuditStatus.COMPLETED.value:
            raise JobHandlerError(f"report needs a completed audit, got {audit.status}")

        pages = await store.list_page_results(audit_id)
        name = await write_html_report(
            audit.id,
            audit.site_url,
            audit.issues_summary or {},
            pages,
            completed_at=audit.completed_at,
            report_dir=report_dir,
        )
        await store.upsert_audit(audit_id, report_ref=name)
        return {"audit_id": audit_id, "report_ref": name}

    queue.register_handler(JobType.RUN_AUDIT, run_audit)
    queue.register_handler(JobType.SCHEDULE_AUDIT, schedule_audit)
    queue.register_handler(JobType.GENERATE_REPORT, generate_report)
