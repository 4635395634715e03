from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from config.logging_config import MetricsLogger, get_logger, setup_logging
from services.audit_service.config import settings
from services.audit_service.crawler.orchestrator import SessionRegistry
from services.audit_service.db.models import AuditStatus
from services.audit_service.db.session import dispose_db, init_db
from services.audit_service.db.store import AuditStore
from services.audit_service.errors import PersistenceError
from services.audit_service.jobs.handlers import register_audit_handlers
from services.audit_service.jobs.queue import Job, JobQueue, JobType
from services.audit_service.scheduling.poller import ScheduleLocks, SchedulePoller, calculate_next_run
from services.audit_service.schemas.audit import (
    AuditHistoryResponse,
    AuditStatusResponse,
    JobResponse,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
    StartAuditRequest,
    StartAuditResponse,
)

logger = get_logger(__name__)


@dataclass
class AuditServices:
    store: Any
    queue: JobQueue
    registry: SessionRegistry
    poller: SchedulePoller | None = None


def build_services() -> AuditServices:
    store = AuditStore()
    queue = JobQueue()
    registry = SessionRegistry()
    locks = ScheduleLocks()
    register_audit_handlers(queue, store, registry, schedule_locks=locks)
    poller = SchedulePoller(store, queue, locks=locks)
    return AuditServices(store=store, queue=queue, registry=registry, poller=poller)


def get_services(request: Request) -> AuditServices:
    return request.app.state.services


router = APIRouter()


def _audit_response(row) -> AuditStatusResponse:
    return AuditStatusResponse(
        audit_id=row.id,
        project_id=row.project_id,
        site_url=row.site_url,
        status=row.status,
        progress_percentage=row.progress_percentage,
        total_pages=row.total_pages,
        issues_summary=row.issues_summary or {},
        report_ref=row.report_ref,
        error_message=row.error_message,
        options=row.options or {},
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _schedule_response(row) -> ScheduleResponse:
    return ScheduleResponse(
        id=row.id,
        project_id=row.project_id,
        site_url=row.site_url,
        frequency=row.frequency,
        is_active=row.is_active,
        next_run_at=row.next_run_at,
        last_run_at=row.last_run_at,
        options=row.options or {},
    )


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        type=job.type,
        status=job.status.value,
        progress=job.progress,
        result=job.result if isinstance(job.result, dict) else None,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


async def _require_audit(svc: AuditServices, audit_id: str):
    row = await svc.store.get_audit(audit_id)
    if row is None:
        raise HTTPException(status_code=404, detail="audit_not_found")
    return row


@router.get("/health")
async def health(svc: AuditServices = Depends(get_services)) -> dict:
    return {
        "status": "ok",
        "service": "audit_service",
        "ts": datetime.now(timezone.utc).isoformat(),
        "jobs_processing": svc.queue.processing_count,
        "sessions_running": len(svc.registry),
        "metrics": MetricsLogger.get_metrics(),
    }


@router.post("/audits", response_model=StartAuditResponse, status_code=202)
async def start_audit(payload: StartAuditRequest, svc: AuditServices = Depends(get_services)) -> StartAuditResponse:
    audit = await svc.store.create_audit(
        str(payload.site_url),
        payload.options.model_dump(mode="json"),
        project_id=payload.project_id,
    )
    job = svc.queue.add(JobType.RUN_AUDIT, {"audit_id": audit.id})
    return StartAuditResponse(audit_id=audit.id, job_id=job.id, status=audit.status)


@router.get("/audits/{audit_id}", response_model=AuditStatusResponse)
async def get_audit(audit_id: str, svc: AuditServices = Depends(get_services)) -> AuditStatusResponse:
    return _audit_response(await _require_audit(svc, audit_id))


@router.get("/audits/{audit_id}/pages")
async def get_audit_pages(audit_id: str, svc: AuditServices = Depends(get_services)) -> list[dict]:
    await _require_audit(svc, audit_id)
    pages = await svc.store.list_page_results(audit_id)
    return [p.to_dict() for p in pages]


@router.post("/audits/{audit_id}/cancel")
async def cancel_audit(audit_id: str, svc: AuditServices = Depends(get_services)) -> dict:
    row = await _require_audit(svc, audit_id)
    if AuditStatus(row.status).is_terminal:
        raise HTTPException(status_code=409, detail=f"audit_already_{row.status.lower()}")

    if svc.registry.cancel(audit_id, "audit cancelled by user"):
        return {"audit_id": audit_id, "status": "cancelling"}

    await svc.store.upsert_audit(
        audit_id,
        status=AuditStatus.FAILED.value,
        error_message="audit cancelled by user",
        completed_at=datetime.now(timezone.utc),
    )
    return {"audit_id": audit_id, "status": AuditStatus.FAILED.value}


@router.post("/audits/{audit_id}/report", response_model=JobResponse, status_code=202)
async def regenerate_report(audit_id: str, svc: AuditServices = Depends(get_services)) -> JobResponse:
    row = await _require_audit(svc, audit_id)
    if row.status != AuditStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail="audit_not_completed")
    return _job_response(svc.queue.add(JobType.GENERATE_REPORT, {"audit_id": audit_id}))


@router.get("/projects/{project_id}/history", response_model=list[AuditHistoryResponse])
async def audit_history(project_id: str, svc: AuditServices = Depends(get_services)) -> list[AuditHistoryResponse]:
    rows = await svc.store.list_audit_history(project_id)
    return [
        AuditHistoryResponse(
            id=r.id,
            project_id=r.project_id,
            audit_id=r.audit_id,
            total_pages=r.total_pages,
            issues_summary=r.issues_summary or {},
            created_at=r.created_at,
        )
        for r in rows
    ]


@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(payload: ScheduleCreate, svc: AuditServices = Depends(get_services)) -> ScheduleResponse:
    next_run_at = payload.next_run_at or calculate_next_run(payload.frequency, None, datetime.now(timezone.utc))
    row = await svc.store.create_schedule(
        project_id=payload.project_id,
        site_url=str(payload.site_url),
        frequency=payload.frequency,
        options=payload.options.model_dump(mode="json"),
        next_run_at=next_run_at,
        is_active=payload.is_active,
    )
    return _schedule_response(row)


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(project_id: str | None = None, svc: AuditServices = Depends(get_services)) -> list[ScheduleResponse]:
    return [_schedule_response(r) for r in await svc.store.list_schedules(project_id)]


@router.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(schedule_id: str, payload: ScheduleUpdate, svc: AuditServices = Depends(get_services)) -> ScheduleResponse:
    fields = payload.model_dump(exclude_unset=True, mode="json")
    if payload.next_run_at is not None:
        fields["next_run_at"] = payload.next_run_at
    row = await svc.store.update_schedule(schedule_id, **fields)
    if row is None:
        raise HTTPException(status_code=404, detail="schedule_not_found")
    return _schedule_response(row)


@router.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(schedule_id: str, svc: AuditServices = Depends(get_services)) -> Response:
    if not await svc.store.delete_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="schedule_not_found")
    return Response(status_code=204)


@router.post("/schedules/{schedule_id}/run", response_model=JobResponse, status_code=202)
async def run_schedule_now(schedule_id: str, svc: AuditServices = Depends(get_services)) -> JobResponse:
    if await svc.store.get_schedule(schedule_id) is None:
        raise HTTPException(status_code=404, detail="schedule_not_found")
    return _job_response(svc.queue.add(JobType.SCHEDULE_AUDIT, {"schedule_id": schedule_id}))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, svc: AuditServices = Depends(get_services)) -> JobResponse:
    job = svc.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return _job_response(job)


def create_app(services: AuditServices | None = None) -> FastAPI:
    """Build the API; passing ``services`` skips logging and database setup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services
        if svc is None:
            setup_logging("audit_service")
            await init_db()
            svc = build_services()
        app.state.services = svc
        svc.queue.start()
        if svc.poller is not None:
            svc.poller.start()
        logger.info("Audit service started")
        try:
            yield
        finally:
            if svc.poller is not None:
                await svc.poller.stop()
            await svc.queue.stop()
            if services is None:
                await dispose_db()
            logger.info("Audit service stopped")

    app = FastAPI(title="Audit Service", version="0.2.0", lifespan=lifespan)
    app.include_router(router)

    @app.exception_handler(ValueError)
    async def value_error_handler(_, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(_, exc: PersistenceError):
        logger.error(f"Result store unavailable: {exc}")
        return JSONResponse(status_code=503, content={"detail": "result_store_unavailable"})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("services.audit_service.main:app", host="0.0.0.0", port=settings.port, reload=False)
