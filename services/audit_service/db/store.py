from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, exists, select
from sqlalchemy.exc import SQLAlchemyError

from config.logging_config import get_logger
from services.audit_service.crawler.page_result import PageResult
from services.audit_service.db.models import (
    Audit,
    AuditHistory,
    AuditSchedule,
    AuditStatus,
    PageResultRow,
    empty_issues_summary,
)
from services.audit_service.db.session import get_session
from services.audit_service.errors import PersistenceError

logger = get_logger(__name__)

ACTIVE_STATUSES = (AuditStatus.PENDING.value, AuditStatus.IN_PROGRESS.value)
TERMINAL_STATUSES = (AuditStatus.COMPLETED.value, AuditStatus.FAILED.value)

SCHEDULE_FIELDS = ("frequency", "is_active", "next_run_at", "options", "site_url")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditStore:
    """Result store gateway for audits, page results, schedules and history.

    Every database failure surfaces as ``PersistenceError``.
    """

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"result store failure: {e}") from e

    async def create_audit(
        self,
        site_url: str,
        options: dict,
        project_id: str | None = None,
        schedule_id: str | None = None,
    ) -> Audit:
        now = _now()
        row = Audit(
            site_url=site_url,
            project_id=project_id,
            schedule_id=schedule_id,
            status=AuditStatus.PENDING.value,
            options=options,
            progress_percentage=0,
            total_pages=0,
            issues_summary=empty_issues_summary(),
            created_at=now,
            updated_at=now,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return row

    async def get_audit(self, audit_id: str) -> Audit | None:
        async with self._session() as session:
            return await session.get(Audit, audit_id)

    async def upsert_audit(self, audit_id: str, **fields) -> bool:
        """Apply partial or final fields to an audit.

        Returns False, without writing, when the audit is already terminal and
        the update would move it to a different status.
        """
        async with self._session() as session:
            row = await session.get(Audit, audit_id)
            if row is None:
                raise PersistenceError(f"audit not found: {audit_id}")
            new_status = fields.get("status")
            if isinstance(new_status, AuditStatus):
                new_status = fields["status"] = new_status.value
            if row.status in TERMINAL_STATUSES and new_status is not None and new_status != row.status:
                logger.warning(
                    f"Refusing status change {row.status} -> {new_status}",
                    extra={"audit_id": audit_id},
                )
                return False
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = _now()
            await session.commit()
        return True

    async def append_page_result(self, audit_id: str, page: PageResult) -> None:
        row = PageResultRow(
            audit_id=audit_id,
            url=page.url,
            status_code=page.status_code,
            issues_count=page.issues_count,
            data=page.to_dict(),
            created_at=_now(),
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()

    async def list_page_results(self, audit_id: str) -> list[PageResult]:
        async with self._session() as session:
            res = await session.execute(
                select(PageResultRow).where(PageResultRow.audit_id == audit_id).order_by(PageResultRow.id)
            )
            return [PageResult.from_dict(r.data) for r in res.scalars().all()]

    async def create_audit_history(self, project_id: str | None, audit_id: str, total_pages: int, issues_summary: dict) -> AuditHistory:
        row = AuditHistory(
            project_id=project_id,
            audit_id=audit_id,
            total_pages=total_pages,
            issues_summary=dict(issues_summary),
            created_at=_now(),
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return row

    async def list_audit_history(self, project_id: str) -> list[AuditHistory]:
        async with self._session() as session:
            res = await session.execute(
                select(AuditHistory).where(AuditHistory.project_id == project_id).order_by(AuditHistory.created_at.desc())
            )
            return list(res.scalars().all())

    async def list_due_schedules(self, now: datetime) -> list[AuditSchedule]:
        async with self._session() as session:
            res = await session.execute(
                select(AuditSchedule)
                .where(AuditSchedule.is_active.is_(True))
                .where(AuditSchedule.next_run_at.is_not(None))
                .where(AuditSchedule.next_run_at <= now)
                .order_by(AuditSchedule.next_run_at)
            )
            return list(res.scalars().all())

    async def has_active_audit(self, schedule_id: str) -> bool:
        async with self._session() as session:
            res = await session.execute(
                select(
                    exists().where(Audit.schedule_id == schedule_id).where(Audit.status.in_(ACTIVE_STATUSES))
                )
            )
            return bool(res.scalar())

    async def mark_schedule_run(self, schedule_id: str, last_run_at: datetime, next_run_at: datetime) -> None:
        async with self._session() as session:
            row = await session.get(AuditSchedule, schedule_id)
            if row is None:
                raise PersistenceError(f"schedule not found: {schedule_id}")
            row.last_run_at = last_run_at
            row.next_run_at = next_run_at
            row.updated_at = _now()
            await session.commit()

    async def create_schedule(
        self,
        project_id: str,
        site_url: str,
        frequency: str,
        options: dict,
        next_run_at: datetime | None,
        is_active: bool = True,
    ) -> AuditSchedule:
        now = _now()
        row = AuditSchedule(
            project_id=project_id,
            site_url=site_url,
            frequency=frequency,
            options=options,
            next_run_at=next_run_at,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return row

    async def get_schedule(self, schedule_id: str) -> AuditSchedule | None:
        async with self._session() as session:
            return await session.get(AuditSchedule, schedule_id)

    async def list_schedules(self, project_id: str | None = None) -> list[AuditSchedule]:
        stmt = select(AuditSchedule).order_by(AuditSchedule.created_at)
        if project_id is not None:
            stmt = stmt.where(AuditSchedule.project_id == project_id)
        async with self._session() as session:
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def update_schedule(self, schedule_id: str, **fields) -> AuditSchedule | None:
        async with self._session() as session:
            row = await session.get(AuditSchedule, schedule_id)
            if row is None:
                return None
            for key, value in fields.items():
                if key not in SCHEDULE_FIELDS:
                    raise ValueError(f"schedule field is not editable: {key}")
                setattr(row, key, value)
            row.updated_at = _now()
            await session.commit()
            return row

    async def delete_schedule(self, schedule_id: str) -> bool:
        async with self._session() as session:
            res = await session.execute(delete(AuditSchedule).where(AuditSchedule.id == schedule_id))
            await session.commit()
            return bool(res.rowcount)
