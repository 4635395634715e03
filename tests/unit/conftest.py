import uuid
from collections import defaultdict
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from services.audit_service.db.models import AuditStatus, empty_issues_summary

TERMINAL = (AuditStatus.COMPLETED.value, AuditStatus.FAILED.value)
ACTIVE = (AuditStatus.PENDING.value, AuditStatus.IN_PROGRESS.value)


def _now():
    return datetime.now(timezone.utc)


class InMemoryAuditStore:
    """Same surface as AuditStore, backed by dicts."""

    def __init__(self):
        self.audits = {}
        self.pages = defaultdict(list)
        self.history = []
        self.schedules = {}
        self.updates = []

    async def create_audit(self, site_url, options, project_id=None, schedule_id=None):
        now = _now()
        row = SimpleNamespace(
            id=str(uuid.uuid4()),
            site_url=site_url,
            project_id=project_id,
            schedule_id=schedule_id,
            status=AuditStatus.PENDING.value,
            options=options,
            progress_percentage=0,
            total_pages=0,
            issues_summary=empty_issues_summary(),
            report_ref=None,
            error_message=None,
            created_at=now,
            updated_at=now,
            started_at=None,
            completed_at=None,
        )
        self.audits[row.id] = row
        return row

    async def get_audit(self, audit_id):
        return self.audits.get(audit_id)

    async def upsert_audit(self, audit_id, **fields):
        row = self.audits[audit_id]
        new_status = fields.get("status")
        if row.status in TERMINAL and new_status is not None and new_status != row.status:
            return False
        self.updates.append((audit_id, dict(fields)))
        for key, value in fields.items():
            setattr(row, key, value)
        return True

    async def append_page_result(self, audit_id, page):
        self.pages[audit_id].append(page)

    async def list_page_results(self, audit_id):
        return list(self.pages[audit_id])

    async def create_audit_history(self, project_id, audit_id, total_pages, issues_summary):
        row = SimpleNamespace(
            id=str(uuid.uuid4()),
            project_id=project_id,
            audit_id=audit_id,
            total_pages=total_pages,
            issues_summary=dict(issues_summary),
            created_at=_now(),
        )
        self.history.append(row)
        return row

    async def list_audit_history(self, project_id):
        return [h for h in self.history if h.project_id == project_id]

    async def list_due_schedules(self, now):
        due = [
            s for s in self.schedules.values()
            if s.is_active and s.next_run_at is not None and s.next_run_at <= now
        ]
        return sorted(due, key=lambda s: s.next_run_at)

    async def has_active_audit(self, schedule_id):
        return any(a.schedule_id == schedule_id and a.status in ACTIVE for a in self.audits.values())

    async def mark_schedule_run(self, schedule_id, last_run_at, next_run_at):
        row = self.schedules[schedule_id]
        row.last_run_at = last_run_at
        row.next_run_at = next_run_at

    async def create_schedule(self, project_id, site_url, frequency, options, next_run_at, is_active=True):
        row = SimpleNamespace(
            id=str(uuid.uuid4()),
            project_id=project_id,
            site_url=site_url,
            frequency=frequency,
            options=options,
            next_run_at=next_run_at,
            last_run_at=None,
            is_active=is_active,
        )
        self.schedules[row.id] = row
        return row

    async def get_schedule(self, schedule_id):
        return self.schedules.get(schedule_id)

    async def list_schedules(self, project_id=None):
        return [s for s in self.schedules.values() if project_id is None or s.project_id == project_id]

    async def update_schedule(self, schedule_id, **fields):
        row = self.schedules.get(schedule_id)
        if row is None:
            return None
        for key, value in fields.items():
            setattr(row, key, value)
        return row

    async def delete_schedule(self, schedule_id):
        return self.schedules.pop(schedule_id, None) is not None


@pytest.fixture
def store():
    return InMemoryAuditStore()
