from datetime import datetime
from typing import Literal

import regex
from pydantic import BaseModel, AnyHttpUrl, Field, field_validator

from services.audit_service.config import settings


class UrlPattern(BaseModel):
    pattern: str = Field(min_length=1)
    description: str | None = None

    @field_validator("pattern")
    @classmethod
    def _compilable(cls, v: str) -> str:
        if len(v) > settings.pattern_max_length:
            raise ValueError(f"pattern longer than {settings.pattern_max_length} characters")
        try:
            regex.compile(v)
        except regex.error as e:
            raise ValueError(f"invalid pattern: {e}") from e
        return v


class AuditOptions(BaseModel):
    max_depth: int = Field(default=3, ge=0, le=10)
    max_pages: int = Field(default=100, ge=1, le=10000)
    max_concurrency: int = Field(default=5, ge=1, le=20)
    device: Literal["desktop", "mobile"] = "desktop"
    user_agent: str | None = None
    respect_robots_txt: bool = True
    include_screenshots: bool = False
    skip_external: bool = True
    include_sitemap: bool = True
    use_javascript: bool = False
    crawl_single_url: bool = False
    check_broken_links: bool = False
    check_canonical: bool = False
    follow_patterns: list[UrlPattern] = Field(default_factory=list)
    ignore_patterns: list[UrlPattern] = Field(default_factory=list)
    timeout_s: float = Field(default_factory=lambda: settings.default_timeout_s, ge=1.0, le=60.0)


class StartAuditRequest(BaseModel):
    site_url: AnyHttpUrl
    project_id: str | None = None
    options: AuditOptions = Field(default_factory=AuditOptions)


class StartAuditResponse(BaseModel):
    audit_id: str
    job_id: str
    status: str


class IssuesSummary(BaseModel):
    critical: int = 0
    error: int = 0
    warning: int = 0
    info: int = 0
    total: int = 0


class AuditStatusResponse(BaseModel):
    audit_id: str
    project_id: str | None
    site_url: str
    status: str
    progress_percentage: int
    total_pages: int
    issues_summary: IssuesSummary
    report_ref: str | None
    error_message: str | None
    options: dict
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class JobResponse(BaseModel):
    job_id: str
    type: str
    status: str
    progress: int
    result: dict | None = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ScheduleCreate(BaseModel):
    project_id: str
    site_url: AnyHttpUrl
    frequency: Literal["daily", "weekly", "monthly"]
    is_active: bool = True
    next_run_at: datetime | None = None
    options: AuditOptions = Field(default_factory=AuditOptions)


class ScheduleUpdate(BaseModel):
    frequency: Literal["daily", "weekly", "monthly"] | None = None
    is_active: bool | None = None
    next_run_at: datetime | None = None
    options: AuditOptions | None = None


class ScheduleResponse(BaseModel):
    id: str
    project_id: str
    site_url: str
    frequency: str
    is_active: bool
    next_run_at: datetime | None
    last_run_at: datetime | None
    options: dict


class AuditHistoryResponse(BaseModel):
    id: str
    project_id: str | None
    audit_id: str
    total_pages: int
    issues_summary: IssuesSummary
    created_at: datetime
