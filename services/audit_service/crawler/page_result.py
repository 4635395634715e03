from dataclasses import asdict, dataclass, field

from services.audit_service.analyzers.issue_rules import (
    CRITICAL,
    SEVERITIES,
    Issue,
    count_by_severity,
    group_by_severity,
)
from services.audit_service.crawler.signals import PageSignals
from services.audit_service.errors import FetchError


def _empty_issues() -> dict[str, list[dict]]:
    return {sev: [] for sev in SEVERITIES}


@dataclass(frozen=True)
class PageResult:
    url: str
    title: str | None = None
    h1: str | None = None
    meta_description: str | None = None
    status_code: int | None = None
    content_type: str | None = None
    load_time_ms: int = 0
    word_count: int = 0
    links: dict[str, int] = field(default_factory=lambda: {"internal": 0, "external": 0, "broken": 0})
    images: dict[str, int] = field(default_factory=lambda: {"total": 0, "missing_alt": 0, "large": 0})
    issues: dict[str, list[dict]] = field(default_factory=_empty_issues)
    screenshot_path: str | None = None
    error: str | None = None

    @property
    def issue_counts(self) -> dict[str, int]:
        return count_by_severity(self.issues)

    @property
    def issues_count(self) -> int:
        return self.issue_counts["total"]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PageResult":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    @classmethod
    def from_signals(cls, signals: PageSignals, issues: list[Issue], large_image_bytes: int) -> "PageResult":
        return cls(
            url=signals.url,
            title=signals.title,
            h1=signals.h1,
            meta_description=signals.meta_description,
            status_code=signals.status_code,
            content_type=signals.content_type,
            load_time_ms=signals.elapsed_ms,
            word_count=signals.word_count,
            links={
                "internal": len(signals.internal_links),
                "external": len(signals.external_links),
                "broken": signals.broken_links,
            },
            images={
                "total": len(signals.images),
                "missing_alt": signals.missing_alt_count(),
                "large": signals.large_image_count(large_image_bytes),
            },
            issues=group_by_severity(issues),
            screenshot_path=signals.screenshot_path,
        )

    @classmethod
    def from_fetch_error(cls, url: str, err: FetchError) -> "PageResult":
        issue = Issue("FETCH_FAILED", CRITICAL, f"Page could not be fetched: {err.message}", err.status_code)
        return cls(
            url=url,
            status_code=err.status_code,
            issues=group_by_severity([issue]),
            error=err.message,
        )
