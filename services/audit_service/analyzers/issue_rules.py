from dataclasses import dataclass
from typing import Callable, Iterable

from services.audit_service.crawler.signals import PageSignals
from services.audit_service.crawler.urls import canonicalize_url

CRITICAL = "critical"
ERROR = "error"
WARNING = "warning"
INFO = "info"

SEVERITIES = (CRITICAL, ERROR, WARNING, INFO)

TITLE_MIN, TITLE_MAX = 10, 60
DESCRIPTION_MIN, DESCRIPTION_MAX = 50, 160
H1_MIN = 10
MIN_WORD_COUNT = 300


@dataclass(frozen=True)
class Issue:
    code: str
    severity: str
    message: str
    value: str | int | None = None

    def to_dict(self) -> dict:
        d = {"code": self.code, "severity": self.severity, "message": self.message}
        if self.value is not None:
            d["value"] = self.value
        return d


Rule = Callable[[PageSignals], Issue | None]


def _length(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    return len(value.strip())


def title_missing(s: PageSignals) -> Issue | None:
    if _length(s.title) is None:
        return Issue("MISSING_TITLE", CRITICAL, "Page is missing a title tag")
    return None


def title_too_short(s: PageSignals) -> Issue | None:
    n = _length(s.title)
    if n is not None and n < TITLE_MIN:
        return Issue("TITLE_TOO_SHORT", WARNING, f"Page title is too short (less than {TITLE_MIN} characters)", s.title.strip())
    return None


def title_too_long(s: PageSignals) -> Issue | None:
    n = _length(s.title)
    if n is not None and n > TITLE_MAX:
        return Issue("TITLE_TOO_LONG", WARNING, f"Page title is too long (more than {TITLE_MAX} characters)", s.title.strip())
    return None


def description_missing(s: PageSignals) -> Issue | None:
    if _length(s.meta_description) is None:
        return Issue("MISSING_META_DESCRIPTION", ERROR, "Page is missing a meta description")
    return None


def description_too_short(s: PageSignals) -> Issue | None:
    n = _length(s.meta_description)
    if n is not None and n < DESCRIPTION_MIN:
        return Issue(
            "META_DESCRIPTION_TOO_SHORT",
            WARNING,
            f"Meta description is too short (less than {DESCRIPTION_MIN} characters)",
            s.meta_description.strip(),
        )
    return None


def description_too_long(s: PageSignals) -> Issue | None:
    n = _length(s.meta_description)
    if n is not None and n > DESCRIPTION_MAX:
        return Issue(
            "META_DESCRIPTION_TOO_LONG",
            WARNING,
            f"Meta description is too long (more than {DESCRIPTION_MAX} characters)",
            s.meta_description.strip(),
        )
    return None


def h1_missing(s: PageSignals) -> Issue | None:
    if _length(s.h1) is None:
        return Issue("MISSING_H1", ERROR, "Page is missing an H1 heading")
    return None


def h1_too_short(s: PageSignals) -> Issue | None:
    n = _length(s.h1)
    if n is not None and n < H1_MIN:
        return Issue("H1_TOO_SHORT", INFO, f"H1 heading is too short (less than {H1_MIN} characters)", s.h1.strip())
    return None


def images_missing_alt(s: PageSignals) -> Issue | None:
    count = s.missing_alt_count()
    if count > 0:
        return Issue("IMAGES_MISSING_ALT", ERROR, f"{count} images are missing alt text", count)
    return None


def low_word_count(s: PageSignals) -> Issue | None:
    if s.word_count < MIN_WORD_COUNT:
        return Issue("LOW_WORD_COUNT", WARNING, f"Page has low word count (less than {MIN_WORD_COUNT} words)", s.word_count)
    return None


def broken_links(s: PageSignals) -> Issue | None:
    if s.broken_links > 0:
        return Issue("BROKEN_LINKS", ERROR, f"{s.broken_links} internal links return 404", s.broken_links)
    return None


def multiple_h1(s: PageSignals) -> Issue | None:
    if s.h1_count > 1:
        return Issue("MULTIPLE_H1", WARNING, f"Page has {s.h1_count} H1 headings; use only one", s.h1_count)
    return None


def error_status(s: PageSignals) -> Issue | None:
    code = s.status_code
    if code is not None and (code < 200 or code >= 400):
        return Issue("HTTP_ERROR_STATUS", CRITICAL, f"Page returned HTTP status {code}", code)
    return None


def canonical_missing(s: PageSignals) -> Issue | None:
    if not s.canonical_url:
        return Issue("MISSING_CANONICAL", WARNING, "Page does not declare a canonical URL")
    return None


def canonical_mismatch(s: PageSignals) -> Issue | None:
    if not s.canonical_url:
        return None
    try:
        own = canonicalize_url(s.final_url or s.url)
    except ValueError:
        return None
    if s.canonical_url != own:
        return Issue("CANONICAL_MISMATCH", INFO, "Page declares a different canonical URL", s.canonical_url)
    return None


# Order is part of the output contract; append new rules at the end.
DEFAULT_RULES: tuple[Rule, ...] = (
    title_missing,
    title_too_short,
    title_too_long,
    description_missing,
    description_too_short,
    description_too_long,
    h1_missing,
    h1_too_short,
    images_missing_alt,
    low_word_count,
    broken_links,
    multiple_h1,
    error_status,
)

# Opt-in through AuditOptions.check_canonical; evaluated after DEFAULT_RULES.
CANONICAL_RULES: tuple[Rule, ...] = (
    canonical_missing,
    canonical_mismatch,
)


def evaluate(signals: PageSignals, rules: Iterable[Rule] = DEFAULT_RULES) -> list[Issue]:
    issues = []
    for rule in rules:
        issue = rule(signals)
        if issue is not None:
            issues.append(issue)
    return issues


def group_by_severity(issues: Iterable[Issue]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {sev: [] for sev in SEVERITIES}
    for issue in issues:
        grouped[issue.severity].append(issue.to_dict())
    return grouped


def count_by_severity(grouped: dict[str, list]) -> dict[str, int]:
    counts = {sev: len(grouped.get(sev, [])) for sev in SEVERITIES}
    counts["total"] = sum(counts.values())
    return counts
