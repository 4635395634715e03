import asyncio
from datetime import datetime
from html import escape
from pathlib import Path

from services.audit_service.config import settings
from services.audit_service.crawler.page_result import PageResult

STYLE = """
body { font-family: Arial, sans-serif; line-height: 1.6; margin: 0; padding: 20px; }
h1 { color: #333; }
.summary { background: #f5f5f5; padding: 15px; margin-bottom: 20px; border-radius: 5px; }
.issue-critical { color: #d9534f; }
.issue-error { color: #f0ad4e; }
.issue-warning { color: #5bc0de; }
.page { border-bottom: 1px solid #ddd; padding: 10px 0; }
"""


def report_name(audit_id: str) -> str:
    return f"audit-{audit_id}-report.html"


def render_html_report(audit_id: str, site_url: str, issues_summary: dict, pages: list[PageResult], completed_at: datetime | None = None) -> str:
    rows = []
    for page in pages:
        url = escape(page.url)
        label = escape(page.title or page.url)
        rows.append(
            f'<div class="page">'
            f'<h3><a href="{url}" target="_blank">{label}</a></h3>'
            f'<p>URL: <span class="page-url">{url}</span></p>'
            f'<p>Issues: <span class="page-issues">{page.issues_count}</span></p>'
            f'</div>'
        )

    finished = escape(completed_at.isoformat()) if completed_at else "n/a"
    summary = issues_summary
    return (
        "<!DOCTYPE html>\n"
        "<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>SEO Audit Report - {escape(site_url)}</title>\n"
        f"<style>{STYLE}</style>\n</head>\n<body>\n"
        "<h1>SEO Audit Report</h1>\n"
        '<div class="summary">\n<h2>Summary</h2>\n'
        f"<p>Site: {escape(site_url)}</p>\n"
        f"<p>Audit: {escape(audit_id)}</p>\n"
        f'<p>Pages crawled: <span id="total-pages">{len(pages)}</span></p>\n'
        "<ul>\n"
        f'<li class="issue-critical">Critical: <span id="critical">{summary.get("critical", 0)}</span></li>\n'
        f'<li class="issue-error">Errors: <span id="error">{summary.get("error", 0)}</span></li>\n'
        f'<li class="issue-warning">Warnings: <span id="warning">{summary.get("warning", 0)}</span></li>\n'
        f'<li>Info: <span id="info">{summary.get("info", 0)}</span></li>\n'
        f'<li>Total: <span id="total">{summary.get("total", 0)}</span></li>\n'
        "</ul>\n"
        f"<p>Completed at: {finished}</p>\n"
        "</div>\n"
        '<div class="pages">\n<h2>Pages</h2>\n'
        + "\n".join(rows)
        + "\n</div>\n</body>\n</html>\n"
    )


async def write_html_report(audit_id: str, site_url: str, issues_summary: dict, pages: list[PageResult], completed_at: datetime | None = None, report_dir: str | None = None) -> str:
    """Render and store the report; the file name is returned as the audit's report reference."""
    html = render_html_report(audit_id, site_url, issues_summary, pages, completed_at)
    name = report_name(audit_id)
    path = Path(report_dir or settings.report_dir) / name

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(html, encoding="utf-8")

    await asyncio.to_thread(_write)
    return name
