from datetime import datetime, timezone
from pathlib import Path

import pytest

from services.audit_service.analyzers.issue_rules import Issue
from services.audit_service.crawler.page_result import PageResult
from services.audit_service.crawler.signals import PageSignals
from services.audit_service.reports.html_report import render_html_report, report_name, write_html_report

SUMMARY = {"critical": 1, "error": 2, "warning": 0, "info": 3, "total": 6}


def _pages():
    signals = PageSignals(url="https://example.com/?q=<b>", status_code=200, title="<script>alert(1)</script>")
    issues = [
        Issue("MISSING_META_DESCRIPTION", "error", "Page is missing a meta description"),
        Issue("LOW_WORD_COUNT", "warning", "low", 12),
    ]
    return [
        PageResult.from_signals(signals, issues, large_image_bytes=100_000),
        PageResult(url="https://example.com/about"),
    ]


def test_report_lists_summary_counts_and_pages():
    html = render_html_report("a-1", "https://example.com/", SUMMARY, _pages(), completed_at=datetime(2025, 1, 1, tzinfo=timezone.utc))

    assert '<span id="total-pages">2</span>' in html
    for key, value in SUMMARY.items():
        assert f'<span id="{key}">{value}</span>' in html
    assert '<span class="page-url">https://example.com/about</span>' in html
    assert html.count('class="page-issues"') == 2
    assert '<span class="page-issues">2</span>' in html
    assert "2025-01-01T00:00:00+00:00" in html


def test_report_escapes_page_content():
    html = render_html_report("a-1", "https://example.com/", SUMMARY, _pages())
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
    assert "https://example.com/?q=&lt;b&gt;" in html


@pytest.mark.asyncio
async def test_write_report_returns_file_name(tmp_path):
    name = await write_html_report("a-2", "https://example.com/", SUMMARY, _pages(), report_dir=str(tmp_path / "reports"))
    assert name == report_name("a-2") == "audit-a-2-report.html"
    assert (Path(tmp_path) / "reports" / name).read_text(encoding="utf-8").startswith("<!DOCTYPE html>")
