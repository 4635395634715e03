import httpx
import pytest
import respx

from services.audit_service.analyzers.robots_checker import fetch_robots, parse_robots

UA = "SEO-Master-AuditBot/1.0"

ROBOTS = """
User-agent: *
Disallow: /admin
Disallow: /search
Allow: /admin/public

User-agent: seo-master-auditbot
Disallow: /staging

Sitemap: https://example.com/news-sitemap.xml
"""


def test_specific_agent_group_takes_precedence():
    rules = parse_robots(ROBOTS, UA)
    assert rules.available
    assert not rules.is_allowed("https://example.com/staging/page")
    assert rules.is_allowed("https://example.com/admin")
    assert rules.sitemaps == ["https://example.com/news-sitemap.xml"]


def test_generic_group_and_longest_match():
    rules = parse_robots(ROBOTS, "OtherBot/2.0")
    assert not rules.is_allowed("https://example.com/admin/settings")
    assert rules.is_allowed("https://example.com/admin/public/page")
    assert not rules.is_allowed("https://example.com/search?q=shoes")
    assert rules.is_allowed("https://example.com/")


def test_wildcards_and_end_anchor():
    rules = parse_robots("User-agent: *\nDisallow: /*.pdf$\nDisallow: /tmp*/cache\n", UA)
    assert not rules.is_allowed("https://example.com/files/report.pdf")
    assert rules.is_allowed("https://example.com/files/report.pdf?download=1")
    assert not rules.is_allowed("https://example.com/tmp-1/cache/x")


def test_empty_disallow_allows_everything():
    rules = parse_robots("User-agent: *\nDisallow:\n", UA)
    assert rules.is_allowed("https://example.com/anything")


@pytest.mark.asyncio
async def test_missing_robots_allows_everything():
    with respx.mock:
        respx.get("https://example.com/robots.txt").respond(404)
        async with httpx.AsyncClient() as client:
            rules = await fetch_robots(client, "https://example.com/some/page", UA)
    assert not rules.available
    assert rules.is_allowed("https://example.com/admin")


@pytest.mark.asyncio
async def test_fetch_robots_parses_body():
    with respx.mock:
        respx.get("https://example.com/robots.txt").respond(200, text=ROBOTS)
        async with httpx.AsyncClient() as client:
            rules = await fetch_robots(client, "https://example.com/", UA)
    assert rules.available
    assert not rules.is_allowed("https://example.com/staging")
