import httpx
import pytest
import respx

from services.audit_service.crawler.sitemap import SITEMAP_LOCATIONS, discover_seeds, parse_sitemap
from services.audit_service.errors import ParseError

START = "https://example.com/"

URLSET = b"""<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/</loc></url>
  <url><loc>https://example.com/about</loc></url>
  <url><loc>https://example.com/contact#form</loc></url>
</urlset>"""

INDEX = b"""<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://example.com/post-sitemap.xml</loc></sitemap>
</sitemapindex>"""

POSTS = b"""<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://example.com/post-1</loc></url>
  <url><loc>https://example.com/post-2</loc></url>
</urlset>"""


def _mock_locations(overrides: dict):
    for path in SITEMAP_LOCATIONS:
        url = f"https://example.com{path}"
        if url in overrides:
            respx.get(url).respond(200, content=overrides[url])
        else:
            respx.get(url).respond(404)


def test_parse_urlset_and_index():
    urls, children = parse_sitemap(URLSET)
    assert urls == ["https://example.com/", "https://example.com/about", "https://example.com/contact#form"]
    assert children == []

    urls, children = parse_sitemap(INDEX)
    assert urls == []
    assert children == ["https://example.com/post-sitemap.xml"]


def test_parse_malformed_sitemap_raises():
    with pytest.raises(ParseError):
        parse_sitemap(b"<urlset><url><loc>https://example.com/</loc>")
    with pytest.raises(ParseError):
        parse_sitemap(b"<html><body>not a sitemap</body></html>")


@pytest.mark.asyncio
async def test_no_sitemap_anywhere_falls_back_to_start_url():
    with respx.mock:
        _mock_locations({})
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=100)
    assert seeds == [START]


@pytest.mark.asyncio
async def test_sitemap_urls_follow_start_url_without_duplicates():
    with respx.mock:
        _mock_locations({"https://example.com/sitemap.xml": URLSET})
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=100)
    assert seeds == [START, "https://example.com/about", "https://example.com/contact"]


@pytest.mark.asyncio
async def test_sitemap_index_is_followed_one_level():
    with respx.mock:
        _mock_locations({"https://example.com/sitemap_index.xml": INDEX})
        respx.get("https://example.com/post-sitemap.xml").respond(200, content=POSTS)
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=100)
    assert seeds == [START, "https://example.com/post-1", "https://example.com/post-2"]


@pytest.mark.asyncio
async def test_malformed_sitemap_is_ignored():
    with respx.mock:
        _mock_locations({"https://example.com/sitemap.xml": b"<urlset><url>"})
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=100)
    assert seeds == [START]


@pytest.mark.asyncio
async def test_network_errors_are_soft_failures():
    with respx.mock:
        for path in SITEMAP_LOCATIONS:
            respx.get(f"https://example.com{path}").mock(side_effect=httpx.ConnectError("refused"))
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=100)
    assert seeds == [START]


@pytest.mark.asyncio
async def test_seed_count_is_capped():
    many = b"<urlset xmlns='http://www.sitemaps.org/schemas/sitemap/0.9'>" + b"".join(
        f"<url><loc>https://example.com/p{i}</loc></url>".encode() for i in range(10)
    ) + b"</urlset>"
    with respx.mock:
        respx.get("https://example.com/sitemap.xml").respond(200, content=many)
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=True, limit=3)
    assert seeds == [START, "https://example.com/p0", "https://example.com/p1", "https://example.com/p2"]


@pytest.mark.asyncio
async def test_sitemap_disabled_skips_probing():
    with respx.mock:
        async with httpx.AsyncClient() as client:
            seeds = await discover_seeds(client, START, include_sitemap=False, limit=100)
    assert seeds == [START]
