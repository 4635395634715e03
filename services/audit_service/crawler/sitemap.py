from urllib.parse import urljoin

import httpx
from lxml import etree

from config.logging_config import get_logger
from services.audit_service.config import settings
from services.audit_service.crawler.urls import canonicalize_url, origin_of
from services.audit_service.errors import ParseError

logger = get_logger(__name__)

SITEMAP_LOCATIONS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/wp-sitemap.xml",
    "/sitemap/sitemap-index.xml",
)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, recover=False, huge_tree=False)


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].lower()


def parse_sitemap(content: bytes) -> tuple[list[str], list[str]]:
    """Return ``(page_urls, child_sitemap_urls)`` from one sitemap document.

    ``urlset`` documents yield page URLs, ``sitemapindex`` documents yield
    child sitemaps. Malformed XML raises ``ParseError``.
    """
    try:
        root = etree.fromstring(content.strip(), parser=_PARSER)
    except (etree.XMLSyntaxError, ValueError) as e:
        raise ParseError(f"malformed sitemap xml: {e}") from e

    kind = _local(root.tag)
    if kind not in ("urlset", "sitemapindex"):
        raise ParseError(f"unexpected sitemap root element: {kind or root.tag!r}")

    entry_tag = "url" if kind == "urlset" else "sitemap"
    locs = []
    for entry in root:
        if _local(entry.tag) != entry_tag:
            continue
        for child in entry:
            if _local(child.tag) == "loc" and child.text and child.text.strip():
                locs.append(child.text.strip())
                break

    if kind == "urlset":
        return locs, []
    return [], locs


async def _fetch_sitemap(client: httpx.AsyncClient, url: str) -> bytes | None:
    try:
        r = await client.get(url, follow_redirects=True, timeout=settings.sitemap_timeout_s)
    except httpx.HTTPError as e:
        logger.info(f"Sitemap probe failed: {e}", extra={"url": url})
        return None
    if r.status_code != 200:
        return None
    return r.content


async def fetch_sitemap_urls(client: httpx.AsyncClient, sitemap_url: str, limit: int) -> list[str]:
    """Page URLs from one sitemap location, following a sitemap index one level deep.

    Network and parse failures yield an empty list.
    """
    content = await _fetch_sitemap(client, sitemap_url)
    if content is None:
        return []
    try:
        urls, children = parse_sitemap(content)
    except ParseError as e:
        logger.warning(f"Ignoring sitemap: {e}", extra={"url": sitemap_url})
        return []

    for child in children:
        if len(urls) >= limit:
            break
        child_content = await _fetch_sitemap(client, child)
        if child_content is None:
            continue
        try:
            child_urls, _ = parse_sitemap(child_content)
        except ParseError as e:
            logger.warning(f"Ignoring child sitemap: {e}", extra={"url": child})
            continue
        urls.extend(child_urls)
    return urls[:limit]


def candidate_locations(start_url: str, extra: list[str] | None = None) -> list[str]:
    base = origin_of(start_url)
    candidates = [urljoin(base, path) for path in SITEMAP_LOCATIONS]
    for url in extra or []:
        if url not in candidates:
            candidates.append(url)
    return candidates


async def discover_seeds(
    client: httpx.AsyncClient,
    start_url: str,
    include_sitemap: bool,
    limit: int,
    robots_sitemaps: list[str] | None = None,
) -> list[str]:
    """Seed list for a crawl: the start URL first, then sitemap entries.

    Every candidate location is probed in order and the results are merged.
    When nothing is found the crawl falls back to link-following from
    ``start_url`` alone.
    """
    start = canonicalize_url(start_url)
    seeds = [start]
    if not include_sitemap:
        return seeds

    seen = {start}
    cap = min(limit, settings.sitemap_max_urls)
    for location in candidate_locations(start, robots_sitemaps):
        if len(seeds) > cap:
            break
        for url in await fetch_sitemap_urls(client, location, cap):
            try:
                canonical = canonicalize_url(url)
            except ValueError:
                continue
            if canonical not in seen:
                seen.add(canonical)
                seeds.append(canonical)

    if len(seeds) > 1:
        logger.info(f"Sitemap discovery found {len(seeds) - 1} URLs", extra={"url": start})
    return seeds[: cap + 1]
