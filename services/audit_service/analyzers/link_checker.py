import asyncio

import httpx

from config.logging_config import get_logger
from services.audit_service.config import settings

logger = get_logger(__name__)

BROKEN_STATUSES = (404, 410)


async def count_broken_links(client: httpx.AsyncClient, links: list[str], limit: int | None = None, concurrency: int = 10) -> int:
    """HEAD-probe up to ``limit`` links and count the ones that are gone."""
    probe = links[: limit or settings.max_link_checks]
    sem = asyncio.Semaphore(concurrency)
    broken = 0

    async def _probe(u: str) -> None:
        nonlocal broken
        async with sem:
            try:
                r = await client.head(u, follow_redirects=True, timeout=settings.default_timeout_s)
            except httpx.HTTPError as e:
                logger.debug(f"Link check error: {e}", extra={"url": u})
                return
            if r.status_code in BROKEN_STATUSES:
                broken += 1

    await asyncio.gather(*[_probe(u) for u in probe])
    return broken
