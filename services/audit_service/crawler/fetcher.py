import asyncio
import hashlib
import time
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed

from config.logging_config import get_logger
from services.audit_service.config import settings
from services.audit_service.crawler.signals import PageSignals, extract_signals
from services.audit_service.crawler.urls import canonicalize_url
from services.audit_service.errors import PERMANENT, TRANSIENT, FetchError
from services.audit_service.schemas.audit import AuditOptions

logger = get_logger(__name__)

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.is_transient


def raise_for_status(url: str, status: int) -> None:
    if status >= 500 or status == 429:
        raise FetchError(url, TRANSIENT, f"server returned {status}", status_code=status)
    if status >= 400:
        raise FetchError(url, PERMANENT, f"server returned {status}", status_code=status)


def user_agent_for(options: AuditOptions) -> str:
    if options.user_agent:
        return options.user_agent
    if options.device == "mobile":
        return settings.mobile_user_agent
    return settings.user_agent


class PageFetcher(ABC):
    """Capability boundary: URL in, signal bundle out, or ``FetchError``.

    ``fetch`` retries a transient failure exactly once; a second transient
    failure is reported as permanent.
    """

    def __init__(self, site_url: str, options: AuditOptions, retry_wait_s: float | None = None):
        self.site_url = site_url
        self.options = options
        self.retry_wait_s = settings.retry_wait_s if retry_wait_s is None else retry_wait_s

    @abstractmethod
    async def _fetch_once(self, url: str) -> PageSignals:
        ...

    async def fetch(self, url: str) -> PageSignals:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                wait=wait_fixed(self.retry_wait_s),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    return await self._fetch_once(url)
        except FetchError as e:
            if e.is_transient:
                raise e.as_permanent() from e
            raise

    async def aclose(self) -> None:
        return None

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class StaticPageFetcher(PageFetcher):
    """Plain HTTP GET and HTML parsing; page scripts are not executed."""

    def __init__(self, site_url: str, options: AuditOptions, client: httpx.AsyncClient | None = None, retry_wait_s: float | None = None):
        super().__init__(site_url, options, retry_wait_s=retry_wait_s)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": user_agent_for(options)},
            timeout=options.timeout_s,
        )

    async def _fetch_once(self, url: str) -> PageSignals:
        start = time.perf_counter()
        try:
            r = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(url, TRANSIENT, f"timeout: {e}") from e
        except httpx.UnsupportedProtocol as e:
            raise FetchError(url, PERMANENT, f"unsupported url: {e}") from e
        except httpx.TransportError as e:
            raise FetchError(url, TRANSIENT, f"transport error: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(url, PERMANENT, f"http error: {e}") from e
        except httpx.InvalidURL as e:
            raise FetchError(url, PERMANENT, f"invalid url: {e}") from e
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        raise_for_status(url, r.status_code)

        content_type = r.headers.get("content-type")
        signals = PageSignals(url=url, status_code=r.status_code, final_url=str(r.url), content_type=content_type, elapsed_ms=elapsed_ms)
        if signals.is_html:
            signals = extract_signals(
                r.text,
                url=url,
                site_url=self.site_url,
                status_code=r.status_code,
                final_url=str(r.url),
                content_type=content_type,
                elapsed_ms=elapsed_ms,
            )
        return signals

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class RenderingPageFetcher(PageFetcher):
    """Headless Chromium via Playwright; executes page scripts and can emulate a mobile device."""

    def __init__(self, site_url: str, options: AuditOptions, audit_id: str | None = None, retry_wait_s: float | None = None):
        super().__init__(site_url, options, retry_wait_s=retry_wait_s)
        self.audit_id = audit_id or "adhoc"
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True, args=BROWSER_ARGS)
        return self._browser

    def _context_kwargs(self) -> dict:
        kwargs: dict = {}
        if self.options.device == "mobile":
            kwargs.update(self._playwright.devices[settings.mobile_device])
        if self.options.user_agent or "user_agent" not in kwargs:
            kwargs["user_agent"] = user_agent_for(self.options)
        return kwargs

    def _screenshot_path(self, url: str) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        return Path(settings.screenshot_dir) / self.audit_id / f"{digest}.png"

    async def _take_screenshot(self, page, url: str) -> str | None:
        path = self._screenshot_path(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await page.screenshot(path=str(path), full_page=True)
        except PlaywrightError as e:
            logger.warning(f"Screenshot failed for {url}: {e}", extra={"audit_id": self.audit_id, "url": url})
            return None
        return str(path)

    async def _fetch_once(self, url: str) -> PageSignals:
        browser = await self._ensure_browser()
        try:
            context = await browser.new_context(**self._context_kwargs())
        except PlaywrightError as e:
            raise FetchError(url, TRANSIENT, f"browser error: {e}") from e
        image_sizes: dict[str, int] = {}

        def _on_response(resp) -> None:
            if resp.request.resource_type != "image":
                return
            length = resp.headers.get("content-length")
            if length and length.isdigit():
                try:
                    image_sizes[canonicalize_url(resp.url)] = int(length)
                except ValueError:
                    pass

        try:
            page = await context.new_page()
            page.on("response", _on_response)
            start = time.perf_counter()
            resp = await page.goto(url, wait_until="networkidle", timeout=int(self.options.timeout_s * 1000))
            elapsed_ms = int((time.perf_counter() - start) * 1000)

            if resp is None:
                raise FetchError(url, PERMANENT, "navigation produced no response")
            raise_for_status(url, resp.status)

            content_type = resp.headers.get("content-type")
            html = await page.content()
            signals = extract_signals(
                html,
                url=url,
                site_url=self.site_url,
                status_code=resp.status,
                final_url=page.url,
                content_type=content_type,
                elapsed_ms=elapsed_ms,
                image_sizes=image_sizes,
            )
            if self.options.include_screenshots:
                signals.screenshot_path = await self._take_screenshot(page, url)
            return signals
        except PlaywrightTimeoutError as e:
            raise FetchError(url, TRANSIENT, f"timeout: {e}") from e
        except PlaywrightError as e:
            kind = PERMANENT if "invalid url" in str(e).lower() else TRANSIENT
            raise FetchError(url, kind, f"browser error: {e}") from e
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.warning(f"Browser context close failed: {e}", extra={"audit_id": self.audit_id})

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


def build_fetcher(site_url: str, options: AuditOptions, audit_id: str | None = None) -> PageFetcher:
    if options.use_javascript:
        return RenderingPageFetcher(site_url, options, audit_id=audit_id)
    if options.include_screenshots:
        logger.info("Screenshots need the rendering strategy; ignored for static fetch", extra={"audit_id": audit_id})
    return StaticPageFetcher(site_url, options)
