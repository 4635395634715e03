import asyncio
import enum
import inspect
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from config.logging_config import AuditLogger, get_logger
from services.audit_service.analyzers.duplicate_content import DuplicateTracker
from services.audit_service.analyzers.issue_rules import CANONICAL_RULES, DEFAULT_RULES, SEVERITIES, evaluate
from services.audit_service.analyzers.link_checker import count_broken_links
from services.audit_service.analyzers.robots_checker import fetch_robots
from services.audit_service.config import settings
from services.audit_service.crawler.fetcher import PageFetcher, user_agent_for
from services.audit_service.crawler.frontier import CrawlRules, Frontier, FrontierEntry
from services.audit_service.crawler.page_result import PageResult
from services.audit_service.crawler.signals import PageSignals
from services.audit_service.crawler.sitemap import discover_seeds
from services.audit_service.crawler.urls import canonicalize_url
from services.audit_service.db.models import AuditStatus, empty_issues_summary
from services.audit_service.errors import PERMANENT, AuditClosedError, CrawlAbortedError, FetchError, PersistenceError
from services.audit_service.reports.html_report import write_html_report
from services.audit_service.schemas.audit import AuditOptions

logger = get_logger(__name__)
audit_logger = AuditLogger()

ProgressCallback = Callable[[int, int], Awaitable[None] | None]


class SessionState(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.CREATED: {SessionState.RUNNING},
    SessionState.RUNNING: {SessionState.COMPLETED, SessionState.FAILED},
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CrawlSession:
    """Drives one audit: frontier, fetcher and rule engine, with incremental persistence.

    All frontier and counter mutations happen in the coroutine running
    ``run``; only page fetches run concurrently, at most
    ``options.max_concurrency`` at a time.
    """

    def __init__(
        self,
        audit_id: str,
        site_url: str,
        options: AuditOptions,
        store,
        fetcher: PageFetcher,
        project_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        report_dir: str | None = None,
    ):
        self.audit_id = audit_id
        self.site_url = site_url
        self.options = options
        self.store = store
        self.fetcher = fetcher
        self.project_id = project_id
        self.on_progress = on_progress
        self.report_dir = report_dir
        self._http = http_client

        self.state = SessionState.CREATED
        self.pages: list[PageResult] = []
        self.issues_summary = empty_issues_summary()
        self.error_message: str | None = None
        self.report_ref: str | None = None
        self._start_url = canonicalize_url(site_url)
        self._rules = DEFAULT_RULES + CANONICAL_RULES if options.check_canonical else DEFAULT_RULES
        self._duplicates = DuplicateTracker()
        self._cancelled = asyncio.Event()
        self._cancel_reason = "audit cancelled"

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal crawl session transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def processed(self) -> int:
        return len(self.pages)

    def cancel(self, reason: str = "audit cancelled") -> None:
        self._cancel_reason = reason
        self._cancelled.set()

    async def run(self) -> SessionState:
        self._transition(SessionState.RUNNING)
        started = time.monotonic()
        audit_logger.log_crawl_started(self.project_id, self.audit_id, self.site_url, self.options.model_dump())

        client = self._http or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": user_agent_for(self.options)},
            timeout=self.options.timeout_s,
        )
        try:
            accepted = await self.store.upsert_audit(
                self.audit_id,
                status=AuditStatus.IN_PROGRESS.value,
                started_at=_now(),
                progress_percentage=0,
                error_message=None,
            )
            if accepted is False:
                raise AuditClosedError("audit was closed before the crawl started")
            frontier = await self._build_frontier(client)
            await self._crawl(frontier, client)
            await self._complete(time.monotonic() - started)
        except AuditClosedError as e:
            await self._fail(str(e), persist=False)
        except CrawlAbortedError as e:
            await self._fail(str(e))
        except PersistenceError as e:
            await self._fail(f"result store failure: {e}")
        except asyncio.CancelledError:
            await self._fail("audit interrupted")
            raise
        except Exception as e:
            logger.error(f"Unexpected crawl failure: {e}", extra={"audit_id": self.audit_id}, exc_info=True)
            await self._fail(str(e) or e.__class__.__name__)
        finally:
            if self._http is None:
                await client.aclose()
            await self.fetcher.aclose()
        return self.state

    async def _build_frontier(self, client: httpx.AsyncClient) -> Frontier:
        robots = None
        if self.options.respect_robots_txt or self.options.include_sitemap:
            robots = await fetch_robots(client, self._start_url, user_agent_for(self.options))

        rules = CrawlRules.from_options(self._start_url, self.options, robots)
        frontier = Frontier(rules, follow_links=not self.options.crawl_single_url)

        seeds = await discover_seeds(
            client,
            self._start_url,
            include_sitemap=self.options.include_sitemap and not self.options.crawl_single_url,
            limit=self.options.max_pages,
            robots_sitemaps=robots.sitemaps if robots else None,
        )
        if frontier.seed(seeds) == 0:
            raise CrawlAbortedError("no crawlable URL: the start URL is excluded by the crawl rules")
        return frontier

    async def _crawl(self, frontier: Frontier, client: httpx.AsyncClient) -> None:
        in_flight: dict[asyncio.Task, FrontierEntry] = {}
        dispatched = 0
        cancel_wait = asyncio.create_task(self._cancelled.wait())
        try:
            while True:
                if self._cancelled.is_set():
                    raise CrawlAbortedError(self._cancel_reason)

                while len(in_flight) < self.options.max_concurrency and dispatched < self.options.max_pages:
                    entry = frontier.pop()
                    if entry is None:
                        break
                    in_flight[asyncio.create_task(self._fetch(entry.url, client))] = entry
                    dispatched += 1

                if not in_flight:
                    break

                done, _ = await asyncio.wait([*in_flight, cancel_wait], return_when=asyncio.FIRST_COMPLETED)
                if cancel_wait in done:
                    raise CrawlAbortedError(self._cancel_reason)
                for task in done:
                    entry = in_flight.pop(task)
                    await self._handle(entry, task, frontier)
        finally:
            cancel_wait.cancel()
            for task in in_flight:
                task.cancel()
            await asyncio.gather(cancel_wait, *in_flight, return_exceptions=True)

    async def _fetch(self, url: str, client: httpx.AsyncClient) -> PageSignals:
        signals = await self.fetcher.fetch(url)
        if self.options.check_broken_links and signals.internal_links:
            signals.broken_links = await count_broken_links(client, signals.internal_links, limit=settings.max_link_checks)
        return signals

    async def _handle(self, entry: FrontierEntry, task: asyncio.Task, frontier: Frontier) -> None:
        try:
            signals = task.result()
        except FetchError as err:
            if entry.url == self._start_url and err.status_code is None:
                raise CrawlAbortedError(f"start URL could not be fetched: {err.message}") from err
            page = self._failed_page(entry.url, err)
        except Exception as exc:
            logger.error(
                f"Unexpected page failure: {exc!r}",
                extra={"audit_id": self.audit_id, "url": entry.url},
                exc_info=exc,
            )
            err = FetchError(entry.url, PERMANENT, f"unexpected error: {str(exc) or exc.__class__.__name__}")
            page = self._failed_page(entry.url, err)
        else:
            issues = []
            if signals.is_html:
                issues = evaluate(signals, self._rules) + self._duplicates.check(signals)
            page = PageResult.from_signals(signals, issues, settings.large_image_bytes)
            frontier.add_links(signals.links, entry.depth)
        await self._record(page)

    def _failed_page(self, url: str, err: FetchError) -> PageResult:
        audit_logger.log_page_failed(self.audit_id, url, err.kind, err.message)
        return PageResult.from_fetch_error(url, err)

    async def _record(self, page: PageResult) -> None:
        self.pages.append(page)
        counts = page.issue_counts
        for sev in SEVERITIES:
            self.issues_summary[sev] += counts[sev]
        self.issues_summary["total"] += counts["total"]

        await self.store.append_page_result(self.audit_id, page)
        percentage = min(99, self.processed * 100 // self.options.max_pages)
        accepted = await self.store.upsert_audit(
            self.audit_id,
            progress_percentage=percentage,
            total_pages=self.processed,
            issues_summary=dict(self.issues_summary),
        )
        if accepted is False:
            raise AuditClosedError("audit was closed while crawling")
        audit_logger.log_page_crawled(self.audit_id, page.url, page.status_code, page.load_time_ms, page.issues_count)

        if self.on_progress is not None:
            result = self.on_progress(self.processed, percentage)
            if inspect.isawaitable(result):
                await result

    async def _complete(self, duration: float) -> None:
        completed_at = _now()
        self.report_ref = report_ref = await write_html_report(
            self.audit_id,
            self.site_url,
            self.issues_summary,
            self.pages,
            completed_at=completed_at,
            report_dir=self.report_dir,
        )
        accepted = await self.store.upsert_audit(
            self.audit_id,
            status=AuditStatus.COMPLETED.value,
            progress_percentage=100,
            total_pages=self.processed,
            issues_summary=dict(self.issues_summary),
            report_ref=report_ref,
            completed_at=completed_at,
        )
        if accepted is False:
            raise AuditClosedError("audit was closed while crawling")
        await self.store.create_audit_history(self.project_id, self.audit_id, self.processed, dict(self.issues_summary))
        self._transition(SessionState.COMPLETED)
        audit_logger.log_crawl_completed(self.project_id, self.audit_id, self.processed, self.issues_summary["total"], duration)

    async def _fail(self, message: str, persist: bool = True) -> None:
        self.error_message = message
        if self.state is SessionState.RUNNING:
            self._transition(SessionState.FAILED)
        if not persist:
            logger.info(f"Crawl stopped: {message}", extra={"audit_id": self.audit_id})
            return
        audit_logger.log_crawl_failed(self.project_id, self.audit_id, message)
        try:
            await self.store.upsert_audit(
                self.audit_id,
                status=AuditStatus.FAILED.value,
                error_message=message,
                completed_at=_now(),
            )
        except PersistenceError as e:
            logger.error(f"Could not mark audit failed: {e}", extra={"audit_id": self.audit_id})


class SessionRegistry:
    """Running crawl sessions by audit id, so the API can signal cancellation."""

    def __init__(self):
        self._sessions: dict[str, CrawlSession] = {}

    def register(self, session: CrawlSession) -> None:
        self._sessions[session.audit_id] = session

    def unregister(self, audit_id: str) -> None:
        self._sessions.pop(audit_id, None)

    def get(self, audit_id: str) -> CrawlSession | None:
        return self._sessions.get(audit_id)

    def cancel(self, audit_id: str, reason: str = "audit cancelled") -> bool:
        session = self._sessions.get(audit_id)
        if session is None:
            return False
        session.cancel(reason)
        return True

    def __len__(self) -> int:
        return len(self._sessions)
