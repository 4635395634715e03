from collections import deque
from dataclasses import dataclass
from typing import Iterable

from services.audit_service.analyzers.robots_checker import RobotsRules
from services.audit_service.config import settings
from services.audit_service.crawler.patterns import PatternMatcher
from services.audit_service.crawler.urls import canonicalize_url, same_origin
from services.audit_service.schemas.audit import AuditOptions


@dataclass
class CrawlRules:
    """Compiled, per-audit view of the options that decide URL eligibility."""

    start_url: str
    max_depth: int
    skip_external: bool
    follow: PatternMatcher
    ignore: PatternMatcher
    robots: RobotsRules | None = None

    @classmethod
    def from_options(cls, start_url: str, options: AuditOptions, robots: RobotsRules | None = None) -> "CrawlRules":
        def matcher(patterns):
            return PatternMatcher(
                [p.pattern for p in patterns],
                timeout_s=settings.pattern_timeout_s,
                max_length=settings.pattern_max_length,
            )

        return cls(
            start_url=canonicalize_url(start_url),
            max_depth=options.max_depth,
            skip_external=options.skip_external,
            follow=matcher(options.follow_patterns),
            ignore=matcher(options.ignore_patterns),
            robots=robots if options.respect_robots_txt else None,
        )


def should_follow(url: str, depth: int, rules: CrawlRules, visited: set[str] | frozenset[str]) -> bool:
    """Eligibility of one canonical URL; checks run in a fixed order and exclude wins over include."""
    if rules.ignore and rules.ignore.matches_any(url, on_timeout=True):
        return False
    if rules.follow and not rules.follow.matches_any(url, on_timeout=False):
        return False
    if depth > rules.max_depth:
        return False
    if rules.skip_external and not same_origin(rules.start_url, url):
        return False
    if url in visited:
        return False
    if rules.robots is not None and not rules.robots.is_allowed(url):
        return False
    return True


@dataclass(frozen=True)
class FrontierEntry:
    url: str
    depth: int


class Frontier:
    """Breadth-first queue of discovered-but-not-yet-processed URLs for one audit.

    Only the crawl session's scheduling loop touches this object, so the
    visited check and insert need no locking.
    """

    def __init__(self, rules: CrawlRules, follow_links: bool = True):
        self.rules = rules
        self.follow_links = follow_links
        self.visited: set[str] = set()
        self._queue: deque[FrontierEntry] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    def _offer(self, url: str, depth: int) -> bool:
        try:
            canonical = canonicalize_url(url)
        except ValueError:
            return False
        if not should_follow(canonical, depth, self.rules, self.visited):
            return False
        self.visited.add(canonical)
        self._queue.append(FrontierEntry(canonical, depth))
        return True

    def seed(self, urls: Iterable[str]) -> int:
        return sum(1 for url in urls if self._offer(url, 0))

    def add_links(self, links: Iterable[str], parent_depth: int) -> int:
        if not self.follow_links:
            return 0
        depth = parent_depth + 1
        if depth > self.rules.max_depth:
            return 0
        return sum(1 for url in links if self._offer(url, depth))

    def pop(self) -> FrontierEntry | None:
        if not self._queue:
            return None
        return self._queue.popleft()
