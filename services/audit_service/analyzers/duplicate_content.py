from services.audit_service.analyzers.issue_rules import WARNING, Issue
from services.audit_service.crawler.signals import PageSignals


class DuplicateTracker:
    """Flags pages whose title or visible text repeats a page already processed in the same audit.

    The first page seen keeps a clean record; every later repeat carries an
    issue pointing at it. Which page counts as first follows processing order.
    """

    def __init__(self):
        self._titles: dict[str, str] = {}
        self._contents: dict[str, str] = {}

    def check(self, signals: PageSignals) -> list[Issue]:
        issues = []
        title = " ".join((signals.title or "").split()).lower()
        if title:
            first = self._titles.setdefault(title, signals.url)
            if first != signals.url:
                issues.append(Issue("DUPLICATE_TITLE", WARNING, f"Title is also used by {first}", first))

        if signals.content_hash:
            first = self._contents.setdefault(signals.content_hash, signals.url)
            if first != signals.url:
                issues.append(Issue("DUPLICATE_CONTENT", WARNING, f"Page content duplicates {first}", first))
        return issues
