from services.audit_service.analyzers.duplicate_content import DuplicateTracker
from services.audit_service.crawler.signals import PageSignals


def _signals(url, title=None, content_hash=None):
    return PageSignals(url=url, status_code=200, title=title, content_hash=content_hash)


def test_first_page_is_clean_and_repeats_point_at_it():
    tracker = DuplicateTracker()
    assert tracker.check(_signals("https://example.com/", "Home Page", "h1")) == []

    issues = tracker.check(_signals("https://example.com/copy", "home   page", "h1"))
    assert [(i.code, i.value) for i in issues] == [
        ("DUPLICATE_TITLE", "https://example.com/"),
        ("DUPLICATE_CONTENT", "https://example.com/"),
    ]

    again = tracker.check(_signals("https://example.com/copy2", "Home Page", "other"))
    assert [(i.code, i.value) for i in again] == [("DUPLICATE_TITLE", "https://example.com/")]


def test_missing_title_and_empty_body_are_not_compared():
    tracker = DuplicateTracker()
    tracker.check(_signals("https://example.com/a"))
    assert tracker.check(_signals("https://example.com/b", title="  ")) == []


def test_same_url_seen_twice_is_not_a_duplicate():
    tracker = DuplicateTracker()
    tracker.check(_signals("https://example.com/", "Home", "h"))
    assert tracker.check(_signals("https://example.com/", "Home", "h")) == []
