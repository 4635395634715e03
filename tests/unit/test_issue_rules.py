from services.audit_service.analyzers.issue_rules import (
    CANONICAL_RULES,
    DEFAULT_RULES,
    count_by_severity,
    evaluate,
    group_by_severity,
)
from services.audit_service.crawler.signals import ImageInfo, PageSignals


def _healthy(**overrides) -> PageSignals:
    fields = dict(
        url="https://example.com/",
        status_code=200,
        title="A perfectly reasonable page title",
        meta_description="d" * 80,
        h1="Welcome to our example site",
        images=[ImageInfo(src="/a.png", alt="logo")],
        word_count=450,
        content_type="text/html",
    )
    fields.update(overrides)
    return PageSignals(**fields)


def test_healthy_page_has_no_issues():
    assert evaluate(_healthy()) == []


def test_bare_page_issue_counts():
    signals = PageSignals(
        url="https://example.com/bare",
        status_code=200,
        images=[ImageInfo(src="/a.png", alt=None), ImageInfo(src="/b.png", alt="  ")],
        word_count=250,
    )
    issues = evaluate(signals)
    counts = count_by_severity(group_by_severity(issues))

    assert counts == {"critical": 1, "error": 3, "warning": 1, "info": 0, "total": 5}
    assert [i.code for i in issues] == [
        "MISSING_TITLE",
        "MISSING_META_DESCRIPTION",
        "MISSING_H1",
        "IMAGES_MISSING_ALT",
        "LOW_WORD_COUNT",
    ]
    alt_issue = next(i for i in issues if i.code == "IMAGES_MISSING_ALT")
    assert alt_issue.value == 2


def test_title_length_boundaries():
    assert evaluate(_healthy(title="x" * 10)) == []
    assert evaluate(_healthy(title="x" * 60)) == []
    assert [i.code for i in evaluate(_healthy(title="x" * 9))] == ["TITLE_TOO_SHORT"]
    assert [i.code for i in evaluate(_healthy(title="x" * 61))] == ["TITLE_TOO_LONG"]


def test_description_length_boundaries():
    assert evaluate(_healthy(meta_description="d" * 50)) == []
    assert evaluate(_healthy(meta_description="d" * 160)) == []
    assert [i.code for i in evaluate(_healthy(meta_description="d" * 49))] == ["META_DESCRIPTION_TOO_SHORT"]
    assert [i.code for i in evaluate(_healthy(meta_description="d" * 161))] == ["META_DESCRIPTION_TOO_LONG"]


def test_short_h1_is_info_and_word_count_boundary():
    issues = evaluate(_healthy(h1="Home"))
    assert [(i.code, i.severity) for i in issues] == [("H1_TOO_SHORT", "info")]
    assert evaluate(_healthy(word_count=300)) == []
    assert [i.code for i in evaluate(_healthy(word_count=299))] == ["LOW_WORD_COUNT"]


def test_whitespace_title_counts_as_missing():
    issues = evaluate(_healthy(title="   "))
    assert [(i.code, i.severity) for i in issues] == [("MISSING_TITLE", "critical")]


def test_rule_order_is_stable():
    issues = evaluate(_healthy(broken_links=3, word_count=10))
    assert [i.code for i in issues] == ["LOW_WORD_COUNT", "BROKEN_LINKS"]
    assert issues[-1].severity == "error"
    assert [r.__name__ for r in DEFAULT_RULES[-3:]] == ["broken_links", "multiple_h1", "error_status"]


def test_evaluation_is_deterministic():
    signals = PageSignals(url="https://example.com/x", status_code=200, title="short", word_count=12)
    first = [i.to_dict() for i in evaluate(signals)]
    for _ in range(5):
        assert [i.to_dict() for i in evaluate(signals)] == first


def test_custom_rules_are_appended_in_order():
    def always(signals):
        from services.audit_service.analyzers.issue_rules import Issue
        return Issue("CUSTOM", "info", "custom rule")

    issues = evaluate(_healthy(), rules=(*DEFAULT_RULES, always))
    assert [i.code for i in issues] == ["CUSTOM"]


def test_multiple_h1_and_error_status():
    issues = evaluate(_healthy(h1_count=3))
    assert [(i.code, i.severity, i.value) for i in issues] == [("MULTIPLE_H1", "warning", 3)]
    assert evaluate(_healthy(h1_count=1)) == []

    assert [i.code for i in evaluate(_healthy(status_code=500))] == ["HTTP_ERROR_STATUS"]
    assert [i.code for i in evaluate(_healthy(status_code=101))] == ["HTTP_ERROR_STATUS"]
    assert evaluate(_healthy(status_code=304)) == []
    assert evaluate(_healthy(status_code=None)) == []


def test_canonical_rules():
    rules = (*DEFAULT_RULES, *CANONICAL_RULES)
    assert [i.code for i in evaluate(_healthy(), rules)] == ["MISSING_CANONICAL"]
    assert evaluate(_healthy(canonical_url="https://example.com/"), rules) == []
    assert evaluate(_healthy(url="https://EXAMPLE.com", canonical_url="https://example.com/"), rules) == []

    moved = evaluate(_healthy(canonical_url="https://example.com/main"), rules)
    assert [(i.code, i.severity, i.value) for i in moved] == [("CANONICAL_MISMATCH", "info", "https://example.com/main")]

    redirected = _healthy(url="https://example.com/old", final_url="https://example.com/main", canonical_url="https://example.com/main")
    assert evaluate(redirected, rules) == []
