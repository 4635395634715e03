import hashlib
import re
from dataclasses import dataclass, field

from bs4 import BeautifulSoup

from services.audit_service.crawler.urls import normalize_link, same_origin

_HTML_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class ImageInfo:
    src: str | None
    alt: str | None
    size: int | None = None

    @property
    def missing_alt(self) -> bool:
        return not (self.alt or "").strip()


@dataclass
class PageSignals:
    url: str
    status_code: int | None
    final_url: str | None = None
    title: str | None = None
    meta_description: str | None = None
    h1: str | None = None
    h1_count: int = 0
    canonical_url: str | None = None
    internal_links: list[str] = field(default_factory=list)
    external_links: list[str] = field(default_factory=list)
    images: list[ImageInfo] = field(default_factory=list)
    content_type: str | None = None
    elapsed_ms: int = 0
    word_count: int = 0
    content_hash: str | None = None
    broken_links: int = 0
    screenshot_path: str | None = None

    @property
    def is_html(self) -> bool:
        if not self.content_type:
            return True
        return self.content_type.split(";", 1)[0].strip().lower() in _HTML_TYPES

    @property
    def links(self) -> list[str]:
        return self.internal_links + self.external_links

    def missing_alt_count(self) -> int:
        return sum(1 for img in self.images if img.missing_alt)

    def large_image_count(self, threshold: int) -> int:
        return sum(1 for img in self.images if img.size is not None and img.size > threshold)


def _text_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def extract_signals(
    html: str,
    url: str,
    site_url: str,
    status_code: int | None,
    final_url: str | None = None,
    content_type: str | None = None,
    elapsed_ms: int = 0,
    image_sizes: dict[str, int] | None = None,
) -> PageSignals:
    """Parse one HTML document into the signal bundle the rule engine reads."""
    base = final_url or url
    soup = BeautifulSoup(html, "lxml")

    title = _text_or_none(soup.title.get_text()) if soup.title else None

    desc = None
    m = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    if m and m.get("content"):
        desc = _text_or_none(m["content"])

    headings = soup.find_all("h1")
    h1 = _text_or_none(headings[0].get_text(" ", strip=True)) if headings else None

    canonical = None
    c = soup.find("link", rel="canonical", href=True)
    if c:
        canonical = normalize_link(base, c["href"])

    internal: list[str] = []
    external: list[str] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        link = normalize_link(base, a.get("href"))
        if link is None or link in seen:
            continue
        seen.add(link)
        if same_origin(site_url, link):
            internal.append(link)
        else:
            external.append(link)

    sizes = image_sizes or {}
    images = []
    for img in soup.find_all("img"):
        src = img.get("src")
        absolute = normalize_link(base, src) if src else None
        images.append(ImageInfo(src=src, alt=img.get("alt"), size=sizes.get(absolute) if absolute else None))

    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    body = soup.body or soup
    words = body.get_text(" ", strip=True).split()
    content_hash = None
    if words:
        content_hash = hashlib.sha1(" ".join(words).lower().encode("utf-8")).hexdigest()

    return PageSignals(
        url=url,
        status_code=status_code,
        final_url=final_url,
        title=title,
        meta_description=desc,
        h1=h1,
        h1_count=len(headings),
        canonical_url=canonical,
        content_hash=content_hash,
        internal_links=internal,
        external_links=external,
        images=images,
        content_type=content_type,
        elapsed_ms=elapsed_ms,
        word_count=len(words),
    )
