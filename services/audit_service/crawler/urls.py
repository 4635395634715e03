from urllib.parse import urljoin, urldefrag, urlsplit, urlunsplit

import tldextract

_DEFAULT_PORTS = {"http": 80, "https": 443}
_SKIPPED_PREFIXES = ("mailto:", "tel:", "javascript:", "data:", "#")

# bundled public suffix snapshot; no list download at crawl time
_extract = tldextract.TLDExtract(suffix_list_urls=())


def canonicalize_url(url: str) -> str:
    """Return the form of ``url`` used for dedupe and visited-set membership.

    Scheme and host are lower-cased, default ports and fragments are dropped,
    an empty path becomes ``/``. The query string is kept as-is.
    Raises ``ValueError`` for anything that is not an absolute http(s) URL.
    """
    u, _ = urldefrag(url.strip())
    p = urlsplit(u)
    scheme = p.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not p.hostname:
        raise ValueError(f"not an absolute http(s) url: {url!r}")
    host = p.hostname.lower()
    port = p.port
    netloc = host if port is None or port == _DEFAULT_PORTS[scheme] else f"{host}:{port}"
    if p.username or p.password:
        raise ValueError(f"credentials in url are not supported: {url!r}")
    return urlunsplit((scheme, netloc, p.path or "/", p.query, ""))


def normalize_link(base: str, href: str | None) -> str | None:
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(_SKIPPED_PREFIXES):
        return None
    try:
        return canonicalize_url(urljoin(base, href))
    except ValueError:
        return None


def site_host(url: str) -> str:
    """Host of ``url`` as subdomain.domain.suffix with a leading ``www`` label removed."""
    host = (urlsplit(url).hostname or "").lower().rstrip(".")
    ext = _extract(host)
    labels = ext.subdomain.split(".") if ext.subdomain else []
    if labels and labels[0] == "www":
        labels = labels[1:]
    # fqdn is empty for bare hosts and IPs, which have no public suffix
    return ".".join([*labels, ext.domain, ext.suffix]) if ext.fqdn else host


def same_origin(root: str, candidate: str) -> bool:
    r = site_host(root)
    return bool(r) and r == site_host(candidate)


def origin_of(url: str) -> str:
    p = urlsplit(url)
    return f"{p.scheme}://{p.netloc}"
