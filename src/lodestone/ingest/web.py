"""Website extractor — page fetch, same-domain crawl and sitemap links.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local ranges before
  any connection is established.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: text/html and text/plain (XML for sitemaps).
- Max response body: ``crawl.max_bytes`` (5 MB by default).
- Timeout: ``crawl.timeout`` seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
import urllib.error
import urllib.parse
import urllib.request
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass, field
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

from lodestone import __version__
from lodestone.config import CrawlCfg
from lodestone.db.models import Source, SourceItem
from lodestone.errors import ExtractionError, ValidationError
from lodestone.ingest.base import ExtractedItem, Extractor, format_page

logger = logging.getLogger(__name__)

_USER_AGENT = f"lodestone/{__version__} (knowledge base crawler)"
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_PAGE_CONTENT_TYPES = {"text/html", "text/plain"}
_SITEMAP_CONTENT_TYPES = {"application/xml", "text/xml", "text/plain"}

_SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".css",
    ".js", ".zip", ".tar", ".gz", ".mp4", ".mp3", ".wav", ".avi", ".mov",
)
_SKIP_PATHS = (
    "/login", "/logout", "/signup", "/register", "/cart", "/checkout",
    "/admin", "/wp-admin", "/api/", "/auth/",
)
# Pages with less text than this are treated as empty.
_MIN_CONTENT_CHARS = 50

# html2text converter
_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


class SsrfError(ValidationError):
    """Raised when a URL resolves to a private or reserved address."""


@dataclass
class FetchedPage:
    url: str
    title: str
    text: str
    links: list[str] = field(default_factory=list)


# ------------------------------------------------------------------
# URL helpers
# ------------------------------------------------------------------


def validate_url(url: str) -> None:
    """Reject non-http(s) URLs and URLs that resolve to internal addresses.

    Raises:
        ValidationError: For a bad scheme, a missing host or failed DNS lookup.
        SsrfError: If any resolved address is private, loopback, link-local,
            multicast, reserved or unspecified.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValidationError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )
    hostname = parsed.hostname
    if not hostname:
        raise ValidationError(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValidationError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        try:
            ip = ipaddress.ip_address(addrinfo[4][0])
        except ValueError:
            continue
        if (
            ip.is_private
            or ip.is_loopback
            or ip.is_link_local
            or ip.is_reserved
            or ip.is_multicast
            or ip.is_unspecified
        ):
            raise SsrfError(
                f"URL resolves to private address ({ip}). "
                "Access to internal network addresses is not allowed."
            )


def normalize_url(url: str) -> str:
    """Drop the fragment and a trailing slash so equivalent URLs compare equal."""
    parsed = urllib.parse.urlparse(url)
    path = parsed.path
    if path.endswith("/") and len(path) > 1:
        path = path[:-1]
    return urllib.parse.urlunparse(parsed._replace(path=path, fragment=""))


def root_domain(url: str) -> str:
    """Return the last two labels of the host (``docs.example.com`` → ``example.com``)."""
    host = urllib.parse.urlparse(url).hostname or ""
    parts = host.split(".")
    return ".".join(parts[-2:]) if len(parts) >= 2 else host


def should_crawl(url: str, base_domain: str) -> bool:
    """True for same-domain http(s) pages that are not files or account/API paths."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        return False
    path = parsed.path.lower()
    if path.endswith(_SKIP_EXTENSIONS):
        return False
    if any(p in path for p in _SKIP_PATHS):
        return False
    return root_domain(url) == base_domain


def matches_pattern(url: str, pattern: str) -> bool:
    """Match the URL path against a glob prefix; ``*`` stays within one segment.

    ``blog/*`` matches ``/blog/post-1`` and ``/blog/post-1/comments``.
    """
    path = urllib.parse.urlparse(url).path
    regex = "".join("[^/]*" if ch == "*" else re.escape(ch) for ch in pattern.lstrip("/"))
    return re.match(f"^/?{regex}", path, re.IGNORECASE) is not None


def filter_urls(
    urls: list[str],
    include_paths: list[str] | None = None,
    exclude_paths: list[str] | None = None,
    max_urls: int | None = None,
) -> list[str]:
    """Apply include/exclude patterns, de-duplicate (first wins) and cap."""
    result: list[str] = []
    seen: set[str] = set()
    for url in urls:
        if include_paths and not any(matches_pattern(url, p) for p in include_paths):
            continue
        if exclude_paths and any(matches_pattern(url, p) for p in exclude_paths):
            continue
        if url in seen:
            continue
        seen.add(url)
        result.append(url)
    if max_urls and max_urls > 0:
        result = result[:max_urls]
    return result


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


class WebFetcher:
    """Fetch pages and sitemaps with the SSRF guard and size/time limits applied."""

    def __init__(self, config: CrawlCfg | None = None) -> None:
        self._config = config or CrawlCfg()

    def fetch_page(self, url: str) -> FetchedPage:
        """Validate, fetch and convert *url*.

        Raises:
            ValidationError: For rejected URLs (scheme, SSRF).
            ExtractionError: For network errors, bad content types or oversized bodies.
        """
        validate_url(url)
        body, content_type, final_url = self._fetch(url, _PAGE_CONTENT_TYPES)
        text = body.decode("utf-8", errors="replace")
        if content_type == "text/plain":
            return FetchedPage(url=final_url, title=final_url, text=text.strip())
        return _parse_html(text, final_url)

    def fetch_text(self, url: str, allowed_types: set[str] | None = None) -> str:
        """Fetch *url* and return the decoded body (used for sitemap XML)."""
        validate_url(url)
        body, _, _ = self._fetch(url, allowed_types or _SITEMAP_CONTENT_TYPES)
        return body.decode("utf-8", errors="replace")

    def _fetch(self, url: str, allowed_types: set[str]) -> tuple[bytes, str, str]:
        """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

        Returns (body_bytes, content_type_without_params, final_url).
        """
        request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
        opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

        try:
            response: HTTPResponse = opener.open(request, timeout=self._config.timeout)
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise ExtractionError(f"Failed to fetch URL '{url}': {exc}") from exc

        with response:
            raw_ct = response.headers.get("Content-Type", "text/html")
            ct = raw_ct.split(";")[0].strip().lower()
            if ct not in allowed_types:
                raise ExtractionError(
                    f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                    f"Accepted: {', '.join(sorted(allowed_types))}"
                )

            limit = self._config.max_bytes
            body = response.read(limit + 1)
            if len(body) > limit:
                raise ExtractionError(
                    f"Response body exceeds {limit // (1024 * 1024)} MB limit for URL '{url}'."
                )
            final_url = response.geturl() or url
        return body, ct, final_url


def _parse_html(html: str, url: str) -> FetchedPage:
    """Extract title, absolute links and readable text from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        absolute = urllib.parse.urljoin(url, anchor["href"])
        if absolute not in links:
            links.append(absolute)

    for tag in soup.find_all(["script", "style", "nav", "footer", "header", "aside", "head"]):
        tag.decompose()
    main = soup.find("main") or soup.find("article") or soup
    text = _h2t.handle(str(main)).strip()
    return FetchedPage(url=url, title=title or url, text=text, links=links)


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise an error after more than *max_redirects* redirects.

    Every redirect target passes through the SSRF guard before it is followed.
    """

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise ExtractionError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        validate_url(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)


# ------------------------------------------------------------------
# Crawl + sitemap
# ------------------------------------------------------------------


@dataclass
class CrawlResult:
    pages: list[FetchedPage] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)


def crawl_website(
    fetcher: WebFetcher, start_url: str, max_depth: int = 2, max_pages: int = 10
) -> CrawlResult:
    """Breadth-first crawl of *start_url*'s domain.

    Pages shorter than a few words are recorded as errors. The queue stops
    growing once twice *max_pages* URLs have been seen.
    """
    result = CrawlResult()
    start = normalize_url(start_url)
    base_domain = root_domain(start)
    if not base_domain:
        result.errors.append((start_url, "Invalid URL"))
        return result

    visited = {start}
    queue: deque[tuple[str, int]] = deque([(start, 0)])

    while queue and len(result.pages) < max_pages:
        url, depth = queue.popleft()
        logger.debug("Crawling page", extra={"url": url, "depth": depth})
        try:
            page = fetcher.fetch_page(url)
        except (ExtractionError, ValidationError) as exc:
            result.errors.append((url, str(exc)))
            continue
        if len(page.text.strip()) < _MIN_CONTENT_CHARS:
            result.errors.append((url, "No meaningful content extracted"))
            continue

        result.pages.append(page)
        if depth >= max_depth:
            continue
        for link in page.links:
            link = normalize_url(link)
            if link in visited or not should_crawl(link, base_domain):
                continue
            visited.add(link)
            queue.append((link, depth + 1))
            if len(visited) >= max_pages * 2:
                break

    logger.info(
        "Crawl finished",
        extra={"url": start, "pages": len(result.pages), "errors": len(result.errors)},
    )
    return result


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Parse sitemap XML into ``(page_urls, nested_sitemap_urls)``.

    Raises:
        ExtractionError: If the document is not well-formed XML.
    """
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as exc:
        raise ExtractionError(f"Invalid sitemap XML: {exc}") from exc

    urls: list[str] = []
    nested: list[str] = []
    for node in root:
        kind = _local(node.tag)
        if kind not in ("url", "sitemap"):
            continue
        loc = next((c.text for c in node if _local(c.tag) == "loc" and c.text), None)
        if not loc:
            continue
        (nested if kind == "sitemap" else urls).append(loc.strip())
    return urls, nested


def fetch_sitemap_urls(
    fetcher: WebFetcher,
    sitemap_url: str,
    include_paths: list[str] | None = None,
    exclude_paths: list[str] | None = None,
    max_urls: int | None = None,
) -> tuple[list[str], list[tuple[str, str]]]:
    """Collect page URLs from a sitemap, following nested indexes once each.

    Returns:
        ``(urls, errors)`` where errors are ``(sitemap_url, message)`` pairs.
    """
    urls: list[str] = []
    errors: list[tuple[str, str]] = []
    processed: set[str] = set()
    pending: deque[str] = deque([sitemap_url])

    while pending:
        current = pending.popleft()
        if current in processed:
            continue
        processed.add(current)
        try:
            page_urls, nested = parse_sitemap(fetcher.fetch_text(current))
        except (ExtractionError, ValidationError) as exc:
            errors.append((current, str(exc)))
            logger.warning("Sitemap fetch failed", extra={"url": current, "error": str(exc)})
            continue
        pending.extend(n for n in nested if n not in processed)
        urls.extend(page_urls)
        if max_urls and len(urls) >= max_urls * 2:
            break

    return filter_urls(urls, include_paths, exclude_paths, max_urls), errors


# ------------------------------------------------------------------
# Extractor
# ------------------------------------------------------------------


class WebsiteExtractor(Extractor):
    """Extract website sources according to ``config["crawl_type"]``.

    - ``single``: the page at ``url``.
    - ``crawl``: a same-domain BFS from ``url``, all pages joined into one item.
    - ``sitemap``: each non-excluded link item, one extracted item per page.
    """

    def __init__(self, config: CrawlCfg | None = None, fetcher: WebFetcher | None = None) -> None:
        self._config = config or CrawlCfg()
        self._fetcher = fetcher or WebFetcher(self._config)

    def extract(self, source: Source, items: list[SourceItem]) -> list[ExtractedItem]:
        cfg = source.config_dict
        crawl_type = cfg.get("crawl_type", "single")
        url = cfg.get("url")
        if crawl_type == "sitemap":
            return self._extract_links(items)
        if not url:
            raise ExtractionError("Website source has no URL")
        if crawl_type == "single":
            return [self._extract_single(url)]
        if crawl_type == "crawl":
            return [self._extract_crawl(url, cfg)]
        raise ExtractionError(f"Unsupported crawl type: {crawl_type}")

    def _extract_single(self, url: str) -> ExtractedItem:
        try:
            page = self._fetcher.fetch_page(url)
        except ValidationError as exc:
            raise ExtractionError(str(exc)) from exc
        if not page.text.strip():
            raise ExtractionError("No content extracted from page")
        return ExtractedItem(
            text=format_page(page.title, page.url, page.text),
            metadata={"source_url": url},
            title=page.title,
        )

    def _extract_crawl(self, url: str, cfg: dict) -> ExtractedItem:
        result = crawl_website(
            self._fetcher,
            url,
            max_depth=int(cfg.get("max_depth", self._config.max_depth)),
            max_pages=int(cfg.get("max_pages", self._config.max_pages)),
        )
        if not result.pages:
            detail = f": {result.errors[0][1]}" if result.errors else ""
            raise ExtractionError(f"No pages successfully crawled{detail}")
        text = "\n\n---\n\n".join(format_page(p.title, p.url, p.text) for p in result.pages)
        return ExtractedItem(
            text=text,
            metadata={"source_url": url, "pages_crawled": len(result.pages)},
        )

    def _extract_links(self, items: list[SourceItem]) -> list[ExtractedItem]:
        links = [i for i in items if not i.is_excluded]
        if not links:
            raise ExtractionError("No links to process")
        return [self.extract_link(link) for link in links]

    def extract_link(self, link: SourceItem) -> ExtractedItem:
        """Fetch one sitemap link; fetch failures come back as an error item."""
        try:
            page = self._fetcher.fetch_page(link.address)
        except (ExtractionError, ValidationError) as exc:
            return ExtractedItem(text="", item_id=link.id, error=str(exc))
        if not page.text.strip():
            return ExtractedItem(text="", item_id=link.id, error="No content extracted")
        return ExtractedItem(
            text=format_page(page.title, page.url, page.text),
            metadata={"source_url": link.address, "link_id": link.id},
            item_id=link.id,
            title=page.title,
        )
