#!/usr/bin/env python3
import argparse
import asyncio
import hashlib
import html as html_lib
import json
import logging
import os
import re
import sys
import time
import tomllib
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup, Tag
from markdownify import ATX, SETEXT, MarkdownConverter, abstract_inline_conversion
from requests.adapters import HTTPAdapter
from soupsieve import SelectorSyntaxError
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; WebScraper/1.0)"

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
}

DEFAULT_EXCLUDE_PATTERNS = (
    # file extensions
    r"\.(pdf|doc|docx|xls|xlsx|ppt|pptx|zip|rar|exe|dmg|mp4|avi|mov|wmv|flv|webm|mp3|wav|ogg|flac)$",
    # private or generated paths
    r"/admin/",
    r"/login/",
    r"/api/",
    r"/wp-admin/",
    r"/wp-content/uploads/",
    r"/wp-includes/",
    r"/cgi-bin/",
    r"/tmp/",
    r"/temp/",
    r"/cache/",
    r"/logs/",
    # listings and feeds
    r"/search/",
    r"/tag/",
    r"/category/",
    r"/author/",
    r"/date/",
    r"/page/",
    r"/feed/",
    r"/rss/",
    r"/atom/",
    r"/xml/",
    r"/json/",
    # social and tracking hosts
    r"facebook\.com",
    r"twitter\.com",
    r"instagram\.com",
    r"linkedin\.com",
    r"youtube\.com",
    r"vimeo\.com",
    r"google-analytics",
    r"googletagmanager",
    r"facebook\.net",
    r"doubleclick\.net",
    r"googlesyndication",
)

DEFAULT_REMOVE_ELEMENTS = (
    # navigation
    "nav", ".navbar", ".menu", ".navigation", '[role="navigation"]', ".nav", ".header-nav",
    # page chrome
    "header", "footer", ".footer", ".site-footer", ".site-header",
    "aside", ".sidebar", ".side-nav", ".widget", ".widget-area",
    # advertising and social
    ".ad", ".ads", ".advertisement", ".banner", ".promo", ".sponsored",
    ".social", ".social-media", ".share-buttons", ".social-share",
    ".comments", ".comment-section", "#comments", ".user-content",
    ".breadcrumb", ".breadcrumbs", ".pagination", ".pager",
    'form[role="search"]', ".search-form", ".newsletter", ".email-signup", ".subscribe",
    ".cookie-notice", ".cookie-banner", ".gdpr-notice", ".popup", ".modal", ".overlay", ".lightbox",
    # tracking pixels
    'img[width="1"]', 'img[height="1"]', ".analytics", ".tracking",
    "div:empty", "p:empty", "span:empty",
)

OUTPUT_FORMATS = ("md", "html", "json")
IMAGE_LINK_TEXT_POLICIES = ("alt", "title", "filename", "url")
HEADING_STYLES = ("atx", "setext")
CODE_BLOCK_STYLES = ("fenced", "indented")

MIN_DELAY = 0.1
IMAGE_TIMEOUT = 10.0
WEBHOOK_TIMEOUT = 5.0
PROGRESS_QUEUE_SIZE = 100
MAX_FILENAME_LENGTH = 200

PROGRESS_PREFIX = "PROGRESS_UPDATE:"
STATE_FILENAME = "state.json"
SITEMAP_FILENAME = "sitemap.md"

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
REPEATED_UNDERSCORE_RE = re.compile(r"__+")

TRACKING_PARAM_PREFIXES = (
    "utm_",
    "gclid",
    "fbclid",
    "mc_",
    "yclid",
    "icid",
    "ref",
    "cmpid",
)

# -------------------- Settings --------------------


@dataclass(frozen=True)
class Settings:
    url: str
    output_dir: Path
    concurrency: int = 5
    timeout: float = 10.0
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    max_pages: int = 5000
    exclude_patterns: Tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    remove_elements: Tuple[str, ...] = DEFAULT_REMOVE_ELEMENTS

    # Output
    output_format: str = "md"
    include_metadata: bool = True
    include_timestamps: bool = True
    save_state_interval: int = 10

    # Images
    download_images: bool = False
    convert_images_to_links: bool = True
    image_link_text: str = "alt"  # alt | title | filename | url

    # Markdown
    heading_style: str = "atx"  # atx | setext
    code_block_style: str = "fenced"  # fenced | indented
    em_delimiter: str = "*"
    strong_delimiter: str = "**"
    bullet_list_marker: str = "-"

    # HTTP
    user_agent: str = DEFAULT_USER_AGENT
    headers: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))

    # Rendering
    render_js: bool = False
    render_timeout_ms: int = 30000
    wait_until: str = "networkidle"

    # Run
    webhook: Optional[str] = None
    resume: bool = True
    debug: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError(f"unsupported output format: {self.output_format}")
        if self.image_link_text not in IMAGE_LINK_TEXT_POLICIES:
            raise ValueError(f"unsupported image link text: {self.image_link_text}")
        if self.heading_style not in HEADING_STYLES:
            raise ValueError(f"unsupported heading style: {self.heading_style}")
        if self.code_block_style not in CODE_BLOCK_STYLES:
            raise ValueError(f"unsupported code block style: {self.code_block_style}")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.max_pages < 1:
            raise ValueError("max_pages must be at least 1")

    @property
    def domain(self) -> str:
        return urlparse(self.url).hostname or ""

    def request_headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        headers.update(self.headers)
        return headers


# -------------------- Errors --------------------


class FetchError(Exception):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    HTTP = "http"
    NETWORK = "network"
    CONTENT = "content"
    INVALID_URL = "invalid_url"

    TRANSIENT = frozenset({RATE_LIMITED, TIMEOUT})

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def transient(self) -> bool:
        return self.kind in self.TRANSIENT


class FatalScrapeError(RuntimeError):
    """Output directory or checkpoint can not be written; the run is aborted."""


# -------------------- Utils --------------------


def utc_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def is_valid_seed(url: str) -> bool:
    try:
        p = urlparse(url)
        return p.scheme in {"http", "https"} and bool(p.hostname)
    except ValueError:
        return False


def normalize_url(u: str, *, strip_params: bool = True) -> str:
    p = urlparse(u)
    path = p.path or "/"
    if not strip_params or not p.query:
        return urlunparse((p.scheme, p.netloc, path, p.params, p.query, ""))
    keep = []
    for k, v in parse_qsl(p.query, keep_blank_values=True):
        kl = k.lower()
        if not any(kl.startswith(pref) for pref in TRACKING_PARAM_PREFIXES):
            keep.append((k, v))
    return urlunparse((p.scheme, p.netloc, path, p.params, urlencode(keep, doseq=True), ""))


def default_output_dir(url: str, now: Optional[datetime] = None) -> Path:
    host = (urlparse(url).hostname or "site").replace(".", "_")
    stamp = (now or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    return Path("data") / "tasks" / host / stamp


def sanitize_filename(url: str) -> str:
    """Map a URL (or bare path) to a flat, filesystem-safe page name."""
    name = urlparse(url).path
    if name.endswith("/"):
        name = name[:-1]
    if name.startswith("/"):
        name = name[1:]
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name.replace("..", "_")
    name = REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")
    if len(name) > MAX_FILENAME_LENGTH:
        base, ext = os.path.splitext(name)
        name = base[: MAX_FILENAME_LENGTH - len(ext)] + ext
    return name or "index"


def image_filename(image_url: str) -> str:
    name = os.path.basename(unquote(urlparse(image_url).path.rstrip("/"))) or "image.jpg"
    base, ext = os.path.splitext(INVALID_FILENAME_CHARS_RE.sub("_", name))
    return f"{base[:100] or 'image'}_{short_h(image_url)}{ext}"


# -------------------- Frontier --------------------


class Frontier:
    """Discovered, queued, in-flight and visited URLs for one crawl."""

    def __init__(
        self,
        seed_url: str,
        *,
        max_pages: int,
        exclude_patterns: Iterable[str] = (),
    ):
        self.domain = (urlparse(seed_url).hostname or "").lower()
        self.max_pages = max_pages
        self._exclude = [re.compile(p, re.IGNORECASE) for p in exclude_patterns]
        self.visited: Set[str] = set()
        self.queue: Deque[str] = deque()
        self.in_flight: Set[str] = set()
        self.dropped: Set[str] = set()
        # insertion-ordered set
        self.discovered: Dict[str, None] = {}
        self._queued: Set[str] = set()

    def is_excluded(self, url: str) -> bool:
        return any(p.search(url) for p in self._exclude)

    def _known(self, url: str) -> bool:
        return (
            url in self.visited
            or url in self._queued
            or url in self.in_flight
            or url in self.dropped
        )

    def enqueue(self, url: str) -> bool:
        if not can_fetch_url(url):
            return False
        try:
            p = urlparse(url.strip())
            host = p.hostname
        except ValueError:
            return False
        if p.scheme not in {"http", "https"} or not host:
            return False
        if host.lower() != self.domain:
            return False
        url = normalize_url(url.strip())
        if self._known(url) or self.is_excluded(url):
            return False
        known = len(self.visited) + len(self.queue) + len(self.in_flight) + len(self.dropped)
        if known >= self.max_pages:
            return False
        self.queue.append(url)
        self._queued.add(url)
        self.discovered[url] = None
        return True

    def dequeue(self) -> Optional[str]:
        if not self.queue:
            return None
        url = self.queue.popleft()
        self._queued.discard(url)
        self.in_flight.add(url)
        return url

    def dequeue_all(self) -> List[str]:
        urls = list(self.queue)
        self.queue.clear()
        self._queued.clear()
        self.in_flight.update(urls)
        return urls

    def requeue_front(self, url: str) -> None:
        self.in_flight.discard(url)
        if url in self.visited or url in self._queued:
            return
        self.queue.appendleft(url)
        self._queued.add(url)
        self.discovered.setdefault(url, None)

    def mark_visited(self, url: str) -> None:
        self.in_flight.discard(url)
        self.visited.add(url)
        self.discovered.setdefault(url, None)

    def drop(self, url: str) -> None:
        self.in_flight.discard(url)
        self.dropped.add(url)

    @property
    def pending(self) -> int:
        return len(self.queue) + len(self.in_flight)

    def snapshot(self) -> Dict[str, List[str]]:
        return {
            "visited": sorted(self.visited),
            # interrupted fetches are retried first on resume
            "toVisit": sorted(self.in_flight) + list(self.queue),
            "uniqueUrlsDiscovered": list(self.discovered),
        }

    @classmethod
    def restore(
        cls,
        seed_url: str,
        *,
        max_pages: int,
        exclude_patterns: Iterable[str] = (),
        visited: Iterable[str] = (),
        to_visit: Iterable[str] = (),
        discovered: Iterable[str] = (),
    ) -> "Frontier":
        f = cls(seed_url, max_pages=max_pages, exclude_patterns=exclude_patterns)
        f.visited = set(visited)
        for u in discovered:
            f.discovered[u] = None
        for u in f.visited:
            f.discovered.setdefault(u, None)
        for u in to_visit:
            if u in f.visited or u in f._queued:
                continue
            f.queue.append(u)
            f._queued.add(u)
            f.discovered.setdefault(u, None)
        return f


# -------------------- Backoff --------------------


class Backoff:
    """Single inter-request delay shared by every worker."""

    def __init__(self, initial_delay: float, max_delay: float, min_delay: float = MIN_DELAY):
        self.delay = max(0.0, initial_delay)
        self.max_delay = max_delay
        self.min_delay = min_delay
        self.increases = 0

    def on_success(self) -> float:
        self.delay = max(self.delay * 0.9, self.min_delay)
        return self.delay

    def on_rate_limited(self) -> float:
        self.delay = min(self.delay * 2, self.max_delay)
        self.increases += 1
        return self.delay

    def on_error(self, error: FetchError) -> float:
        if error.kind == FetchError.RATE_LIMITED:
            return self.on_rate_limited()
        return self.delay

    async def wait(self) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay)


# -------------------- Fetchers --------------------


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status: int
    html: str


def check_response(
    url: str,
    status: int,
    content_type: Optional[str],
    body: Optional[str],
    final_url: Optional[str] = None,
) -> FetchedPage:
    if status in (429, 403):
        raise FetchError(FetchError.RATE_LIMITED, f"HTTP {status}", status)
    if status >= 400:
        raise FetchError(FetchError.HTTP, f"HTTP {status}", status)
    ct = (content_type or "").lower()
    if ct and "text/html" not in ct and "application/xhtml+xml" not in ct:
        raise FetchError(FetchError.CONTENT, f"unsupported content type {ct}", status)
    if not body or not body.strip():
        raise FetchError(FetchError.CONTENT, "empty response body", status)
    return FetchedPage(url=url, final_url=final_url or url, status=status, html=body)


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    # retries are scheduled by the crawler, not the transport
    retry = Retry(total=0, read=False)
    pool = max(10, settings.concurrency)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(settings.request_headers())
    return s


class PageFetcher:
    async def fetch(self, url: str) -> FetchedPage:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class RequestsFetcher(PageFetcher):
    def __init__(self, session: requests.Session, timeout: float):
        self.session = session
        self.timeout = timeout

    def _get(self, url: str) -> Tuple[requests.Response, str]:
        r = self.session.get(url, timeout=self.timeout)
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        return r, r.text

    async def fetch(self, url: str) -> FetchedPage:
        try:
            r, text = await asyncio.to_thread(self._get, url)
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ) as e:
            raise FetchError(FetchError.INVALID_URL, str(e)) from e
        except requests.Timeout as e:
            raise FetchError(FetchError.TIMEOUT, str(e)) from e
        except requests.RequestException as e:
            raise FetchError(FetchError.NETWORK, str(e)) from e
        return check_response(url, r.status_code, r.headers.get("Content-Type"), text, r.url)


class PlaywrightFetcher(PageFetcher):
    def __init__(self, settings: Settings):
        self.settings = settings
        self._pl = None
        self._browser = None

    async def _ensure_browser(self):
        if self._browser is None:
            try:
                from playwright.async_api import async_playwright
            except ImportError as e:
                raise FatalScrapeError(
                    "Playwright not installed. Run: pip install playwright && playwright install"
                ) from e
            self._pl = await async_playwright().start()
            self._browser = await self._pl.chromium.launch(headless=True)
        return self._browser

    async def fetch(self, url: str) -> FetchedPage:
        browser = await self._ensure_browser()
        from playwright.async_api import Error as PlaywrightError
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        extra = {
            k: v
            for k, v in self.settings.headers.items()
            if k.lower() not in {"accept-encoding", "connection"}
        }
        context = await browser.new_context(
            user_agent=self.settings.user_agent, extra_http_headers=extra
        )
        try:
            page = await context.new_page()
            response = await page.goto(
                url,
                wait_until=self.settings.wait_until,
                timeout=self.settings.render_timeout_ms,
            )
            html = await page.content()
            final_url = page.url
        except PlaywrightTimeoutError as e:
            raise FetchError(FetchError.TIMEOUT, str(e)) from e
        except PlaywrightError as e:
            raise FetchError(FetchError.NETWORK, str(e)) from e
        finally:
            await context.close()
        status = response.status if response is not None else 200
        content_type = response.headers.get("content-type") if response is not None else None
        return check_response(url, status, content_type, html, final_url)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._pl is not None:
            await self._pl.stop()
            self._pl = None


def get_fetcher(settings: Settings, session: requests.Session) -> PageFetcher:
    if settings.render_js:
        return PlaywrightFetcher(settings)
    return RequestsFetcher(session, settings.timeout)


def download_image(
    session: requests.Session, image_url: str, assets_dir: Path, timeout: float = IMAGE_TIMEOUT
) -> Optional[str]:
    try:
        resp = session.get(image_url, timeout=timeout)
    except requests.RequestException as e:
        logging.debug("error downloading image %s: %s", image_url, e)
        return None
    if resp.status_code >= 400 or not resp.content:
        logging.debug("failed image %s -> HTTP %s", image_url, resp.status_code)
        return None
    filename = image_filename(image_url)
    try:
        (assets_dir / filename).write_bytes(resp.content)
    except OSError as e:
        logging.warning("failed to write image %s: %s", filename, e)
        return None
    logging.debug("downloaded image: %s -> %s", image_url, filename)
    return filename


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def extract_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    links: Dict[str, None] = {}
    for a in soup.select("a[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        try:
            links[urljoin(base_url, href.strip())] = None
        except ValueError:
            continue
    return list(links)


def clean_html(soup: BeautifulSoup) -> None:
    for tag in soup(["script", "style"]):
        tag.decompose()
    for tag in soup.find_all(style=True):
        del tag["style"]


def remove_elements(soup: BeautifulSoup, selectors: Iterable[str]) -> None:
    for selector in selectors:
        try:
            matches = soup.select(selector)
        except SelectorSyntaxError as e:
            logging.warning("invalid selector %r: %s", selector, e)
            continue
        for el in matches:
            if not el.decomposed:
                el.decompose()


def collect_image_urls(soup: BeautifulSoup, base_url: str) -> List[str]:
    urls: Dict[str, None] = {}
    for img in soup.find_all("img", src=True):
        src = img["src"].strip()
        if not src or src.startswith("data:"):
            continue
        urls[urljoin(base_url, src)] = None
    return list(urls)


def image_link_text(img: Tag, absolute_url: str, policy: str) -> str:
    alt = (img.get("alt") or "").strip()
    title = (img.get("title") or "").strip()
    filename = (img.get("src") or "").split("/")[-1]
    if policy == "url":
        return absolute_url
    if policy == "filename":
        return filename or "Image"
    if policy == "title":
        return title or alt or filename or "Image"
    return alt or title or filename or "Image"


def rewrite_images(
    soup: BeautifulSoup,
    base_url: str,
    policy: str,
    local_images: Optional[Mapping[str, str]] = None,
) -> None:
    """Replace every <img> with an inline link; downloaded images point at ../assets/."""
    local_images = local_images or {}
    for img in soup.find_all("img", src=True):
        src = img["src"].strip()
        if not src or src.startswith("data:"):
            continue
        absolute = urljoin(base_url, src)
        local = local_images.get(absolute)
        link = soup.new_tag("a", href=f"../assets/{local}" if local else absolute)
        link.string = image_link_text(img, absolute, policy)
        img.replace_with(link)


# -------------------- Metadata --------------------


META_FIELDS = {
    "description": "description",
    "keywords": "keywords",
    "author": "author",
    "og:title": "og_title",
    "og:description": "og_description",
    "og:image": "og_image",
    "twitter:card": "twitter_card",
    "twitter:title": "twitter_title",
    "twitter:description": "twitter_description",
    "twitter:image": "twitter_image",
}


@dataclass(frozen=True)
class PageMetadata:
    url: str
    title: str = "Untitled Page"
    description: str = ""
    keywords: str = ""
    author: str = ""
    language: str = "en"
    canonical: str = ""
    og_title: str = ""
    og_description: str = ""
    og_image: str = ""
    twitter_card: str = ""
    twitter_title: str = ""
    twitter_description: str = ""
    twitter_image: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "keywords": self.keywords,
            "author": self.author,
            "language": self.language,
            "canonical": self.canonical,
            "ogTitle": self.og_title,
            "ogDescription": self.og_description,
            "ogImage": self.og_image,
            "twitterCard": self.twitter_card,
            "twitterTitle": self.twitter_title,
            "twitterDescription": self.twitter_description,
            "twitterImage": self.twitter_image,
        }


def extract_metadata(soup: BeautifulSoup, url: str) -> PageMetadata:
    found: Dict[str, str] = {}
    for meta in soup.find_all("meta"):
        name = meta.get("name") or meta.get("property")
        content = (meta.get("content") or "").strip()
        if not name or not content:
            continue
        key = META_FIELDS.get(name.strip().lower())
        if key and key not in found:
            found[key] = content

    title = ""
    if soup.title and soup.title.get_text(strip=True):
        title = soup.title.get_text(strip=True)
    if not title:
        h1 = soup.find("h1")
        if h1 is not None:
            title = h1.get_text(" ", strip=True)
    title = title or "Untitled Page"

    if not found.get("description") and found.get("og_description"):
        found["description"] = found["og_description"]

    canonical = url
    link = soup.find("link", rel="canonical", href=True)
    if link and link["href"].strip():
        canonical = urljoin(url, link["href"].strip())

    html_tag = soup.find("html")
    language = (html_tag.get("lang") or "").strip() if html_tag else ""

    return PageMetadata(url=url, title=title, canonical=canonical, language=language or "en", **found)


# -------------------- Markdown --------------------


class PageMarkdownConverter(MarkdownConverter):
    class Options:
        em_delimiter = "*"
        strong_delimiter = "**"
        code_block_style = "fenced"

    convert_em = abstract_inline_conversion(lambda self: self.options["em_delimiter"])
    convert_i = convert_em
    convert_strong = abstract_inline_conversion(lambda self: self.options["strong_delimiter"])
    convert_b = convert_strong

    def convert_pre(self, el, text, *args, **kwargs):
        if self.options["code_block_style"] != "indented" or not text:
            return super().convert_pre(el, text, *args, **kwargs)
        lines = text.strip("\n").split("\n")
        body = "\n".join(("    " + line) if line.strip() else "" for line in lines)
        return "\n\n%s\n\n" % body


def to_markdown(node: Union[BeautifulSoup, Tag], settings: Settings) -> str:
    converter = PageMarkdownConverter(
        heading_style=ATX if settings.heading_style == "atx" else SETEXT,
        bullets=settings.bullet_list_marker,
        em_delimiter=settings.em_delimiter,
        strong_delimiter=settings.strong_delimiter,
        code_block_style=settings.code_block_style,
        autolinks=False,
    )
    return converter.convert_soup(node).strip()


# -------------------- Transform --------------------


@dataclass(frozen=True)
class ContentStatistics:
    words: int = 0
    characters: int = 0
    images: int = 0
    links: int = 0
    headings: int = 0
    paragraphs: int = 0
    lists: int = 0
    tables: int = 0
    markdown_length: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "words": self.words,
            "characters": self.characters,
            "images": self.images,
            "links": self.links,
            "headings": self.headings,
            "paragraphs": self.paragraphs,
            "lists": self.lists,
            "tables": self.tables,
            "markdownLength": self.markdown_length,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContentStatistics":
        return cls(
            words=int(data.get("words", 0)),
            characters=int(data.get("characters", 0)),
            images=int(data.get("images", 0)),
            links=int(data.get("links", 0)),
            headings=int(data.get("headings", 0)),
            paragraphs=int(data.get("paragraphs", 0)),
            lists=int(data.get("lists", 0)),
            tables=int(data.get("tables", 0)),
            markdown_length=int(data.get("markdownLength", 0)),
        )


def content_statistics(node: Union[BeautifulSoup, Tag], output: str = "") -> ContentStatistics:
    return ContentStatistics(
        words=len(node.get_text(" ").split()),
        characters=len(node.get_text()),
        images=len(node.find_all("img")),
        links=len(node.find_all("a")),
        headings=len(node.find_all(["h1", "h2", "h3", "h4", "h5", "h6"])),
        paragraphs=len(node.find_all("p")),
        lists=len(node.find_all(["ul", "ol"])),
        tables=len(node.find_all("table")),
        markdown_length=len(output),
    )


@dataclass
class PreparedPage:
    url: str
    soup: BeautifulSoup
    base_url: str
    links: List[str]
    image_urls: List[str]


@dataclass(frozen=True)
class TransformedPage:
    metadata: PageMetadata
    markdown: str
    body_html: str
    statistics: ContentStatistics
    links: List[str]


def prepare_page(html: str, url: str, settings: Settings, base_url: Optional[str] = None) -> PreparedPage:
    soup = bs4_parse(html)
    base = effective_base_url(soup, base_url or url)
    # links come from the raw document so stripped navigation still feeds the frontier
    links = extract_links(soup, base)
    clean_html(soup)
    remove_elements(soup, settings.remove_elements)
    return PreparedPage(
        url=url,
        soup=soup,
        base_url=base,
        links=links,
        image_urls=collect_image_urls(soup, base),
    )


def render_page(
    prepared: PreparedPage,
    settings: Settings,
    local_images: Optional[Mapping[str, str]] = None,
) -> TransformedPage:
    soup = prepared.soup
    body = soup.body or soup
    counts = content_statistics(body)
    if settings.convert_images_to_links or settings.download_images:
        rewrite_images(soup, prepared.base_url, settings.image_link_text, local_images)
    metadata = extract_metadata(soup, prepared.url)
    markdown = to_markdown(body, settings)
    return TransformedPage(
        metadata=metadata,
        markdown=markdown,
        body_html=body.decode_contents().strip(),
        statistics=replace(counts, markdown_length=len(markdown)),
        links=prepared.links,
    )


def transform_page(
    html: str,
    url: str,
    settings: Settings,
    local_images: Optional[Mapping[str, str]] = None,
) -> TransformedPage:
    return render_page(prepare_page(html, url, settings), settings, local_images)


# -------------------- Output formats --------------------


def render_markdown_document(page: TransformedPage, settings: Settings, scraped_at: str) -> str:
    meta = page.metadata
    parts = [f"# {meta.title}", ""]
    if settings.include_metadata:
        lines = [
            f"**URL:** {meta.url}",
            f"**Canonical:** {meta.canonical}",
            f"**Language:** {meta.language}",
        ]
        if meta.description:
            lines.append(f"**Description:** {meta.description}")
        if meta.author:
            lines.append(f"**Author:** {meta.author}")
        if meta.keywords:
            lines.append(f"**Keywords:** {meta.keywords}")
        if meta.og_image:
            lines.append(f"**OG Image:** {meta.og_image}")
        # two trailing spaces force markdown line breaks
        parts.append("  \n".join(lines))
        parts.extend(["", "---", ""])
    parts.append(page.markdown)
    if settings.include_timestamps:
        parts.extend(["", "---", "", f"*Scraped on: {scraped_at}*"])
    return "\n".join(parts) + "\n"


def render_html_document(page: TransformedPage, scraped_at: str) -> str:
    meta = page.metadata
    esc = html_lib.escape
    return f"""<!DOCTYPE html>
<html lang="{esc(meta.language)}">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{esc(meta.title)}</title>
    <meta name="description" content="{esc(meta.description)}">
    <meta name="keywords" content="{esc(meta.keywords)}">
    <meta name="author" content="{esc(meta.author)}">
    <link rel="canonical" href="{esc(meta.canonical)}">
</head>
<body>
    <h1>{esc(meta.title)}</h1>
    <div class="metadata">
        <p><strong>URL:</strong> <a href="{esc(meta.url)}">{esc(meta.url)}</a></p>
        <p><strong>Scraped:</strong> {esc(scraped_at)}</p>
    </div>
    <div class="content">
{page.body_html}
    </div>
</body>
</html>
"""


def render_json_document(page: TransformedPage, scraped_at: str) -> str:
    data = {
        "metadata": page.metadata.to_dict(),
        "content": page.markdown,
        "statistics": page.statistics.to_dict(),
        "scrapedAt": scraped_at,
    }
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def render_output(page: TransformedPage, settings: Settings, scraped_at: str) -> str:
    if settings.output_format == "json":
        return render_json_document(page, scraped_at)
    if settings.output_format == "html":
        return render_html_document(page, scraped_at)
    return render_markdown_document(page, settings, scraped_at)


# -------------------- Records / checkpoint --------------------


@dataclass(frozen=True)
class PageRecord:
    url: str
    title: str = ""
    description: str = ""
    filename: str = ""
    statistics: Optional[ContentStatistics] = None
    scraped_at: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "filename": self.filename,
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "scrapedAt": self.scraped_at,
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PageRecord":
        stats = data.get("statistics")
        return cls(
            url=data["url"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            filename=data.get("filename") or "",
            statistics=ContentStatistics.from_dict(stats) if stats else None,
            scraped_at=data.get("scrapedAt") or "",
            error=data.get("error"),
        )


@dataclass
class Checkpoint:
    visited: List[str] = field(default_factory=list)
    to_visit: List[str] = field(default_factory=list)
    sitemap: List[PageRecord] = field(default_factory=list)
    successful_pages: int = 0
    failed_pages: int = 0
    downloaded_images: List[Dict[str, str]] = field(default_factory=list)
    unique_urls_discovered: List[str] = field(default_factory=list)
    failures: List[PageRecord] = field(default_factory=list)
    last_updated: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visited": list(self.visited),
            "toVisit": list(self.to_visit),
            "sitemap": [r.to_dict() for r in self.sitemap],
            "totalPages": len(self.sitemap),
            "successfulPages": self.successful_pages,
            "failedPages": self.failed_pages,
            "downloadedImages": list(self.downloaded_images),
            "uniqueUrlsDiscovered": list(self.unique_urls_discovered),
            "failures": [r.to_dict() for r in self.failures],
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        return cls(
            visited=list(data.get("visited") or []),
            to_visit=list(data.get("toVisit") or []),
            sitemap=[PageRecord.from_dict(r) for r in data.get("sitemap") or []],
            successful_pages=int(data.get("successfulPages") or 0),
            failed_pages=int(data.get("failedPages") or 0),
            downloaded_images=list(data.get("downloadedImages") or []),
            unique_urls_discovered=list(data.get("uniqueUrlsDiscovered") or []),
            failures=[PageRecord.from_dict(r) for r in data.get("failures") or []],
            last_updated=data.get("lastUpdated") or "",
        )


def atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)


def render_sitemap(
    settings: Settings,
    *,
    sitemap: List[PageRecord],
    failures: List[PageRecord],
    successful_pages: int,
    failed_pages: int,
    downloaded_images: int,
    elapsed: float,
) -> str:
    ext = settings.output_format
    lines = [
        f"# Sitemap for {settings.domain}",
        "",
        f"Generated on: {utc_timestamp()}",
        "",
        f"## Pages ({len(sitemap)})",
        "",
    ]
    lines.extend(f"- [{r.title}]({r.url}) - `{r.filename}`" for r in sitemap)
    if failures:
        lines.extend(["", f"## Failed Pages ({len(failures)})", ""])
        lines.extend(f"- {r.url} - {r.error}" for r in failures)
    lines.extend(
        [
            "",
            "## Statistics",
            "",
            f"- **Total Pages:** {len(sitemap)}",
            f"- **Successful Scrapes:** {successful_pages}",
            f"- **Failed Scrapes:** {failed_pages}",
            f"- **Images Downloaded:** {downloaded_images}",
            f"- **Start URL:** {settings.url}",
            f"- **Base Domain:** {settings.domain}",
            f"- **Output Format:** {ext}",
            f"- **Total Scraping Time:** {round(elapsed)}s",
            "",
            "## Files Structure",
            "",
            "```",
            f"{settings.output_dir}/",
            "├── pages/",
            f"│   ├── index.{ext}",
            "│   └── ...",
            "├── assets/",
            "│   └── (downloaded images)",
            f"├── {SITEMAP_FILENAME}",
            f"└── {STATE_FILENAME}",
            "```",
        ]
    )
    return "\n".join(lines) + "\n"


class OutputWriter:
    def __init__(self, output_dir: Path, output_format: str = "md"):
        self.root = Path(output_dir)
        self.output_format = output_format
        self.pages_dir = self.root / "pages"
        self.assets_dir = self.root / "assets"
        self.state_path = self.root / STATE_FILENAME
        self.sitemap_path = self.root / SITEMAP_FILENAME

    def prepare(self) -> None:
        try:
            for d in (self.root, self.pages_dir, self.assets_dir):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FatalScrapeError(f"cannot create output directory {self.root}: {e}") from e

    def page_path(self, url: str) -> Path:
        return self.pages_dir / f"{sanitize_filename(url)}.{self.output_format}"

    def write_page(self, path: Path, content: str) -> None:
        path.write_text(content, encoding="utf-8")

    def write_sitemap(self, content: str) -> None:
        try:
            self.sitemap_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise FatalScrapeError(f"cannot write sitemap {self.sitemap_path}: {e}") from e

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        try:
            atomic_write_json(self.state_path, checkpoint.to_dict())
        except OSError as e:
            raise FatalScrapeError(f"cannot write checkpoint {self.state_path}: {e}") from e
        logging.debug("checkpoint saved: %s", self.state_path)

    def load_checkpoint(self) -> Optional[Checkpoint]:
        if not self.state_path.exists():
            return None
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            return Checkpoint.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logging.warning("failed to load checkpoint %s: %s", self.state_path, e)
            return None


# -------------------- Progress --------------------


def compute_progress(discovered: int, processed: int, pending: int) -> float:
    if discovered == 0:
        return 0.0
    if pending == 0 and processed > 0:
        return 100.0
    # 100 is reserved for true completion; discovery is still running
    return min(processed / discovered * 100.0, 95.0)


@dataclass(frozen=True)
class ProgressEvent:
    progress: int
    total_urls: int
    scraped_urls: int
    failed_urls: int
    downloaded_images: int
    queue_length: int
    visited_count: int
    elapsed: int
    estimated_remaining: int
    current_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "progress": self.progress,
            "totalUrls": self.total_urls,
            "scrapedUrls": self.scraped_urls,
            "failedUrls": self.failed_urls,
            "downloadedImages": self.downloaded_images,
            "queueLength": self.queue_length,
            "visitedCount": self.visited_count,
            "elapsed": self.elapsed,
            "estimatedRemaining": self.estimated_remaining,
            "currentUrl": self.current_url,
        }

    def to_line(self) -> str:
        return PROGRESS_PREFIX + json.dumps(self.to_dict(), ensure_ascii=False)


def parse_progress_line(line: str) -> Optional[Dict[str, Any]]:
    idx = line.find(PROGRESS_PREFIX)
    if idx < 0:
        return None
    try:
        data = json.loads(line[idx + len(PROGRESS_PREFIX):].strip())
    except ValueError:
        return None
    if not isinstance(data, dict) or "progress" not in data:
        return None
    return data


class ProgressReporter:
    """Turns crawl counters into ProgressEvents on a bounded queue."""

    def __init__(self, events: "asyncio.Queue[Optional[ProgressEvent]]"):
        self.events = events
        self.started = time.monotonic()
        self.last_progress = 0

    def snapshot(
        self,
        frontier: Frontier,
        successful: int,
        failed: int,
        downloaded_images: int,
        current_url: str = "",
        final: bool = False,
    ) -> ProgressEvent:
        elapsed = time.monotonic() - self.started
        if final:
            progress = 100
        else:
            raw = compute_progress(len(frontier.discovered), successful + failed, frontier.pending)
            progress = max(int(round(raw)), self.last_progress)
        self.last_progress = progress
        remaining = 0
        if not final and successful:
            remaining = round(len(frontier.queue) * elapsed / successful)
        return ProgressEvent(
            progress=progress,
            total_urls=len(frontier.discovered),
            scraped_urls=successful,
            failed_urls=failed,
            downloaded_images=downloaded_images,
            queue_length=0 if final else len(frontier.queue),
            visited_count=len(frontier.visited),
            elapsed=round(elapsed),
            estimated_remaining=remaining,
            current_url="" if final else current_url,
        )

    def report(self, *args, **kwargs) -> ProgressEvent:
        event = self.snapshot(*args, **kwargs)
        try:
            self.events.put_nowait(event)
        except asyncio.QueueFull:
            logging.debug("progress channel full, dropping update at %d%%", event.progress)
        return event

    async def finish(self, *args, **kwargs) -> ProgressEvent:
        event = self.snapshot(*args, final=True, **kwargs)
        await self.events.put(event)
        await self.events.put(None)
        return event


async def emit_progress_events(
    events: "asyncio.Queue[Optional[ProgressEvent]]", stream: IO[str]
) -> None:
    while True:
        event = await events.get()
        if event is None:
            return
        stream.write(event.to_line() + "\n")
        stream.flush()


# -------------------- Webhook --------------------


def send_webhook(
    session: requests.Session,
    webhook_url: str,
    data: Mapping[str, Any],
    timeout: float = WEBHOOK_TIMEOUT,
) -> bool:
    payload = {"event": "scraping_completed", "timestamp": utc_timestamp()}
    payload.update(data)
    try:
        r = session.post(webhook_url, json=payload, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        logging.warning("webhook notification failed %s: %s", webhook_url, e)
        return False
    logging.info("webhook notified: %s", webhook_url)
    return True


# -------------------- Scheduler --------------------


class CrawlState:
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class CrawlSummary:
    domain: str
    total_pages: int
    total_urls: int
    successful_pages: int
    failed_pages: int
    downloaded_images: int
    output_dir: str
    scraping_time: int
    sitemap: List[PageRecord] = field(default_factory=list)
    failures: List[PageRecord] = field(default_factory=list)

    def webhook_payload(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "totalPages": self.total_pages,
            "successfulPages": self.successful_pages,
            "failedPages": self.failed_pages,
            "downloadedImages": self.downloaded_images,
            "outputDir": self.output_dir,
            "scrapingTime": self.scraping_time,
        }


class CrawlScheduler:
    def __init__(
        self,
        settings: Settings,
        *,
        fetcher: Optional[PageFetcher] = None,
        session: Optional[requests.Session] = None,
        progress_stream: Optional[IO[str]] = None,
    ):
        self.settings = settings
        self.output = OutputWriter(settings.output_dir, settings.output_format)
        self.frontier = Frontier(
            settings.url,
            max_pages=settings.max_pages,
            exclude_patterns=settings.exclude_patterns,
        )
        self.backoff = Backoff(settings.initial_delay, settings.max_delay)
        self.fetcher = fetcher
        self.session = session
        self.progress_stream = progress_stream
        self._owns_fetcher = fetcher is None
        self._owns_session = session is None

        self.retries: Dict[str, int] = {}
        self.sitemap: List[PageRecord] = []
        self.failures: List[PageRecord] = []
        self.downloaded_images: List[Dict[str, str]] = []
        self._image_cache: Dict[str, str] = {}
        self.successful_pages = 0
        self.failed_pages = 0
        self.current_url = ""
        self.state = CrawlState.IDLE
        self.error: Optional[FatalScrapeError] = None
        self.reporter: Optional[ProgressReporter] = None
        self._frontier_changed = asyncio.Event()
        self.idle_workers = 0
        self._started = time.monotonic()

    def _transition(self, state: str) -> None:
        logging.debug("crawl state %s -> %s", self.state, state)
        self.state = state

    # ---- setup ----

    def _restore(self) -> None:
        if not self.settings.resume:
            return
        ck = self.output.load_checkpoint()
        if ck is None:
            return
        logging.info("resuming from checkpoint %s", self.output.state_path)
        self.frontier = Frontier.restore(
            self.settings.url,
            max_pages=self.settings.max_pages,
            exclude_patterns=self.settings.exclude_patterns,
            visited=ck.visited,
            to_visit=ck.to_visit,
            discovered=ck.unique_urls_discovered,
        )
        self.sitemap = list(ck.sitemap)
        self.failures = list(ck.failures)
        self.successful_pages = ck.successful_pages
        self.failed_pages = ck.failed_pages
        self.downloaded_images = list(ck.downloaded_images)
        for rec in self.downloaded_images:
            if rec.get("original") and rec.get("local"):
                self._image_cache[rec["original"]] = rec["local"]

    def _ensure_clients(self) -> None:
        if self.session is None:
            self.session = build_session(self.settings)
        if self.fetcher is None:
            self.fetcher = get_fetcher(self.settings, self.session)

    async def _close_clients(self) -> None:
        if self._owns_fetcher and self.fetcher is not None:
            await self.fetcher.close()
        if self._owns_session and self.session is not None:
            self.session.close()

    # ---- bookkeeping ----

    def checkpoint(self) -> Checkpoint:
        snap = self.frontier.snapshot()
        return Checkpoint(
            visited=snap["visited"],
            to_visit=snap["toVisit"],
            sitemap=list(self.sitemap),
            successful_pages=self.successful_pages,
            failed_pages=self.failed_pages,
            downloaded_images=list(self.downloaded_images),
            unique_urls_discovered=snap["uniqueUrlsDiscovered"],
            failures=list(self.failures),
            last_updated=utc_timestamp(),
        )

    def _save_state(self) -> None:
        self.output.save_checkpoint(self.checkpoint())
        self.output.write_sitemap(
            render_sitemap(
                self.settings,
                sitemap=self.sitemap,
                failures=self.failures,
                successful_pages=self.successful_pages,
                failed_pages=self.failed_pages,
                downloaded_images=len(self.downloaded_images),
                elapsed=time.monotonic() - self._started,
            )
        )

    def _report(self) -> None:
        if self.reporter is None:
            return
        self.reporter.report(
            self.frontier,
            self.successful_pages,
            self.failed_pages,
            len(self.downloaded_images),
            self.current_url,
        )

    def summary(self) -> CrawlSummary:
        return CrawlSummary(
            domain=self.settings.domain,
            total_pages=len(self.sitemap),
            total_urls=len(self.frontier.discovered),
            successful_pages=self.successful_pages,
            failed_pages=self.failed_pages,
            downloaded_images=len(self.downloaded_images),
            output_dir=str(self.output.root),
            scraping_time=round(time.monotonic() - self._started),
            sitemap=list(self.sitemap),
            failures=list(self.failures),
        )

    # ---- page handling ----

    def _fail(self, url: str, reason: str) -> None:
        self.frontier.mark_visited(url)
        self.retries.pop(url, None)
        self.failed_pages += 1
        self.failures.append(PageRecord(url=url, scraped_at=utc_timestamp(), error=reason))
        logging.debug("failed %s: %s", url, reason)
        self._report()

    def _on_fetch_error(self, url: str, error: FetchError) -> None:
        if error.kind == FetchError.INVALID_URL:
            logging.debug("skipping malformed url %s: %s", url, error)
            self.frontier.drop(url)
            self.retries.pop(url, None)
            return
        if error.kind == FetchError.RATE_LIMITED:
            delay = self.backoff.on_rate_limited()
            logging.debug("rate limited on %s, delay now %.2fs", url, delay)
        if error.transient:
            attempts = self.retries.get(url, 0)
            if attempts < self.settings.max_retries:
                self.retries[url] = attempts + 1
                self.frontier.requeue_front(url)
                logging.debug(
                    "retrying %s (%d/%d): %s", url, attempts + 1, self.settings.max_retries, error
                )
                self._report()
                return
            self._fail(url, f"{error} (gave up after {attempts} retries)")
            return
        self._fail(url, str(error))

    async def _download_images(self, image_urls: List[str]) -> Dict[str, str]:
        local: Dict[str, str] = {}
        for image_url in image_urls:
            cached = self._image_cache.get(image_url)
            if cached:
                local[image_url] = cached
                continue
            filename = await asyncio.to_thread(
                download_image, self.session, image_url, self.output.assets_dir
            )
            if filename is None:
                continue
            self._image_cache[image_url] = filename
            self.downloaded_images.append({"original": image_url, "local": filename})
            local[image_url] = filename
        return local

    async def _handle_page(self, url: str, page: FetchedPage) -> Tuple[PageRecord, List[str]]:
        # links resolve against the requested url so a cross-host redirect keeps them in scope
        prepared = prepare_page(page.html, url, self.settings)
        local_images: Dict[str, str] = {}
        if self.settings.download_images and prepared.image_urls:
            local_images = await self._download_images(prepared.image_urls)
        transformed = render_page(prepared, self.settings, local_images)
        scraped_at = utc_timestamp()
        path = self.output.page_path(url)
        content = render_output(transformed, self.settings, scraped_at)
        await asyncio.to_thread(self.output.write_page, path, content)
        record = PageRecord(
            url=url,
            title=transformed.metadata.title,
            description=transformed.metadata.description,
            filename=path.name,
            statistics=transformed.statistics,
            scraped_at=scraped_at,
        )
        return record, transformed.links

    async def _process(self, url: str) -> None:
        self.current_url = url
        await self.backoff.wait()
        try:
            page = await self.fetcher.fetch(url)
        except FetchError as e:
            self._on_fetch_error(url, e)
            return
        try:
            record, links = await self._handle_page(url, page)
        except FatalScrapeError:
            raise
        except Exception as e:
            logging.debug("processing failed for %s", url, exc_info=self.settings.debug)
            self._fail(url, f"processing error: {e}")
            return

        for link in links:
            self.frontier.enqueue(link)
        self.frontier.mark_visited(url)
        self.retries.pop(url, None)
        self.sitemap.append(record)
        self.successful_pages += 1
        self.backoff.on_success()
        logging.info("scraped [%d] %s", self.successful_pages, url)

        interval = self.settings.save_state_interval
        if interval > 0 and self.successful_pages % interval == 0:
            self._save_state()
        self._report()

    async def _worker(self, worker_id: int) -> None:
        while True:
            url = self.frontier.dequeue()
            if url is None:
                if not self.frontier.in_flight:
                    logging.debug("worker %d idle, frontier drained", worker_id)
                    return
                # woken when an in-flight page finishes and may have queued more
                self._frontier_changed.clear()
                self.idle_workers += 1
                try:
                    await self._frontier_changed.wait()
                finally:
                    self.idle_workers -= 1
                continue
            try:
                await self._process(url)
            finally:
                self._frontier_changed.set()

    # ---- entry points ----

    def dry_run(self) -> List[str]:
        self._restore()
        self.frontier.enqueue(self.settings.url)
        urls = self.frontier.dequeue_all()
        stream = self.progress_stream or sys.stdout
        for url in urls:
            logging.info("dry run: would fetch %s", url)
            stream.write(url + "\n")
        stream.flush()
        return urls

    async def run(self) -> CrawlSummary:
        self._started = time.monotonic()
        if self.settings.dry_run:
            self.dry_run()
            self._transition(CrawlState.TERMINATED)
            return self.summary()

        consumer: Optional[asyncio.Task] = None
        try:
            self.output.prepare()
            self._restore()
            self.frontier.enqueue(self.settings.url)
            self._ensure_clients()

            events: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue(PROGRESS_QUEUE_SIZE)
            self.reporter = ProgressReporter(events)
            consumer = asyncio.create_task(
                emit_progress_events(events, self.progress_stream or sys.stdout)
            )

            self._transition(CrawlState.RUNNING)
            logging.info(
                "crawling %s with %d workers into %s",
                self.settings.url,
                self.settings.concurrency,
                self.output.root,
            )
            self._report()
            workers = [
                asyncio.create_task(self._worker(i)) for i in range(self.settings.concurrency)
            ]
            try:
                await asyncio.gather(*workers)
            except BaseException:
                for w in workers:
                    w.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                raise

            self._transition(CrawlState.DRAINING)
            await self.reporter.finish(
                self.frontier,
                self.successful_pages,
                self.failed_pages,
                len(self.downloaded_images),
            )
            await consumer
            self._save_state()
            summary = self.summary()
            if self.settings.webhook:
                await asyncio.to_thread(
                    send_webhook, self.session, self.settings.webhook, summary.webhook_payload()
                )
            logging.info(
                "crawl complete: %d pages, %d failed, %d images in %ds",
                summary.successful_pages,
                summary.failed_pages,
                summary.downloaded_images,
                summary.scraping_time,
            )
            return summary
        except FatalScrapeError as e:
            self.error = e
            self._transition(CrawlState.FAILED)
            raise
        finally:
            if consumer is not None and not consumer.done():
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)
            await self._close_clients()
            self._transition(CrawlState.TERMINATED)


async def crawl(settings: Settings, **kwargs) -> CrawlSummary:
    return await CrawlScheduler(settings, **kwargs).run()


# -------------------- Config loader --------------------


CONFIG_GROUPS = ("crawl", "http", "output", "markdown", "images", "render", "general")


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RuntimeError(f"Invalid YAML config {p}: {e}") from e
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Mapping[str, Any]) -> Dict[str, Any]:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return {k.replace("-", "_"): v for k, v in flat.items()}


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Crawl a site from a seed URL and save every page as markdown, HTML or JSON.",
    )
    p.add_argument("--config", type=str, default=None, help="path to config.toml|.yaml")

    p.add_argument("url", nargs="?", default=None, help="seed http(s) URL")
    p.add_argument("output_folder", nargs="?", default=None, help="output directory")
    p.add_argument("-u", "--url", dest="url_option", default=None, help="seed URL")
    p.add_argument("-o", "--output", dest="output_option", default=None, help="output directory")
    p.add_argument(
        "-f", "--format", dest="output_format", choices=OUTPUT_FORMATS, default="md",
        help="output format",
    )
    p.add_argument("--download-images", action="store_true", help="save images under assets/")
    p.add_argument("--max-pages", type=int, default=5000, help="max pages to discover")
    p.add_argument("--concurrency", type=int, default=5, help="concurrent requests")
    p.add_argument("--webhook", type=str, default=None, help="POST a summary here when done")
    p.add_argument("--debug", action="store_true", help="debug logging")
    p.add_argument("--dry-run", action="store_true", help="list URLs without fetching")

    # http
    p.add_argument("--timeout", type=float, default=10.0, help="request timeout seconds")
    p.add_argument("--max-retries", type=int, default=3, help="retries for 429/403/timeouts")
    p.add_argument("--initial-delay", type=float, default=1.0, help="initial delay seconds")
    p.add_argument("--max-delay", type=float, default=60.0, help="max backoff delay seconds")
    p.add_argument("--user-agent", type=str, default=DEFAULT_USER_AGENT, help="User-Agent header")

    # content
    p.add_argument(
        "--exclude", action="append", default=list(DEFAULT_EXCLUDE_PATTERNS),
        help="skip URLs matching regex (repeatable)",
    )
    p.add_argument(
        "--remove", action="append", default=list(DEFAULT_REMOVE_ELEMENTS),
        help="CSS selector to strip from pages (repeatable)",
    )
    p.add_argument(
        "--image-link-text", choices=IMAGE_LINK_TEXT_POLICIES, default="alt",
        help="text used for image links",
    )
    p.add_argument("--no-image-links", action="store_true", help="keep images as images")
    p.add_argument("--heading-style", choices=HEADING_STYLES, default="atx")
    p.add_argument("--code-block-style", choices=CODE_BLOCK_STYLES, default="fenced")
    p.add_argument("--em-delimiter", choices=("*", "_"), default="*")
    p.add_argument("--strong-delimiter", choices=("**", "__"), default="**")
    p.add_argument("--bullet-list-marker", choices=("-", "+", "*"), default="-")
    p.add_argument("--no-metadata", action="store_true", help="omit the metadata block")
    p.add_argument("--no-timestamps", action="store_true", help="omit scrape timestamps")

    # state
    p.add_argument(
        "--save-state-interval", type=int, default=10, help="checkpoint every N pages"
    )
    p.add_argument("--no-resume", action="store_true", help="ignore an existing state.json")

    # render
    p.add_argument("--render-js", action="store_true", help="render with Playwright")
    p.add_argument("--render-timeout-ms", type=int, default=30000, help="Playwright timeout ms")
    p.add_argument("--wait-until", type=str, default="networkidle", help="Playwright wait_until")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    url = args.url_option or args.url
    output = args.output_option or args.output_folder
    return Settings(
        url=url,
        output_dir=Path(output) if output else default_output_dir(url),
        concurrency=max(1, args.concurrency),
        timeout=max(0.1, args.timeout),
        max_retries=max(0, args.max_retries),
        initial_delay=max(0.0, args.initial_delay),
        max_delay=max(MIN_DELAY, args.max_delay),
        max_pages=max(1, args.max_pages),
        exclude_patterns=tuple(args.exclude or ()),
        remove_elements=tuple(args.remove or ()),
        output_format=args.output_format,
        include_metadata=not args.no_metadata,
        include_timestamps=not args.no_timestamps,
        save_state_interval=max(0, args.save_state_interval),
        download_images=args.download_images,
        convert_images_to_links=not args.no_image_links,
        image_link_text=args.image_link_text,
        heading_style=args.heading_style,
        code_block_style=args.code_block_style,
        em_delimiter=args.em_delimiter,
        strong_delimiter=args.strong_delimiter,
        bullet_list_marker=args.bullet_list_marker,
        user_agent=args.user_agent,
        render_js=args.render_js,
        render_timeout_ms=args.render_timeout_ms,
        wait_until=args.wait_until,
        webhook=args.webhook,
        resume=not args.no_resume,
        debug=args.debug,
        dry_run=args.dry_run,
    )


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except (RuntimeError, OSError, ValueError) as e:
        # tomllib.TOMLDecodeError is a ValueError
        logging.basicConfig(format="%(levelname)s: %(message)s")
        logging.error("failed to load config: %s", e)
        sys.exit(1)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    url = args.url_option or args.url
    if not url:
        logging.error("Usage: site-scraper <url> [output] [options]")
        sys.exit(1)
    if not is_valid_seed(url):
        logging.error("Invalid URL provided: %s. Use http:// or https://", url)
        sys.exit(1)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        logging.error("invalid settings: %s", e)
        sys.exit(1)

    try:
        summary = asyncio.run(crawl(settings))
    except FatalScrapeError as e:
        logging.error("fatal: %s", e)
        sys.exit(1)

    if not settings.dry_run:
        logging.info("Output directory: %s", summary.output_dir)
        logging.info("Pages saved: %d (failed: %d)", summary.successful_pages, summary.failed_pages)


if __name__ == "__main__":
    main()
