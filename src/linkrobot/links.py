"""
URL normalization and link extraction from fetched HTML.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse, urldefrag

from bs4 import BeautifulSoup, ParserRejectedMarkup, SoupStrainer

from linkrobot.models import UrlContext

logger = logging.getLogger(__name__)

HTML_MIMETYPES: frozenset[str] = frozenset(("text/html", "application/xhtml+xml"))

# Tag -> attribute holding an outbound reference
LINK_ATTRIBUTES: dict[str, str] = {
    "a": "href",
    "area": "href",
    "link": "href",
    "img": "src",
    "script": "src",
    "iframe": "src",
    "embed": "src",
    "source": "src",
}

# Parse only the tags we care about (plus <base> for resolution)
LINK_STRAINER = SoupStrainer(list(LINK_ATTRIBUTES) + ["base"])

# Raised for markup or encodings the parser cannot handle
PARSE_ERRORS = (ParserRejectedMarkup, ValueError, LookupError)

SCOPE_CLASSES = {
    "courseid": re.compile(r"\bcourse-(\d+)\b"),
    "contextid": re.compile(r"\bcontext-(\d+)\b"),
    "cmid": re.compile(r"\bcmid-(\d+)\b"),
}


def _remove_dot_segments(path: str) -> str:
    """Collapse '.' and '..' path segments (RFC 3986, section 5.2.4)."""
    if "." not in path:
        return path
    output: List[str] = []
    segments = path.split("/")
    for i, segment in enumerate(segments):
        last = i == len(segments) - 1
        if segment == ".":
            if last:
                output.append("")
            continue
        if segment == "..":
            if len(output) > 1:
                output.pop()
            if last:
                output.append("")
            continue
        output.append(segment)
    result = "/".join(output)
    if path.startswith("/") and not result.startswith("/"):
        result = "/" + result
    return result


def normalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """
    Normalize URL for deduplication and comparison.

    - Joins relative URLs against base
    - Drops fragments (#...)
    - Normalizes scheme/host case
    - Removes default ports (:80, :443)
    - Collapses dot segments in the path
    - Keeps querystrings (they matter for uniqueness)
    """
    if not url:
        return None
    url = url.strip()

    try:
        joined, _ = urldefrag(urljoin(base, url) if base else url)
        parsed = urlparse(joined)
        port = parsed.port
    except ValueError:
        return None

    if parsed.scheme.lower() not in ("http", "https"):
        return None

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return None

    scheme = parsed.scheme.lower()
    if (scheme == "http" and port == 80) or (scheme == "https" and port == 443):
        netloc = hostname
    elif port:
        netloc = f"{hostname}:{port}"
    else:
        netloc = hostname

    return urlunparse((
        scheme,
        netloc,
        _remove_dot_segments(parsed.path) or "/",
        parsed.params,
        parsed.query,
        "",  # No fragment
    ))


def origin(url: str) -> Tuple[str, str]:
    """Scheme and host of a URL, lower-cased."""
    parsed = urlparse(url)
    return parsed.scheme.lower(), parsed.netloc.lower()


def is_external(url: str, root: str) -> bool:
    """True when the URL's scheme and host differ from the site root."""
    return origin(url) != origin(root)


def is_html(mimetype: Optional[str]) -> bool:
    """True for HTML-like content types."""
    if not mimetype:
        return False
    return mimetype.split(";", 1)[0].strip().lower() in HTML_MIMETYPES


def extract_links(
    base_url: str,
    mimetype: Optional[str],
    body: Optional[bytes],
    root: Optional[str] = None,
    encoding: Optional[str] = None,
) -> List[Tuple[str, bool]]:
    """
    Return ``(absolute_url, is_external)`` for every link in an HTML page.

    Links are deduplicated in document order. Anything that is not HTML, or
    markup the parser rejects, yields no links.
    """
    if not body or not is_html(mimetype):
        return []
    root = root or base_url

    try:
        soup = BeautifulSoup(body, "lxml", parse_only=LINK_STRAINER, from_encoding=encoding)
        base_tag = soup.find("base", href=True)
        if base_tag:
            base_url = normalize_url(base_tag["href"], base_url) or base_url

        found: List[Tuple[str, bool]] = []
        seen = set()
        for tag in soup.find_all(list(LINK_ATTRIBUTES)):
            value = tag.get(LINK_ATTRIBUTES[tag.name])
            if not value or not isinstance(value, str):
                continue
            target = normalize_url(value, base_url)
            if not target or target in seen:
                continue
            seen.add(target)
            found.append((target, is_external(target, root)))
        return found
    except PARSE_ERRORS as exc:
        logger.warning("Could not parse links from %s: %s", base_url, exc)
        return []


def parse_page(body: Optional[bytes], encoding: Optional[str] = None) -> Tuple[Optional[str], UrlContext]:
    """Extract the page title and scope ids from the <body> class list."""
    context = UrlContext()
    if not body:
        return None, context

    try:
        soup = BeautifulSoup(body, "lxml", from_encoding=encoding)
    except PARSE_ERRORS as exc:
        logger.warning("Could not parse page: %s", exc)
        return None, context

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    if soup.body is not None:
        classes = soup.body.get("class") or []
        class_text = " ".join(classes) if isinstance(classes, list) else str(classes)
        for name, pattern in SCOPE_CLASSES.items():
            if match := pattern.search(class_text):
                setattr(context, name, int(match.group(1)))

    return title, context
