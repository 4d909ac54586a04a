"""URL fetching with SSRF protection, and HTML → readable text.

Security requirements:
- SSRF guard: ipaddress module blocks private/loopback/link-local/reserved/
  multicast/unspecified ranges before any connection is established, and
  again for every redirect target.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: text/html and text/plain only.
- Max response body: 5 MB.
- Timeout: 30 seconds (connect + read).
- Max redirects: 3.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from http.client import HTTPResponse

import html2text
from bs4 import BeautifulSoup

from localrag.errors import FileOperationError, ValidationError

logger = logging.getLogger(__name__)

_USER_AGENT = "localrag/0.1"
_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
_TIMEOUT = 30  # seconds
_MAX_REDIRECTS = 3
_ALLOWED_SCHEMES = {"https", "http"}
_ALLOWED_CONTENT_TYPES = {"text/html", "text/plain"}
_STRIPPED_TAGS = ["script", "style", "nav", "footer", "head"]


def _html_converter() -> html2text.HTML2Text:
    h2t = html2text.HTML2Text()
    h2t.ignore_links = True
    h2t.ignore_images = True
    h2t.body_width = 0
    return h2t


class SsrfError(ValidationError):
    """Raised when a URL resolves to a private or reserved address."""


def fetch_url_text(url: str) -> str:
    """Validate, fetch, and convert *url* to plain text.

    Blocking; callers on the event loop should use ``asyncio.to_thread``.

    Raises:
        ValidationError: Bad scheme, private address, disallowed content type,
            oversized body, or too many redirects.
        FileOperationError: Network or HTTP failure.
    """
    validate_url(url)
    check_ssrf(url)
    raw, content_type = _fetch(url)
    return html_to_text(raw.decode("utf-8", errors="replace"), content_type)


def validate_url(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValidationError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )


def check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges.

    Raises:
        SsrfError: If any resolved address is private, loopback, link-local,
            reserved, multicast, or unspecified.
        ValidationError: If the URL has no hostname or DNS resolution fails.
    """
    hostname = urllib.parse.urlparse(url).hostname
    if not hostname:
        raise ValidationError(f"URL has no hostname: {url}")

    try:
        addrinfos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValidationError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        addr_str = addrinfo[4][0]
        try:
            ip = ipaddress.ip_address(addr_str)
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


def _fetch(url: str) -> tuple[bytes, str]:
    """Fetch *url* with timeout, redirect limit, size cap, and Content-Type check.

    Returns (body_bytes, content_type_without_params).
    """
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    opener = urllib.request.build_opener(_LimitedRedirectHandler(_MAX_REDIRECTS))

    try:
        response: HTTPResponse = opener.open(request, timeout=_TIMEOUT)
    except (urllib.error.URLError, OSError) as exc:
        raise FileOperationError(f"Failed to fetch URL '{url}': {exc}") from exc

    with response:
        raw_ct = response.headers.get("Content-Type", "text/html")
        ct = raw_ct.split(";")[0].strip().lower()
        if ct not in _ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Unsupported Content-Type '{ct}' for URL '{url}'. "
                f"Accepted: {', '.join(sorted(_ALLOWED_CONTENT_TYPES))}"
            )

        try:
            body = response.read(_MAX_BYTES + 1)
        except OSError as exc:
            raise FileOperationError(f"Failed to read response from '{url}': {exc}") from exc

    if len(body) > _MAX_BYTES:
        raise ValidationError(
            f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit for URL '{url}'."
        )
    logger.debug("Fetched %d bytes (%s) from %s", len(body), ct, url)
    return body, ct


def html_to_text(text: str, content_type: str = "text/html") -> str:
    """Convert an HTML (or plain text) document to readable text."""
    if content_type == "text/plain":
        return text

    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(_STRIPPED_TAGS):
        tag.decompose()
    return _html_converter().handle(str(soup)).strip()


class _LimitedRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Raise after more than *max_redirects* redirects; SSRF-check every target."""

    def __init__(self, max_redirects: int) -> None:
        self._max_redirects = max_redirects
        self._count = 0

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        self._count += 1
        if self._count > self._max_redirects:
            raise ValidationError(
                f"Too many redirects (>{self._max_redirects}) for URL '{req.full_url}'."
            )
        validate_url(newurl)
        check_ssrf(newurl)
        return super().redirect_request(req, fp, code, msg, headers, newurl)
