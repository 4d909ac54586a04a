"""Tests for URL fetching: scheme/SSRF validation, response limits, HTML conversion."""

from __future__ import annotations

import socket
import urllib.error
import urllib.request

import pytest

from localrag.errors import FileOperationError, ValidationError
from localrag.ingest import web
from localrag.ingest.web import (
    SsrfError,
    _LimitedRedirectHandler,
    check_ssrf,
    fetch_url_text,
    html_to_text,
    validate_url,
)

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _resolve_to(monkeypatch, address: str) -> None:
    def fake_getaddrinfo(host, port, *args, **kwargs):
        return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (address, 0))]

    monkeypatch.setattr(web.socket, "getaddrinfo", fake_getaddrinfo)


class _FakeResponse:
    def __init__(self, body: bytes, content_type: str) -> None:
        self._body = body
        self.headers = {"Content-Type": content_type}

    def read(self, amount: int = -1) -> bytes:
        return self._body if amount < 0 else self._body[:amount]

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class _FakeOpener:
    def __init__(self, outcome) -> None:
        self._outcome = outcome
        self.requests: list[urllib.request.Request] = []

    def open(self, request, timeout=None):
        self.requests.append(request)
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


def _serve(monkeypatch, outcome) -> _FakeOpener:
    opener = _FakeOpener(outcome)
    monkeypatch.setattr(web.urllib.request, "build_opener", lambda *handlers: opener)
    return opener


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


@pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "javascript:alert(1)"])
def test_disallowed_schemes(url):
    with pytest.raises(ValidationError, match="scheme"):
        validate_url(url)


def test_http_and_https_allowed():
    validate_url("http://example.com")
    validate_url("https://example.com/page?q=1")


@pytest.mark.parametrize("address", ["127.0.0.1", "10.1.2.3", "192.168.0.10", "169.254.169.254", "::1", "0.0.0.0"])
def test_private_addresses_blocked(monkeypatch, address):
    _resolve_to(monkeypatch, address)
    with pytest.raises(SsrfError):
        check_ssrf("http://internal.example/")


def test_public_address_allowed(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    check_ssrf("https://example.com/")


def test_dns_failure_is_validation_error(monkeypatch):
    def fail(*args, **kwargs):
        raise socket.gaierror("no such host")

    monkeypatch.setattr(web.socket, "getaddrinfo", fail)
    with pytest.raises(ValidationError, match="DNS"):
        check_ssrf("https://nope.invalid/")


def test_missing_hostname():
    with pytest.raises(ValidationError, match="hostname"):
        check_ssrf("http:///path-only")


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


def test_fetch_html_converts_to_text(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    html = (
        b"<html><head><title>T</title><style>p{}</style></head>"
        b"<body><nav>Menu</nav><h1>Heading</h1><p>Readable body.</p>"
        b"<script>alert(1)</script><footer>Foot</footer></body></html>"
    )
    opener = _serve(monkeypatch, _FakeResponse(html, "text/html; charset=utf-8"))

    text = fetch_url_text("https://example.com/article")

    assert "Heading" in text
    assert "Readable body." in text
    assert "alert" not in text
    assert "Menu" not in text
    assert "Foot" not in text
    assert opener.requests[0].get_header("User-agent") == "localrag/0.1"


def test_fetch_plain_text_passthrough(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    _serve(monkeypatch, _FakeResponse(b"just <b>text</b>", "text/plain"))
    assert fetch_url_text("https://example.com/raw.txt") == "just <b>text</b>"


def test_fetch_rejects_content_type(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    _serve(monkeypatch, _FakeResponse(b"%PDF", "application/pdf"))
    with pytest.raises(ValidationError, match="Content-Type"):
        fetch_url_text("https://example.com/file.pdf")


def test_fetch_rejects_oversized_body(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    _serve(monkeypatch, _FakeResponse(b"x" * (5 * 1024 * 1024 + 10), "text/plain"))
    with pytest.raises(ValidationError, match="exceeds"):
        fetch_url_text("https://example.com/huge")


def test_network_error_is_file_operation_error(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    _serve(monkeypatch, urllib.error.URLError("connection refused"))
    with pytest.raises(FileOperationError):
        fetch_url_text("https://example.com/down")


def test_ssrf_checked_before_connecting(monkeypatch):
    _resolve_to(monkeypatch, "127.0.0.1")
    opener = _serve(monkeypatch, _FakeResponse(b"secret", "text/plain"))
    with pytest.raises(SsrfError):
        fetch_url_text("http://localhost:8080/admin")
    assert opener.requests == []


# ------------------------------------------------------------------
# Redirects
# ------------------------------------------------------------------


def test_redirect_to_private_address_blocked(monkeypatch):
    _resolve_to(monkeypatch, "10.0.0.5")
    handler = _LimitedRedirectHandler(3)
    req = urllib.request.Request("https://example.com/")
    with pytest.raises(SsrfError):
        handler.redirect_request(req, None, 302, "Found", {}, "http://metadata.internal/")


def test_too_many_redirects(monkeypatch):
    _resolve_to(monkeypatch, "93.184.216.34")
    handler = _LimitedRedirectHandler(3)
    handler._count = 3
    req = urllib.request.Request("https://example.com/")
    with pytest.raises(ValidationError, match="Too many redirects"):
        handler.redirect_request(req, None, 302, "Found", {}, "https://example.com/next")


def test_html_to_text_plain_unchanged():
    assert html_to_text("<p>x</p>", "text/plain") == "<p>x</p>"
