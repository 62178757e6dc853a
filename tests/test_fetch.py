"""Tests for maki.fetch: URL safety, redirects, formats and truncation."""

import http.client
import socket
from unittest.mock import MagicMock, patch

import pytest

from maki.errors import ToolFailure, ValidationError
from maki.fetch import (
    MAX_MAX_LENGTH,
    MIN_MAX_LENGTH,
    _RedirectError,
    check_url_safety,
    fetch_url,
    html_to_text,
)

PUBLIC_IP = "93.184.216.34"


def _dns(host, *args, **kwargs):
    """Literal IPs resolve to themselves, names to a public address."""
    ip = host if host.replace(".", "").isdigit() or ":" in host else PUBLIC_IP
    return [(2, 1, 0, "", (ip, 0))]


def _make_response(body: bytes, content_type: str = "text/html; charset=utf-8"):
    resp = MagicMock()
    resp.read.return_value = body
    resp.headers = http.client.HTTPMessage()
    resp.headers["Content-Type"] = content_type
    return resp


def _opener(*responses):
    opener = MagicMock()
    opener.open.side_effect = list(responses)
    return opener


# =========================================================================
# html_to_text
# =========================================================================


class TestHtmlToText:
    def test_title_and_body(self):
        title, text = html_to_text(
            "<html><head><title>Docs &amp; Notes</title></head><body><p>Hello</p></body></html>"
        )
        assert title == "Docs & Notes"
        assert text == "Hello"

    def test_strips_script_and_style(self):
        _, text = html_to_text(
            "<style>body { color: red; }</style><script>alert('x')</script><p>visible</p>"
        )
        assert text == "visible"

    def test_block_elements_separate_lines(self):
        _, text = html_to_text("<div>first</div><div>second</div>")
        assert text.split() == ["first", "second"]
        assert "\n" in text


# =========================================================================
# check_url_safety
# =========================================================================


class TestUrlSafety:
    @pytest.mark.parametrize("url", ["ftp://example.com/f", "file:///etc/passwd", "javascript:alert(1)"])
    def test_rejects_scheme(self, url):
        with pytest.raises(ValidationError, match="not allowed"):
            check_url_safety(url)

    def test_rejects_missing_host(self):
        with pytest.raises(ValidationError, match="hostname"):
            check_url_safety("http://")

    @pytest.mark.parametrize("ip", ["127.0.0.1", "10.0.0.5", "192.168.1.1", "169.254.169.254", "::1"])
    @patch("maki.fetch.socket.getaddrinfo")
    def test_blocks_internal_addresses(self, mock_dns, ip):
        mock_dns.return_value = [(2, 1, 0, "", (ip, 0))]
        with pytest.raises(ValidationError, match="private/internal"):
            check_url_safety("http://evil.example")

    @patch("maki.fetch.socket.getaddrinfo")
    def test_allows_public_address(self, mock_dns):
        mock_dns.return_value = [(2, 1, 0, "", (PUBLIC_IP, 0))]
        check_url_safety("https://example.com")

    @patch("maki.fetch.socket.getaddrinfo")
    def test_dns_failure(self, mock_dns):
        mock_dns.side_effect = socket.gaierror("Name or service not known")
        with pytest.raises(ToolFailure, match="could not resolve"):
            check_url_safety("http://nonexistent.invalid")


# =========================================================================
# fetch_url
# =========================================================================


@patch("maki.fetch.socket.getaddrinfo", side_effect=_dns)
@patch("maki.fetch.urllib.request.build_opener")
class TestFetchUrl:
    def test_raw_html(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_make_response(b"<h1>Hello</h1>"))
        result = fetch_url(tmp_path, "http://example.com", format="html")
        assert result["content"] == "<h1>Hello</h1>"
        assert result["truncated"] is False

    def test_text_format(self, mock_factory, mock_dns, tmp_path):
        body = b"<html><head><title>T</title></head><body><p>Hello</p><script>evil()</script></body></html>"
        mock_factory.return_value = _opener(_make_response(body))
        result = fetch_url(tmp_path, "http://example.com", format="text")
        assert result["content"] == "Hello"
        assert result["title"] == "T"

    def test_markdown_format(self, mock_factory, mock_dns, tmp_path):
        body = b"<html><body><h1>Title</h1><p>Paragraph</p></body></html>"
        mock_factory.return_value = _opener(_make_response(body))
        result = fetch_url(tmp_path, "http://example.com")
        assert result["format"] == "markdown"
        assert "Title" in result["content"]
        assert "Paragraph" in result["content"]
        assert "<h1>" not in result["content"]

    def test_plain_text_passes_through(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_make_response(b"just text", "text/plain"))
        result = fetch_url(tmp_path, "http://example.com/a.txt", format="markdown")
        assert result["content"] == "just text"

    def test_binary_content_rejected(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_make_response(b"\x89PNG", "image/png"))
        with pytest.raises(ToolFailure, match="binary content"):
            fetch_url(tmp_path, "http://example.com/logo.png")

    def test_truncation(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_make_response(b"x" * 500, "text/plain"))
        result = fetch_url(tmp_path, "http://example.com", max_length=200)
        assert result["truncated"] is True
        assert result["length"] == 500
        assert result["content"].startswith("x" * 200 + "\n[content truncated at 200")

    def test_max_length_is_clamped_low(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_make_response(b"y" * 300, "text/plain"))
        result = fetch_url(tmp_path, "http://example.com", max_length=5)
        assert result["content"].startswith("y" * MIN_MAX_LENGTH + "\n")

    def test_max_length_is_clamped_high(self, mock_factory, mock_dns, tmp_path):
        size = MAX_MAX_LENGTH + 10
        mock_factory.return_value = _opener(_make_response(b"z" * size, "text/plain"))
        result = fetch_url(tmp_path, "http://example.com", max_length=10**9)
        assert result["truncated"] is True
        assert f"truncated at {MAX_MAX_LENGTH}" in result["content"]

    def test_relative_redirect_followed(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(
            _RedirectError("/moved", 301), _make_response(b"here", "text/plain")
        )
        result = fetch_url(tmp_path, "http://example.com/old")
        assert result["url"] == "http://example.com/moved"

    def test_redirect_to_private_blocked(self, mock_factory, mock_dns, tmp_path):
        opener = _opener(_RedirectError("http://127.0.0.1/secret", 302))
        mock_factory.return_value = opener
        with pytest.raises(ValidationError, match="private/internal"):
            fetch_url(tmp_path, "http://example.com")
        assert opener.open.call_count == 1

    def test_redirect_to_ftp_blocked(self, mock_factory, mock_dns, tmp_path):
        mock_factory.return_value = _opener(_RedirectError("ftp://example.com/f", 302))
        with pytest.raises(ValidationError, match="not allowed"):
            fetch_url(tmp_path, "http://example.com")


class TestFetchValidation:
    def test_invalid_format(self, tmp_path):
        with pytest.raises(ValidationError, match="invalid format"):
            fetch_url(tmp_path, "http://example.com", format="pdf")

    def test_empty_url(self, tmp_path):
        with pytest.raises(ValidationError):
            fetch_url(tmp_path, "")

    def test_no_scheme(self, tmp_path):
        with pytest.raises(ValidationError, match="not allowed"):
            fetch_url(tmp_path, "example.com")
