"""Web fetch tool: retrieves a page as markdown, plain text, or raw HTML."""

import html
import html.parser
import ipaddress
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

from .errors import ToolFailure, ValidationError
from .tools import ToolDescriptor

FETCH_TIMEOUT = 15  # seconds
MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_REDIRECTS = 10
DEFAULT_MAX_LENGTH = 10000
MIN_MAX_LENGTH = 100
MAX_MAX_LENGTH = 50000
FORMATS = ("markdown", "text", "html")

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/markdown,text/html,text/plain,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXT_MIMES = (
    "application/json",
    "application/xml",
    "application/xhtml+xml",
    "application/rss+xml",
    "application/atom+xml",
)

_BLOCK_TAGS = frozenset(
    {
        "p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr",
        "blockquote", "pre", "hr", "section", "article", "header", "footer",
        "nav", "main", "table",
    }
)
_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg"})


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


class _TextExtractor(html.parser.HTMLParser):
    """Collect readable text and the page title, skipping script/style."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self._in_title = False
        self.title = ""

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag == "title":
            self._in_title = False
        elif tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._parts.append("\n")

    def handle_data(self, data):
        if self._in_title:
            self.title += data
        elif self._skip_depth == 0:
            self._parts.append(data)

    def get_text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r"\n\s*\n\s*\n+", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> tuple[str, str]:
    """Return (title, text) extracted from an HTML document."""
    parser = _TextExtractor()
    parser.feed(body)
    return html.unescape(parser.title.strip()), parser.get_text()


def check_url_safety(url: str) -> None:
    """Reject non-http(s) URLs and hosts that resolve to internal addresses."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"url scheme {parsed.scheme!r} is not allowed, must be http or https")
    hostname = parsed.hostname
    if not hostname:
        raise ValidationError("could not parse hostname from url")
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ToolFailure(f"could not resolve hostname {hostname!r}: {e}") from e
    for _, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            raise ValidationError(
                f"url resolves to private/internal address ({addr}), blocked for security"
            )


def _decode(data: bytes, content_type: str) -> str:
    charset = None
    for part in content_type.split(";"):
        part = part.strip()
        if part.lower().startswith("charset="):
            charset = part.split("=", 1)[1].strip().strip("\"'")
            break
    for encoding in (charset, "utf-8"):
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _open(url: str):
    """Open a URL, following redirects manually so every hop is safety-checked."""
    current = url
    opener = urllib.request.build_opener(_NoRedirectHandler)
    for _ in range(MAX_REDIRECTS + 1):
        check_url_safety(current)
        req = urllib.request.Request(current, headers=HEADERS)
        try:
            return opener.open(req, timeout=FETCH_TIMEOUT), current
        except _RedirectError as r:
            current = urllib.parse.urljoin(current, r.url)
        except urllib.error.HTTPError as e:
            raise ToolFailure(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            if "timed out" in str(e.reason).lower():
                raise ToolFailure(f"request timed out after {FETCH_TIMEOUT} seconds") from e
            host = urllib.parse.urlparse(current).hostname
            raise ToolFailure(f"could not connect to {host}: {e.reason}") from e
        except TimeoutError as e:
            raise ToolFailure(f"request timed out after {FETCH_TIMEOUT} seconds") from e
    raise ToolFailure(f"too many redirects (limit is {MAX_REDIRECTS})")


def fetch_url(root, url: str, format: str = "markdown", max_length: int = DEFAULT_MAX_LENGTH) -> dict:
    """Fetch a URL and return its content, truncated to ``max_length`` characters."""
    if format not in FORMATS:
        raise ValidationError(f"invalid format {format!r}, must be one of {', '.join(FORMATS)}")
    if not url or not isinstance(url, str):
        raise ValidationError("url must be a non-empty string")
    if not isinstance(max_length, (int, float)):
        raise ValidationError(f"max_length must be a number, got {type(max_length).__name__}")
    max_length = max(MIN_MAX_LENGTH, min(int(max_length), MAX_MAX_LENGTH))

    resp, final_url = _open(url)
    try:
        content_type = resp.headers.get("Content-Type", "") or ""
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXT_MIMES:
            raise ToolFailure(f"binary content ({mime}), cannot display as text")
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError as e:
            raise ToolFailure(f"request timed out after {FETCH_TIMEOUT} seconds") from e
        if len(data) > MAX_RESPONSE_SIZE:
            raise ToolFailure("response too large (limit is 5MB)")
        if b"\x00" in data[:8192]:
            raise ToolFailure("binary content detected, cannot display as text")
        body = _decode(data, content_type)
    finally:
        resp.close()

    is_html = mime in ("text/html", "application/xhtml+xml") or (
        not mime and body.lstrip()[:1] == "<"
    )
    title, text = html_to_text(body) if is_html else ("", body)
    if format == "html" or not is_html:
        output = body
    elif format == "text":
        output = text
    else:
        from html_to_markdown import convert

        try:
            output = convert(body)
        except Exception as e:
            raise ToolFailure(f"failed to convert HTML to markdown: {e}") from e

    total = len(output)
    truncated = total > max_length
    if truncated:
        output = output[:max_length] + f"\n[content truncated at {max_length} characters, total was {total}]"
    return {
        "url": final_url,
        "title": title,
        "format": format,
        "content": output,
        "length": total,
        "truncated": truncated,
    }


FETCH_TOOL = ToolDescriptor(
    name="fetch_url",
    description=(
        "Fetch a public web page and return its content as markdown (default), "
        "plain text, or raw HTML."
    ),
    parameters={
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "http or https URL."},
            "format": {"type": "string", "enum": list(FORMATS), "default": "markdown"},
            "max_length": {
                "type": "integer",
                "description": (
                    f"Maximum characters returned ({MIN_MAX_LENGTH}-{MAX_MAX_LENGTH}). "
                    f"Defaults to {DEFAULT_MAX_LENGTH}."
                ),
                "default": DEFAULT_MAX_LENGTH,
            },
        },
        "required": ["url"],
    },
    func=fetch_url,
    summarize=lambda a, r: (
        f"Fetched {r['url']} ({r['length']} chars{', truncated' if r['truncated'] else ''})"
    ),
)
