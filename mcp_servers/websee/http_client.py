"""Read-only HTTP for bundle/map acquisition and DevTools target discovery."""

from __future__ import annotations

import json
import ssl
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener, urlopen

from .config import WebSeeConfig
from .errors import CdpError

USER_AGENT = "mcp-websee/1.0"


class HttpClientError(Exception):
    pass


def _check_url(url: str, config: WebSeeConfig, *, hop: str = "") -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError(f"Only http/https are supported{hop}")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist{hop}")


class _AllowlistRedirectHandler(HTTPRedirectHandler):
    def __init__(self, config: WebSeeConfig) -> None:
        super().__init__()
        self._config = config

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # Location may be relative.
        target = urllib.parse.urljoin(req.full_url, str(newurl))
        _check_url(target, self._config, hop=" (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, target)


def http_get(url: str, config: WebSeeConfig) -> dict[str, Any]:
    """GET a bundle or source map.

    Returns `{"status", "url", "headers", "body", "truncated"}` where `url` is
    the final url after redirects (relative map references resolve against it)
    and header names are lowercase.
    """
    _check_url(url, config)
    opener = build_opener(
        _AllowlistRedirectHandler(config),
        HTTPSHandler(context=ssl.create_default_context()),
    )
    try:
        with opener.open(Request(url, headers={"User-Agent": USER_AGENT}), timeout=config.http_timeout) as resp:
            raw = resp.read(config.http_max_bytes + 1)
            return {
                "status": resp.status,
                "url": resp.geturl(),
                "headers": {str(k).lower(): v for k, v in resp.headers.items()},
                "body": raw[: config.http_max_bytes].decode(errors="replace"),
                "truncated": len(raw) > config.http_max_bytes,
            }
    except HTTPError as exc:
        raise HttpClientError(f"HTTP {exc.code} for {url}") from exc
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc


def get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from the local DevTools endpoint (`/json/list`)."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise CdpError(str(exc)) from exc
